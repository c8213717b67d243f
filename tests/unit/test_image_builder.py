import os

import pytest

from stackctl.BUILDERS.build_cache import BuildCache
from stackctl.BUILDERS.image_builder import ImageBuilder
from stackctl.BUILDERS.stage_executor import LocalStageExecutor, StageExecutor
from stackctl.errors import MissingBuildInput, MissingProducedArtifact, StageExecutionFailed
from stackctl.PARSERS.dockerfile_parser import DockerfileParser


class RecordingExecutor(StageExecutor):
    """Writes predefined files into the stage root instead of running commands."""

    def __init__(self, effects=None, fail=None):
        self.ran = []
        self.effects = effects or {}
        self.fail = fail or {}

    def execute(self, stage, rootfs, collect):
        self.ran.append(stage.name)
        if stage.name in self.fail:
            return self.fail[stage.name]
        for path, content in self.effects.get(stage.name, {}).items():
            full = os.path.join(rootfs, path.lstrip('/'))
            os.makedirs(os.path.dirname(full), exist_ok=True)
            with open(full, 'w') as f:
                f.write(content)
        return 0


def stages(content, build_args=None):
    return DockerfileParser().parse_stages_from_string(content, build_args)


MULTI_STAGE = """
FROM golang:1.22 AS builder
RUN go build -o /out/app
ARTIFACT /out/app

FROM alpine:3.20 AS final
COPY --from=builder /out/app /app/app
CMD ["/app/app"]
ARTIFACT /app
"""


def make_builder(tmp_path, executor, use_cache=False):
    context = tmp_path / "context"
    context.mkdir(parents=True, exist_ok=True)
    return ImageBuilder(str(context), state_dir=str(tmp_path / "state"),
                        executor=executor, use_cache=use_cache)


def test_stages_run_in_order_and_stop_at_failure(tmp_path):
    executor = RecordingExecutor(fail={"two": 3})
    builder = make_builder(tmp_path, executor)
    with pytest.raises(StageExecutionFailed) as excinfo:
        builder.build(stages("FROM a AS one\nFROM b AS two\nFROM c AS three\n"), "demo")

    assert excinfo.value.stage_name == "two"
    assert excinfo.value.exit_code == 3
    assert executor.ran == ["one", "two"]
    assert builder.load_artifact("demo") is None


def test_multi_stage_build(tmp_path):
    executor = RecordingExecutor(effects={
        "builder": {"/out/app": "binary", "/tmp/scratch": "junk"},
    })
    builder = make_builder(tmp_path, executor)
    artifact = builder.build(stages(MULTI_STAGE), "demo:1")

    assert executor.ran == ["builder", "final"]
    assert artifact.tag == "demo:1"
    assert artifact.stage_name == "final"
    assert artifact.base_environment == "alpine:3.20"
    assert artifact.cmd == ["/app/app"]
    assert artifact.is_directory
    assert os.listdir(artifact.content_path) == ["app"]
    with open(os.path.join(artifact.content_path, "app")) as f:
        assert f.read() == "binary"

    loaded = builder.load_artifact("demo:1")
    assert loaded.digest == artifact.digest
    assert loaded.content_path == artifact.content_path


def test_digest_ignores_intermediate_only_state(tmp_path):
    first = make_builder(tmp_path / "a", RecordingExecutor(effects={
        "builder": {"/out/app": "binary", "/tmp/scratch": "one"},
    }))
    second = make_builder(tmp_path / "b", RecordingExecutor(effects={
        "builder": {"/out/app": "binary", "/var/cache/other": "two"},
    }))
    assert first.build(stages(MULTI_STAGE), "x").digest == second.build(stages(MULTI_STAGE), "x").digest


def test_missing_produced_artifact(tmp_path):
    builder = make_builder(tmp_path, RecordingExecutor())
    with pytest.raises(MissingProducedArtifact) as excinfo:
        builder.build(stages(MULTI_STAGE), "demo")
    assert excinfo.value.stage_name == "builder"
    assert excinfo.value.path == "/out/app"


def test_missing_build_input(tmp_path):
    builder = make_builder(tmp_path, RecordingExecutor())
    with pytest.raises(MissingBuildInput) as excinfo:
        builder.build(stages("FROM alpine\nCOPY missing.txt /app/\n"), "demo")
    assert excinfo.value.path == "missing.txt"


def test_context_files_are_copied(tmp_path):
    builder = make_builder(tmp_path, RecordingExecutor())
    (tmp_path / "context" / "src").mkdir(parents=True)
    (tmp_path / "context" / "src" / "main.py").write_text("print('hi')")
    (tmp_path / "context" / "README").write_text("readme")

    artifact = builder.build(stages("FROM python\nWORKDIR /app\nCOPY src/ README ./\n"), "py")
    assert sorted(os.listdir(artifact.content_path)) == ["README", "main.py"]


def test_unchanged_stages_come_from_cache(tmp_path):
    effects = {"builder": {"/out/app": "binary"}}
    first = RecordingExecutor(effects=effects)
    digest = make_builder(tmp_path, first, use_cache=True).build(stages(MULTI_STAGE), "demo").digest
    assert first.ran == ["builder", "final"]

    second = RecordingExecutor()
    artifact = make_builder(tmp_path, second, use_cache=True).build(stages(MULTI_STAGE), "demo")
    assert second.ran == []
    assert artifact.digest == digest


def test_cache_key_depends_on_base_environment():
    one = stages("FROM alpine:3.19\nRUN make\n")[0]
    two = stages("FROM alpine:3.20\nRUN make\n")[0]
    assert BuildCache.compute_key(one, "sha256:x", []) != BuildCache.compute_key(two, "sha256:x", [])


def test_remove_artifact(tmp_path):
    builder = make_builder(tmp_path, RecordingExecutor(effects={"builder": {"/out/app": "b"}}))
    builder.build(stages(MULTI_STAGE), "demo")
    assert builder.remove_artifact("demo")
    assert builder.load_artifact("demo") is None
    assert not builder.remove_artifact("demo")


def test_local_executor_build_file(tmp_path):
    context = tmp_path / "context"
    context.mkdir()
    (context / "Dockerfile").write_text(
        "FROM scratch\n"
        "ARG GREETING=hello\n"
        "WORKDIR /build\n"
        "RUN echo \"$GREETING\" > out.txt\n"
        "ARTIFACT out.txt\n"
    )
    builder = ImageBuilder(str(context), state_dir=str(tmp_path / "state"),
                           executor=LocalStageExecutor(), use_cache=False)
    artifact = builder.build_file("Dockerfile", "greeting", {"GREETING": "hi there"})

    assert artifact.artifact_path == "/build/out.txt"
    with open(artifact.content_path, "rb") as f:
        assert f.read() == b"hi there\n"


def test_local_executor_reports_exit_code(tmp_path):
    builder = ImageBuilder(str(tmp_path), state_dir=str(tmp_path / "state"),
                           executor=LocalStageExecutor(), use_cache=False)
    with pytest.raises(StageExecutionFailed) as excinfo:
        builder.build(stages("FROM scratch AS only\nRUN exit 7\n"), "fail")
    assert excinfo.value.exit_code == 7
