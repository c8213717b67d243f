# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Builds a runtime artifact by running an ordered list of build stages.

Each stage gets a fresh root filesystem. When the stage finishes, only
the paths later stages copy with ``--from`` (and the final stage's
declared artifact) are kept; the rest of the stage is deleted, so
nothing from a builder environment leaks into the result unless it was
named explicitly.
"""
import glob
import logging
import os
import re
import shutil
import tempfile
import time
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set

from ..errors import MissingBuildInput, MissingProducedArtifact, StageExecutionFailed
from ..MODELS.build_stage import BuildStage, CopyInstruction, validate_stages
from ..MODELS.runtime_artifact import RuntimeArtifact
from ..PARSERS.dockerfile_parser import DockerfileParser
from ..UTILS.hashing import hash_path, path_size
from .build_cache import BuildCache
from .stage_executor import LocalStageExecutor, StageExecutor

logger = logging.getLogger(__name__)

_GLOB_CHARS = re.compile(r'[*?\[]')
MANIFEST = "manifest.json"


class ImageBuilder:
    """
    Executes stage definitions and stores the resulting runtime artifacts.
    """
    def __init__(self,
                 context_dir: str = ".",
                 state_dir: str = ".stackctl",
                 executor: Optional[StageExecutor] = None,
                 use_cache: bool = True):
        """
        Initializes the ImageBuilder.

        :param context_dir: The build context that COPY sources are relative to.
        :param state_dir: Where artifacts and the build cache are stored.
        :param executor: Runs stage commands; defaults to running them on the host.
        :param use_cache: Skip stages whose inputs are unchanged since the last build.
        """
        self.context_dir = os.path.abspath(context_dir)
        self.state_dir = os.path.abspath(state_dir)
        self.artifacts_dir = os.path.join(self.state_dir, "artifacts")
        self.executor = executor or LocalStageExecutor()
        self.cache = BuildCache(os.path.join(self.state_dir, "cache")) if use_cache else None
        self.parser = DockerfileParser()

    def build_file(self, dockerfile_path: str, tag: str,
                   build_args: Optional[Dict[str, str]] = None) -> RuntimeArtifact:
        """
        Parses a stage definition file and builds it.

        :param dockerfile_path: Path to the stage definition, relative to the context.
        :param tag: Name to store the artifact under.
        :param build_args: Values for ARG instructions.
        :return: The built artifact.
        """
        full_path = os.path.join(self.context_dir, dockerfile_path)
        stages = self.parser.parse_stages(full_path, build_args)
        return self.build(stages, tag)

    def build(self, stages: List[BuildStage], tag: str) -> RuntimeArtifact:
        """
        Runs the stages in declared order and returns the final stage's artifact.

        :param stages: Stages in declared order.
        :param tag: Name to store the artifact under.
        :return: The built artifact.
        :raises StageDefinitionError: If a stage copies from a stage that is not strictly earlier.
        :raises StageExecutionFailed: On the first command that exits non-zero.
        :raises StageEnvironmentFailed: If the executor cannot run a stage at all.
        :raises MissingProducedArtifact: If a stage did not write a path it hands off.
        :raises MissingBuildInput: If a copied source does not exist.
        """
        validate_stages(stages)
        final = stages[-1]
        artifact_path = final.produced_artifact_path or final.working_dir
        handoffs = self._handoff_paths(stages, artifact_path)

        os.makedirs(self.artifacts_dir, exist_ok=True)
        scratch = tempfile.mkdtemp(prefix="build-", dir=self.state_dir)
        try:
            handoff_root = os.path.join(scratch, "handoff")
            for position, stage in enumerate(stages):
                seed = stages[position - 1] if position > 0 else None
                self._run_stage(stage, seed, handoffs[stage.name], scratch, handoff_root)

            content = os.path.join(handoff_root, final.name, artifact_path.lstrip('/'))
            return self._store_artifact(final, artifact_path, content, tag, scratch)
        finally:
            shutil.rmtree(scratch, ignore_errors=True)

    def _handoff_paths(self, stages: List[BuildStage], artifact_path: str) -> Dict[str, List[str]]:
        """
        Works out which paths each stage must keep: whatever later stages
        copy from it, its own declared artifact, and the final artifact.
        """
        keep: Dict[str, Set[str]] = {stage.name: set() for stage in stages}
        for stage in stages:
            if stage.produced_artifact_path:
                keep[stage.name].add(stage.produced_artifact_path)
            for copy in stage.input_paths:
                if copy.from_stage is not None:
                    for source in copy.sources:
                        keep[copy.from_stage].add(_static_prefix('/' + source.lstrip('/')))
        keep[stages[-1].name].add(artifact_path)
        return {name: sorted(paths) for name, paths in keep.items()}

    def _run_stage(self, stage: BuildStage, previous: Optional[BuildStage],
                   collect: List[str], scratch: str, handoff_root: str) -> None:
        started = time.monotonic()
        logger.info("Stage %d/%s: %s", stage.index, stage.name, stage.base_environment)

        rootfs = os.path.join(scratch, f"stage-{stage.index}")
        os.makedirs(rootfs)
        try:
            # an earlier stage's declared artifact is input to the next stage
            if previous is not None and previous.produced_artifact_path:
                path = previous.produced_artifact_path
                self._copy_tree(os.path.join(handoff_root, previous.name, path.lstrip('/')),
                                os.path.join(rootfs, path.lstrip('/')))
            for copy in stage.input_paths:
                self._copy_inputs(stage, copy, rootfs, handoff_root)

            out_dir = os.path.join(handoff_root, stage.name)
            key = None
            if self.cache is not None:
                key = BuildCache.compute_key(stage, hash_path(rootfs), collect)
                entry = self.cache.get(key)
                if entry is not None:
                    self.cache.restore(entry, out_dir)
                    logger.info("Stage %s: using cache", stage.name)
                    return

            exit_code = self.executor.execute(stage, rootfs, collect)
            if exit_code != 0:
                logger.error("Stage %s failed with exit code %d", stage.name, exit_code)
                raise StageExecutionFailed(stage.name, exit_code)

            os.makedirs(out_dir, exist_ok=True)
            for path in collect:
                source = os.path.join(rootfs, path.lstrip('/'))
                if not os.path.lexists(source):
                    raise MissingProducedArtifact(stage.name, path)
                self._copy_tree(source, os.path.join(out_dir, path.lstrip('/')))

            if self.cache is not None:
                self.cache.put(key, stage.name, out_dir)
            logger.info("Stage %s done in %.1fs", stage.name, time.monotonic() - started)
        finally:
            shutil.rmtree(rootfs, ignore_errors=True)

    def _copy_inputs(self, stage: BuildStage, copy: CopyInstruction,
                     rootfs: str, handoff_root: str) -> None:
        """
        Copies COPY sources into the stage root. A directory source copies
        its contents; a file lands inside ``destination`` when that ends
        with a slash or several sources are given.
        """
        if copy.from_stage is None:
            root = self.context_dir
        else:
            root = os.path.join(handoff_root, copy.from_stage)

        matches = []
        for source in copy.sources:
            pattern = os.path.join(root, source.lstrip('/'))
            found = sorted(glob.glob(pattern)) if _GLOB_CHARS.search(source) else (
                [pattern] if os.path.lexists(pattern) else [])
            found = [f for f in found if _within(root, f)]
            if not found:
                raise MissingBuildInput(stage.name, source)
            matches.extend(found)

        dest = os.path.join(rootfs, copy.destination.lstrip('/'))
        into_dir = copy.destination.endswith('/') or len(matches) > 1
        for source in matches:
            if os.path.isdir(source) and not os.path.islink(source):
                self._copy_tree(source, dest)
            elif into_dir:
                self._copy_tree(source, os.path.join(dest, os.path.basename(source)))
            else:
                self._copy_tree(source, dest)

    def _copy_tree(self, source: str, dest: str) -> None:
        if os.path.isdir(source) and not os.path.islink(source):
            shutil.copytree(source, dest, symlinks=True, dirs_exist_ok=True)
        else:
            os.makedirs(os.path.dirname(dest) or '.', exist_ok=True)
            shutil.copy2(source, dest, follow_symlinks=False)

    def _store_artifact(self, final: BuildStage, artifact_path: str, content: str,
                        tag: str, scratch: str) -> RuntimeArtifact:
        """
        Moves the artifact content into place. Assembled under the scratch
        directory first so a failed build never leaves a partial artifact.
        """
        staging = os.path.join(scratch, "artifact")
        name = os.path.basename(artifact_path.rstrip('/')) or "rootfs"
        staged_content = os.path.join(staging, "content", name)
        self._copy_tree(content, staged_content)

        target = os.path.join(self.artifacts_dir, _safe_tag(tag))
        artifact = RuntimeArtifact(
            tag=tag,
            stage_name=final.name,
            base_environment=final.base_environment,
            content_path=os.path.join(target, "content", name),
            artifact_path=artifact_path,
            digest=hash_path(staged_content),
            size=path_size(staged_content),
            working_dir=final.working_dir,
            environment=dict(final.environment),
            cmd=list(final.cmd),
            entrypoint=list(final.entrypoint),
            exposed_ports=list(final.exposed_ports),
            labels=dict(final.labels),
            created_at=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        )
        with open(os.path.join(staging, MANIFEST), 'w') as f:
            f.write(artifact.model_dump_json(indent=2))

        if os.path.exists(target):
            shutil.rmtree(target)
        shutil.move(staging, target)
        logger.info("Built %s (%s, %d bytes)", tag, artifact.digest[:19], artifact.size)
        return artifact

    def load_artifact(self, tag: str) -> Optional[RuntimeArtifact]:
        """
        Reads a previously built artifact.

        :return: The artifact, or None if it was never built or its content is gone.
        """
        manifest = os.path.join(self.artifacts_dir, _safe_tag(tag), MANIFEST)
        if not os.path.exists(manifest):
            return None
        with open(manifest, 'r') as f:
            artifact = RuntimeArtifact.model_validate_json(f.read())
        if not os.path.lexists(artifact.content_path):
            return None
        return artifact

    def remove_artifact(self, tag: str) -> bool:
        """Deletes a stored artifact. Returns False if there was none."""
        target = os.path.join(self.artifacts_dir, _safe_tag(tag))
        if not os.path.exists(target):
            return False
        shutil.rmtree(target)
        return True


def _static_prefix(path: str) -> str:
    """The part of a path before its first glob component."""
    parts = []
    for part in path.split('/'):
        if _GLOB_CHARS.search(part):
            break
        parts.append(part)
    return '/'.join(parts) or '/'


def _within(root: str, path: str) -> bool:
    root = os.path.realpath(root)
    return os.path.commonpath([root, os.path.realpath(path)]) == root


def _safe_tag(tag: str) -> str:
    return re.sub(r'[^A-Za-z0-9_.-]', '_', tag)
