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
Unit tests for the topology orchestrator, run against an in-memory backend.
"""
import itertools
import threading
from unittest.mock import MagicMock

import pytest
from docker.errors import APIError

from stackctl.BACKENDS.base import ServiceBackend
from stackctl.BUILDERS.image_builder import ImageBuilder
from stackctl.BUILDERS.stage_executor import DockerStageExecutor
from stackctl.errors import (
    DependencyCycle,
    MountConflict,
    PortConflict,
    ServiceNotReady,
    StageEnvironmentFailed,
    StageExecutionFailed,
    StartFailed,
    UnknownDependency,
    UpCancelled,
)
from stackctl.MANAGERS.service_orchestrator import ServiceOrchestrator
from stackctl.MODELS.orchestration_config import ServiceTopology
from stackctl.MODELS.running_service import ServiceState
from stackctl.MODELS.runtime_artifact import RuntimeArtifact
from stackctl.MODELS.service_definition import (
    BuildReference,
    PortBinding,
    ProbeKind,
    ReadinessProbe,
    ServiceSpec,
    VolumeMount,
)

PROBE = ReadinessProbe(kind=ProbeKind.COMMAND, test=["CMD", "check"])


class FakeBackend(ServiceBackend):
    """Keeps "running" services in a dict and records every call."""
    name = "fake"

    def __init__(self, never_ready=(), exit_on_start=(), fail_stop=(), on_check=None, fail_volumes=False):
        super().__init__("test")
        self.never_ready = set(never_ready)
        self.exit_on_start = set(exit_on_start)
        self.fail_stop = set(fail_stop)
        self.on_check = on_check
        self.fail_volumes = fail_volumes
        self.volumes_removed = []
        self.events = []
        self.running = {}
        self.names = {}
        self.artifacts = {}
        self._ids = itertools.count(1)

    def start(self, spec, artifact, extra_env):
        handle = f"{spec.name}-{next(self._ids)}"
        self.names[handle] = spec.name
        self.artifacts[spec.name] = artifact
        self.events.append(("start", spec.name))
        if spec.name not in self.exit_on_start:
            self.running[handle] = spec.name
        return handle

    def stop(self, handle, timeout):
        name = self.names[handle]
        self.events.append(("stop", name))
        if name in self.fail_stop:
            raise RuntimeError("refused to stop")
        self.running.pop(handle, None)

    def is_running(self, handle):
        return handle in self.running

    def exit_code(self, handle):
        return None if handle in self.running else 1

    def logs(self, handle):
        return ""

    def run_check(self, handle, spec, test, timeout):
        if self.on_check is not None:
            self.on_check(spec.name)
        if spec.name in self.never_ready:
            return False
        self.events.append(("ready", spec.name))
        return True

    def discover(self):
        return {name: handle for handle, name in self.running.items()}

    def remove_volumes(self, topology):
        if self.fail_volumes:
            raise OSError("volume is in use")
        self.volumes_removed.extend(topology.volumes)

    def started(self):
        return [name for event, name in self.events if event == "start"]

    def stopped(self):
        return [name for event, name in self.events if event == "stop"]


def make_topology(**services):
    specs = {}
    for name, fields in services.items():
        fields = dict(fields)
        fields.setdefault("command", ["run", name])
        specs[name] = ServiceSpec(name=name, **fields)
    return ServiceTopology(project_name="test", services=specs)


def make_orchestrator(topology, backend, **kwargs):
    kwargs.setdefault("readiness_timeout", 0.5)
    kwargs.setdefault("readiness_interval", 0.02)
    return ServiceOrchestrator(topology, backend, **kwargs)


def three_tier():
    return make_topology(
        db=dict(readiness=PROBE),
        cache=dict(),
        api=dict(depends_on=["db", "cache"], readiness=PROBE),
        web=dict(depends_on=["api"]),
    )


class TestUp:
    """Startup ordering and failure handling."""

    def test_dependencies_start_first(self):
        backend = FakeBackend()
        services = make_orchestrator(three_tier(), backend).up()

        started = backend.started()
        assert sorted(started) == ["api", "cache", "db", "web"]
        assert started.index("db") < started.index("api")
        assert started.index("cache") < started.index("api")
        assert started.index("api") < started.index("web")
        assert all(s.state == ServiceState.READY for s in services.values())

    def test_app_starts_after_db_is_ready(self):
        backend = FakeBackend()
        topology = make_topology(db=dict(readiness=PROBE), app=dict(depends_on=["db"]))
        services = make_orchestrator(topology, backend).up()

        assert backend.events.index(("ready", "db")) < backend.events.index(("start", "app"))
        assert services["db"].is_ready
        assert services["app"].is_ready

    def test_cycle_starts_nothing(self):
        backend = FakeBackend()
        topology = make_topology(a=dict(depends_on=["b"]), b=dict(depends_on=["a"]), c=dict())
        with pytest.raises(DependencyCycle) as excinfo:
            make_orchestrator(topology, backend).up()
        assert set(excinfo.value.cycle_members) == {"a", "b"}
        assert backend.events == []

    def test_unknown_dependency_starts_nothing(self):
        backend = FakeBackend()
        with pytest.raises(UnknownDependency):
            make_orchestrator(make_topology(web=dict(depends_on=["db"])), backend).up()
        assert backend.events == []

    def test_port_conflict_starts_nothing(self):
        backend = FakeBackend()
        topology = make_topology(
            web=dict(ports=[PortBinding(container_port=80, host_port=8080)]),
            admin=dict(ports=[PortBinding(container_port=8000, host_port=8080)]),
        )
        with pytest.raises(PortConflict) as excinfo:
            make_orchestrator(topology, backend).up()
        assert excinfo.value.port == 8080
        assert excinfo.value.services == ["admin", "web"]
        assert backend.events == []

    def test_mount_conflict_starts_nothing(self):
        backend = FakeBackend()
        topology = make_topology(
            a=dict(volumes=[VolumeMount(source="/srv/data", target="/data")]),
            b=dict(volumes=[VolumeMount(source="/srv/data", target="/data")]),
        )
        with pytest.raises(MountConflict):
            make_orchestrator(topology, backend).up()
        assert backend.events == []

    def test_second_up_is_a_no_op(self):
        backend = FakeBackend()
        orchestrator = make_orchestrator(three_tier(), backend)
        first = {name: s.model_dump() for name, s in orchestrator.up().items()}
        starts = len(backend.started())

        second = orchestrator.up()
        assert len(backend.started()) == starts
        assert {name: s.model_dump() for name, s in second.items()} == first

    def test_db_never_ready(self):
        backend = FakeBackend(never_ready={"db"})
        orchestrator = make_orchestrator(
            make_topology(db=dict(readiness=PROBE), app=dict(depends_on=["db"])), backend,
            readiness_timeout=0.2,
        )
        with pytest.raises(ServiceNotReady) as excinfo:
            orchestrator.up()

        assert excinfo.value.name == "db"
        assert excinfo.value.elapsed >= 0.2
        assert "app" not in backend.started()
        assert orchestrator.services["app"].state == ServiceState.PENDING
        # db is left running for inspection
        assert backend.is_running(orchestrator.services["db"].handle)
        assert backend.stopped() == []

    def test_independent_branch_continues(self):
        backend = FakeBackend(never_ready={"db", "queue"})
        topology = make_topology(
            db=dict(readiness=PROBE),
            app=dict(depends_on=["db"]),
            queue=dict(readiness=PROBE),
            worker=dict(),
        )
        orchestrator = make_orchestrator(topology, backend, readiness_timeout=0.2)
        with pytest.raises(ServiceNotReady) as excinfo:
            orchestrator.up()

        failed = {excinfo.value.name} | {e.name for e in excinfo.value.also_failed}
        assert failed == {"db", "queue"}
        assert orchestrator.services["worker"].is_ready
        assert "app" not in backend.started()

    def test_exit_before_ready_fails_fast(self):
        backend = FakeBackend(exit_on_start={"db"})
        orchestrator = make_orchestrator(
            make_topology(db=dict(readiness=PROBE)), backend, readiness_timeout=30)
        with pytest.raises(StartFailed) as excinfo:
            orchestrator.up()
        assert excinfo.value.name == "db"
        assert "code 1" in excinfo.value.reason

    def test_cancel_tears_down_started_services(self):
        cancel = threading.Event()
        backend = FakeBackend(never_ready={"db"}, on_check=lambda name: cancel.set())
        orchestrator = make_orchestrator(
            make_topology(db=dict(readiness=PROBE), app=dict(depends_on=["db"])), backend,
            readiness_timeout=30,
        )
        with pytest.raises(UpCancelled) as excinfo:
            orchestrator.up(cancel=cancel)

        assert excinfo.value.started == ["db"]
        assert backend.started() == ["db"]
        assert backend.stopped() == ["db"]
        assert backend.running == {}

    def test_cancel_keeps_result_of_check_in_flight(self):
        cancel = threading.Event()
        backend = FakeBackend(on_check=lambda name: cancel.set())
        orchestrator = make_orchestrator(
            make_topology(db=dict(readiness=PROBE), app=dict(depends_on=["db"])), backend,
            readiness_timeout=30,
        )
        with pytest.raises(UpCancelled) as excinfo:
            orchestrator.up(cancel=cancel)

        assert excinfo.value.started == ["db"]
        assert backend.events == [("start", "db"), ("ready", "db"), ("stop", "db")]
        assert orchestrator.services["app"].state == ServiceState.PENDING

    def test_concurrency_limit(self):
        lock = threading.Lock()
        active = {"now": 0, "max": 0}
        gate = threading.Event()

        class SlowBackend(FakeBackend):
            def run_check(self, handle, spec, test, timeout):
                with lock:
                    active["now"] += 1
                    active["max"] = max(active["max"], active["now"])
                gate.wait(0.05)
                with lock:
                    active["now"] -= 1
                return True

        topology = make_topology(**{f"s{i}": dict(readiness=PROBE) for i in range(6)})
        make_orchestrator(topology, SlowBackend(), max_concurrency=2).up()
        assert active["max"] <= 2


class FakeBuilder:
    """Stands in for ImageBuilder; remembers what it built."""

    store = {}
    builds = []
    fail = False

    def __init__(self, context):
        self.context = context

    def load_artifact(self, tag):
        return self.store.get(tag)

    def build_file(self, dockerfile, tag, build_args=None):
        FakeBuilder.builds.append(tag)
        if FakeBuilder.fail:
            raise StageExecutionFailed("compile", 2)
        artifact = RuntimeArtifact(
            tag=tag, stage_name="final", base_environment="alpine",
            content_path=f"/artifacts/{tag}", artifact_path="/app",
            digest=f"sha256:{len(FakeBuilder.builds)}", cmd=["/app/run"],
        )
        FakeBuilder.store[tag] = artifact
        return artifact

    def remove_artifact(self, tag):
        return FakeBuilder.store.pop(tag, None) is not None


class TestBuildReferences:
    """Services with a build definition."""

    @pytest.fixture(autouse=True)
    def reset_builder(self):
        FakeBuilder.store = {}
        FakeBuilder.builds = []
        FakeBuilder.fail = False

    def topology(self):
        return ServiceTopology(project_name="shop", services={
            "web": ServiceSpec(name="web", build=BuildReference(context="web")),
            "proxy": ServiceSpec(name="proxy", command=["proxy"], depends_on=["web"]),
        })

    def test_builds_when_no_artifact_exists(self):
        backend = FakeBackend()
        make_orchestrator(self.topology(), backend, builder_factory=FakeBuilder).up()
        assert FakeBuilder.builds == ["shop-web"]
        assert backend.artifacts["web"].tag == "shop-web"
        assert backend.artifacts["proxy"] is None

    def test_reuses_stored_artifact(self):
        FakeBuilder(".").build_file("Dockerfile", "shop-web")
        make_orchestrator(self.topology(), FakeBackend(), builder_factory=FakeBuilder).up()
        assert FakeBuilder.builds == ["shop-web"]

    def test_build_flag_rebuilds(self):
        FakeBuilder(".").build_file("Dockerfile", "shop-web")
        make_orchestrator(self.topology(), FakeBackend(), builder_factory=FakeBuilder).up(build=True)
        assert FakeBuilder.builds == ["shop-web", "shop-web"]

    def test_build_failure_blocks_dependents(self):
        FakeBuilder.fail = True
        backend = FakeBackend()
        with pytest.raises(StartFailed) as excinfo:
            make_orchestrator(self.topology(), backend, builder_factory=FakeBuilder).up()
        assert excinfo.value.name == "web"
        assert isinstance(excinfo.value.__cause__, StageExecutionFailed)
        assert backend.started() == []

    def test_build_environment_failure_blocks_dependents(self, tmp_path):
        client = MagicMock()
        client.containers.run.side_effect = APIError("no such image: golang:1.22")
        context = tmp_path / "web"
        context.mkdir()
        (context / "Dockerfile").write_text("FROM golang:1.22\nRUN go build\n")

        def docker_builder(ctx):
            return ImageBuilder(ctx, state_dir=str(tmp_path / "state"),
                                executor=DockerStageExecutor(client), use_cache=False)

        backend = FakeBackend()
        orchestrator = make_orchestrator(self.topology(), backend, builder_factory=docker_builder,
                                         base_dir=str(tmp_path))
        with pytest.raises(StartFailed) as excinfo:
            orchestrator.up()
        assert excinfo.value.name == "web"
        assert isinstance(excinfo.value.__cause__, StageEnvironmentFailed)
        assert backend.started() == []

    def test_down_removes_images(self):
        backend = FakeBackend()
        orchestrator = make_orchestrator(self.topology(), backend, builder_factory=FakeBuilder)
        orchestrator.up()
        orchestrator.down(remove_images=True)
        assert FakeBuilder.store == {}


class TestDown:
    """Teardown."""

    def test_reverse_start_order(self):
        backend = FakeBackend()
        topology = make_topology(
            db=dict(), api=dict(depends_on=["db"]), web=dict(depends_on=["api"]))
        orchestrator = make_orchestrator(topology, backend)
        orchestrator.up()

        assert orchestrator.down() == []
        assert backend.stopped() == ["web", "api", "db"]
        assert backend.running == {}
        assert all(s.state == ServiceState.STOPPED for s in orchestrator.services.values())

    def test_failures_are_collected(self):
        backend = FakeBackend(fail_stop={"api"})
        orchestrator = make_orchestrator(three_tier(), backend)
        orchestrator.up()

        failures = orchestrator.down()
        assert [f.name for f in failures] == ["api"]
        assert "refused" in str(failures[0])
        assert set(backend.stopped()) == {"db", "cache", "api", "web"}
        assert set(backend.running.values()) == {"api"}

    def test_fresh_orchestrator_rediscovers_services(self):
        backend = FakeBackend()
        topology = make_topology(db=dict(), app=dict(depends_on=["db"]))
        make_orchestrator(topology, backend).up()

        fresh = make_orchestrator(topology, backend)
        fresh.up()
        assert backend.started() == ["db", "app"]

        assert fresh.down() == []
        assert backend.stopped() == ["app", "db"]

    def test_remove_volumes(self):
        backend = FakeBackend()
        topology = ServiceTopology(project_name="test", volumes={"data": {}}, services={
            "db": ServiceSpec(name="db", command=["db"],
                              volumes=[VolumeMount(source="data", target="/var/lib/db")]),
        })
        orchestrator = make_orchestrator(topology, backend)
        orchestrator.up()

        assert orchestrator.down(remove_volumes=True) == []
        assert backend.volumes_removed == ["data"]

    def test_volume_removal_failure_is_reported(self):
        backend = FakeBackend(fail_volumes=True)
        orchestrator = make_orchestrator(make_topology(db=dict()), backend)
        orchestrator.up()

        failures = orchestrator.down(remove_volumes=True)
        assert [f.name for f in failures] == ["volumes"]
        assert "in use" in str(failures[0])
        assert backend.stopped() == ["db"]

    def test_down_with_cycle_still_stops_services(self):
        backend = FakeBackend()
        make_orchestrator(make_topology(a=dict(), b=dict()), backend).up()
        broken = make_topology(a=dict(depends_on=["b"]), b=dict(depends_on=["a"]))
        assert make_orchestrator(broken, backend).down() == []
        assert backend.running == {}


def test_inspect_reports_plan_and_state():
    backend = FakeBackend()
    orchestrator = make_orchestrator(three_tier(), backend)
    before = orchestrator.inspect()
    assert before["plan"] == [["db", "cache"], ["api"], ["web"]]
    assert before["services"]["web"]["state"] == "pending"

    orchestrator.up()
    after = orchestrator.inspect(["api"])
    assert list(after["services"]) == ["api"]
    assert after["services"]["api"]["state"] == "ready"
    assert after["services"]["api"]["readiness"] == "command"
