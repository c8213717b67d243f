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
Orchestration for multiple services, managing dependencies and readiness.
"""
import logging
import os
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set

from ..BACKENDS.base import ServiceBackend
from ..BUILDERS.image_builder import ImageBuilder
from ..errors import (
    ConfigurationError,
    StackctlError,
    StartFailed,
    TeardownFailure,
    TopologyError,
    UpCancelled,
)
from ..MODELS.orchestration_config import ServiceTopology
from ..MODELS.running_service import RunningService, ServiceState
from ..MODELS.runtime_artifact import RuntimeArtifact
from ..MODELS.service_definition import ServiceSpec
from ..RUNNERS.dependency_resolver import DependencyResolver
from .network_manager import NetworkManager
from .readiness_monitor import ReadinessMonitor

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class ServiceOrchestrator:
    """
    Orchestrates multiple services based on their dependencies.

    A single control loop decides what to start; start and readiness
    jobs run on a thread pool bounded by ``max_concurrency``. A service is
    submitted once every service it depends on is READY.
    """
    def __init__(self,
                 topology: ServiceTopology,
                 backend: ServiceBackend,
                 base_dir: str = ".",
                 state_dir: str = ".stackctl",
                 builder_factory: Optional[Callable[[str], ImageBuilder]] = None,
                 max_concurrency: int = 4,
                 readiness_timeout: float = 60.0,
                 readiness_interval: float = 1.0,
                 stop_timeout: float = 10.0):
        """
        Initializes the orchestrator.

        :param topology: Configuration for all services.
        :param backend: Runtime the services are started on.
        :param base_dir: Directory the topology file lives in.
        :param state_dir: Where build artifacts are stored.
        :param builder_factory: Creates an ImageBuilder for a build context directory.
        :param max_concurrency: Maximum number of services starting at once.
        :param readiness_timeout: Default readiness timeout in seconds.
        :param readiness_interval: Default seconds between readiness probes.
        :param stop_timeout: Seconds a service gets to stop before it is killed.
        """
        self.topology = topology
        self.backend = backend
        self.base_dir = os.path.abspath(base_dir)
        self.state_dir = os.path.abspath(os.path.join(base_dir, state_dir))
        self.builder_factory = builder_factory or (
            lambda context: ImageBuilder(context, state_dir=self.state_dir))
        self.max_concurrency = max_concurrency
        self.stop_timeout = stop_timeout

        self.network_manager = NetworkManager(topology)
        self.monitor = ReadinessMonitor(backend, readiness_timeout, readiness_interval)
        self.services: Dict[str, RunningService] = {
            name: RunningService(name=name) for name in topology.service_names()
        }
        self.started_order: List[str] = []
        self._lock = threading.Lock()
        self._build_lock = threading.Lock()

    def validate(self) -> List[List[str]]:
        """
        Checks the topology without starting anything.

        :return: The start waves.
        :raises UnknownDependency: If a service depends on an undefined service.
        :raises DependencyCycle: If the dependency graph has a cycle.
        :raises PortConflict: If two services publish the same host port.
        :raises MountConflict: If two services mount the same host path writable.
        """
        levels = DependencyResolver(self.topology).levels()
        self.network_manager.check_ports()
        self.network_manager.check_mounts()
        return levels

    def plan(self) -> List[str]:
        """Services in start order."""
        return [name for level in self.validate() for name in level]

    def up(self, build: bool = False, cancel: Optional[threading.Event] = None) -> Dict[str, RunningService]:
        """
        Starts all services in dependency order and waits for each to be ready.

        :param build: Rebuild services that have a build definition.
        :param cancel: Setting this event abandons the startup.
        :return: Every service with its state.
        :raises TopologyError: The first failure; later ones are in ``also_failed``.
        """
        order = self.plan()
        resolver = DependencyResolver(self.topology)
        self._adopt_running()

        pending = [name for name in order if not self.services[name].is_ready]
        if not pending:
            logger.info("All services are already running")
            return dict(self.services)

        logger.info("Starting services in order: %s", ', '.join(pending))
        self.backend.prepare(self.topology)
        extra_env = self.backend.service_environment(self.topology)

        stop_event = cancel if cancel is not None else threading.Event()
        failures: List[TopologyError] = []
        blocked: Set[str] = set()
        in_flight: Dict[Future, str] = {}
        started_here: List[str] = []
        cancelled = False

        def collect(done) -> None:
            nonlocal cancelled
            for future in done:
                name = in_flight.pop(future)
                try:
                    future.result()
                except UpCancelled:
                    cancelled = True
                except TopologyError as e:
                    logger.error("[%s] %s", name, e)
                    failures.append(e)
                    skipped = resolver.transitive_dependents(name)
                    if skipped:
                        logger.warning("Not starting %s: depends on %s",
                                       ', '.join(sorted(skipped)), name)
                    blocked.update(skipped)
                if self.services[name].handle is not None and name not in started_here:
                    started_here.append(name)

        with ThreadPoolExecutor(max_workers=self.max_concurrency) as pool:
            try:
                while True:
                    if stop_event.is_set():
                        cancelled = True
                    if not cancelled:
                        for name in list(pending):
                            if name in blocked:
                                continue
                            if all(self.services[dep].is_ready for dep in resolver.requires[name]):
                                pending.remove(name)
                                self.services[name].state = ServiceState.STARTING
                                future = pool.submit(self._start_service, name, build, extra_env, stop_event)
                                in_flight[future] = name
                    if not in_flight:
                        break
                    done, _ = wait(in_flight, timeout=0.2, return_when=FIRST_COMPLETED)
                    collect(done)
            except KeyboardInterrupt:
                logger.warning("Interrupted, waiting for services being started...")
                cancelled = True
                stop_event.set()
                done, _ = wait(in_flight)
                collect(done)

        if cancelled:
            for record in self.services.values():
                if record.state == ServiceState.STARTING and record.handle is None:
                    record.state = ServiceState.PENDING
            teardown = self._stop_services(list(reversed(started_here)))
            for failure in teardown:
                logger.error("Could not stop %s", failure)
            raise UpCancelled(started_here)

        if failures:
            first = failures[0]
            first.also_failed = failures[1:]
            raise first
        return dict(self.services)

    def _start_service(self, name: str, build: bool, extra_env: Dict[str, str],
                       cancel: threading.Event) -> None:
        spec = self.topology.services[name]
        record = self.services[name]

        try:
            artifact = self._resolve_artifact(spec, build)
        except TopologyError:
            raise
        except (StackctlError, OSError) as e:
            record.error = str(e)
            raise StartFailed(name, str(e)) from e

        if cancel.is_set():
            raise UpCancelled([])

        if record.handle is not None:
            # left over from an earlier start that never became ready
            self.backend.stop(record.handle, self.stop_timeout)
            record.handle = None

        logger.info("Starting service: %s", name)
        try:
            handle = self.backend.start(spec, artifact, extra_env)
        except TopologyError as e:
            record.error = str(e)
            raise
        except (StackctlError, OSError) as e:
            record.error = str(e)
            raise StartFailed(name, str(e)) from e
        with self._lock:
            record.handle = handle
            record.source = artifact.tag if artifact is not None else spec.image
            record.started_at = _now()
            if name not in self.started_order:
                self.started_order.append(name)

        try:
            self.monitor.wait_until_ready(spec, handle, cancel)
        except TopologyError as e:
            record.error = str(e)
            raise

        with self._lock:
            record.state = ServiceState.READY
            record.ready_at = _now()
            record.error = None
            record.ports = self.backend.published_ports(handle, spec)

    def _resolve_artifact(self, spec: ServiceSpec, build: bool) -> Optional[RuntimeArtifact]:
        """
        The artifact a service runs from. Services with a build definition
        reuse the stored artifact unless a rebuild is requested or none exists.
        """
        if spec.build is None:
            return None
        tag = spec.artifact_tag(self.topology.project_name)
        context = os.path.join(self.base_dir, spec.build.context)

        with self._build_lock:
            builder = self.builder_factory(context)
            if not build:
                artifact = builder.load_artifact(tag)
                if artifact is not None:
                    logger.info("[%s] Using artifact %s (%s)", spec.name, tag, artifact.digest[:19])
                    return artifact
            logger.info("[%s] Building %s", spec.name, tag)
            return builder.build_file(spec.build.dockerfile, tag, spec.build.args)

    def _adopt_running(self) -> None:
        """
        Picks up services a previous invocation left running, so they are
        not started twice.
        """
        discovered = self.backend.discover()
        for name, record in self.services.items():
            if record.is_ready:
                if record.handle is not None and self.backend.is_running(record.handle):
                    continue
                record.state = ServiceState.STOPPED
                record.handle = None
            if name in discovered and record.error is None:
                record.handle = discovered[name]
                record.state = ServiceState.READY
                record.ports = self.backend.published_ports(record.handle, self.topology.services[name])

    def down(self, remove_volumes: bool = False, remove_images: bool = False) -> List[TeardownFailure]:
        """
        Stops all services in reverse start order. Every service is
        attempted; failures are collected and returned.

        :param remove_volumes: Also delete the topology's named volumes.
        :param remove_images: Also delete artifacts and images built for the topology.
        :return: The services (or resources) that could not be removed.
        """
        try:
            order = self.plan()
        except TopologyError:
            order = self.topology.service_names()
        # services started by this orchestrator go by their actual start order
        order = [n for n in order if n not in self.started_order] + self.started_order

        handles = {name: rec.handle for name, rec in self.services.items() if rec.handle is not None}
        for name, handle in self.backend.discover().items():
            handles.setdefault(name, handle)
        orphans = [name for name in handles if name not in self.services]

        failures = self._stop_services(list(reversed(order)) + orphans, handles)

        if remove_images:
            for name, spec in self.topology.services.items():
                if spec.build is None:
                    continue
                tag = spec.artifact_tag(self.topology.project_name)
                try:
                    self.builder_factory(self.base_dir).remove_artifact(tag)
                    self.backend.remove_image(tag)
                except Exception as e:
                    logger.error("Could not remove image %s: %s", tag, e)
                    failures.append(TeardownFailure(tag, e))

        if remove_volumes:
            try:
                self.backend.remove_volumes(self.topology)
            except Exception as e:
                logger.error("Could not remove volumes: %s", e)
                failures.append(TeardownFailure("volumes", e))

        try:
            self.backend.cleanup(self.topology)
        except Exception as e:
            failures.append(TeardownFailure("network", e))

        self.started_order = []
        return failures

    def _stop_services(self, names: List[str],
                       handles: Optional[Dict[str, str]] = None) -> List[TeardownFailure]:
        failures = []
        for name in names:
            handle = (handles or {}).get(name)
            record = self.services.get(name)
            if handle is None and record is not None:
                handle = record.handle
            if handle is None:
                continue

            logger.info("Stopping service: %s", name)
            if record is not None:
                record.state = ServiceState.STOPPING
            try:
                self.backend.stop(handle, self.stop_timeout)
            except Exception as e:
                logger.error("Failed to stop %s: %s", name, e)
                failures.append(TeardownFailure(name, e))
                continue
            if record is not None:
                record.state = ServiceState.STOPPED
                record.handle = None
            if name in self.started_order:
                self.started_order.remove(name)
        return failures

    def ps(self) -> Dict[str, RunningService]:
        """
        Returns the status of all services.

        :return: Service names and their state.
        """
        discovered = self.backend.discover()
        for name, record in self.services.items():
            handle = record.handle or discovered.get(name)
            if handle is None:
                continue
            if self.backend.is_running(handle):
                record.handle = handle
                if record.state in (ServiceState.PENDING, ServiceState.STOPPED):
                    record.state = ServiceState.READY
                    record.ports = self.backend.published_ports(handle, self.topology.services[name])
            else:
                record.state = ServiceState.STOPPED
        return dict(self.services)

    def inspect(self, names: Optional[List[str]] = None) -> Dict[str, Any]:
        """
        Describes the start plan and the state of the selected services.

        :param names: Services to describe, all when empty.
        :raises ConfigurationError: If a name is not in the topology.
        """
        levels = self.validate()
        states = self.ps()
        selected = list(names) if names else self.topology.service_names()
        unknown = [n for n in selected if n not in self.topology.services]
        if unknown:
            raise ConfigurationError(f"No such service: {', '.join(unknown)}")

        services = {}
        for name in selected:
            spec = self.topology.services[name]
            record = states[name]
            services[name] = {
                "state": record.state.value,
                "handle": record.handle,
                "image": spec.image,
                "build": spec.artifact_tag(self.topology.project_name) if spec.build else None,
                "command": spec.command,
                "depends_on": spec.depends_on,
                "ports": [p.model_dump() for p in spec.ports],
                "volumes": [v.model_dump() for v in spec.volumes],
                "readiness": spec.readiness.kind.value if spec.readiness else None,
                "started_at": record.started_at,
                "ready_at": record.ready_at,
                "error": record.error,
            }
        return {"project": self.topology.project_name, "plan": levels, "services": services}
