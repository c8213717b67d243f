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
Runs services as native processes on the host.
"""
import logging
import os
import subprocess
from typing import Dict, List, Optional

from ..errors import StartFailed
from ..MANAGERS.environment_manager import EnvironmentManager
from ..MANAGERS.log_aggregator import LogAggregator
from ..MANAGERS.network_manager import NetworkManager
from ..MANAGERS.volume_manager import VolumeManager
from ..MODELS.orchestration_config import ServiceTopology
from ..MODELS.runtime_artifact import RuntimeArtifact
from ..MODELS.service_definition import ServiceSpec
from ..RUNNERS.process_runner import ProcessRunner
from .base import ServiceBackend, check_command, resolve_command

logger = logging.getLogger(__name__)


class ProcessBackend(ServiceBackend):
    """
    Each service is a process tree started without a shell. Output goes to
    ``<state_dir>/logs/<service>.log``; the pid is kept in
    ``<state_dir>/pids/<service>.pid`` so a later invocation can stop it.

    A service runs in its working dir (the artifact directory for built
    services) and gets a private root, ``<state_dir>/run/<service>``, into
    which its volumes are linked; the root is exported as
    ``STACKCTL_SERVICE_ROOT``.
    """
    name = "process"

    def __init__(self, project_name: str, base_dir: str = ".", state_dir: str = ".stackctl"):
        """
        :param project_name: Name of the project being run.
        :param base_dir: Directory relative paths are resolved against.
        :param state_dir: Directory for logs, pid files, volumes and service roots.
        """
        super().__init__(project_name)
        self.base_dir = os.path.abspath(base_dir)
        self.state_dir = os.path.abspath(os.path.join(base_dir, state_dir))
        self.pid_dir = os.path.join(self.state_dir, "pids")
        self.run_dir = os.path.join(self.state_dir, "run")

        self.env_manager = EnvironmentManager(self.base_dir)
        self.volume_manager = VolumeManager(self.base_dir, os.path.join(self.state_dir, "volumes"))
        self.log_aggregator = LogAggregator(os.path.join(self.state_dir, "logs"))

        self.runners: Dict[str, ProcessRunner] = {}
        self._log_offsets: Dict[str, int] = {}
        self._environments: Dict[str, Dict[str, str]] = {}

    def prepare(self, topology: ServiceTopology) -> None:
        self.volume_manager.create_volumes(topology.volumes.keys())

    def service_environment(self, topology: ServiceTopology) -> Dict[str, str]:
        return NetworkManager(topology).get_service_discovery_env()

    def start(self, spec: ServiceSpec, artifact: Optional[RuntimeArtifact],
              extra_env: Dict[str, str]) -> str:
        command = resolve_command(spec, artifact)
        if not command:
            reason = "no command to run"
            if spec.image:
                reason = f"image '{spec.image}' cannot run as a native process without a command"
            raise StartFailed(spec.name, reason)

        service_root = os.path.join(self.run_dir, spec.name)
        os.makedirs(service_root, exist_ok=True)

        env = self.env_manager.get_merged_environment(
            {**extra_env, **spec.environment},
            spec.env_files,
            defaults=artifact.environment if artifact else None,
        )
        env["STACKCTL_SERVICE_ROOT"] = service_root
        if artifact is not None:
            env["STACKCTL_ARTIFACT"] = artifact.content_path

        self.volume_manager.prepare_volumes(spec.volumes, service_working_dir=service_root)

        working_dir = self._working_dir(spec, artifact)
        runner = ProcessRunner(
            spec.name,
            log_file=self.log_aggregator.path(spec.name),
            pid_file=os.path.join(self.pid_dir, f"{spec.name}.pid"),
        )
        self._log_offsets[spec.name] = self.log_aggregator.size(spec.name)
        try:
            runner.start(command, env=env, working_dir=working_dir)
        except OSError as e:
            raise StartFailed(spec.name, str(e)) from e

        self.runners[spec.name] = runner
        self._environments[spec.name] = env
        return spec.name

    def _working_dir(self, spec: ServiceSpec, artifact: Optional[RuntimeArtifact]) -> str:
        if spec.working_dir:
            return os.path.join(self.base_dir, spec.working_dir)
        if artifact is not None:
            if artifact.is_directory:
                return artifact.content_path
            return os.path.dirname(artifact.content_path)
        return self.base_dir

    def _runner(self, handle: str) -> Optional[ProcessRunner]:
        runner = self.runners.get(handle)
        if runner is None:
            runner = ProcessRunner.attach(
                handle,
                os.path.join(self.pid_dir, f"{handle}.pid"),
                log_file=self.log_aggregator.path(handle),
            )
        return runner

    def stop(self, handle: str, timeout: float) -> None:
        runner = self._runner(handle)
        if runner is not None:
            runner.stop(timeout=timeout)
        self.runners.pop(handle, None)
        pid_file = os.path.join(self.pid_dir, f"{handle}.pid")
        if os.path.exists(pid_file):
            os.remove(pid_file)

    def is_running(self, handle: str) -> bool:
        runner = self._runner(handle)
        return runner is not None and runner.is_running()

    def exit_code(self, handle: str) -> Optional[int]:
        runner = self.runners.get(handle)
        return runner.get_exit_code() if runner else None

    def logs(self, handle: str) -> str:
        return self.log_aggregator.read(handle, self._log_offsets.get(handle, 0))

    def run_check(self, handle: str, spec: ServiceSpec, test: List[str], timeout: float) -> bool:
        """
        Runs the health test on the host with the service's environment.
        """
        if test and test[0] == "NONE":
            return True
        argv, use_shell = check_command(test)
        env = self._environments.get(handle) or self.env_manager.get_merged_environment(
            spec.environment, spec.env_files)
        try:
            result = subprocess.run(
                argv[0] if use_shell else argv,
                shell=use_shell,
                env=env,
                capture_output=True,
                timeout=timeout,
                text=True,
            )
        except subprocess.TimeoutExpired:
            logger.debug("[%s] health check timed out", handle)
            return False
        if result.returncode != 0:
            logger.debug("[%s] health check failed: %s", handle,
                         (result.stderr or f"Exit code: {result.returncode}")[:500])
        return result.returncode == 0

    def discover(self) -> Dict[str, str]:
        if not os.path.isdir(self.pid_dir):
            return {}
        found = {}
        for entry in sorted(os.listdir(self.pid_dir)):
            if not entry.endswith(".pid"):
                continue
            name = entry[:-4]
            if self.is_running(name):
                found[name] = name
            else:
                # stale pid file from a process that already exited
                os.remove(os.path.join(self.pid_dir, entry))
        return found

    def remove_volumes(self, topology: ServiceTopology) -> None:
        self.volume_manager.remove_volumes(topology.volumes.keys())
