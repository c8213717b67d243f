"""
The capability set the topology orchestrator needs from a runtime:
start, stop, observe and probe one service.
"""
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

from ..MODELS.orchestration_config import ServiceTopology
from ..MODELS.runtime_artifact import RuntimeArtifact
from ..MODELS.service_definition import ServiceSpec


def resolve_command(spec: ServiceSpec, artifact: Optional[RuntimeArtifact] = None) -> List[str]:
    """
    Combines entrypoint and command into a single argv.

    A service's own entrypoint/command override the artifact's defaults.
    If an entrypoint is set it is the executable and the command becomes
    its arguments; otherwise the command is the executable plus arguments.
    """
    entrypoint = spec.entrypoint or (artifact.entrypoint if artifact else [])
    if spec.command:
        cmd = spec.command
    elif spec.entrypoint:
        # an overridden entrypoint drops the artifact's default command
        cmd = []
    else:
        cmd = artifact.cmd if artifact else []
    return list(entrypoint) + list(cmd)


def check_command(test: List[str]) -> Tuple[List[str], bool]:
    """
    Turns a compose-style health test into (argv, use_shell).
    """
    if test and test[0] == "CMD":
        return test[1:], False
    if test and test[0] == "CMD-SHELL":
        return [test[1] if len(test) > 1 else ""], True
    return list(test), False


class ServiceBackend(ABC):
    """
    Starts and stops services on behalf of the orchestrator. Handles are
    opaque strings that identify a process or container across calls.
    """
    name = "base"

    def __init__(self, project_name: str):
        self.project_name = project_name

    def prepare(self, topology: ServiceTopology) -> None:
        """Creates shared resources (networks, named volumes) before any start."""

    def service_environment(self, topology: ServiceTopology) -> Dict[str, str]:
        """Extra variables injected into every service, e.g. for discovery."""
        return {}

    @abstractmethod
    def start(self, spec: ServiceSpec, artifact: Optional[RuntimeArtifact],
              extra_env: Dict[str, str]) -> str:
        """
        Starts a service and returns its handle.

        :raises StartFailed: If the service cannot be started.
        """

    @abstractmethod
    def stop(self, handle: str, timeout: float) -> None:
        """Stops a service. Stopping something already gone is not an error."""

    @abstractmethod
    def is_running(self, handle: str) -> bool:
        pass

    def exit_code(self, handle: str) -> Optional[int]:
        """Exit code of a service that has stopped, when known."""
        return None

    @abstractmethod
    def logs(self, handle: str) -> str:
        """Output produced by the service since it was started."""

    @abstractmethod
    def run_check(self, handle: str, spec: ServiceSpec, test: List[str], timeout: float) -> bool:
        """Runs a health test against the service; True on exit code 0."""

    def probe_address(self, handle: str, spec: ServiceSpec, host: str, port: int) -> Tuple[str, int]:
        """Where a port probe should connect to reach ``port`` of the service."""
        return host, spec.host_port_for(port) or port

    @abstractmethod
    def discover(self) -> Dict[str, str]:
        """Services of this project that are still running, by name."""

    def published_ports(self, handle: str, spec: ServiceSpec) -> Dict[int, int]:
        """Container port -> host port for a started service."""
        return {p.container_port: p.host_port for p in spec.ports if p.host_port is not None}

    def remove_volumes(self, topology: ServiceTopology) -> None:
        """Deletes the topology's named volumes."""

    def remove_image(self, reference: str) -> None:
        """Deletes an image built for the project."""

    def cleanup(self, topology: ServiceTopology) -> None:
        """Releases shared resources created by prepare()."""
