"""
Error types raised by the build and topology orchestrators.

Every error carries the context needed to render a precise message
(stage or service name, exit code, elapsed time) as attributes.
"""
from typing import List, Optional, Sequence


class StackctlError(Exception):
    """Base exception for stackctl."""
    pass


class ConfigurationError(StackctlError):
    """Invalid settings or an unreadable definition file."""
    pass


class StageDefinitionError(StackctlError):
    """
    A stage definition is malformed: duplicate stage names, a handoff
    reference to a stage that does not come strictly earlier, and so on.
    """

    def __init__(self, message: str, line: Optional[int] = None):
        self.line = line
        if line is not None:
            message = f"line {line}: {message}"
        super().__init__(message)


class BackendError(StackctlError):
    """The process or container runtime cannot be reached."""
    pass


# -- build ---------------------------------------------------------------

class BuildError(StackctlError):
    """Base class for errors that abort a build."""
    pass


class StageExecutionFailed(BuildError):
    def __init__(self, stage_name: str, exit_code: int):
        self.stage_name = stage_name
        self.exit_code = exit_code
        super().__init__(f"Stage '{stage_name}' failed with exit code {exit_code}")


class StageEnvironmentFailed(BuildError):
    """The environment a stage runs in could not be provided or driven."""

    def __init__(self, stage_name: str, reason: str):
        self.stage_name = stage_name
        self.reason = reason
        super().__init__(f"Stage '{stage_name}' could not run: {reason}")


class MissingProducedArtifact(BuildError):
    def __init__(self, stage_name: str, path: str):
        self.stage_name = stage_name
        self.path = path
        super().__init__(f"Stage '{stage_name}' did not produce declared output '{path}'")


class MissingBuildInput(BuildError):
    def __init__(self, stage_name: str, path: str):
        self.stage_name = stage_name
        self.path = path
        super().__init__(f"Stage '{stage_name}' copies '{path}', which does not exist")


# -- topology ------------------------------------------------------------

class TopologyError(StackctlError):
    """
    Base class for errors raised by the topology orchestrator.

    ``also_failed`` holds further failures observed in unrelated branches
    of the same ``up`` call.
    """

    def __init__(self, message: str):
        super().__init__(message)
        self.also_failed: List["TopologyError"] = []


class DependencyCycle(TopologyError):
    def __init__(self, cycle_members: Sequence[str]):
        self.cycle_members = list(cycle_members)
        super().__init__(f"Dependency cycle between services: {' -> '.join(self.cycle_members)}")


class UnknownDependency(TopologyError):
    def __init__(self, service: str, dependency: str):
        self.service = service
        self.dependency = dependency
        super().__init__(f"Service '{service}' depends on undefined service '{dependency}'")


class PortConflict(TopologyError):
    def __init__(self, port: int, services: Sequence[str]):
        self.port = port
        self.services = sorted(services)
        super().__init__(f"Host port {port} is requested by several services: {', '.join(self.services)}")


class MountConflict(TopologyError):
    def __init__(self, path: str, services: Sequence[str]):
        self.path = path
        self.services = sorted(services)
        super().__init__(f"Writable mount '{path}' is shared by services: {', '.join(self.services)}")


class ServiceNotReady(TopologyError):
    def __init__(self, name: str, elapsed: float):
        self.name = name
        self.elapsed = elapsed
        super().__init__(f"Service '{name}' did not become ready within {elapsed:.1f}s")


class StartFailed(TopologyError):
    def __init__(self, name: str, reason: str):
        self.name = name
        self.reason = reason
        super().__init__(f"Service '{name}' failed to start: {reason}")


class UpCancelled(TopologyError):
    def __init__(self, started: Sequence[str]):
        self.started = list(started)
        super().__init__(
            "Startup cancelled"
            + (f"; stopped {', '.join(self.started)}" if self.started else "")
        )


class TeardownFailure:
    """One service that could not be stopped during ``down``."""

    def __init__(self, name: str, error: Exception):
        self.name = name
        self.error = error

    def __str__(self) -> str:
        return f"{self.name}: {self.error}"

    def __repr__(self) -> str:
        return f"TeardownFailure({self.name!r}, {self.error!r})"
