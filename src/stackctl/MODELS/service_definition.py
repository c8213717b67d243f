"""
Models for defining services: port bindings, mounts, readiness probes and
the build reference that ties a service to a build artifact.
"""
import re
from typing import List, Dict, Optional
from pydantic import BaseModel, Field, model_validator
from enum import Enum


class ProbeKind(str, Enum):
    """
    Mechanisms used to decide that a started service is ready.
    """
    PORT = "port"
    LOG = "log"
    COMMAND = "command"


class ReadinessProbe(BaseModel):
    """
    A check polled after start until it succeeds or times out.

    ``interval`` and ``timeout`` fall back to the orchestrator settings
    when left unset.
    """
    kind: ProbeKind
    port: Optional[int] = None
    host: str = "127.0.0.1"
    pattern: Optional[str] = None
    test: List[str] = []

    interval: Optional[float] = Field(default=None, gt=0)
    timeout: Optional[float] = Field(default=None, gt=0)
    start_period: float = 0.0

    @model_validator(mode="after")
    def _check_kind_fields(self):
        if self.kind == ProbeKind.PORT and self.port is None:
            raise ValueError("port probe requires 'port'")
        if self.kind == ProbeKind.LOG and not self.pattern:
            raise ValueError("log probe requires 'pattern'")
        if self.pattern:
            try:
                re.compile(self.pattern)
            except re.error as e:
                raise ValueError(f"invalid log pattern: {e}")
        if self.kind == ProbeKind.COMMAND and not self.test:
            raise ValueError("command probe requires 'test'")
        return self


class PortBinding(BaseModel):
    """
    Publishes a container port, optionally on a fixed host port.
    """
    container_port: int
    host_port: Optional[int] = None
    host_ip: str = ""
    protocol: str = "tcp"


class VolumeMount(BaseModel):
    """
    Defines a mapping between a host path or named volume and a service path.
    """
    source: str
    target: str
    read_only: bool = False

    @property
    def is_bind(self) -> bool:
        """True for host paths, False for named volumes."""
        return self.source.startswith(('/', '.', '~'))


class BuildReference(BaseModel):
    """
    Points a service at a stage definition to build locally.
    """
    context: str = "."
    dockerfile: str = "Dockerfile"
    tag: Optional[str] = None
    args: Dict[str, str] = {}


class ServiceSpec(BaseModel):
    """
    The full definition of a single service in a topology.
    """
    name: str
    image: Optional[str] = None
    build: Optional[BuildReference] = None

    # Execution
    command: List[str] = []
    entrypoint: List[str] = []
    working_dir: Optional[str] = None

    # Environment
    environment: Dict[str, str] = {}
    env_files: List[str] = []

    # Networking
    ports: List[PortBinding] = []

    # Storage
    volumes: List[VolumeMount] = []

    # Lifecycle
    depends_on: List[str] = []
    readiness: Optional[ReadinessProbe] = None

    labels: Dict[str, str] = {}

    @model_validator(mode="after")
    def _check_runnable(self):
        if not self.image and self.build is None and not self.command and not self.entrypoint:
            raise ValueError(f"service '{self.name}' needs an image, a build or a command")
        return self

    def artifact_tag(self, project_name: str) -> str:
        """Tag under which this service's build artifact is stored."""
        if self.build is not None and self.build.tag:
            return self.build.tag
        if self.build is not None and self.image:
            return self.image
        return f"{project_name}-{self.name}"

    def host_port_for(self, container_port: int) -> Optional[int]:
        """Returns the host port publishing the given container port, if any."""
        for binding in self.ports:
            if binding.container_port == container_port and binding.host_port is not None:
                return binding.host_port
        return None
