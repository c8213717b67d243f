"""
Lifecycle state of services started by the topology orchestrator.
"""
from enum import Enum
from typing import Dict, Optional
from pydantic import BaseModel


class ServiceState(str, Enum):
    """
    Pending -> Starting -> Ready -> Stopping -> Stopped.
    """
    PENDING = "pending"
    STARTING = "starting"
    READY = "ready"
    STOPPING = "stopping"
    STOPPED = "stopped"


class RunningService(BaseModel):
    """
    A service as tracked by the orchestrator.

    ``handle`` is the backend's identifier for the process or container.
    """
    name: str
    state: ServiceState = ServiceState.PENDING
    handle: Optional[str] = None
    source: Optional[str] = None
    ports: Dict[int, int] = {}

    started_at: Optional[str] = None
    ready_at: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_ready(self) -> bool:
        return self.state == ServiceState.READY
