"""
Models for overall orchestration configuration.
"""
from typing import Any, Dict, List
from pydantic import BaseModel
from .service_definition import ServiceSpec


class ServiceTopology(BaseModel):
    """
    Complete configuration for a multi-service stack.
    Equivalent to a parsed compose file.
    """
    project_name: str = "stackctl"
    services: Dict[str, ServiceSpec]
    volumes: Dict[str, Dict[str, Any]] = {}
    networks: List[str] = []

    def service_names(self) -> List[str]:
        return list(self.services.keys())
