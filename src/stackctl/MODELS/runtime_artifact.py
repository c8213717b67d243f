"""
Model for the deployable output of a build.
"""
import os
from typing import Dict, List, Optional
from pydantic import BaseModel


class RuntimeArtifact(BaseModel):
    """
    The final stage's output together with the runtime defaults the final
    stage declared (working directory, environment, command).
    """
    tag: str
    stage_name: str
    base_environment: str

    content_path: str
    artifact_path: str
    digest: str
    size: int = 0

    working_dir: str = "/"
    environment: Dict[str, str] = {}
    cmd: List[str] = []
    entrypoint: List[str] = []
    exposed_ports: List[int] = []
    labels: Dict[str, str] = {}

    created_at: Optional[str] = None

    @property
    def is_directory(self) -> bool:
        return os.path.isdir(self.content_path)
