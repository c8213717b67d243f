"""
Models for build stages and the copy operations that feed them.
"""
from typing import Dict, List, Optional
from pydantic import BaseModel

from ..errors import StageDefinitionError


class CopyInstruction(BaseModel):
    """
    Copies one or more sources into a stage's filesystem.

    Sources are relative to the build context, or to the root of an
    earlier stage when ``from_stage`` is set.
    """
    sources: List[str]
    destination: str
    from_stage: Optional[str] = None


class BuildStage(BaseModel):
    """
    One step of a multi-stage build.

    Only ``produced_artifact_path`` (and any path a later stage copies with
    ``--from``) survives the stage; everything else is discarded.
    """
    name: str
    index: int
    base_environment: str
    working_dir: str = "/"
    environment: Dict[str, str] = {}
    # ARG values, visible to commands but not carried into the artifact
    build_args: Dict[str, str] = {}

    input_paths: List[CopyInstruction] = []
    commands: List[List[str]] = []
    produced_artifact_path: Optional[str] = None

    # Runtime defaults, only meaningful on the final stage
    cmd: List[str] = []
    entrypoint: List[str] = []
    exposed_ports: List[int] = []
    labels: Dict[str, str] = {}

    def referenced_stages(self) -> List[str]:
        """Names of stages this stage copies from, in declaration order."""
        return [c.from_stage for c in self.input_paths if c.from_stage is not None]


def validate_stages(stages: List[BuildStage]) -> None:
    """
    Checks that stage names are unique and that every ``--from`` handoff
    points at a strictly earlier stage.

    :raises StageDefinitionError: On the first violation found.
    """
    if not stages:
        raise StageDefinitionError("No build stages defined")

    seen: Dict[str, int] = {}
    for position, stage in enumerate(stages):
        if stage.name in seen:
            raise StageDefinitionError(f"Duplicate stage name '{stage.name}'")
        seen[stage.name] = position

    for position, stage in enumerate(stages):
        for ref in stage.referenced_stages():
            target = seen.get(ref)
            if target is None:
                raise StageDefinitionError(f"Stage '{stage.name}' copies from unknown stage '{ref}'")
            if target >= position:
                raise StageDefinitionError(
                    f"Stage '{stage.name}' copies from '{ref}', which is not an earlier stage"
                )
