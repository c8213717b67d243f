"""
Models for parsed stage definition files.
"""
from typing import Dict, List
from pydantic import BaseModel


class Instruction(BaseModel):
    """
    Represents a single instruction in a stage definition file.
    """
    instruction: str
    arguments: List[str]
    flags: Dict[str, str] = {}
    exec_form: bool = False
    raw: str
    line: int = 0
