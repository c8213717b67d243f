"""
Settings for stackctl, read from STACKCTL_* environment variables.

A ``.env`` file in the working directory is loaded first, so project
defaults can live next to the compose file.
"""
import os
from typing import Dict, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import ConfigurationError

ENV_PREFIX = "STACKCTL_"


class Settings(BaseModel):
    """
    Runtime settings shared by the CLI and the orchestrators.
    """
    project_name: Optional[str] = None
    compose_file: str = "compose.yml"
    stage_file: str = "Dockerfile"
    state_dir: str = ".stackctl"

    backend: str = "process"
    executor: str = "local"

    max_concurrency: int = Field(default=4, ge=1)
    readiness_timeout: float = Field(default=60.0, gt=0)
    readiness_interval: float = Field(default=1.0, gt=0)
    stop_timeout: float = Field(default=10.0, ge=0)

    build_cache: bool = True
    log_level: str = "INFO"

    @field_validator("backend")
    @classmethod
    def _check_backend(cls, value: str) -> str:
        if value not in ("process", "docker"):
            raise ValueError(f"unknown backend '{value}'")
        return value

    @field_validator("executor")
    @classmethod
    def _check_executor(cls, value: str) -> str:
        if value not in ("local", "docker"):
            raise ValueError(f"unknown stage executor '{value}'")
        return value

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        value = value.upper()
        if value not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level '{value}'")
        return value


def load_settings(environ: Optional[Dict[str, str]] = None,
                  dotenv_path: Optional[str] = None,
                  **overrides) -> Settings:
    """
    Builds Settings from the environment, then applies explicit overrides.

    :param environ: Environment to read instead of ``os.environ``.
    :param dotenv_path: Path of a ``.env`` file to load into ``os.environ``.
    :param overrides: Values that take precedence (``None`` values are ignored).
    :raises ConfigurationError: If a value fails validation.
    """
    if environ is None:
        load_dotenv(dotenv_path=dotenv_path or os.path.join(os.getcwd(), ".env"), override=False)
        environ = dict(os.environ)

    values = {}
    for field_name in Settings.model_fields:
        key = ENV_PREFIX + field_name.upper()
        if key in environ:
            values[field_name] = environ[key]
    values.update({k: v for k, v in overrides.items() if v is not None})

    try:
        return Settings(**values)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid settings: {e}") from e
