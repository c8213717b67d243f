"""
Managers for handling environment variables and env file resolution.
"""
import os
from typing import Dict, List, Optional

from dotenv import dotenv_values

from ..errors import ConfigurationError


class EnvironmentManager:
    """
    Manages the merging and resolution of environment variables from multiple sources.
    """
    def __init__(self, base_dir: str = ".", inherit: bool = True):
        """
        Initializes the environment manager.

        :param base_dir: The base directory for resolving relative paths to env files.
        :param inherit: Start from the current process environment.
        """
        self.base_dir = base_dir
        self.inherit = inherit

    def get_merged_environment(self,
                               explicit_env: Dict[str, str],
                               env_files: List[str],
                               defaults: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        """
        Merges environment variables, later sources winning: the current
        process (when inherited), ``defaults``, the env files in order,
        then the explicit definitions.

        :param explicit_env: A dictionary of explicitly defined environment variables.
        :param env_files: A list of paths to env files.
        :param defaults: Values below the service's own, e.g. from the artifact.
        :return: A dictionary containing the merged environment variables.
        :raises ConfigurationError: If an env file does not exist.
        """
        merged_env = os.environ.copy() if self.inherit else {}
        if defaults:
            merged_env.update(defaults)

        for env_file in env_files:
            file_path = os.path.join(self.base_dir, env_file)
            if not os.path.exists(file_path):
                raise ConfigurationError(f"env file {file_path} not found")
            merged_env.update({k: v for k, v in dotenv_values(file_path).items() if v is not None})

        merged_env.update(explicit_env)
        return merged_env
