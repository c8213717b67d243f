"""
Volume management for natively run services: named volumes are
directories under the state dir, linked into each service's target path.
"""
import logging
import os
import shutil
from typing import Iterable, List, Optional

from ..MODELS.service_definition import VolumeMount

logger = logging.getLogger(__name__)


class VolumeManager:
    """
    Manages volume mappings by creating symlinks or copying directories.
    """
    def __init__(self, base_dir: str = ".", volumes_root: str = ".stackctl/volumes"):
        """
        Initializes the volume manager.

        :param base_dir: The base directory for resolving relative paths.
        :param volumes_root: The root directory for named volume storage.
        """
        self.base_dir = os.path.abspath(base_dir)
        self.volumes_root = os.path.abspath(os.path.join(base_dir, volumes_root))

    def create_volumes(self, names: Iterable[str]) -> List[str]:
        """
        Creates the directories backing named volumes. Existing volumes are kept.

        :return: The volume directories.
        """
        paths = []
        for name in names:
            path = os.path.join(self.volumes_root, name)
            os.makedirs(path, exist_ok=True)
            paths.append(path)
        return paths

    def remove_volumes(self, names: Iterable[str]) -> None:
        for name in names:
            path = os.path.join(self.volumes_root, name)
            if os.path.isdir(path):
                logger.info("Removing volume %s", name)
                shutil.rmtree(path)

    def prepare_volumes(self, mounts: List[VolumeMount], service_working_dir: Optional[str] = None):
        """
        Prepares volumes for a service.

        :param mounts: List of volume mounts.
        :param service_working_dir: The directory where the service will run.
        """
        for mount in mounts:
            source_path = self.resolve_source(mount.source)
            target_path = self.resolve_target(mount.target, service_working_dir)

            if not os.path.exists(source_path):
                os.makedirs(source_path, exist_ok=True)

            logger.debug("Mapping volume: %s -> %s", source_path, target_path)

            target_parent = os.path.dirname(target_path)
            if target_parent:
                os.makedirs(target_parent, exist_ok=True)

            if os.path.lexists(target_path):
                if os.path.realpath(target_path) == os.path.realpath(source_path):
                    continue
                if os.path.islink(target_path) or os.path.isfile(target_path):
                    os.unlink(target_path)
                else:
                    shutil.rmtree(target_path)

            try:
                os.symlink(source_path, target_path, target_is_directory=os.path.isdir(source_path))
            except (OSError, NotImplementedError):
                logger.warning("Symlink failed for %s, falling back to copy.", target_path)
                if os.path.isdir(source_path):
                    shutil.copytree(source_path, target_path, dirs_exist_ok=True)
                else:
                    shutil.copy2(source_path, target_path)

    def resolve_source(self, source: str) -> str:
        """
        Resolves the source path of a volume.

        :param source: The source path or volume name.
        :return: The absolute path to the source.
        """
        if not os.path.isabs(source) and not source.startswith('.'):
            return os.path.join(self.volumes_root, source)
        return os.path.abspath(os.path.join(self.base_dir, source))

    def resolve_target(self, target: str, working_dir: Optional[str] = None) -> str:
        """
        Resolves the target path of a volume. Absolute targets are placed
        under the service's working directory, since a native process
        shares the host filesystem.

        :param target: The target path inside the service.
        :param working_dir: The working directory of the service.
        :return: The absolute path to the target.
        """
        root = working_dir if working_dir else self.base_dir
        return os.path.abspath(os.path.join(root, target.lstrip('/\\')))
