"""
Executors that run a build stage's commands against a prepared root
filesystem, either on the host or inside a throwaway container.
"""
import io
import logging
import os
import subprocess
import tarfile
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

import docker
from docker.errors import DockerException, ImageNotFound, NotFound

from ..errors import BackendError, StageEnvironmentFailed
from ..MODELS.build_stage import BuildStage

logger = logging.getLogger(__name__)


def stage_environment(stage: BuildStage) -> Dict[str, str]:
    """ARG values first, then ENV, so ENV wins on a name clash."""
    env = dict(stage.build_args)
    env.update(stage.environment)
    return env


class StageExecutor(ABC):
    """
    Runs the commands of one stage.

    ``rootfs`` is a host directory standing in for the stage's filesystem
    root; the builder has already copied the stage inputs into it. When
    ``execute`` returns, every path in ``collect`` that the stage wrote
    must exist under ``rootfs``.
    """

    @abstractmethod
    def execute(self, stage: BuildStage, rootfs: str, collect: List[str]) -> int:
        """
        :return: 0 on success, else the exit code of the first failing command.
        """


class LocalStageExecutor(StageExecutor):
    """
    Runs commands on the host. The base environment is not materialized;
    commands run with the working dir inside ``rootfs`` as cwd and find
    the root in ``STACKCTL_STAGE_ROOT``.
    """
    def __init__(self, inherit_env: bool = True, stdout=None):
        """
        :param inherit_env: Pass the host environment through to commands.
        :param stdout: Where command output goes, defaults to the parent's stdout.
        """
        self.inherit_env = inherit_env
        self.stdout = stdout

    def execute(self, stage: BuildStage, rootfs: str, collect: List[str]) -> int:
        workdir = os.path.join(rootfs, stage.working_dir.lstrip('/'))
        os.makedirs(workdir, exist_ok=True)

        env = dict(os.environ) if self.inherit_env else {"PATH": os.environ.get("PATH", "")}
        env.update(stage_environment(stage))
        env["STACKCTL_STAGE_ROOT"] = rootfs

        for command in stage.commands:
            logger.info("[%s] RUN %s", stage.name, ' '.join(command))
            try:
                result = subprocess.run(
                    command,
                    cwd=workdir,
                    env=env,
                    stdout=self.stdout,
                    stderr=subprocess.STDOUT if self.stdout is not None else None,
                    shell=False,
                )
            except OSError as e:
                logger.error("[%s] cannot execute %s: %s", stage.name, command[0], e)
                return 127
            if result.returncode != 0:
                return result.returncode
        return 0


class DockerStageExecutor(StageExecutor):
    """
    Runs each stage in a container created from its base environment
    image. The prepared root is uploaded before the commands run and only
    the collected paths are downloaded afterwards.
    """
    def __init__(self, client=None):
        """
        :param client: A docker.DockerClient; created from the environment when omitted.
        """
        self._client = client

    @property
    def client(self):
        if self._client is None:
            try:
                self._client = docker.from_env()
                self._client.ping()
            except DockerException as e:
                raise BackendError(f"Docker Engine is not available: {e}") from e
        return self._client

    def execute(self, stage: BuildStage, rootfs: str, collect: List[str]) -> int:
        """
        :raises StageEnvironmentFailed: If the Engine cannot provide or drive the container.
        """
        client = self.client
        try:
            self._ensure_image(client, stage)
            env = stage_environment(stage)
            container = client.containers.run(
                stage.base_environment,
                entrypoint=["tail", "-f", "/dev/null"],
                detach=True,
                working_dir=stage.working_dir,
                environment=env,
                labels={"stackctl.stage": stage.name},
            )
        except DockerException as e:
            raise StageEnvironmentFailed(stage.name, str(e)) from e

        try:
            return self._run_in(container, stage, env, rootfs, collect)
        except DockerException as e:
            raise StageEnvironmentFailed(stage.name, str(e)) from e
        finally:
            try:
                container.remove(force=True)
            except DockerException as e:
                logger.warning("[%s] could not remove build container: %s", stage.name, e)

    def _ensure_image(self, client, stage: BuildStage) -> None:
        try:
            client.images.get(stage.base_environment)
        except ImageNotFound:
            logger.info("[%s] Pulling %s...", stage.name, stage.base_environment)
            client.images.pull(stage.base_environment)

    def _run_in(self, container, stage: BuildStage, env: Dict[str, str],
                rootfs: str, collect: List[str]) -> int:
        container.put_archive("/", self._tar_directory(rootfs))

        for command in stage.commands:
            logger.info("[%s] RUN %s", stage.name, ' '.join(command))
            result = container.exec_run(command, workdir=stage.working_dir, environment=env)
            output = result.output.decode("utf-8", errors="replace") if result.output else ""
            for line in output.splitlines():
                logger.info("[%s] %s", stage.name, line)
            if result.exit_code != 0:
                return result.exit_code

        for path in collect:
            try:
                bits, _ = container.get_archive(path.rstrip('/') or '/')
            except NotFound:
                continue
            self._extract(b''.join(bits), os.path.join(rootfs, os.path.dirname(path.rstrip('/')).lstrip('/')))
        return 0

    def _tar_directory(self, directory: str) -> bytes:
        """Create in-memory tar archive of a directory's contents."""
        tar_buffer = io.BytesIO()
        with tarfile.open(fileobj=tar_buffer, mode="w") as tar:
            for name in sorted(os.listdir(directory)):
                tar.add(os.path.join(directory, name), arcname=name)
        tar_buffer.seek(0)
        return tar_buffer.read()

    def _extract(self, data: bytes, dest: str) -> None:
        os.makedirs(dest, exist_ok=True)
        with tarfile.open(fileobj=io.BytesIO(data), mode="r") as tar:
            tar.extractall(dest, filter="tar")


def create_stage_executor(kind: str, client: Optional[object] = None) -> StageExecutor:
    """Returns the executor named by the ``executor`` setting."""
    if kind == "docker":
        return DockerStageExecutor(client)
    return LocalStageExecutor()
