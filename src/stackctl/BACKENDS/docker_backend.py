"""
Runs services as containers through the Docker Engine.

All containers of a project share the ``<project>_default`` network where
each one is reachable under its service name. Named volumes become
``<project>_<volume>`` Docker volumes.
"""
import io
import json
import logging
import os
import re
import tarfile
from typing import Dict, List, Optional, Tuple

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from ..errors import BackendError, StartFailed
from ..MANAGERS.environment_manager import EnvironmentManager
from ..MODELS.orchestration_config import ServiceTopology
from ..MODELS.runtime_artifact import RuntimeArtifact
from ..MODELS.service_definition import ServiceSpec
from .base import ServiceBackend, check_command

logger = logging.getLogger(__name__)

PROJECT_LABEL = "stackctl.project"
SERVICE_LABEL = "stackctl.service"


def image_name(tag: str) -> str:
    """Turns an artifact tag into a valid image reference."""
    repo, sep, version = tag.rpartition(':')
    if not sep or '/' in version:
        repo, version = tag, "latest"
    repo = re.sub(r'[^a-z0-9._/-]+', '-', repo.lower()).strip('-.') or "artifact"
    return f"{repo}:{version}"


class DockerBackend(ServiceBackend):
    """
    Container backend. Handles are container ids.
    """
    name = "docker"

    def __init__(self, project_name: str, base_dir: str = ".", client=None):
        """
        :param project_name: Name of the project, prefixes containers, networks and volumes.
        :param base_dir: Directory relative bind mounts and env files are resolved against.
        :param client: A docker.DockerClient; created from the environment when omitted.
        """
        super().__init__(project_name)
        self.base_dir = os.path.abspath(base_dir)
        self.env_manager = EnvironmentManager(self.base_dir, inherit=False)
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

    @property
    def network_name(self) -> str:
        return f"{self.project_name}_default"

    def volume_name(self, name: str) -> str:
        return f"{self.project_name}_{name}"

    def container_name(self, service: str) -> str:
        return f"{self.project_name}_{service}"

    def _labels(self) -> Dict[str, str]:
        return {PROJECT_LABEL: self.project_name}

    def prepare(self, topology: ServiceTopology) -> None:
        """
        :raises BackendError: If the network or a volume cannot be created.
        """
        try:
            if not self.client.networks.list(names=[self.network_name]):
                logger.info("Creating network %s", self.network_name)
                self.client.networks.create(self.network_name, driver="bridge", labels=self._labels())
            for name in topology.volumes:
                try:
                    self.client.volumes.get(self.volume_name(name))
                except NotFound:
                    logger.info("Creating volume %s", self.volume_name(name))
                    self.client.volumes.create(self.volume_name(name), labels=self._labels())
        except DockerException as e:
            raise BackendError(f"Cannot prepare project resources: {e}") from e

    def start(self, spec: ServiceSpec, artifact: Optional[RuntimeArtifact],
              extra_env: Dict[str, str]) -> str:
        try:
            image = self._ensure_image(spec, artifact)
        except (APIError, DockerException) as e:
            raise StartFailed(spec.name, f"cannot provide image: {e}") from e

        env = self.env_manager.get_merged_environment({**extra_env, **spec.environment}, spec.env_files)
        try:
            self._remove_stale(spec.name)
            container = self.client.containers.create(
                image,
                command=spec.command or None,
                entrypoint=spec.entrypoint or None,
                name=self.container_name(spec.name),
                environment=env,
                working_dir=spec.working_dir,
                ports=self._port_map(spec),
                volumes=self._volume_map(spec),
                labels={**spec.labels, **self._labels(), SERVICE_LABEL: spec.name},
            )
            self.client.networks.get(self.network_name).connect(container, aliases=[spec.name])
            container.start()
        except (APIError, DockerException) as e:
            raise StartFailed(spec.name, str(e)) from e

        logger.info("[%s] Started container %s", spec.name, container.short_id)
        return container.id

    def _ensure_image(self, spec: ServiceSpec, artifact: Optional[RuntimeArtifact]) -> str:
        if artifact is not None:
            return self._image_from_artifact(artifact)
        try:
            self.client.images.get(spec.image)
        except ImageNotFound:
            logger.info("[%s] Pulling %s...", spec.name, spec.image)
            self.client.images.pull(spec.image)
        return spec.image

    def _image_from_artifact(self, artifact: RuntimeArtifact) -> str:
        """
        Packages a build artifact on top of its base environment.
        The image is labelled with the artifact digest and rebuilt only
        when the digest changes.
        """
        tag = image_name(artifact.tag)
        try:
            existing = self.client.images.get(tag)
            if existing.labels.get("stackctl.digest") == artifact.digest:
                return tag
        except ImageNotFound:
            pass

        lines = [f"FROM {artifact.base_environment}"]
        if artifact.working_dir:
            lines.append(f"WORKDIR {artifact.working_dir}")
        lines.append(f"COPY content {artifact.artifact_path}")
        for key, value in artifact.environment.items():
            lines.append(f"ENV {key}={json.dumps(value)}")
        for port in artifact.exposed_ports:
            lines.append(f"EXPOSE {port}")
        for key, value in {**artifact.labels, PROJECT_LABEL: self.project_name,
                           "stackctl.digest": artifact.digest}.items():
            lines.append(f"LABEL {json.dumps(key)}={json.dumps(value)}")
        if artifact.entrypoint:
            lines.append(f"ENTRYPOINT {json.dumps(artifact.entrypoint)}")
        if artifact.cmd:
            lines.append(f"CMD {json.dumps(artifact.cmd)}")

        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w") as tar:
            dockerfile = ("\n".join(lines) + "\n").encode()
            info = tarfile.TarInfo("Dockerfile")
            info.size = len(dockerfile)
            tar.addfile(info, io.BytesIO(dockerfile))
            tar.add(artifact.content_path, arcname="content")
        buffer.seek(0)

        logger.info("Building image %s from artifact %s", tag, artifact.digest[:19])
        self.client.images.build(fileobj=buffer, custom_context=True, tag=tag, rm=True)
        return tag

    def _remove_stale(self, service: str) -> None:
        """Removes a stopped container left over under the service's name."""
        try:
            stale = self.client.containers.get(self.container_name(service))
        except NotFound:
            return
        stale.remove(force=True)

    def _port_map(self, spec: ServiceSpec) -> Dict[str, object]:
        ports: Dict[str, object] = {}
        for binding in spec.ports:
            key = f"{binding.container_port}/{binding.protocol}"
            if binding.host_port is None:
                ports[key] = None
            elif binding.host_ip:
                ports[key] = (binding.host_ip, binding.host_port)
            else:
                ports[key] = binding.host_port
        return ports

    def _volume_map(self, spec: ServiceSpec) -> Dict[str, Dict[str, str]]:
        volumes = {}
        for mount in spec.volumes:
            if mount.is_bind:
                source = os.path.abspath(os.path.join(self.base_dir, os.path.expanduser(mount.source)))
            else:
                source = self.volume_name(mount.source)
            volumes[source] = {"bind": mount.target, "mode": "ro" if mount.read_only else "rw"}
        return volumes

    def _container(self, handle: str):
        try:
            container = self.client.containers.get(handle)
        except NotFound:
            return None
        return container

    def stop(self, handle: str, timeout: float) -> None:
        container = self._container(handle)
        if container is None:
            return
        logger.info("Stopping container %s", container.name)
        try:
            container.stop(timeout=int(timeout))
            container.remove()
        except NotFound:
            pass

    def is_running(self, handle: str) -> bool:
        container = self._container(handle)
        return container is not None and container.status == "running"

    def exit_code(self, handle: str) -> Optional[int]:
        container = self._container(handle)
        if container is None or container.status == "running":
            return None
        return container.attrs.get("State", {}).get("ExitCode")

    def logs(self, handle: str) -> str:
        container = self._container(handle)
        if container is None:
            return ""
        return container.logs().decode("utf-8", errors="replace")

    def run_check(self, handle: str, spec: ServiceSpec, test: List[str], timeout: float) -> bool:
        """
        Runs the health test inside the container. The Engine API has no
        exec timeout, so ``timeout`` is enforced by the caller's deadline.
        """
        if test and test[0] == "NONE":
            return True
        container = self._container(handle)
        if container is None:
            return False
        argv, use_shell = check_command(test)
        if use_shell:
            argv = ["/bin/sh", "-c", argv[0]]
        try:
            result = container.exec_run(argv)
        except APIError as e:
            logger.debug("[%s] health check failed: %s", spec.name, e)
            return False
        return result.exit_code == 0

    def probe_address(self, handle: str, spec: ServiceSpec, host: str, port: int) -> Tuple[str, int]:
        published = self.published_ports(handle, spec)
        if port in published:
            return host, published[port]
        container = self._container(handle)
        if container is not None:
            networks = container.attrs.get("NetworkSettings", {}).get("Networks", {})
            address = networks.get(self.network_name, {}).get("IPAddress")
            if address:
                return address, port
        return host, port

    def published_ports(self, handle: str, spec: ServiceSpec) -> Dict[int, int]:
        container = self._container(handle)
        if container is None:
            return {}
        published = {}
        for key, bindings in (container.ports or {}).items():
            if not bindings:
                continue
            published[int(key.split('/')[0])] = int(bindings[0]["HostPort"])
        return published

    def discover(self) -> Dict[str, str]:
        found = {}
        for container in self.client.containers.list(filters={"label": f"{PROJECT_LABEL}={self.project_name}"}):
            service = container.labels.get(SERVICE_LABEL)
            if service:
                found[service] = container.id
        return found

    def remove_volumes(self, topology: ServiceTopology) -> None:
        for name in topology.volumes:
            try:
                self.client.volumes.get(self.volume_name(name)).remove(force=True)
                logger.info("Removed volume %s", self.volume_name(name))
            except NotFound:
                pass

    def remove_image(self, reference: str) -> None:
        try:
            self.client.images.remove(image_name(reference), force=True)
            logger.info("Removed image %s", image_name(reference))
        except ImageNotFound:
            pass

    def cleanup(self, topology: ServiceTopology) -> None:
        for network in self.client.networks.list(names=[self.network_name]):
            try:
                network.remove()
            except APIError as e:
                logger.warning("Could not remove network %s: %s", self.network_name, e)
