"""
Network and host-resource management: exclusive ownership of host ports
and writable mounts, and service discovery variables.
"""
from typing import Dict, List

from ..errors import MountConflict, PortConflict
from ..MODELS.orchestration_config import ServiceTopology


class NetworkManager:
    """
    Checks that host resources are claimed by at most one service and
    generates discovery variables for natively run services.
    """
    def __init__(self, topology: ServiceTopology):
        """
        :param topology: The topology whose resources are managed.
        """
        self.topology = topology

    def port_owners(self) -> Dict[int, List[str]]:
        """
        Host port -> services publishing on it.
        """
        owners: Dict[int, List[str]] = {}
        for name, svc in self.topology.services.items():
            for binding in svc.ports:
                if binding.host_port is None:
                    continue
                services = owners.setdefault(binding.host_port, [])
                if name not in services:
                    services.append(name)
        return owners

    def check_ports(self) -> None:
        """
        :raises PortConflict: If two services request the same host port.
        """
        for port, services in sorted(self.port_owners().items()):
            if len(services) > 1:
                raise PortConflict(port, services)

    def check_mounts(self) -> None:
        """
        Host bind paths mounted writable are owned by a single service.
        Named volumes may be shared.

        :raises MountConflict: If two services mount the same host path writable.
        """
        writers: Dict[str, List[str]] = {}
        for name, svc in self.topology.services.items():
            for mount in svc.volumes:
                if mount.is_bind and not mount.read_only:
                    services = writers.setdefault(mount.source.rstrip('/'), [])
                    if name not in services:
                        services.append(name)
        for path, services in sorted(writers.items()):
            if len(services) > 1:
                raise MountConflict(path, services)

    def get_service_discovery_env(self) -> Dict[str, str]:
        """
        Generates environment variables for service discovery.
        Example: DB_HOST=127.0.0.1, DB_PORT=3306
        """
        env = {}
        for name, svc in self.topology.services.items():
            prefix = name.upper().replace('-', '_').replace('.', '_')
            env[f"{prefix}_HOST"] = "127.0.0.1"

            # the first published port is the service's "default" port
            for binding in svc.ports:
                env[f"{prefix}_PORT"] = str(binding.host_port or binding.container_port)
                break
        return env
