# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Parsers for compose-style service topology files.
"""
import logging
import os
import re
import shlex
from typing import Any, Dict, List, Optional

import yaml
from dotenv import dotenv_values
from pydantic import ValidationError

from ..errors import ConfigurationError
from ..MODELS.orchestration_config import ServiceTopology
from ..MODELS.service_definition import (
    BuildReference,
    PortBinding,
    ProbeKind,
    ReadinessProbe,
    ServiceSpec,
    VolumeMount,
)
from ..UTILS.durations import parse_duration
from ..UTILS.string_interpolation import EnvironmentInterpolator

logger = logging.getLogger(__name__)

_PORT = re.compile(
    r'^(?:(?P<ip>\[[^\]]+\]|\d+\.\d+\.\d+\.\d+):)?(?:(?P<host>\d+)?:)?(?P<container>\d+)(?:/(?P<proto>tcp|udp))?$'
)


class ComposeParser:
    """
    Parser for compose files.
    """
    def __init__(self, context: Optional[Dict[str, str]] = None, project_name: Optional[str] = None):
        """
        Initializes the parser with an optional environment context for interpolation.

        :param context: A dictionary of environment variables for interpolation.
        :param project_name: Overrides the project name found in the file.
        """
        self.context = context
        self.project_name = project_name

    def parse(self, compose_path: str) -> ServiceTopology:
        """
        Parses a compose file from a path. A ``.env`` file next to it
        supplies interpolation defaults; the process environment wins.

        :param compose_path: Path to the compose file.
        :return: Parsed topology.
        """
        try:
            with open(compose_path, 'r') as f:
                content = f.read()
        except OSError as e:
            raise ConfigurationError(f"Cannot read {compose_path}: {e}") from e

        base_dir = os.path.dirname(os.path.abspath(compose_path))
        context = self.context
        if context is None:
            dotenv_file = os.path.join(base_dir, ".env")
            file_env = dotenv_values(dotenv_file) if os.path.exists(dotenv_file) else {}
            context = {k: v for k, v in file_env.items() if v is not None}
            context.update(os.environ)

        return self.parse_from_string(content, base_dir=base_dir, context=context)

    def parse_from_string(self, content: str, base_dir: str = ".",
                          context: Optional[Dict[str, str]] = None) -> ServiceTopology:
        """
        Parses a compose file from a string.

        :param content: YAML content of the compose file.
        :param base_dir: Directory relative paths are resolved against.
        :param context: Interpolation variables, defaults to the parser context.
        :return: Parsed topology.
        :raises ConfigurationError: If the document is not a valid topology.
        """
        if context is None:
            context = self.context if self.context is not None else dict(os.environ)

        missing = set()
        try:
            content = EnvironmentInterpolator.interpolate(content, context, missing=missing)
        except KeyError as e:
            raise ConfigurationError(f"Interpolation failed: {e}") from e
        for name in sorted(missing):
            logger.warning("The %s variable is not set. Defaulting to a blank string.", name)

        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML: {e}") from e
        if not data:
            data = {}
        if not isinstance(data, dict):
            raise ConfigurationError("Topology file must be a mapping")

        services_spec = data.get('services') or {}
        if not isinstance(services_spec, dict):
            raise ConfigurationError("'services' must be a mapping")

        base_dir = os.path.abspath(base_dir)
        services = {}
        for name, spec in services_spec.items():
            services[str(name)] = self._parse_service(str(name), spec or {}, base_dir, context)

        volumes = data.get('volumes') or {}
        networks = data.get('networks') or {}

        project_name = (self.project_name or data.get('name')
                        or os.path.basename(base_dir) or "stackctl")

        return ServiceTopology(
            project_name=self._normalize_project(project_name),
            services=services,
            volumes={str(k): (v or {}) for k, v in volumes.items()},
            networks=[str(k) for k in networks],
        )

    def _normalize_project(self, name: str) -> str:
        return re.sub(r'[^a-z0-9_-]', '', name.lower()) or "stackctl"

    def _parse_service(self, name: str, spec: Dict[str, Any],
                       base_dir: str, context: Dict[str, str]) -> ServiceSpec:
        """
        Parses a single service definition from a compose file.

        :param name: The name of the service.
        :param spec: The service specification dictionary.
        :return: A ServiceSpec instance.
        """
        if not isinstance(spec, dict):
            raise ConfigurationError(f"Service '{name}' must be a mapping")

        try:
            return ServiceSpec(
                name=name,
                image=spec.get('image'),
                build=self._parse_build(spec.get('build'), base_dir),
                command=self._to_command(spec.get('command')),
                entrypoint=self._to_command(spec.get('entrypoint')),
                working_dir=spec.get('working_dir'),
                environment=self._parse_environment(spec.get('environment'), context),
                env_files=[os.path.join(base_dir, p) for p in self._to_list(spec.get('env_file'))],
                ports=[self._parse_port(p, name) for p in spec.get('ports') or []],
                volumes=[m for m in (self._parse_volume(v, name, base_dir)
                                     for v in spec.get('volumes') or []) if m is not None],
                depends_on=self._parse_depends_on(spec.get('depends_on')),
                readiness=self._parse_readiness(spec, name),
                labels=self._parse_environment(spec.get('labels'), {}),
            )
        except ValidationError as e:
            raise ConfigurationError(f"Invalid service '{name}': {e}") from e

    def _parse_build(self, build: Any, base_dir: str) -> Optional[BuildReference]:
        if build is None:
            return None
        if isinstance(build, str):
            return BuildReference(context=os.path.normpath(os.path.join(base_dir, build)))
        args = build.get('args') or {}
        if isinstance(args, list):
            args = dict(a.split('=', 1) for a in args if '=' in a)
        return BuildReference(
            context=os.path.normpath(os.path.join(base_dir, build.get('context', '.'))),
            dockerfile=build.get('dockerfile', 'Dockerfile'),
            tag=build.get('tag'),
            args={str(k): str(v) for k, v in args.items()},
        )

    def _parse_environment(self, env_spec: Any, context: Dict[str, str]) -> Dict[str, str]:
        environment = {}
        if isinstance(env_spec, list):
            for e in env_spec:
                if '=' in e:
                    k, v = e.split('=', 1)
                    environment[k] = v
                elif e in context:
                    # bare name passes the value through from the host
                    environment[e] = context[e]
        elif isinstance(env_spec, dict):
            for k, v in env_spec.items():
                if v is None:
                    if k in context:
                        environment[str(k)] = context[k]
                elif isinstance(v, bool):
                    environment[str(k)] = str(v).lower()
                else:
                    environment[str(k)] = str(v)
        return environment

    def _parse_port(self, port: Any, service: str) -> PortBinding:
        if isinstance(port, int):
            return PortBinding(container_port=port)
        if isinstance(port, dict):
            if 'target' not in port:
                raise ConfigurationError(f"Service '{service}': port mapping {port!r} has no target")
            published = port.get('published')
            return PortBinding(
                container_port=int(port['target']),
                host_port=int(published) if published not in (None, '') else None,
                host_ip=port.get('host_ip', ''),
                protocol=port.get('protocol', 'tcp'),
            )

        match = _PORT.match(str(port).strip())
        if not match:
            raise ConfigurationError(f"Service '{service}': invalid port mapping {port!r}")
        return PortBinding(
            container_port=int(match.group('container')),
            host_port=int(match.group('host')) if match.group('host') else None,
            host_ip=(match.group('ip') or '').strip('[]'),
            protocol=match.group('proto') or 'tcp',
        )

    def _parse_volume(self, volume: Any, service: str, base_dir: str) -> Optional[VolumeMount]:
        if isinstance(volume, dict):
            if volume.get('type') == 'tmpfs':
                logger.warning("Service '%s': tmpfs mounts are not supported, skipped", service)
                return None
            if "target" not in volume:
                raise ConfigurationError(f"Service '{service}': volume {volume!r} has no target")
            mount = VolumeMount(
                source=volume.get('source', ''),
                target=volume['target'],
                read_only=bool(volume.get('read_only', False)),
            )
        else:
            parts = str(volume).split(':')
            if len(parts) == 1:
                logger.warning("Service '%s': anonymous volume %s skipped", service, parts[0])
                return None
            if len(parts) > 3:
                raise ConfigurationError(f"Service '{service}': invalid volume {volume!r}")
            mount = VolumeMount(
                source=parts[0],
                target=parts[1],
                read_only=len(parts) == 3 and 'ro' in parts[2].split(','),
            )

        if mount.is_bind:
            mount.source = os.path.normpath(os.path.join(base_dir, os.path.expanduser(mount.source)))
        return mount

    def _parse_depends_on(self, depends_on: Any) -> List[str]:
        if isinstance(depends_on, dict):
            return [str(k) for k in depends_on]
        return [str(d) for d in self._to_list(depends_on)]

    def _parse_readiness(self, spec: Dict[str, Any], service: str) -> Optional[ReadinessProbe]:
        """
        ``readiness`` takes precedence over a compose ``healthcheck``.
        """
        readiness = spec.get('readiness')
        if readiness is not None:
            return self._parse_readiness_block(readiness, service)

        hc = spec.get('healthcheck')
        if not hc or hc.get('disable'):
            return None

        test = hc.get('test')
        if isinstance(test, str):
            test = ['CMD-SHELL', test]
        if not test or test[0] == 'NONE':
            return None

        interval = self._duration(hc.get('interval'), service)
        start_period = self._duration(hc.get('start_period'), service) or 0.0
        timeout = None
        if interval is not None:
            timeout = start_period + interval * int(hc.get('retries', 3))
        return ReadinessProbe(
            kind=ProbeKind.COMMAND,
            test=[str(t) for t in test],
            interval=interval,
            timeout=timeout,
            start_period=start_period,
        )

    def _parse_readiness_block(self, readiness: Any, service: str) -> Optional[ReadinessProbe]:
        if readiness in (False, 'none', None):
            return None
        if not isinstance(readiness, dict):
            raise ConfigurationError(f"Service '{service}': 'readiness' must be a mapping")

        common = dict(
            interval=self._duration(readiness.get('interval'), service),
            timeout=self._duration(readiness.get('timeout'), service),
            start_period=self._duration(readiness.get('start_period'), service) or 0.0,
        )
        if 'host' in readiness:
            common['host'] = str(readiness['host'])

        if 'port' in readiness:
            return ReadinessProbe(kind=ProbeKind.PORT, port=int(readiness['port']), **common)
        if 'log' in readiness:
            return ReadinessProbe(kind=ProbeKind.LOG, pattern=str(readiness['log']), **common)
        if 'command' in readiness:
            test = readiness['command']
            test = ['CMD-SHELL', test] if isinstance(test, str) else ['CMD'] + [str(t) for t in test]
            return ReadinessProbe(kind=ProbeKind.COMMAND, test=test, **common)
        raise ConfigurationError(f"Service '{service}': readiness needs one of port, log or command")

    def _duration(self, value: Any, service: str) -> Optional[float]:
        if value is None:
            return None
        try:
            return parse_duration(value)
        except ValueError as e:
            raise ConfigurationError(f"Service '{service}': {e}") from e

    def _to_command(self, val: Any) -> List[str]:
        """
        Strings are split like a shell would; lists are taken as is.
        """
        if val is None:
            return []
        if isinstance(val, str):
            return shlex.split(val)
        return [str(v) for v in val]

    def _to_list(self, val: Any) -> List[str]:
        """
        Helper to ensure a value is a list of strings.

        :param val: The value to convert.
        :return: A list of strings.
        """
        if val is None:
            return []
        if isinstance(val, str):
            return [val]
        return list(val)
