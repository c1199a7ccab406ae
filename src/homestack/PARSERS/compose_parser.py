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
Parsers for compose-style YAML files.
"""
import logging
import os
import re
import shlex
from typing import Dict, Any, List, Optional

import yaml
from pydantic import ValidationError

from ..exceptions import ConfigError
from ..MODELS.orchestration_config import (
    OrchestrationConfig,
    NetworkDefinition,
    VolumeDefinition,
    SecretDefinition,
)
from ..MODELS.service_definition import (
    ServiceDefinition,
    RestartPolicy,
    RestartPolicyCondition,
    HealthCheck,
    PortMapping,
    VolumeMount,
    VolumeType,
    ServiceDependency,
    DependencyCondition,
    ServiceNetwork,
    SecretReference,
    NetworkMode,
)
from ..UTILS.durations import parse_duration
from ..UTILS.string_interpolation import EnvironmentInterpolator
from .env_parser import EnvParser

logger = logging.getLogger(__name__)

DEFAULT_NETWORK = "default"
SERVICE_NAME = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.-]*$")
# deploy.restart_policy uses swarm names
_DEPLOY_CONDITIONS = {"none": "no", "on-failure": "on-failure", "any": "always"}


def normalize_project_name(name: str) -> str:
    """Lowercases a name and strips characters not allowed in project names."""
    cleaned = re.sub(r"[^a-z0-9_-]", "", name.lower())
    return cleaned or "homestack"


class ComposeParser:
    """
    Parser for compose files.
    """
    def __init__(self,
                 context: Optional[Dict[str, str]] = None,
                 project_name: Optional[str] = None,
                 warn_unset: bool = True):
        """
        Initializes the parser with an optional environment context for interpolation.

        :param context: Variables for interpolation. When omitted, the project
            ``.env`` file overlaid with the process environment is used.
        :param project_name: Overrides the project name.
        :param warn_unset: Log a warning for every unset variable.
        """
        self.context = context
        self.project_name = project_name
        self.warn_unset = warn_unset

    def parse(self, compose_path: str) -> OrchestrationConfig:
        """
        Parses a compose file from a path.

        :param compose_path: Path to the compose file.
        :return: Parsed configuration.
        """
        try:
            with open(compose_path, 'r', encoding='utf-8') as f:
                content = f.read()
        except UnicodeDecodeError as e:
            raise ConfigError(f"{compose_path} is not valid UTF-8: {e.reason}") from e
        base_dir = os.path.dirname(os.path.abspath(compose_path))
        return self.parse_from_string(content, base_dir=base_dir)

    def parse_from_string(self, content: str, base_dir: str = ".") -> OrchestrationConfig:
        """
        Parses a compose file from a string.

        :param content: YAML content of the compose file.
        :param base_dir: Directory relative paths are resolved against.
        :return: Parsed configuration.
        :raises ConfigError: If the document is invalid.
        """
        base_dir = os.path.abspath(base_dir)
        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML: {e}") from e

        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigError("Top-level compose document must be a mapping")

        # Values are interpolated after loading so that comments and keys stay literal
        data = EnvironmentInterpolator.interpolate_tree(
            data, self._context_for(base_dir), warn=self.warn_unset
        )

        raw_services = data.get('services') or {}
        if not isinstance(raw_services, dict):
            raise ConfigError("'services' must be a mapping")

        networks = self._parse_networks(data.get('networks'))
        volumes = self._parse_volumes(data.get('volumes'))
        secrets = self._parse_secrets(data.get('secrets'), base_dir)

        services = {}
        for name, spec in raw_services.items():
            name = str(name)
            if not SERVICE_NAME.match(name):
                raise ConfigError(f"Invalid service name: {name!r}")
            if spec is None:
                spec = {}
            if not isinstance(spec, dict):
                raise ConfigError(f"Service {name} must be a mapping")
            try:
                services[name] = self._parse_service(name, spec, networks, volumes, secrets)
            except ValidationError as e:
                problem = e.errors()[0]
                field = ".".join(str(part) for part in problem["loc"])
                raise ConfigError(f"Service {name}: invalid {field}: {problem['msg']}") from None

        project = self.project_name or data.get('name') or os.path.basename(base_dir)
        return OrchestrationConfig(
            name=normalize_project_name(str(project)),
            base_dir=base_dir,
            services=services,
            networks=networks,
            volumes=volumes,
            secrets=secrets,
        )

    def _context_for(self, base_dir: str) -> Dict[str, str]:
        if self.context is not None:
            return self.context
        context: Dict[str, str] = {}
        dotenv_path = os.path.join(base_dir, ".env")
        if os.path.isfile(dotenv_path):
            context.update(EnvParser.parse(dotenv_path))
        # Shell environment wins over the project .env
        context.update(os.environ)
        return context

    # Top-level sections

    def _parse_networks(self, spec: Any) -> Dict[str, NetworkDefinition]:
        networks = {}
        for name, options in self._mapping(spec, 'networks').items():
            options = self._mapping(options, f"networks.{name}")
            subnet = None
            ipam_configs = self._mapping(options.get('ipam'), f"networks.{name}.ipam").get('config') or []
            if ipam_configs:
                subnet = self._mapping(self._to_list(ipam_configs)[0], f"networks.{name}.ipam.config").get('subnet')
            networks[str(name)] = NetworkDefinition(
                name=str(options.get('name') or name),
                driver=options.get('driver') or 'bridge',
                subnet=subnet,
                internal=bool(options.get('internal', False)),
                external=bool(options.get('external', False)),
            )
        networks.setdefault(DEFAULT_NETWORK, NetworkDefinition(name=DEFAULT_NETWORK))
        return networks

    def _parse_volumes(self, spec: Any) -> Dict[str, VolumeDefinition]:
        volumes = {}
        for name, options in self._mapping(spec, 'volumes').items():
            options = self._mapping(options, f"volumes.{name}")
            volumes[str(name)] = VolumeDefinition(
                name=str(options.get('name') or name),
                external=bool(options.get('external', False)),
            )
        return volumes

    def _parse_secrets(self, spec: Any, base_dir: str) -> Dict[str, SecretDefinition]:
        secrets = {}
        for name, options in self._mapping(spec, 'secrets').items():
            options = self._mapping(options, f"secrets.{name}")
            file_path = options.get('file')
            env_name = options.get('environment')
            if not file_path and not env_name:
                raise ConfigError(f"Secret {name} needs either 'file' or 'environment'")
            if file_path:
                file_path = os.path.abspath(os.path.join(base_dir, os.path.expanduser(file_path)))
            secrets[str(name)] = SecretDefinition(name=str(name), file=file_path, environment=env_name)
        return secrets

    # Services

    def _parse_service(self,
                       name: str,
                       spec: Dict[str, Any],
                       networks: Dict[str, NetworkDefinition],
                       volumes: Dict[str, VolumeDefinition],
                       secrets: Dict[str, SecretDefinition]) -> ServiceDefinition:
        """
        Parses a single service definition from a compose file.

        :param name: The name of the service.
        :param spec: The service specification dictionary.
        :return: A ServiceDefinition instance.
        """
        build = spec.get('build')
        cmd = self._to_command(spec.get('command'), name, 'command')
        entrypoint = self._to_command(spec.get('entrypoint'), name, 'entrypoint')
        if not spec.get('image') and not build and not cmd and not entrypoint:
            raise ConfigError(f"Service {name} has neither an image, a build context nor a command")

        network_mode = self._parse_network_mode(name, spec.get('network_mode'))
        service_networks = self._parse_service_networks(name, spec.get('networks'), networks)
        if network_mode != NetworkMode.BRIDGE:
            if service_networks:
                raise ConfigError(
                    f"Service {name}: 'networks' cannot be combined with network_mode {network_mode.value}"
                )
        elif not service_networks:
            service_networks = {DEFAULT_NETWORK: ServiceNetwork()}

        return ServiceDefinition(
            name=name,
            image_name=str(spec.get('image') or ''),
            build_context=build.get('context') if isinstance(build, dict) else build,
            dockerfile_path=build.get('dockerfile') if isinstance(build, dict) else None,
            cmd=cmd,
            entrypoint=entrypoint,
            working_dir=spec.get('working_dir'),
            environment=self._parse_environment(spec.get('environment')),
            environment_files=[self._env_file(name, e) for e in self._to_list(spec.get("env_file"))],
            ports=self._parse_ports(name, spec.get('ports')),
            expose_ports=[self._port_number(name, p) for p in self._to_list(spec.get('expose'))],
            networks=service_networks,
            network_mode=network_mode,
            hostname=spec.get('hostname'),
            volumes=self._parse_service_volumes(name, spec.get('volumes'), volumes),
            # Size and mode options are dropped
            tmpfs=[str(t).split(':')[0] for t in self._to_list(spec.get('tmpfs'))],
            secrets=self._parse_service_secrets(name, spec.get('secrets'), secrets),
            restart_policy=self._parse_restart(name, spec),
            health_check=self._parse_healthcheck(name, spec.get('healthcheck')),
            depends_on=self._parse_depends_on(name, spec.get('depends_on')),
            stop_grace_period=(
                parse_duration(spec['stop_grace_period']) if spec.get('stop_grace_period') is not None else None
            ),
            labels=self._parse_labels(spec.get('labels')),
            user=str(spec['user']) if spec.get('user') is not None else None,
        )

    def _parse_restart(self, name: str, spec: Dict[str, Any]) -> RestartPolicy:
        restart = spec.get('restart')
        deploy = self._mapping(spec.get('deploy'), f"services.{name}.deploy")
        deploy_policy = self._mapping(deploy.get('restart_policy'), f"services.{name}.deploy.restart_policy")

        if restart is None and deploy_policy:
            condition = _DEPLOY_CONDITIONS.get(str(deploy_policy.get('condition', 'any')))
            if condition is None:
                raise ConfigError(f"Service {name}: unknown restart condition {deploy_policy.get('condition')!r}")
            return RestartPolicy(
                condition=condition,
                max_retries=self._integer(name, 'max_attempts', deploy_policy.get('max_attempts') or 0),
                delay=parse_duration(deploy_policy.get('delay')),
            )

        # YAML 1.1 reads a bare `no` as False
        if restart is None or restart is False:
            restart = 'no'
        text = str(restart)
        max_retries = 0
        if text.startswith('on-failure:'):
            text, _, count = text.partition(':')
            try:
                max_retries = int(count)
            except ValueError:
                raise ConfigError(f"Service {name}: invalid restart policy {restart!r}") from None
        try:
            condition = RestartPolicyCondition(text)
        except ValueError:
            raise ConfigError(f"Service {name}: invalid restart policy {restart!r}") from None
        return RestartPolicy(condition=condition, max_retries=max_retries)

    def _parse_healthcheck(self, name: str, spec: Any) -> Optional[HealthCheck]:
        if not spec:
            return None
        if not isinstance(spec, dict):
            raise ConfigError(f"Service {name}: healthcheck must be a mapping")

        test = spec.get('test')
        if isinstance(test, str):
            test = ['CMD-SHELL', test]
        elif test is None:
            test = []
        elif isinstance(test, list):
            test = [str(t) for t in test]
        else:
            raise ConfigError(f"Service {name}: healthcheck test must be a string or a list")

        disable = bool(spec.get('disable', False)) or (bool(test) and test[0] == 'NONE')
        if not test and not disable:
            raise ConfigError(f"Service {name}: healthcheck has no test")
        if test and test[0] not in ('CMD', 'CMD-SHELL', 'NONE'):
            raise ConfigError(f"Service {name}: healthcheck test must start with CMD, CMD-SHELL or NONE")

        return HealthCheck(
            test=test,
            interval=parse_duration(spec.get('interval'), 30.0),
            timeout=parse_duration(spec.get('timeout'), 30.0),
            retries=self._integer(name, 'healthcheck.retries', spec.get('retries', 3)),
            start_period=parse_duration(spec.get('start_period'), 0.0),
            disable=disable,
        )

    def _parse_ports(self, name: str, spec: Any) -> List[PortMapping]:
        ports = []
        for p in self._to_list(spec):
            if isinstance(p, dict):
                if 'target' not in p:
                    raise ConfigError(f"Service {name}: port mapping without target")
                ports.append(PortMapping(
                    target=self._port_number(name, p['target']),
                    published=self._port_number(name, p['published']) if p.get('published') not in (None, '') else None,
                    host_ip=p.get('host_ip') or '0.0.0.0',
                    protocol=self._protocol(name, p.get('protocol')),
                ))
            else:
                ports.extend(self._parse_port_string(name, str(p)))
        return ports

    def _parse_port_string(self, name: str, text: str) -> List[PortMapping]:
        mapping, _, protocol = text.partition('/')
        protocol = self._protocol(name, protocol)

        parts = mapping.split(':')
        host_ip = '0.0.0.0'
        if len(parts) == 1:
            published, target = '', parts[0]
        elif len(parts) == 2:
            published, target = parts
        elif len(parts) == 3:
            host_ip, published, target = parts
        else:
            raise ConfigError(f"Service {name}: invalid port mapping {text!r}")

        targets = self._port_range(name, target)
        publisheds = self._port_range(name, published) if published else [None] * len(targets)
        if len(publisheds) != len(targets):
            raise ConfigError(f"Service {name}: port ranges in {text!r} differ in size")

        return [
            PortMapping(target=t, published=pub, host_ip=host_ip or '0.0.0.0', protocol=protocol)
            for t, pub in zip(targets, publisheds)
        ]

    def _port_range(self, name: str, text: str) -> List[int]:
        if '-' in text:
            start, _, end = text.partition('-')
            low, high = self._port_number(name, start), self._port_number(name, end)
            if high < low:
                raise ConfigError(f"Service {name}: invalid port range {text!r}")
            return list(range(low, high + 1))
        return [self._port_number(name, text)]

    def _port_number(self, name: str, value: Any) -> int:
        try:
            port = int(str(value).strip().split('/')[0])
        except ValueError:
            raise ConfigError(f"Service {name}: invalid port {value!r}") from None
        if not 0 < port < 65536:
            raise ConfigError(f"Service {name}: port {port} out of range")
        return port

    def _parse_service_volumes(self,
                               name: str,
                               spec: Any,
                               declared: Dict[str, VolumeDefinition]) -> List[VolumeMount]:
        volumes = []
        for v in self._to_list(spec):
            if isinstance(v, dict):
                if 'target' not in v:
                    raise ConfigError(f"Service {name}: volume without target")
                mount = VolumeMount(
                    source=str(v.get('source') or self._anonymous_volume(name, v['target'])),
                    target=str(v['target']),
                    read_only=bool(v.get('read_only', False)),
                    type=self._volume_type(name, v.get('type')),
                )
            else:
                mount = self._parse_volume_string(name, str(v))

            if (mount.type == VolumeType.VOLUME
                    and not mount.source.startswith(f"{name}-anon")
                    and mount.source not in declared):
                raise ConfigError(f"Service {name} refers to undefined volume {mount.source}")
            volumes.append(mount)
        return volumes

    def _parse_volume_string(self, name: str, text: str) -> VolumeMount:
        parts = text.split(':')
        if len(parts) == 1:
            return VolumeMount(source=self._anonymous_volume(name, parts[0]), target=parts[0])
        if len(parts) > 3:
            raise ConfigError(f"Service {name}: invalid volume {text!r}")

        source, target = parts[0], parts[1]
        options = parts[2].split(',') if len(parts) == 3 else []
        is_bind = source.startswith(('.', '/', '~'))
        return VolumeMount(
            source=source,
            target=target,
            read_only='ro' in options,
            type=VolumeType.BIND if is_bind else VolumeType.VOLUME,
        )

    def _anonymous_volume(self, name: str, target: str) -> str:
        return f"{name}-anon{re.sub(r'[^a-zA-Z0-9]+', '-', target).rstrip('-')}"

    def _parse_service_networks(self,
                                name: str,
                                spec: Any,
                                declared: Dict[str, NetworkDefinition]) -> Dict[str, ServiceNetwork]:
        if not spec:
            return {}
        if isinstance(spec, list):
            spec = {n: None for n in spec}
        if not isinstance(spec, dict):
            raise ConfigError(f"Service {name}: 'networks' must be a list or mapping")

        result = {}
        for net, options in spec.items():
            net = str(net)
            if net not in declared:
                raise ConfigError(f"Service {name} refers to undefined network {net}")
            options = self._mapping(options, f"services.{name}.networks.{net}")
            result[net] = ServiceNetwork(
                aliases=[str(a) for a in self._to_list(options.get('aliases'))],
                ipv4_address=options.get('ipv4_address'),
            )
        return result

    def _parse_network_mode(self, name: str, mode: Any) -> NetworkMode:
        if mode is None:
            return NetworkMode.BRIDGE
        try:
            return NetworkMode(str(mode))
        except ValueError:
            raise ConfigError(f"Service {name}: unsupported network_mode {mode!r}") from None

    def _parse_service_secrets(self,
                               name: str,
                               spec: Any,
                               declared: Dict[str, SecretDefinition]) -> List[SecretReference]:
        refs = []
        for s in self._to_list(spec):
            if isinstance(s, dict):
                ref = SecretReference(
                    source=str(s.get('source', '')),
                    target=s.get('target'),
                    mode=self._file_mode(name, s.get('mode')),
                )
            else:
                ref = SecretReference(source=str(s))
            if ref.source not in declared:
                raise ConfigError(f"Service {name} refers to undefined secret {ref.source}")
            refs.append(ref)
        return refs

    def _parse_depends_on(self, name: str, spec: Any) -> List[ServiceDependency]:
        if not spec:
            return []
        if isinstance(spec, list):
            return [ServiceDependency(service=str(dep)) for dep in spec]
        if not isinstance(spec, dict):
            raise ConfigError(f"Service {name}: 'depends_on' must be a list or mapping")

        deps = []
        for dep, options in spec.items():
            options = self._mapping(options, f"services.{name}.depends_on.{dep}")
            try:
                condition = DependencyCondition(options.get('condition', 'service_started'))
            except ValueError:
                raise ConfigError(
                    f"Service {name}: invalid depends_on condition {options.get('condition')!r}"
                ) from None
            deps.append(ServiceDependency(
                service=str(dep),
                condition=condition,
                required=bool(options.get('required', True)),
            ))
        return deps

    def _parse_environment(self, spec: Any) -> Dict[str, str]:
        environment = {}
        if isinstance(spec, dict):
            items = spec.items()
        else:
            items = []
            for e in self._to_list(spec):
                key, sep, value = str(e).partition('=')
                items.append((key, value if sep else None))

        for key, value in items:
            if value is None:
                # KEY without a value is passed through from the host
                value = os.environ.get(key)
                if value is None:
                    continue
            environment[str(key)] = self._scalar(value)
        return environment

    def _parse_labels(self, spec: Any) -> Dict[str, str]:
        if isinstance(spec, dict):
            return {str(k): self._scalar(v) for k, v in spec.items()}
        labels = {}
        for item in self._to_list(spec):
            key, _, value = str(item).partition('=')
            labels[key] = value
        return labels

    def _to_command(self, val: Any, name: str, field: str) -> List[str]:
        if val is None:
            return []
        if isinstance(val, str):
            try:
                return shlex.split(val)
            except ValueError as e:
                raise ConfigError(f"Service {name}: cannot parse {field}: {e}") from e
        if not isinstance(val, list):
            raise ConfigError(f"Service {name}: {field} must be a string or a list")
        return [str(v) for v in val]

    def _mapping(self, spec: Any, section: str) -> Dict[str, Any]:
        if spec is None:
            return {}
        if not isinstance(spec, dict):
            raise ConfigError(f"'{section}' must be a mapping")
        return spec

    def _integer(self, name: str, field: str, value: Any, base: int = 10) -> int:
        if isinstance(value, bool):
            raise ConfigError(f"Service {name}: {field} must be an integer, got {value!r}")
        try:
            return int(value) if isinstance(value, int) else int(str(value).strip(), base)
        except ValueError:
            raise ConfigError(f"Service {name}: {field} must be an integer, got {value!r}") from None

    def _protocol(self, name: str, value: Any) -> str:
        protocol = str(value or 'tcp').lower()
        if protocol not in ('tcp', 'udp'):
            raise ConfigError(f"Service {name}: invalid port protocol {value!r}")
        return protocol

    def _volume_type(self, name: str, value: Any) -> VolumeType:
        if value is None:
            return VolumeType.VOLUME
        try:
            return VolumeType(str(value))
        except ValueError:
            raise ConfigError(f"Service {name}: unsupported volume type {value!r}") from None

    def _file_mode(self, name: str, value: Any) -> int:
        # YAML 1.1 already reads 0440 as an octal int, quoted modes are parsed here
        if value is None:
            return 0o400
        mode = self._integer(name, 'secret mode', value, base=8)
        if not 0 <= mode <= 0o777:
            raise ConfigError(f"Service {name}: secret mode {value!r} out of range")
        return mode

    def _env_file(self, name: str, entry: Any) -> str:
        if isinstance(entry, dict):
            if not entry.get("path"):
                raise ConfigError(f"Service {name}: env_file entry without path")
            return str(entry["path"])
        return str(entry)

    def _scalar(self, value: Any) -> str:
        if isinstance(value, bool):
            return 'true' if value else 'false'
        return str(value)

    def _to_list(self, val: Any) -> List[Any]:
        """
        Helper to ensure a value is a list.

        :param val: The value to convert.
        :return: A list.
        """
        if val is None:
            return []
        if isinstance(val, (str, int, float, dict)):
            return [val]
        return list(val)


def config_to_dict(config: OrchestrationConfig) -> Dict[str, Any]:
    """
    Renders a parsed configuration back into normalized compose form.
    """
    services = {}
    for name, svc in config.services.items():
        entry: Dict[str, Any] = {}
        if svc.image_name:
            entry['image'] = svc.image_name
        if svc.build_context:
            entry['build'] = {'context': svc.build_context}
            if svc.dockerfile_path:
                entry['build']['dockerfile'] = svc.dockerfile_path
        if svc.entrypoint:
            entry['entrypoint'] = list(svc.entrypoint)
        if svc.cmd:
            entry['command'] = list(svc.cmd)
        if svc.working_dir:
            entry['working_dir'] = svc.working_dir
        if svc.environment:
            entry['environment'] = dict(svc.environment)
        if svc.environment_files:
            entry['env_file'] = list(svc.environment_files)
        if svc.ports:
            entry['ports'] = [p.model_dump(exclude_none=True) for p in svc.ports]
        if svc.expose_ports:
            entry['expose'] = list(svc.expose_ports)
        if svc.network_mode != NetworkMode.BRIDGE:
            entry['network_mode'] = svc.network_mode.value
        else:
            entry['networks'] = {
                net: att.model_dump(exclude_none=True, exclude_defaults=True) or None
                for net, att in svc.networks.items()
            }
        if svc.volumes:
            entry['volumes'] = [
                {'type': v.type.value, 'source': v.source, 'target': v.target, 'read_only': v.read_only}
                for v in svc.volumes
            ]
        if svc.tmpfs:
            entry['tmpfs'] = list(svc.tmpfs)
        if svc.secrets:
            entry['secrets'] = [s.model_dump(exclude_none=True) for s in svc.secrets]
        entry['restart'] = svc.restart_policy.condition.value
        if svc.health_check:
            entry['healthcheck'] = svc.health_check.model_dump()
        if svc.depends_on:
            entry['depends_on'] = {
                d.service: {'condition': d.condition.value, 'required': d.required}
                for d in svc.depends_on
            }
        if svc.labels:
            entry['labels'] = dict(svc.labels)
        services[name] = entry

    result: Dict[str, Any] = {'name': config.name, 'services': services}
    result['networks'] = {
        key: net.model_dump(exclude={'name'}, exclude_none=True)
        for key, net in config.networks.items()
    }
    if config.volumes:
        result['volumes'] = {key: vol.model_dump(exclude={'name'}) for key, vol in config.volumes.items()}
    if config.secrets:
        result['secrets'] = {key: sec.model_dump(exclude={'name'}, exclude_none=True)
                             for key, sec in config.secrets.items()}
    return result
