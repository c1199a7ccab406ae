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
Network management for services: isolated virtual networks, address
assignment, name resolution, port allocation and service discovery.

Every network is a subnet carved from a loopback pool (``127.30.0.0/16`` by
default), so the assigned addresses are directly bindable by native
processes on Linux. Isolation is enforced at the naming layer: a service
only learns the addresses of peers it shares a network with.
"""
import ipaddress
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from ..exceptions import NetworkError, PortConflictError
from ..MODELS.service_definition import NetworkMode, ServiceDefinition
from ..UTILS.port_finder import get_free_port, is_port_free

logger = logging.getLogger(__name__)

HOST_ADDRESS = "127.0.0.1"


@dataclass
class NetworkConfig:
    """Configuration for a virtual network."""

    name: str
    subnet: Optional[str] = None
    gateway: Optional[str] = None
    mode: NetworkMode = NetworkMode.BRIDGE
    internal: bool = False


@dataclass
class VirtualNetwork:
    """A created network and its address bookkeeping."""

    config: NetworkConfig
    subnet: ipaddress.IPv4Network
    gateway: ipaddress.IPv4Address
    members: Dict[str, ipaddress.IPv4Address] = field(default_factory=dict)
    aliases: Dict[str, str] = field(default_factory=dict)  # alias -> service

    @property
    def name(self) -> str:
        return self.config.name


class NetworkManager:
    """
    Manages virtual networks, port mapping and service discovery.
    """
    def __init__(self,
                 project: str = "homestack",
                 subnet_pool: str = "127.30.0.0/16",
                 create_default: bool = True):
        """
        Initializes the network manager.

        :param project: Project name, used as the prefix of network names.
        :param subnet_pool: Range automatic subnets are carved from.
        :param create_default: Create the ``<project>_default`` network.
        """
        self.project = project
        try:
            self.subnet_pool = ipaddress.ip_network(subnet_pool)
        except ValueError as e:
            raise NetworkError(f"Invalid subnet pool {subnet_pool}: {e}") from e

        self.networks: Dict[str, VirtualNetwork] = {}
        self.service_networks: Dict[str, Dict[str, str]] = {}  # service -> {network: ip}
        self.dns_entries: Dict[str, Dict[str, str]] = {}  # name -> {network: ip}
        self.service_modes: Dict[str, NetworkMode] = {}
        self.service_ports: Dict[str, Dict[int, int]] = {}  # service -> {container_port: host_port}
        self.exposed_ports: Dict[str, List[int]] = {}
        self.host_port_to_service: Dict[int, str] = {}

        if create_default:
            self.create_network(NetworkConfig(name=self.network_name("default")))

    def network_name(self, key: str) -> str:
        """Full name of a compose network key."""
        return f"{self.project}_{key}"

    # Networks

    def create_network(self, config: NetworkConfig) -> bool:
        """
        Creates a network, allocating a subnet from the pool if none is given.

        :return: True if created, False if it already existed.
        :raises NetworkError: On an invalid or overlapping subnet, or pool exhaustion.
        """
        if config.name in self.networks:
            return False

        if config.subnet:
            try:
                subnet = ipaddress.ip_network(config.subnet)
            except ValueError as e:
                raise NetworkError(f"Invalid subnet {config.subnet} for {config.name}: {e}") from e
            if not isinstance(subnet, ipaddress.IPv4Network):
                raise NetworkError(f"Only IPv4 subnets are supported ({config.subnet})")
            for other in self.networks.values():
                if subnet.overlaps(other.subnet):
                    raise NetworkError(
                        f"Subnet {subnet} of {config.name} overlaps {other.subnet} of {other.name}"
                    )
        else:
            subnet = self._next_free_subnet(config.name)

        hosts = subnet.hosts()
        try:
            first_host = next(hosts)
        except StopIteration:
            raise NetworkError(f"Subnet {subnet} of {config.name} has no usable addresses") from None

        if config.gateway:
            gateway = ipaddress.ip_address(config.gateway)
            if gateway not in subnet:
                raise NetworkError(f"Gateway {gateway} is outside {subnet}")
        else:
            gateway = first_host

        config.subnet = str(subnet)
        config.gateway = str(gateway)
        self.networks[config.name] = VirtualNetwork(config=config, subnet=subnet, gateway=gateway)
        logger.debug("Created network %s (%s)", config.name, subnet)
        return True

    def remove_network(self, name: str, force: bool = False) -> bool:
        """
        Removes a network.

        :param force: Disconnect attached services instead of failing.
        :return: True if removed, False if it did not exist.
        :raises NetworkError: If services are still attached and ``force`` is False.
        """
        network = self.networks.get(name)
        if network is None:
            return False
        if network.members and not force:
            raise NetworkError(
                f"Network {name} has active endpoints: {', '.join(sorted(network.members))}"
            )
        for service in list(network.members):
            self.disconnect_service(service, name)
        del self.networks[name]
        return True

    def _next_free_subnet(self, name: str) -> ipaddress.IPv4Network:
        if self.subnet_pool.prefixlen >= 24:
            candidates = [self.subnet_pool]
        else:
            candidates = self.subnet_pool.subnets(new_prefix=24)
        for candidate in candidates:
            if not any(candidate.overlaps(n.subnet) for n in self.networks.values()):
                return candidate
        raise NetworkError(f"Subnet pool {self.subnet_pool} exhausted, cannot create {name}")

    # Endpoints

    def set_service_mode(self, service: str, mode: NetworkMode):
        self.service_modes[service] = mode

    def connect_service(self,
                        service: str,
                        network: str,
                        aliases: Optional[List[str]] = None,
                        ipv4_address: Optional[str] = None) -> str:
        """
        Attaches a service to a network and registers its DNS names.

        :return: The address assigned to the service on that network.
        :raises NetworkError: If the network is unknown or the address is unusable.
        """
        net = self.networks.get(network)
        if net is None:
            raise NetworkError(f"Network {network} not found")

        existing = net.members.get(service)
        if existing is not None and (ipv4_address is None or str(existing) == ipv4_address):
            ip = existing
        else:
            ip = self._assign_address(net, service, ipv4_address)
            net.members[service] = ip

        self.service_networks.setdefault(service, {})[network] = str(ip)
        for name in [service] + list(aliases or []):
            owner = net.aliases.get(name)
            if owner is not None and owner != service:
                raise NetworkError(f"Name {name} on {network} already belongs to {owner}")
            net.aliases[name] = service
            self.dns_entries.setdefault(name, {})[network] = str(ip)
        return str(ip)

    def disconnect_service(self, service: str, network: str):
        net = self.networks.get(network)
        if net is None:
            return
        net.members.pop(service, None)
        for name in [a for a, owner in net.aliases.items() if owner == service]:
            del net.aliases[name]
            entries = self.dns_entries.get(name, {})
            entries.pop(network, None)
            if not entries:
                self.dns_entries.pop(name, None)
        nets = self.service_networks.get(service, {})
        nets.pop(network, None)
        if not nets:
            self.service_networks.pop(service, None)

    def _assign_address(self,
                        net: VirtualNetwork,
                        service: str,
                        requested: Optional[str]) -> ipaddress.IPv4Address:
        used = set(net.members.values()) | {net.gateway}
        if requested:
            try:
                ip = ipaddress.ip_address(requested)
            except ValueError as e:
                raise NetworkError(f"Invalid address {requested} for {service}: {e}") from e
            if ip not in net.subnet or ip in (net.subnet.network_address, net.subnet.broadcast_address):
                raise NetworkError(f"Address {ip} for {service} is outside {net.subnet}")
            if ip in used:
                raise NetworkError(f"Address {ip} on {net.name} is already in use")
            return ip
        for ip in net.subnet.hosts():
            if ip not in used:
                return ip
        raise NetworkError(f"Network {net.name} has no free addresses")

    # Name resolution

    def resolve_hostname(self, name: str, from_service: Optional[str] = None) -> Optional[str]:
        """
        Resolves a service name or alias.

        :param from_service: Resolve as seen from this service, honoring isolation.
        :return: The address, or None if the name is unknown or unreachable.
        """
        if name == "localhost":
            return HOST_ADDRESS
        if self.service_modes.get(name) == NetworkMode.HOST:
            if from_service is not None and self.service_modes.get(from_service) == NetworkMode.NONE:
                return None
            return HOST_ADDRESS

        entries = self.dns_entries.get(name)
        if not entries:
            return None
        if from_service is None or self.service_modes.get(from_service) == NetworkMode.HOST:
            return next(iter(entries.values()))
        if self.service_modes.get(from_service) == NetworkMode.NONE:
            return None

        for network in self.service_networks.get(from_service, {}):
            if network in entries:
                return entries[network]
        return None

    def can_reach(self, source: str, target: str) -> bool:
        return self.resolve_hostname(target, from_service=source) is not None

    def service_address(self, service: str) -> str:
        """The address a service binds to: its first network address."""
        if self.service_modes.get(service) in (NetworkMode.HOST, NetworkMode.NONE):
            return HOST_ADDRESS
        nets = self.service_networks.get(service)
        if nets:
            return next(iter(nets.values()))
        return HOST_ADDRESS

    def generate_hosts_file_content(self, service: Optional[str] = None) -> str:
        """
        Renders a hosts file with every name visible from ``service``
        (or every name when no service is given).
        """
        lines = [f"{HOST_ADDRESS}\tlocalhost"]
        names = set(self.dns_entries) | {
            s for s, mode in self.service_modes.items() if mode == NetworkMode.HOST
        }
        for name in sorted(names):
            if name == service:
                continue
            ip = self.resolve_hostname(name, from_service=service)
            if ip is not None:
                lines.append(f"{ip}\t{name}")
        if service is not None:
            lines.append(f"{self.service_address(service)}\t{service}")
        return "\n".join(lines) + "\n"

    # Ports

    def allocate_ports(self, service_def: ServiceDefinition) -> Dict[int, int]:
        """
        Allocates host ports for a service based on its definition.

        :param service_def: The service definition.
        :return: Mapping from container port to allocated host port.
        :raises PortConflictError: If a published port is taken.
        """
        self.release_ports(service_def.name)
        mappings = {}
        try:
            for port in service_def.ports:
                host = "" if port.host_ip == "0.0.0.0" else port.host_ip
                if port.published is None:
                    allocated_port = get_free_port(host)
                else:
                    owner = self.host_port_to_service.get(port.published)
                    if owner is not None and owner != service_def.name:
                        raise PortConflictError(
                            f"Port {port.published} is already allocated to {owner}, "
                            f"cannot start service {service_def.name}"
                        )
                    if not is_port_free(port.published, host, port.protocol):
                        raise PortConflictError(
                            f"Port {port.published} is already in use, cannot start service {service_def.name}"
                        )
                    allocated_port = port.published

                mappings[port.target] = allocated_port
                self.host_port_to_service[allocated_port] = service_def.name
        except PortConflictError:
            for allocated in mappings.values():
                self.host_port_to_service.pop(allocated, None)
            raise

        self.service_ports[service_def.name] = mappings
        self.exposed_ports[service_def.name] = list(service_def.expose_ports)
        return mappings

    def restore_ports(self, service_def: ServiceDefinition, mappings: Dict[int, int]):
        """Re-registers ports recorded for a service that is still running."""
        self.service_ports[service_def.name] = dict(mappings)
        self.exposed_ports[service_def.name] = list(service_def.expose_ports)
        for host_port in mappings.values():
            self.host_port_to_service[host_port] = service_def.name

    def release_ports(self, service: str):
        for host_port in self.service_ports.pop(service, {}).values():
            self.host_port_to_service.pop(host_port, None)

    def get_host_port(self, service_name: str, container_port: int) -> Optional[int]:
        """
        Returns the host port for a given service and container port.
        """
        return self.service_ports.get(service_name, {}).get(container_port)

    def effective_port(self, service: str) -> Optional[int]:
        """
        The port peers should use: the first allocated host port, otherwise
        the first exposed container port.
        """
        mapped = self.service_ports.get(service)
        if mapped:
            return next(iter(mapped.values()))
        exposed = self.exposed_ports.get(service)
        if exposed:
            return exposed[0]
        return None

    def get_service_discovery_env(self,
                                  all_services: List[str],
                                  from_service: Optional[str] = None) -> Dict[str, str]:
        """
        Generates environment variables for service discovery.
        Example: DB_HOST=127.30.0.2, DB_PORT=5432

        Only peers reachable from ``from_service`` are included.
        """
        env = {}
        for name in all_services:
            if name == from_service:
                continue
            ip = self.resolve_hostname(name, from_service=from_service)
            if ip is None:
                continue
            prefix = name.upper().replace('-', '_').replace('.', '_')
            env[f"{prefix}_HOST"] = ip
            port = self.effective_port(name)
            if port is not None:
                env[f"{prefix}_PORT"] = str(port)

        if from_service is not None:
            env["HOMESTACK_SERVICE_IP"] = self.service_address(from_service)
            own_port = self.effective_port(from_service)
            if own_port is not None:
                env["PORT"] = str(own_port)
            for target, host_port in self.service_ports.get(from_service, {}).items():
                env[f"HOMESTACK_PORT_{target}"] = str(host_port)
        return env

    def subnets(self) -> Dict[str, str]:
        return {name: str(net.subnet) for name, net in self.networks.items()}

    def cleanup(self):
        """
        Drops every endpoint and port allocation, leaving only an empty default network.
        """
        for name in list(self.networks):
            self.remove_network(name, force=True)
        self.service_networks.clear()
        self.dns_entries.clear()
        self.service_modes.clear()
        self.service_ports.clear()
        self.exposed_ports.clear()
        self.host_port_to_service.clear()
        self.create_network(NetworkConfig(name=self.network_name("default")))
