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
Models for defining services, including restart policies, health checks, and mounts.
"""
from typing import List, Dict, Optional
from pydantic import BaseModel, Field
from enum import Enum


class RestartPolicyCondition(str, Enum):
    """
    Conditions under which a service should be restarted.
    """
    NO = "no"
    ALWAYS = "always"
    ON_FAILURE = "on-failure"
    UNLESS_STOPPED = "unless-stopped"


class RestartPolicy(BaseModel):
    """
    Defines how a service should be restarted on failure or exit.
    ``max_retries`` of 0 means unlimited.
    """
    condition: RestartPolicyCondition = RestartPolicyCondition.NO
    max_retries: int = 0
    delay: float = 0.0


class HealthCheck(BaseModel):
    """
    Defines a command to run to check the health of a service.
    """
    test: List[str]
    interval: float = 30.0
    timeout: float = 30.0
    retries: int = 3
    start_period: float = 0.0
    disable: bool = False


class PortMapping(BaseModel):
    """
    A port the service listens on, optionally published on the host.
    """
    target: int
    published: Optional[int] = None
    host_ip: str = "0.0.0.0"
    protocol: str = "tcp"


class VolumeType(str, Enum):
    BIND = "bind"
    VOLUME = "volume"
    TMPFS = "tmpfs"


class VolumeMount(BaseModel):
    """
    Defines a mapping between a host path (or named volume) and a service path.
    """
    source: str
    target: str
    read_only: bool = False
    type: VolumeType = VolumeType.VOLUME


class DependencyCondition(str, Enum):
    """
    What a dependent service waits for before starting.
    """
    SERVICE_STARTED = "service_started"
    SERVICE_HEALTHY = "service_healthy"
    SERVICE_COMPLETED_SUCCESSFULLY = "service_completed_successfully"


class ServiceDependency(BaseModel):
    service: str
    condition: DependencyCondition = DependencyCondition.SERVICE_STARTED
    required: bool = True


class ServiceNetwork(BaseModel):
    """Per-network attachment options of a service."""
    aliases: List[str] = []
    ipv4_address: Optional[str] = None


class SecretReference(BaseModel):
    source: str
    target: Optional[str] = None
    mode: int = 0o400


class NetworkMode(str, Enum):
    """
    How a service is attached to the virtual networks.
    """
    BRIDGE = "bridge"
    HOST = "host"
    NONE = "none"


class ServiceDefinition(BaseModel):
    """
    The full definition of a single service, translated from the compose file.
    """
    name: str
    image_name: str = ""
    build_context: Optional[str] = None
    dockerfile_path: Optional[str] = None

    # Execution
    cmd: List[str] = []
    entrypoint: List[str] = []
    working_dir: Optional[str] = None

    # Environment
    environment: Dict[str, str] = {}
    environment_files: List[str] = []

    # Networking
    ports: List[PortMapping] = []
    expose_ports: List[int] = []
    networks: Dict[str, ServiceNetwork] = {}
    network_mode: NetworkMode = NetworkMode.BRIDGE
    hostname: Optional[str] = None

    # Storage
    volumes: List[VolumeMount] = []
    tmpfs: List[str] = []
    secrets: List[SecretReference] = []

    # Lifecycle
    restart_policy: RestartPolicy = Field(default_factory=RestartPolicy)
    health_check: Optional[HealthCheck] = None
    depends_on: List[ServiceDependency] = []
    stop_grace_period: Optional[float] = None

    # Metadata
    labels: Dict[str, str] = {}
    user: Optional[str] = None

    @property
    def dependency_names(self) -> List[str]:
        return [dep.service for dep in self.depends_on]

    @property
    def mounts(self) -> List[VolumeMount]:
        """Volumes followed by the service-level ``tmpfs`` paths."""
        return self.volumes + [VolumeMount(source="", target=path, type=VolumeType.TMPFS) for path in self.tmpfs]

    @property
    def has_health_check(self) -> bool:
        hc = self.health_check
        return hc is not None and not hc.disable and bool(hc.test) and hc.test[0] != "NONE"
