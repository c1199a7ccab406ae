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
Models for overall orchestration configuration.
"""
from typing import Dict, List, Optional
from pydantic import BaseModel
from .service_definition import ServiceDefinition


class NetworkDefinition(BaseModel):
    """
    A top-level network: an isolated group of services.
    """
    name: str
    driver: str = "bridge"
    subnet: Optional[str] = None
    internal: bool = False
    external: bool = False


class VolumeDefinition(BaseModel):
    name: str
    external: bool = False


class SecretDefinition(BaseModel):
    """
    A secret sourced either from a file or from an environment variable.
    """
    name: str
    file: Optional[str] = None
    environment: Optional[str] = None


class OrchestrationConfig(BaseModel):
    """
    Complete configuration for a multi-service stack.
    Equivalent to a parsed compose file.
    """
    name: str = "homestack"
    base_dir: str = "."
    services: Dict[str, ServiceDefinition]
    networks: Dict[str, NetworkDefinition] = {}
    volumes: Dict[str, VolumeDefinition] = {}
    secrets: Dict[str, SecretDefinition] = {}

    @property
    def service_names(self) -> List[str]:
        return list(self.services.keys())
