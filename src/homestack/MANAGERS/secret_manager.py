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
Materializes secrets referenced by services into per-service directories.
"""
import logging
import os
import shutil
from typing import Dict, Optional

from ..exceptions import ConfigError
from ..MODELS.orchestration_config import SecretDefinition
from ..MODELS.service_definition import ServiceDefinition

logger = logging.getLogger(__name__)

SECRETS_ENV = "HOMESTACK_SECRETS_DIR"


class SecretManager:
    """
    Copies secret values into ``<secrets_root>/<service>/<target>`` with
    restrictive permissions, the native counterpart of ``/run/secrets``.
    """

    def __init__(self, secrets_root: str, definitions: Dict[str, SecretDefinition]):
        """
        :param secrets_root: Directory holding one sub-directory per service.
        :param definitions: Top-level secrets of the project.
        """
        self.secrets_root = os.path.abspath(secrets_root)
        self.definitions = definitions

    def service_dir(self, service_name: str) -> str:
        return os.path.join(self.secrets_root, service_name)

    def materialize(self, service_def: ServiceDefinition) -> Optional[str]:
        """
        Writes every secret the service references.

        :return: The service's secrets directory, or None if it uses no secrets.
        :raises ConfigError: If a secret's file or variable is missing.
        """
        if not service_def.secrets:
            return None

        directory = self.service_dir(service_def.name)
        os.makedirs(directory, mode=0o700, exist_ok=True)

        for ref in service_def.secrets:
            definition = self.definitions.get(ref.source)
            if definition is None:
                raise ConfigError(f"Service {service_def.name} refers to undefined secret {ref.source}")
            value = self._read(definition)
            # Absolute targets keep only their file name
            target = os.path.basename(ref.target) if ref.target else ref.source
            if target in ("", ".", ".."):
                raise ConfigError(f"Service {service_def.name}: invalid secret target {ref.target!r}")
            path = os.path.join(directory, target)
            if os.path.lexists(path):
                os.unlink(path)
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, ref.mode)
            with os.fdopen(fd, "wb") as f:
                f.write(value)
            os.chmod(path, ref.mode)
            logger.debug("Materialized secret %s for %s", ref.source, service_def.name)

        return directory

    def remove(self, service_name: str):
        directory = self.service_dir(service_name)
        if os.path.isdir(directory):
            for entry in os.listdir(directory):
                os.chmod(os.path.join(directory, entry), 0o600)
            shutil.rmtree(directory)

    def _read(self, definition: SecretDefinition) -> bytes:
        if definition.file:
            if not os.path.isfile(definition.file):
                raise ConfigError(f"Secret {definition.name}: file {definition.file} not found")
            with open(definition.file, "rb") as f:
                return f.read()
        value = os.environ.get(definition.environment or "")
        if value is None:
            raise ConfigError(
                f"Secret {definition.name}: environment variable {definition.environment} is not set"
            )
        return value.encode()
