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
Exception hierarchy shared by every homestack component.
"""
from typing import List


class HomestackError(Exception):
    """Base class for all homestack failures."""


class ConfigError(HomestackError):
    """The compose file is malformed or references something undefined."""


class InterpolationError(ConfigError):
    """A required variable (``${VAR:?message}``) is unset."""


class DependencyError(HomestackError):
    """The service dependency graph cannot be resolved."""


class CircularDependencyError(DependencyError):
    """
    Raised when services depend on each other in a loop.

    :param cycle: The services forming the loop, first element repeated last.
    """

    def __init__(self, cycle: List[str]):
        self.cycle = cycle
        super().__init__(f"Circular dependency detected: {' -> '.join(cycle)}")


class MissingDependencyError(DependencyError):
    """A service requires a service that is not defined."""

    def __init__(self, service: str, dependency: str):
        self.service = service
        self.dependency = dependency
        super().__init__(
            f"Service {service} depends on undefined service {dependency}"
        )


class DependencyTimeoutError(DependencyError):
    """A depends_on condition was not satisfied in time."""


class NetworkError(HomestackError):
    """Network creation or address assignment failed."""


class PortConflictError(NetworkError):
    """A published host port is already in use."""


class ServiceStartError(HomestackError):
    """A service process could not be spawned."""


class BackupError(HomestackError):
    """Creating, listing or restoring a backup failed."""
