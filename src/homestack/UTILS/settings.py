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
Runtime settings read from ``HOMESTACK_*`` environment variables.
"""
import os
from dataclasses import dataclass, replace
from typing import Optional


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    """
    Knobs shared by the orchestrator, the supervisor and the CLI.

    ``state_dir`` is resolved against the project directory when relative.
    """
    state_dir: str = ".homestack"
    project_name: Optional[str] = None
    stop_timeout: float = 10.0
    health_interval: float = 5.0
    subnet_pool: str = "127.30.0.0/16"
    log_level: str = "INFO"
    dependency_timeout: float = 300.0

    @classmethod
    def from_env(cls) -> "Settings":
        """
        Builds settings from the current process environment.
        Malformed numeric values fall back to their defaults.
        """
        return cls(
            state_dir=os.getenv("HOMESTACK_STATE_DIR", ".homestack"),
            project_name=os.getenv("HOMESTACK_PROJECT_NAME") or None,
            stop_timeout=_env_float("HOMESTACK_STOP_TIMEOUT", 10.0),
            health_interval=_env_float("HOMESTACK_HEALTH_INTERVAL", 5.0),
            subnet_pool=os.getenv("HOMESTACK_SUBNET_POOL", "127.30.0.0/16"),
            log_level=os.getenv("HOMESTACK_LOG_LEVEL", "INFO").upper(),
            dependency_timeout=_env_float("HOMESTACK_DEPENDENCY_TIMEOUT", 300.0),
        )

    def with_overrides(self, **overrides) -> "Settings":
        """Returns a copy with every non-None override applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})

    def state_path(self, base_dir: str) -> str:
        """Absolute path of the state directory for a project."""
        if os.path.isabs(self.state_dir):
            return self.state_dir
        return os.path.abspath(os.path.join(base_dir, self.state_dir))
