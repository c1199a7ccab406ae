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
Persistence of running-stack state between CLI invocations.
"""
import json
import logging
import os
import tempfile
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

STATE_VERSION = 1


def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class StateStore:
    """
    Tracks the processes and allocations of a project.

    The state file lets ``down``, ``ps`` and ``logs`` act on services that a
    previous ``up`` started.
    """

    def __init__(self, state_dir: str, project: str):
        """
        :param state_dir: Directory holding ``state.json``.
        :param project: Project the state belongs to.
        """
        self.state_dir = state_dir
        self.project = project
        self.state_file = os.path.join(state_dir, "state.json")
        self._lock = threading.RLock()
        self.state = self._load()

    def _load(self) -> Dict[str, Any]:
        if not os.path.exists(self.state_file):
            return self._empty_state()
        try:
            with open(self.state_file, "r") as f:
                state = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Failed to load state file %s: %s, using empty state", self.state_file, e)
            return self._empty_state()
        if state.get("project") != self.project:
            logger.warning("State file belongs to project %s, ignoring it", state.get("project"))
            return self._empty_state()
        state.setdefault("services", {})
        state.setdefault("networks", {})
        return state

    def _empty_state(self) -> Dict[str, Any]:
        return {
            "version": STATE_VERSION,
            "project": self.project,
            "updated_at": _now(),
            "services": {},
            "networks": {},
        }

    def save(self):
        """
        Writes the state atomically.
        """
        with self._lock:
            self._write()

    def _write(self):
        os.makedirs(self.state_dir, exist_ok=True)
        self.state["updated_at"] = _now()
        fd, tmp_path = tempfile.mkstemp(dir=self.state_dir, prefix=".state-", suffix=".json")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(self.state, f, indent=2, sort_keys=True)
            os.replace(tmp_path, self.state_file)
        except OSError:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def get_service(self, name: str) -> Dict[str, Any]:
        return self.state["services"].get(name, {})

    def service_names(self) -> List[str]:
        return list(self.state["services"])

    def record_start(self,
                     name: str,
                     pid: Optional[int],
                     create_time: Optional[float],
                     ports: Optional[Dict[int, int]] = None,
                     addresses: Optional[Dict[str, str]] = None,
                     restart_count: int = 0):
        """
        Records a freshly started service process.
        """
        with self._lock:
            self.state["services"][name] = {
                "pid": pid,
                "create_time": create_time,
                "started_at": _now(),
                "stopped": False,
                "restart_count": restart_count,
                # JSON keys are strings
                "ports": {str(k): v for k, v in (ports or {}).items()},
                "addresses": dict(addresses or {}),
            }
            self._write()

    def record_stop(self, name: str, explicit: bool = True):
        """
        Marks a service as no longer running. ``explicit`` records an operator stop.
        """
        with self._lock:
            entry = self.state["services"].setdefault(name, {})
            entry["pid"] = None
            entry["create_time"] = None
            entry["stopped"] = explicit
            entry["stopped_at"] = _now()
            self._write()

    def remove_service(self, name: str):
        self.state["services"].pop(name, None)
        self.save()

    def set_networks(self, networks: Dict[str, str]):
        """
        Records the subnet of every created network.
        """
        self.state["networks"] = dict(networks)
        self.save()

    def get_networks(self) -> Dict[str, str]:
        return dict(self.state.get("networks", {}))

    def clear(self):
        self.state = self._empty_state()
        if os.path.exists(self.state_file):
            os.unlink(self.state_file)
