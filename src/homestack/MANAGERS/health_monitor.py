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
Health monitoring for services, including process status, health check commands,
and restart policy management with exponential backoff.
"""
import logging
import subprocess
import threading
import time
from typing import Dict, Callable, Optional, Any, List, Union
from dataclasses import dataclass
from enum import Enum
from datetime import datetime, timezone

from ..exceptions import HomestackError
from ..MODELS.service_definition import RestartPolicyCondition
from .process_manager import ProcessManager

logger = logging.getLogger(__name__)

MAX_RESTART_DELAY = 300.0
# A run at least this long resets the restart backoff
STABLE_RUN_SECONDS = 10.0


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class HealthStatus(str, Enum):
    """Health status of a service."""

    STARTING = "starting"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    NONE = "none"  # No health check configured


@dataclass
class ServiceHealth:
    """Health information for a service."""

    status: HealthStatus = HealthStatus.NONE
    failing_streak: int = 0
    last_check: Optional[str] = None
    last_output: str = ""
    restart_count: int = 0
    last_restart: Optional[str] = None
    next_restart_at: Optional[float] = None
    gave_up: bool = False


class HealthMonitor:
    """
    Monitors the health of services, applies restart policies and triggers
    callbacks on failure. Supports Docker-style health check commands.

    Each pass (:meth:`check_once`) is non-blocking: restarts are scheduled
    with exponential backoff and carried out by a later pass.
    """

    def __init__(
        self,
        managers: Dict[str, ProcessManager],
        interval: float = 5,
        on_failure: Optional[Callable[[str], None]] = None,
        restart: Optional[Callable[[str], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initializes the health monitor.

        :param managers: Managers for the services to monitor.
        :param interval: Seconds between supervision passes.
        :param on_failure: Callback when a service fails and will not be restarted,
            or becomes unhealthy.
        :param restart: Callback that restarts a service. Defaults to ``manager.restart()``.
        :param clock: Monotonic time source.
        """
        self.managers = managers
        self.interval = interval
        self.on_failure = on_failure
        self.restart = restart
        self.clock = clock
        self.running = False
        self.thread = None
        self._wakeup = threading.Event()
        self._lock = threading.Lock()

        # Health tracking per service
        self._health: Dict[str, ServiceHealth] = {name: self._fresh_health(name) for name in managers}
        self._restart_delays: Dict[str, float] = {}
        self._last_check: Dict[str, float] = {}
        self._reported: Dict[str, Optional[float]] = {}

    def _fresh_health(self, name: str) -> ServiceHealth:
        manager = self.managers.get(name)
        if manager is not None and manager.service_def.has_health_check:
            return ServiceHealth(status=HealthStatus.STARTING)
        return ServiceHealth()

    def start(self):
        """
        Starts the health monitoring thread.
        """
        self.running = True
        self._wakeup.clear()
        self.thread = threading.Thread(target=self._monitor_loop, name="homestack-health", daemon=True)
        self.thread.start()

    def stop(self):
        """
        Stops the health monitoring thread.
        """
        self.running = False
        self._wakeup.set()
        if self.thread:
            self.thread.join(timeout=self.interval + 1)
            self.thread = None

    def get_health(self, service_name: str) -> ServiceHealth:
        """
        Get the health status of a service.

        Args:
            service_name: Name of the service.

        Returns:
            ServiceHealth object.
        """
        return self._health.get(service_name, ServiceHealth())

    def get_all_health(self) -> Dict[str, ServiceHealth]:
        """Get health status of all services."""
        return self._health.copy()

    def _monitor_loop(self):
        while self.running:
            try:
                self.check_once()
            except HomestackError as e:
                logger.error("Supervision pass failed: %s", e)
            self._wakeup.wait(self.interval)

    def check_service(self, name: str) -> ServiceHealth:
        """
        Runs the health check of one running service right away, ignoring the
        interval. Used to report health from an invocation that does not supervise.
        """
        manager = self.managers[name]
        with self._lock:
            if manager.runner.is_running():
                self._last_check.pop(name, None)
                self._check_service(name, manager, self.clock())
        return self.get_health(name)

    def check_once(self, now: Optional[float] = None):
        """
        Runs a single supervision pass over every service.

        :param now: Current monotonic time, for deterministic tests.
        """
        with self._lock:
            now = self.clock() if now is None else now
            for name, manager in self.managers.items():
                self._check_service(name, manager, now)

    def _check_service(self, name: str, manager: ProcessManager, now: float):
        if name not in self._health:
            self._health[name] = self._fresh_health(name)
        health = self._health[name]

        if manager.stopped_explicitly:
            health.next_restart_at = None
            return

        if not manager.runner.is_running():
            if manager.started_at is None:
                # Never started, e.g. an image-only service with no command
                return
            self._handle_exit(name, manager, health, now)
            return

        hc = manager.service_def.health_check
        if not manager.service_def.has_health_check:
            health.status = HealthStatus.NONE
            return

        if now - self._last_check.get(name, float("-inf")) < hc.interval:
            return
        self._last_check[name] = now

        in_start_period = (time.time() - (manager.started_at or 0)) < hc.start_period
        check_result = self.run_health_check(name)
        health.last_check = _utcnow()

        if check_result["success"]:
            health.status = HealthStatus.HEALTHY
            health.failing_streak = 0
            health.last_output = check_result.get("output", "")
            # Reset restart delay on success
            self._restart_delays[name] = 0
            return

        health.last_output = check_result.get("error", "")
        if in_start_period:
            # Failures during the start period do not count
            health.status = HealthStatus.STARTING
            return

        health.failing_streak += 1
        if health.failing_streak >= hc.retries:
            if health.status != HealthStatus.UNHEALTHY and self.on_failure:
                self.on_failure(name)
            health.status = HealthStatus.UNHEALTHY

    def _handle_exit(self, name: str, manager: ProcessManager, health: ServiceHealth, now: float):
        health.status = HealthStatus.UNHEALTHY

        if health.next_restart_at is not None:
            if now >= health.next_restart_at:
                self._handle_restart(name, manager, now)
            return

        if health.gave_up or self._reported.get(name) == manager.started_at:
            return

        exit_code = manager.runner.get_exit_code()
        if self._should_restart(name, manager, exit_code):
            if manager.started_at and time.time() - manager.started_at >= STABLE_RUN_SECONDS:
                self._restart_delays[name] = 0
            delay = self._current_delay(name, manager)
            health.next_restart_at = now + delay
            logger.info("Service %s exited (%s), restarting in %.1fs", name, exit_code, delay)
            return

        self._reported[name] = manager.started_at
        logger.warning("Service %s exited with code %s and will not be restarted", name, exit_code)
        if self.on_failure:
            self.on_failure(name)

    def run_health_check(self, name: str) -> Dict[str, Any]:
        """
        Run the health check command for a service.

        Args:
            name: Service name.

        Returns:
            Dictionary with 'success', 'output', and 'error' keys.
        """
        manager = self.managers[name]
        hc = manager.service_def.health_check
        if not hc or not hc.test or hc.disable:
            return {"success": True}

        cmd = hc.test
        use_shell = False

        # Parse command format
        if cmd[0] == "CMD":
            real_cmd: Union[List[str], str] = cmd[1:]
        elif cmd[0] == "CMD-SHELL":
            real_cmd = " ".join(cmd[1:])
            use_shell = True
        elif cmd[0] == "NONE":
            return {"success": True}
        else:
            real_cmd = cmd

        try:
            env = manager.environment()
            result = subprocess.run(
                real_cmd,
                shell=use_shell,
                env=env,
                cwd=manager.working_dir(),
                capture_output=True,
                timeout=hc.timeout,
                text=True,
            )
        except subprocess.TimeoutExpired:
            return {"success": False, "error": "Health check timed out"}
        except (OSError, HomestackError) as e:
            return {"success": False, "error": str(e)}

        if result.returncode == 0:
            return {
                "success": True,
                "output": result.stdout[:500] if result.stdout else "",
            }
        return {
            "success": False,
            "error": (
                result.stderr[:500]
                if result.stderr
                else f"Exit code: {result.returncode}"
            ),
        }

    def _should_restart(
        self, name: str, manager: ProcessManager, exit_code: Optional[int]
    ) -> bool:
        """
        Determine if a service should be restarted based on its policy.

        Args:
            name: Service name.
            manager: Process manager.
            exit_code: Process exit code.

        Returns:
            True if should restart.
        """
        policy = manager.service_def.restart_policy
        condition = policy.condition
        health = self._health[name]

        if policy.max_retries > 0 and health.restart_count >= policy.max_retries:
            if not health.gave_up:
                logger.warning(
                    "Service %s exceeded max restart attempts (%s)", name, policy.max_retries
                )
            health.gave_up = True
            return False

        if condition == RestartPolicyCondition.NO:
            return False

        if condition == RestartPolicyCondition.ALWAYS:
            return True

        if condition == RestartPolicyCondition.ON_FAILURE:
            # Restart only if exited with non-zero code
            return exit_code is not None and exit_code != 0

        if condition == RestartPolicyCondition.UNLESS_STOPPED:
            return not manager.stopped_explicitly

        return False

    def _current_delay(self, name: str, manager: ProcessManager) -> float:
        policy = manager.service_def.restart_policy
        base_delay = policy.delay if policy.delay > 0 else 1.0
        current = self._restart_delays.get(name) or base_delay
        return min(current, MAX_RESTART_DELAY)

    def _handle_restart(self, name: str, manager: ProcessManager, now: float) -> None:
        """
        Restarts a service whose backoff delay elapsed.

        Args:
            name: Service name.
            manager: Process manager.
            now: Current monotonic time.
        """
        health = self._health[name]
        current_delay = self._current_delay(name, manager)
        health.next_restart_at = None

        logger.info("Restarting service %s (attempt %s)...", name, health.restart_count + 1)
        health.restart_count += 1
        health.last_restart = _utcnow()
        # Exponential backoff for the next failure
        self._restart_delays[name] = min(current_delay * 2, MAX_RESTART_DELAY)
        try:
            if self.restart:
                self.restart(name)
            else:
                manager.restart()
        except HomestackError as e:
            logger.error("Failed to restart %s: %s", name, e)
            health.next_restart_at = now + self._restart_delays[name]
            return
        self._last_check.pop(name, None)
        health.status = self._fresh_health(name).status
        health.failing_streak = 0

    def reset_health(self, name: str) -> None:
        """
        Reset health tracking for a service.

        Args:
            name: Service name.
        """
        self._health[name] = self._fresh_health(name)
        self._restart_delays[name] = 0
        self._last_check.pop(name, None)
        self._reported.pop(name, None)
