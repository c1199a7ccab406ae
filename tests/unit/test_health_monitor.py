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
Unit tests for the health monitor's supervision passes.
"""
import os
import sys
import time

import pytest
from homestack.exceptions import ServiceStartError
from homestack.MANAGERS.health_monitor import HealthMonitor, HealthStatus, MAX_RESTART_DELAY
from homestack.MODELS.service_definition import (
    HealthCheck,
    RestartPolicy,
    RestartPolicyCondition,
    ServiceDefinition,
)


class FakeRunner:
    def __init__(self, running=True, exit_code=None):
        self.running = running
        self.exit_code = exit_code

    def is_running(self):
        return self.running

    def get_exit_code(self):
        return None if self.running else self.exit_code


class FakeManager:
    """Stands in for ProcessManager without spawning anything."""

    def __init__(self, service_def, running=True, exit_code=None, started_ago=1.0):
        self.service_def = service_def
        self.runner = FakeRunner(running, exit_code)
        self.stopped_explicitly = False
        self.started_at = time.time() - started_ago
        self.restarts = 0

    def restart(self):
        self.restarts += 1
        self.runner.running = True
        self.started_at = time.time()

    def crash(self, exit_code=1):
        self.runner.running = False
        self.runner.exit_code = exit_code

    def environment(self, extra_env=None):
        return dict(os.environ)

    def working_dir(self):
        return os.getcwd()


def service(condition="no", max_retries=0, delay=0.0, health_check=None):
    return ServiceDefinition(
        name="app",
        cmd=["app"],
        restart_policy=RestartPolicy(condition=condition, max_retries=max_retries, delay=delay),
        health_check=health_check,
    )


class TestRestartPolicy:
    """Exit handling and restart scheduling."""

    def test_restart_is_scheduled_then_executed(self):
        manager = FakeManager(service("always"), running=False, exit_code=1)
        monitor = HealthMonitor({"app": manager})

        monitor.check_once(now=100.0)
        assert manager.restarts == 0
        assert monitor.get_health("app").next_restart_at == 101.0

        monitor.check_once(now=100.5)
        assert manager.restarts == 0

        monitor.check_once(now=101.0)
        assert manager.restarts == 1
        assert monitor.get_health("app").restart_count == 1
        assert monitor.get_health("app").next_restart_at is None

    def test_backoff_doubles(self):
        manager = FakeManager(service("always", delay=2.0), running=False, exit_code=1)
        monitor = HealthMonitor({"app": manager})
        delays = []
        now = 0.0
        for _ in range(4):
            monitor.check_once(now=now)
            scheduled = monitor.get_health("app").next_restart_at
            delays.append(scheduled - now)
            monitor.check_once(now=scheduled)
            manager.crash()
            now = scheduled
        assert delays == [2.0, 4.0, 8.0, 16.0]

    def test_backoff_is_capped(self):
        manager = FakeManager(service("always"), running=False, exit_code=1)
        monitor = HealthMonitor({"app": manager})
        monitor._restart_delays["app"] = MAX_RESTART_DELAY * 4
        monitor.check_once(now=0.0)
        assert monitor.get_health("app").next_restart_at == MAX_RESTART_DELAY

    def test_stable_run_resets_backoff(self):
        manager = FakeManager(service("always"), running=False, exit_code=1, started_ago=60.0)
        monitor = HealthMonitor({"app": manager})
        monitor._restart_delays["app"] = 64.0
        monitor.check_once(now=0.0)
        assert monitor.get_health("app").next_restart_at == 1.0

    def test_no_policy_reports_failure_once(self):
        failures = []
        manager = FakeManager(service("no"), running=False, exit_code=3)
        monitor = HealthMonitor({"app": manager}, on_failure=failures.append)
        monitor.check_once(now=0.0)
        monitor.check_once(now=10.0)
        assert failures == ["app"]
        assert manager.restarts == 0
        assert monitor.get_health("app").status == HealthStatus.UNHEALTHY

    @pytest.mark.parametrize("exit_code, restarted", [(0, False), (1, True), (-9, True)])
    def test_on_failure(self, exit_code, restarted):
        manager = FakeManager(service("on-failure"), running=False, exit_code=exit_code)
        monitor = HealthMonitor({"app": manager})
        monitor.check_once(now=0.0)
        monitor.check_once(now=5.0)
        assert (manager.restarts == 1) is restarted

    def test_max_retries(self):
        failures = []
        manager = FakeManager(service("on-failure", max_retries=2), running=False, exit_code=1)
        monitor = HealthMonitor({"app": manager}, on_failure=failures.append)
        now = 0.0
        for _ in range(5):
            monitor.check_once(now=now)
            now += 1000.0
            monitor.check_once(now=now)
            manager.crash()
        assert manager.restarts == 2
        assert monitor.get_health("app").gave_up
        assert failures == ["app"]

    def test_unless_stopped_respects_explicit_stop(self):
        manager = FakeManager(service("unless-stopped"), running=False, exit_code=0)
        manager.stopped_explicitly = True
        monitor = HealthMonitor({"app": manager})
        monitor.check_once(now=0.0)
        monitor.check_once(now=100.0)
        assert manager.restarts == 0

        manager.stopped_explicitly = False
        monitor.check_once(now=200.0)
        monitor.check_once(now=300.0)
        assert manager.restarts == 1

    def test_never_started_service_is_ignored(self):
        manager = FakeManager(service("always"), running=False)
        manager.started_at = None
        monitor = HealthMonitor({"app": manager})
        monitor.check_once(now=0.0)
        assert monitor.get_health("app").next_restart_at is None

    def test_restart_hook_failure_is_retried(self):
        calls = []

        def broken_restart(name):
            calls.append(name)
            raise ServiceStartError("boom")

        manager = FakeManager(service("always"), running=False, exit_code=1)
        monitor = HealthMonitor({"app": manager}, restart=broken_restart)
        monitor.check_once(now=0.0)
        monitor.check_once(now=1.0)
        assert calls == ["app"]
        assert monitor.get_health("app").next_restart_at == 3.0

    def test_reset_health(self):
        manager = FakeManager(service("always"), running=False, exit_code=1)
        monitor = HealthMonitor({"app": manager})
        monitor.check_once(now=0.0)
        monitor.reset_health("app")
        assert monitor.get_health("app").next_restart_at is None
        assert monitor.get_health("app").restart_count == 0


class TestHealthChecks:
    """Health check commands."""

    def _check(self, code, retries=2, start_period=0.0):
        return HealthCheck(
            test=["CMD", sys.executable, "-c", f"import sys; sys.exit({code})"],
            interval=1.0,
            timeout=10.0,
            retries=retries,
            start_period=start_period,
        )

    def test_healthy(self):
        manager = FakeManager(service(health_check=self._check(0)))
        monitor = HealthMonitor({"app": manager})
        monitor.check_once(now=0.0)
        assert monitor.get_health("app").status == HealthStatus.HEALTHY

    def test_unhealthy_after_retries(self):
        failures = []
        manager = FakeManager(service(health_check=self._check(1)))
        monitor = HealthMonitor({"app": manager}, on_failure=failures.append)

        monitor.check_once(now=0.0)
        assert monitor.get_health("app").status == HealthStatus.STARTING
        assert monitor.get_health("app").failing_streak == 1

        # Within the interval nothing runs
        monitor.check_once(now=0.5)
        assert monitor.get_health("app").failing_streak == 1

        monitor.check_once(now=1.0)
        assert monitor.get_health("app").status == HealthStatus.UNHEALTHY
        monitor.check_once(now=2.0)
        assert failures == ["app"]

    def test_start_period_failures_do_not_count(self):
        manager = FakeManager(service(health_check=self._check(1, retries=1, start_period=3600)))
        monitor = HealthMonitor({"app": manager})
        monitor.check_once(now=0.0)
        health = monitor.get_health("app")
        assert health.status == HealthStatus.STARTING
        assert health.failing_streak == 0

    def test_shell_form(self):
        hc = HealthCheck(test=["CMD-SHELL", "exit 0"], interval=1.0)
        manager = FakeManager(service(health_check=hc))
        monitor = HealthMonitor({"app": manager})
        assert monitor.run_health_check("app")["success"]

    def test_missing_command(self):
        hc = HealthCheck(test=["CMD", "/nonexistent/healthcheck"], interval=1.0)
        manager = FakeManager(service(health_check=hc))
        result = HealthMonitor({"app": manager}).run_health_check("app")
        assert not result["success"]
        assert result["error"]

    def test_timeout(self):
        hc = HealthCheck(test=["CMD", sys.executable, "-c", "import time; time.sleep(5)"], timeout=0.2)
        manager = FakeManager(service(health_check=hc))
        result = HealthMonitor({"app": manager}).run_health_check("app")
        assert result == {"success": False, "error": "Health check timed out"}

    def test_starting_until_first_check(self):
        manager = FakeManager(service(health_check=self._check(0)))
        monitor = HealthMonitor({"app": manager, "plain": FakeManager(service())})
        assert monitor.get_health("app").status == HealthStatus.STARTING
        assert monitor.get_health("plain").status == HealthStatus.NONE

        monitor.check_once(now=0.0)
        assert monitor.get_health("app").status == HealthStatus.HEALTHY
        monitor.reset_health("app")
        assert monitor.get_health("app").status == HealthStatus.STARTING

    def test_check_service_ignores_interval(self):
        manager = FakeManager(service(health_check=self._check(0)))
        monitor = HealthMonitor({"app": manager})
        monitor.check_once(now=0.0)
        monitor.reset_health("app")
        health = monitor.check_service("app")
        assert health.status == HealthStatus.HEALTHY
        assert health.last_check is not None

    def test_restart_goes_back_to_starting(self):
        manager = FakeManager(service("always", health_check=self._check(0)), running=False, exit_code=1)
        monitor = HealthMonitor({"app": manager})
        monitor.check_once(now=0.0)
        assert monitor.get_health("app").status == HealthStatus.UNHEALTHY
        monitor.check_once(now=1.0)
        assert manager.restarts == 1
        assert monitor.get_health("app").status == HealthStatus.STARTING

    def test_no_health_check(self):
        manager = FakeManager(service())
        monitor = HealthMonitor({"app": manager})
        monitor.check_once(now=0.0)
        assert monitor.get_health("app").status == HealthStatus.NONE


class TestMonitorThread:
    """Background thread lifecycle."""

    def test_start_stop(self):
        manager = FakeManager(service("always"), running=False, exit_code=1)
        monitor = HealthMonitor({"app": manager}, interval=0.05)
        monitor.start()
        assert monitor.running
        deadline = time.time() + 5
        while manager.restarts == 0 and time.time() < deadline:
            time.sleep(0.05)
        monitor.stop()
        assert not monitor.running
        assert manager.restarts >= 1
