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
Orchestration for multiple services, managing dependencies, networks and health.
"""
import logging
import os
import time
from typing import Any, Dict, Iterable, List, Optional

from tenacity import RetryError, Retrying, retry_if_result, stop_after_delay, wait_fixed

from ..exceptions import DependencyError, DependencyTimeoutError
from ..MODELS.orchestration_config import OrchestrationConfig
from ..MODELS.service_definition import DependencyCondition, NetworkMode, ServiceDefinition
from ..RUNNERS.dependency_resolver import DependencyResolver
from ..UTILS.settings import Settings
from .health_monitor import HealthMonitor
from .network_manager import NetworkConfig, NetworkManager
from .process_manager import ProcessManager
from .secret_manager import SecretManager
from .state_store import StateStore
from .volume_manager import VolumeManager

logger = logging.getLogger(__name__)

HOSTS_ENV = "HOMESTACK_HOSTS_FILE"


class ServiceOrchestrator:
    """
    Orchestrates multiple services based on their dependencies.
    """
    def __init__(self,
                 config: OrchestrationConfig,
                 base_dir: Optional[str] = None,
                 settings: Optional[Settings] = None):
        """
        Initializes the orchestrator and re-adopts services a previous
        invocation left running.

        :param config: Configuration for all services.
        :param base_dir: Project directory. Defaults to the compose file's directory.
        :param settings: Runtime settings. Read from the environment when omitted.
        """
        self.config = config
        self.settings = settings or Settings.from_env()
        self.base_dir = os.path.abspath(base_dir or config.base_dir)
        self.state_dir = self.settings.state_path(self.base_dir)
        self.project = config.name

        self.resolver = DependencyResolver()
        self.state = StateStore(self.state_dir, self.project)
        self.network_manager = NetworkManager(self.project, self.settings.subnet_pool, create_default=False)
        self.volume_manager = VolumeManager(
            self.base_dir,
            volumes_root=os.path.join(self.state_dir, "volumes"),
            rootfs_root=os.path.join(self.state_dir, "rootfs"),
        )
        self.secret_manager = SecretManager(os.path.join(self.state_dir, "secrets"), config.secrets)

        self.managers: Dict[str, ProcessManager] = {
            name: ProcessManager(
                svc_def,
                self.base_dir,
                state_dir=self.state_dir,
                volume_manager=self.volume_manager,
                secret_manager=self.secret_manager,
                stop_timeout=self.settings.stop_timeout,
            )
            for name, svc_def in config.services.items()
        }

        self.health_monitor = HealthMonitor(
            self.managers,
            interval=self.settings.health_interval,
            on_failure=self._handle_service_failure,
            restart=self._restart_service,
        )
        self._restore()

    @property
    def log_dir(self) -> str:
        return os.path.join(self.state_dir, "logs")

    # State

    def _restore(self):
        """
        Re-attaches to processes recorded in the state file.
        """
        subnets = self.state.get_networks()
        restored = False
        for name, manager in self.managers.items():
            entry = self.state.get_service(name)
            if not entry:
                continue
            manager.stopped_explicitly = bool(entry.get("stopped"))
            manager.restart_count = int(entry.get("restart_count") or 0)
            pid = entry.get("pid")
            if not pid or not manager.adopt(pid, entry.get("create_time")):
                continue

            if not restored:
                self._setup_networks(subnets)
                restored = True
            manager.started_at = time.time()
            ports = {int(k): v for k, v in (entry.get("ports") or {}).items()}
            self.network_manager.restore_ports(manager.service_def, ports)
            self._attach(manager.service_def, entry.get("addresses") or {})
            logger.debug("Re-attached to %s (pid %s)", name, pid)

    # Networks

    def _network_full_name(self, key: str) -> str:
        definition = self.config.networks.get(key)
        if definition is not None and definition.external:
            return definition.name
        return self.network_manager.network_name(key)

    def _setup_networks(self, known_subnets: Optional[Dict[str, str]] = None):
        known_subnets = known_subnets or {}
        # Explicit subnets first so automatic ones never collide with them
        keys = sorted(self.config.networks, key=lambda k: self.config.networks[k].subnet is None)
        for key in keys:
            definition = self.config.networks[key]
            full_name = self._network_full_name(key)
            self.network_manager.create_network(NetworkConfig(
                name=full_name,
                subnet=definition.subnet or known_subnets.get(full_name),
                internal=definition.internal,
            ))

    def _attach(self, svc: ServiceDefinition, recorded: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        recorded = recorded or {}
        self.network_manager.set_service_mode(svc.name, svc.network_mode)
        if svc.network_mode != NetworkMode.BRIDGE:
            return {}

        addresses = {}
        for key, attachment in svc.networks.items():
            full_name = self._network_full_name(key)
            aliases = list(attachment.aliases)
            if svc.hostname and svc.hostname not in aliases:
                aliases.append(svc.hostname)
            addresses[full_name] = self.network_manager.connect_service(
                svc.name,
                full_name,
                aliases=aliases,
                ipv4_address=attachment.ipv4_address or recorded.get(full_name),
            )
        return addresses

    def _detach(self, name: str):
        for network in list(self.network_manager.service_networks.get(name, {})):
            self.network_manager.disconnect_service(name, network)
        self.network_manager.release_ports(name)

    def _service_env(self, name: str) -> Dict[str, str]:
        svc = self.config.services[name]
        env = self.network_manager.get_service_discovery_env(self.config.service_names, from_service=name)
        env["HOMESTACK_PROJECT"] = self.project
        env["HOSTNAME"] = svc.hostname or name

        hosts_dir = os.path.join(self.state_dir, "hosts")
        os.makedirs(hosts_dir, exist_ok=True)
        hosts_file = os.path.join(hosts_dir, name)
        with open(hosts_file, "w") as f:
            f.write(self.network_manager.generate_hosts_file_content(name))
        env[HOSTS_ENV] = hosts_file
        return env

    # Lifecycle

    def up(self, services: Optional[Iterable[str]] = None, supervise: bool = True) -> List[str]:
        """
        Starts services in the correct dependency order.

        :param services: Only start these services and their dependencies.
        :param supervise: Start the health monitor once everything is up.
        :return: The services in startup order.
        """
        order = self.resolver.resolve_order(self.config, services)
        logger.info("Starting services in order: %s", ", ".join(order))

        self._setup_networks(self.state.get_networks())
        to_start = []
        for name in order:
            manager = self.managers[name]
            if manager.status() == "running":
                logger.info("Service %s is already running", name)
                continue
            to_start.append(name)
            self._attach(manager.service_def)

        # Ports of every service are known before any of them starts
        for name in to_start:
            self.network_manager.allocate_ports(self.config.services[name])
        self.state.set_networks(self.network_manager.subnets())

        for name in to_start:
            self._wait_for_dependencies(name)
            logger.info("Starting service: %s...", name)
            self.health_monitor.reset_health(name)
            self.managers[name].restart_count = 0
            self._start_service(name)

        if supervise and not self.health_monitor.running:
            self.health_monitor.start()
        return order

    def _start_service(self, name: str) -> bool:
        manager = self.managers[name]
        started = manager.start(extra_env=self._service_env(name))
        if started:
            self.state.record_start(
                name,
                manager.runner.pid,
                manager.runner.create_time,
                ports=self.network_manager.service_ports.get(name, {}),
                addresses=self.network_manager.service_networks.get(name, {}),
                restart_count=manager.restart_count,
            )
        return started

    def _restart_service(self, name: str):
        """
        Restart hook used by the health monitor.
        """
        manager = self.managers[name]
        manager.runner.stop(timeout=manager.stop_timeout)
        manager.restart_count += 1
        self._start_service(name)

    def _wait_for_dependencies(self, name: str):
        """
        Blocks until every depends_on condition of a service holds.

        :raises DependencyTimeoutError: If a condition is not met in time.
        :raises DependencyError: If a dependency exited unsuccessfully.
        """
        svc = self.config.services[name]
        for dep in svc.depends_on:
            if dep.service not in self.managers:
                continue
            dep_manager = self.managers[dep.service]
            if dep_manager.started_at is None and not dep_manager.runner.is_running():
                if dep.required:
                    logger.warning(
                        "Dependency %s of %s has no process to wait for", dep.service, name
                    )
                continue

            if dep.condition == DependencyCondition.SERVICE_HEALTHY:
                self._wait_for_healthy(dep.service)
            elif dep.condition == DependencyCondition.SERVICE_COMPLETED_SUCCESSFULLY:
                self._wait_for_completion(dep.service)

    def _wait_for_healthy(self, name: str):
        """
        Waits for a service to become healthy according to its health check definition.

        :param name: The name of the service to wait for.
        """
        manager = self.managers[name]
        hc = manager.service_def.health_check
        if manager.service_def.has_health_check:
            timeout = hc.start_period + (hc.interval + hc.timeout) * max(hc.retries, 1)
            poll = max(0.1, min(hc.interval, 1.0))
        else:
            timeout = self.settings.dependency_timeout
            poll = 0.2
        logger.info("Waiting for %s to become healthy...", name)

        def healthy() -> bool:
            if not manager.runner.is_running():
                raise DependencyError(
                    f"Service {name} exited with {manager.status()} before becoming healthy"
                )
            return self.health_monitor.run_health_check(name)["success"]

        try:
            for attempt in Retrying(
                stop=stop_after_delay(timeout),
                wait=wait_fixed(poll),
                retry=retry_if_result(lambda ok: not ok),
            ):
                with attempt:
                    result = healthy()
                if not attempt.retry_state.outcome.failed:
                    attempt.retry_state.set_result(result)
        except RetryError:
            raise DependencyTimeoutError(
                f"Service {name} failed to become healthy within {timeout:.0f}s"
            ) from None
        logger.info("Service %s is healthy.", name)

    def _wait_for_completion(self, name: str):
        """
        Waits for a one-shot service to exit successfully.
        """
        manager = self.managers[name]
        logger.info("Waiting for %s to complete...", name)
        try:
            for attempt in Retrying(
                stop=stop_after_delay(self.settings.dependency_timeout),
                wait=wait_fixed(0.2),
                retry=retry_if_result(lambda running: running),
            ):
                with attempt:
                    running = manager.runner.is_running()
                if not attempt.retry_state.outcome.failed:
                    attempt.retry_state.set_result(running)
        except RetryError:
            raise DependencyTimeoutError(
                f"Service {name} did not complete within {self.settings.dependency_timeout:.0f}s"
            ) from None

        exit_code = manager.runner.get_exit_code()
        if exit_code not in (0, None):
            raise DependencyError(f"Service {name} didn't complete successfully: exit {exit_code}")

    def stop(self, services: Optional[Iterable[str]] = None):
        """
        Stops services in reverse dependency order, keeping networks and state.
        """
        services = list(services) if services is not None else None
        for name in self.resolver.shutdown_order(self.config, services):
            if services is not None and name not in services:
                continue
            manager = self.managers[name]
            logger.info("Stopping service: %s...", name)
            manager.stop(explicit=True)
            self.secret_manager.remove(name)
            self._detach(name)
            self.state.record_stop(name, explicit=True)

    def down(self, services: Optional[Iterable[str]] = None, remove_volumes: bool = False):
        """
        Stops services in reverse dependency order. Without a service list the
        whole project is torn down: networks, hosts files and the state file.

        :param services: Only stop these services.
        :param remove_volumes: Also delete named and anonymous volumes.
        """
        self.health_monitor.stop()
        if services is not None:
            self.stop(list(services))
            return

        self.stop()
        self.network_manager.cleanup()
        self.state.clear()
        if remove_volumes:
            self._remove_volumes()

    def _remove_volumes(self):
        names = set(self.config.volumes)
        for svc in self.config.services.values():
            names.update(v.source for v in svc.volumes if v.source.startswith(f"{svc.name}-anon"))
        for name in sorted(names):
            definition = self.config.volumes.get(name)
            if definition is not None and definition.external:
                continue
            if self.volume_manager.remove_volume(name, force=True):
                logger.info("Removed volume %s", name)

    def restart(self, services: Optional[Iterable[str]] = None):
        """
        Restarts running or stopped services without touching their dependencies.
        """
        names = list(services) if services is not None else self.config.service_names
        self._setup_networks(self.state.get_networks())
        for name in self.resolver.resolve_order(self.config, names):
            if name not in names:
                continue
            manager = self.managers[name]
            logger.info("Restarting service: %s...", name)
            manager.stop(explicit=False)
            self._attach(manager.service_def, self.state.get_service(name).get("addresses"))
            self.network_manager.allocate_ports(manager.service_def)
            self.health_monitor.reset_health(name)
            self._start_service(name)
        self.state.set_networks(self.network_manager.subnets())

    def supervise(self):
        """
        Runs the health monitor in the foreground until interrupted.
        """
        if not self.health_monitor.running:
            self.health_monitor.start()
        try:
            while self.health_monitor.running:
                time.sleep(1)
        finally:
            self.health_monitor.stop()

    def ps(self) -> Dict[str, str]:
        """
        Returns the status of all services.

        :return: Service names and their statuses.
        """
        return {name: manager.status() for name, manager in self.managers.items()}

    def ps_detailed(self) -> List[Dict[str, Any]]:
        """
        Status rows with pid, health, address, ports and resource usage.
        """
        rows = []
        for name, manager in self.managers.items():
            health = self.health_monitor.get_health(name)
            if (health.last_check is None and not self.health_monitor.running
                    and manager.service_def.has_health_check and manager.runner.is_running()):
                # Nothing supervises this invocation, check once
                health = self.health_monitor.check_service(name)
            ports = self.network_manager.service_ports.get(name, {})
            stats = manager.runner.stats()
            rows.append({
                "name": name,
                "status": manager.status(),
                "pid": manager.runner.pid if manager.runner.is_running() else None,
                "health": health.status.value,
                "restarts": max(manager.restart_count, health.restart_count),
                "address": self.network_manager.service_address(name)
                if name in self.network_manager.service_networks or name in self.network_manager.service_modes
                else None,
                "ports": [f"{host}->{target}" for target, host in ports.items()],
                "uptime": stats.get("uptime"),
                "memory_rss": stats.get("memory_rss"),
            })
        return rows

    def _handle_service_failure(self, name: str):
        """
        Callback handled when a service failure is detected by the health monitor.

        :param name: The name of the failed service.
        """
        manager = self.managers[name]
        if manager.runner.is_running():
            logger.warning("Service %s is unhealthy", name)
            return
        logger.warning("Service %s failed with %s", name, manager.status())
        self.state.record_stop(name, explicit=False)
