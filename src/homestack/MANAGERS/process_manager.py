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
Lifecycle management for individual service processes.
"""
import logging
import os
import time
from typing import Optional, Dict

from ..MODELS.service_definition import ServiceDefinition
from ..RUNNERS.process_runner import ProcessRunner
from ..RUNNERS.entrypoint_executor import EntrypointExecutor
from .environment_manager import EnvironmentManager
from .secret_manager import SecretManager, SECRETS_ENV
from .volume_manager import VolumeManager

logger = logging.getLogger(__name__)


class ProcessManager:
    """
    Manages the lifecycle of a single service.
    """
    def __init__(self,
                 service_def: ServiceDefinition,
                 base_dir: str = ".",
                 state_dir: Optional[str] = None,
                 volume_manager: Optional[VolumeManager] = None,
                 secret_manager: Optional[SecretManager] = None,
                 stop_timeout: float = 10.0):
        """
        Initializes the process manager for a service.

        :param service_def: Definition of the service.
        :param base_dir: Project directory, relative paths are resolved against it.
        :param state_dir: Directory for logs, volumes and secrets. Defaults to ``<base_dir>/.homestack``.
        :param volume_manager: Shared volume manager of the project.
        :param secret_manager: Shared secret manager of the project.
        :param stop_timeout: Grace period before SIGKILL when the service sets none.
        """
        self.service_def = service_def
        self.base_dir = os.path.abspath(base_dir)
        self.state_dir = state_dir or os.path.join(self.base_dir, ".homestack")

        self.env_manager = EnvironmentManager(self.base_dir)
        self.volume_manager = volume_manager or VolumeManager(
            self.base_dir,
            volumes_root=os.path.join(self.state_dir, "volumes"),
            rootfs_root=os.path.join(self.state_dir, "rootfs"),
        )
        self.secret_manager = secret_manager or SecretManager(os.path.join(self.state_dir, "secrets"), {})
        self.executor = EntrypointExecutor()
        self.stop_timeout = service_def.stop_grace_period if service_def.stop_grace_period is not None else stop_timeout

        self.log_file = os.path.join(self.state_dir, "logs", f"{service_def.name}.log")
        self.runner = ProcessRunner(service_def.name, log_file=self.log_file)

        self.restart_count = 0
        self.stopped_explicitly = False
        self.started_at: Optional[float] = None

    @property
    def name(self) -> str:
        return self.service_def.name

    def working_dir(self) -> str:
        """
        Directory the process runs in. Defaults to the build context, then the project directory.
        """
        wd = self.service_def.working_dir
        if wd:
            if wd.startswith('/'):
                return self.volume_manager.resolve_target(wd, service_name=self.name)
            return os.path.abspath(os.path.join(self.base_dir, wd))
        if self.service_def.build_context:
            return os.path.abspath(os.path.join(self.base_dir, self.service_def.build_context))
        return self.base_dir

    def environment(self, extra_env: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        return self.env_manager.get_merged_environment(
            self.service_def.environment,
            self.service_def.environment_files,
            extra_env,
        )

    def start(self, extra_env: Optional[Dict[str, str]] = None) -> bool:
        """
        Prepares the environment, volumes and secrets, then starts the service process.

        :param extra_env: Additional environment variables (e.g., service discovery).
        :return: False when the service has no command to run.
        """
        env = self.environment(extra_env)
        cwd = self.working_dir()

        self.volume_manager.prepare_volumes(
            self.service_def.mounts,
            service_name=self.name,
            service_working_dir=cwd,
        )
        secrets_dir = self.secret_manager.materialize(self.service_def)
        if secrets_dir:
            env[SECRETS_ENV] = secrets_dir

        command = self.executor.resolve(
            self.service_def.entrypoint,
            self.service_def.cmd,
            env,
            cwd,
        )
        if not command:
            logger.warning("[%s] No command specified, nothing to run.", self.name)
            return False

        self.runner.start(command, env=env, working_dir=cwd)
        self.stopped_explicitly = False
        self.started_at = time.time()
        return True

    def adopt(self, pid: int, create_time: Optional[float]) -> bool:
        """
        Re-attaches to a process recorded by an earlier invocation.
        """
        return self.runner.attach(pid, create_time)

    def stop(self, explicit: bool = True):
        """
        Stops the service process.

        :param explicit: The operator asked for the stop, which suppresses
            ``unless-stopped`` restarts.
        """
        if explicit:
            self.stopped_explicitly = True
        self.runner.stop(timeout=self.stop_timeout)
        self.volume_manager.release(self.name)

    def restart(self, extra_env: Optional[Dict[str, str]] = None) -> bool:
        self.runner.stop(timeout=self.stop_timeout)
        self.restart_count += 1
        return self.start(extra_env)

    def status(self) -> str:
        """
        Gets the current status of the service.

        :return: Status string (e.g., 'running', 'stopped', 'exited(0)').
            A process the operator stopped reports 'stopped' whatever its exit code.
        """
        if self.runner.is_running():
            return "running"
        exit_code = self.runner.get_exit_code()
        if exit_code is None or self.stopped_explicitly:
            return "stopped"
        return f"exited({exit_code})"
