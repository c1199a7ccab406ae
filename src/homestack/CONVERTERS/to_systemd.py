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
Converters for generating systemd service files from compose configurations.
"""
import logging
import os
import shlex
from typing import List

from jinja2 import Environment

from ..MODELS.orchestration_config import OrchestrationConfig
from ..MODELS.service_definition import RestartPolicyCondition
from ..RUNNERS.entrypoint_executor import EntrypointExecutor

logger = logging.getLogger(__name__)

SYSTEMD_TEMPLATE = """\
[Unit]
Description={{ project }} service: {{ name }}
After=network.target{% for dep in depends_on %} {{ project }}-{{ dep }}.service{% endfor %}
{% if requires %}Requires={% for dep in requires %}{{ project }}-{{ dep }}.service{% if not loop.last %} {% endif %}{% endfor %}
{% endif %}{% if max_retries %}StartLimitBurst={{ max_retries }}
{% endif %}
[Service]
Type={{ service_type }}
{% if user %}User={{ user }}
{% endif %}WorkingDirectory={{ working_dir }}
ExecStart={{ command }}
{% for k, v in environment.items() %}Environment="{{ k }}={{ v | replace('"', '\\\\"') }}"
{% endfor %}Restart={{ restart }}
{% if restart_sec %}RestartSec={{ restart_sec }}
{% endif %}TimeoutStopSec={{ stop_timeout }}

[Install]
WantedBy=multi-user.target
"""

RESTART_MAP = {
    RestartPolicyCondition.NO: "no",
    RestartPolicyCondition.ALWAYS: "always",
    RestartPolicyCondition.ON_FAILURE: "on-failure",
    RestartPolicyCondition.UNLESS_STOPPED: "always",
}


class SystemdConverter:
    """
    Converts a compose configuration into systemd unit files.
    """

    def __init__(self, config: OrchestrationConfig, base_dir: str = None, stop_timeout: float = 10):
        """
        Initializes the systemd converter.

        :param config: The parsed orchestration configuration.
        :param base_dir: The base directory for resolving paths.
        :param stop_timeout: Default TimeoutStopSec.
        """
        self.config = config
        self.base_dir = os.path.abspath(base_dir or config.base_dir)
        self.stop_timeout = stop_timeout
        self.template = Environment(keep_trailing_newline=True).from_string(SYSTEMD_TEMPLATE)
        self.executor = EntrypointExecutor()

    def unit_name(self, service: str) -> str:
        return f"{self.config.name}-{service}.service"

    def render(self, name: str) -> str:
        """
        Renders the unit file of one service.
        """
        svc = self.config.services[name]
        command = self.executor.get_full_command(svc.entrypoint, svc.cmd)
        deps = [d for d in svc.depends_on if d.service in self.config.services]
        working_dir = svc.working_dir if svc.working_dir and not svc.working_dir.startswith('/') else None
        if working_dir:
            working_dir = os.path.join(self.base_dir, working_dir)
        elif svc.build_context:
            working_dir = os.path.join(self.base_dir, svc.build_context)

        return self.template.render(
            project=self.config.name,
            name=name,
            depends_on=[d.service for d in deps],
            requires=[d.service for d in deps if d.required],
            service_type="oneshot" if self._is_oneshot(name) else "simple",
            user=svc.user,
            working_dir=os.path.normpath(working_dir or self.base_dir),
            command=shlex.join(command) if command else "/bin/true",
            environment=svc.environment,
            restart=RESTART_MAP[svc.restart_policy.condition],
            restart_sec=svc.restart_policy.delay or None,
            max_retries=svc.restart_policy.max_retries or None,
            stop_timeout=int(svc.stop_grace_period if svc.stop_grace_period is not None else self.stop_timeout),
        )

    def _is_oneshot(self, name: str) -> bool:
        # Services others wait on to complete run once
        return any(
            d.service == name and d.condition.value == "service_completed_successfully"
            for svc in self.config.services.values()
            for d in svc.depends_on
        )

    def convert(self, output_dir: str = "systemd") -> List[str]:
        """
        Generates systemd service files.

        :param output_dir: The directory where service files will be created.
        :return: Paths of the written unit files.
        """
        os.makedirs(output_dir, exist_ok=True)

        written = []
        for name in self.config.services:
            path = os.path.join(output_dir, self.unit_name(name))
            with open(path, "w") as f:
                f.write(self.render(name))
            written.append(path)

        logger.info("Systemd service files generated in %s", output_dir)
        return written
