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
Converter rendering a reverse-proxy (nginx) configuration from service labels.

Labels understood on a service:

- ``homestack.proxy.host``: server_name the service is published under (required)
- ``homestack.proxy.path``: location prefix, ``/`` by default
- ``homestack.proxy.port``: container port to forward to, the first port by default
- ``homestack.proxy.websocket``: ``true`` adds the connection-upgrade headers
- ``homestack.proxy.static_root``: directory served as the server root
"""
import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from jinja2 import Environment

from ..exceptions import ConfigError
from ..MODELS.orchestration_config import OrchestrationConfig
from ..MODELS.service_definition import ServiceDefinition
from ..MANAGERS.network_manager import NetworkManager

logger = logging.getLogger(__name__)

LABEL_PREFIX = "homestack.proxy."
TRUE_VALUES = {"1", "true", "yes", "on"}

NGINX_TEMPLATE = """\
# Generated by homestack for project {{ project }}
{% for server in servers %}
server {
    listen {{ listen }};
    server_name {{ server.host }};
{% if server.root %}
    root {{ server.root }};
    index index.html;
{% endif %}
{% for route in server.routes %}

    location {{ route.path }} {
{% if route.upstream %}
        proxy_pass http://{{ route.upstream }};
        proxy_http_version 1.1;
        proxy_set_header Host $host;
        proxy_set_header X-Real-IP $remote_addr;
        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;
        proxy_set_header X-Forwarded-Proto $scheme;
{% if route.websocket %}
        proxy_set_header Upgrade $http_upgrade;
        proxy_set_header Connection "upgrade";
        proxy_read_timeout 86400;
{% endif %}
{% else %}
        try_files $uri $uri/ =404;
{% endif %}
    }
{% endfor %}
}
{% endfor %}
"""


@dataclass
class ProxyRoute:
    service: str
    host: str
    path: str = "/"
    upstream: Optional[str] = None
    websocket: bool = False
    static_root: Optional[str] = None


@dataclass
class ProxyServer:
    host: str
    root: Optional[str] = None
    routes: List[ProxyRoute] = field(default_factory=list)


class ReverseProxyConverter:
    """
    Builds nginx server blocks for every service carrying proxy labels.
    Routes sharing a host are merged into one server block.
    """

    def __init__(self,
                 config: OrchestrationConfig,
                 listen: int = 80,
                 network_manager: Optional[NetworkManager] = None):
        """
        :param config: The parsed orchestration configuration.
        :param listen: Port the proxy listens on.
        :param network_manager: Resolves upstream addresses of running services;
            ``127.0.0.1`` is used when omitted.
        """
        self.config = config
        self.listen = listen
        self.network_manager = network_manager
        env = Environment(trim_blocks=True, lstrip_blocks=True, keep_trailing_newline=True)
        self.template = env.from_string(NGINX_TEMPLATE)

    def routes(self) -> List[ProxyRoute]:
        """
        Collects the routes declared through labels.

        :raises ConfigError: If a labelled service has no port and no static root.
        """
        routes = []
        for name, svc in self.config.services.items():
            labels = {k[len(LABEL_PREFIX):]: v for k, v in svc.labels.items() if k.startswith(LABEL_PREFIX)}
            if "host" not in labels:
                if labels:
                    logger.warning("Service %s has proxy labels but no %shost", name, LABEL_PREFIX)
                continue

            path = labels.get("path") or "/"
            if not path.startswith("/"):
                path = "/" + path
            static_root = labels.get("static_root")
            if static_root:
                static_root = os.path.normpath(os.path.join(self.config.base_dir, static_root))

            upstream = None
            port = self._upstream_port(svc, labels.get("port"))
            if port is not None:
                upstream = f"{self._address(name)}:{port}"
            elif not static_root:
                raise ConfigError(f"Service {name} is proxied but exposes no port")

            routes.append(ProxyRoute(
                service=name,
                host=labels["host"],
                path=path,
                upstream=upstream,
                websocket=labels.get("websocket", "").lower() in TRUE_VALUES,
                static_root=static_root,
            ))
        return routes

    def servers(self) -> List[ProxyServer]:
        servers: Dict[str, ProxyServer] = {}
        for route in self.routes():
            server = servers.setdefault(route.host, ProxyServer(host=route.host))
            if route.static_root:
                if server.root and server.root != route.static_root:
                    raise ConfigError(f"Conflicting static roots for {route.host}")
                server.root = route.static_root
            if any(r.path == route.path for r in server.routes):
                raise ConfigError(f"Duplicate route {route.host}{route.path}")
            server.routes.append(route)
        for server in servers.values():
            # Longest prefix first
            server.routes.sort(key=lambda r: (-len(r.path), r.path))
        return list(servers.values())

    def render(self) -> str:
        return self.template.render(project=self.config.name, listen=self.listen, servers=self.servers())

    def convert(self, output_dir: str = "nginx") -> str:
        """
        Writes ``<project>.conf`` into ``output_dir``.

        :return: Path of the written file.
        """
        os.makedirs(output_dir, exist_ok=True)
        path = os.path.join(output_dir, f"{self.config.name}.conf")
        with open(path, "w") as f:
            f.write(self.render())
        logger.info("Reverse proxy configuration generated in %s", path)
        return path

    def _address(self, name: str) -> str:
        if self.network_manager is not None:
            return self.network_manager.service_address(name)
        return "127.0.0.1"

    def _upstream_port(self, svc: ServiceDefinition, label: Optional[str]) -> Optional[int]:
        if label:
            try:
                target = int(label)
            except ValueError:
                raise ConfigError(f"Service {svc.name}: invalid proxy port {label!r}") from None
        elif svc.ports:
            target = svc.ports[0].target
        elif svc.expose_ports:
            target = svc.expose_ports[0]
        else:
            return None

        if self.network_manager is not None:
            host_port = self.network_manager.get_host_port(svc.name, target)
            if host_port is not None:
                return host_port
        for mapping in svc.ports:
            if mapping.target == target and mapping.published is not None:
                return mapping.published
        return target
