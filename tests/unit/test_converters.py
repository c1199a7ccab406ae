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
Unit tests for the systemd and reverse proxy converters.
"""
import os
import textwrap

import pytest
from homestack.exceptions import ConfigError
from homestack.CONVERTERS.to_reverse_proxy import ReverseProxyConverter
from homestack.CONVERTERS.to_systemd import SystemdConverter
from homestack.LINTERS.markdown_linter import MarkdownLinter
from homestack.MANAGERS.network_manager import NetworkManager
from homestack.PARSERS.compose_parser import ComposeParser


def parse(content):
    return ComposeParser(context={}).parse_from_string(textwrap.dedent(content), base_dir="/srv/media")


STACK = """
    services:
      db:
        image: postgres
        command: postgres -D /var/lib/postgresql/data
        environment:
          POSTGRES_USER: media
          QUOTED: 'say "hi"'
        restart: unless-stopped
      migrate:
        image: app
        command: ["python", "manage.py", "migrate"]
        depends_on: [db]
      app:
        build: ./app
        command: ["gunicorn", "app:server", "--bind", "0.0.0.0:8000"]
        ports: ["8000:8000"]
        user: media
        stop_grace_period: 30s
        depends_on:
          db:
            condition: service_started
          migrate:
            condition: service_completed_successfully
          metrics:
            required: false
        restart: on-failure:5
        labels:
          homestack.proxy.host: media.home
          homestack.proxy.websocket: "true"
      web:
        image: nginx
        command: nginx -g "daemon off;"
        labels:
          homestack.proxy.host: media.home
          homestack.proxy.path: /static
          homestack.proxy.static_root: ./public
"""


class TestSystemdConverter:
    """Tests for SystemdConverter."""

    def test_unit_names(self, tmp_path):
        converter = SystemdConverter(parse(STACK))
        written = converter.convert(str(tmp_path))
        assert sorted(os.path.basename(p) for p in written) == [
            "media-app.service", "media-db.service", "media-migrate.service", "media-web.service",
        ]

    def test_dependencies(self):
        unit = SystemdConverter(parse(STACK)).render("app")
        assert "After=network.target media-db.service media-migrate.service\n" in unit
        assert "Requires=media-db.service media-migrate.service\n" in unit
        assert "metrics" not in unit

    def test_service_section(self):
        unit = SystemdConverter(parse(STACK)).render("app")
        assert "Type=simple\n" in unit
        assert "User=media\n" in unit
        assert "WorkingDirectory=/srv/media/app\n" in unit
        assert "ExecStart=gunicorn app:server --bind 0.0.0.0:8000\n" in unit
        assert "Restart=on-failure\n" in unit
        assert "TimeoutStopSec=30\n" in unit
        unit_section, service_section = unit.split("[Service]")
        assert "StartLimitBurst=5\n" in unit_section
        assert "StartLimit" not in service_section

    def test_oneshot_for_completed_dependencies(self):
        unit = SystemdConverter(parse(STACK)).render("migrate")
        assert "Type=oneshot\n" in unit
        assert "Restart=no\n" in unit

    def test_environment_and_quoting(self):
        unit = SystemdConverter(parse(STACK)).render("db")
        assert 'Environment="POSTGRES_USER=media"\n' in unit
        assert 'Environment="QUOTED=say \\"hi\\""\n' in unit
        assert "Restart=always\n" in unit
        assert "User=" not in unit

    def test_shell_quoting(self):
        unit = SystemdConverter(parse(STACK)).render("web")
        assert "ExecStart=nginx -g 'daemon off;'\n" in unit


class TestReverseProxyConverter:
    """Tests for ReverseProxyConverter."""

    def test_routes_are_merged_by_host(self):
        servers = ReverseProxyConverter(parse(STACK)).servers()
        assert len(servers) == 1
        server = servers[0]
        assert server.host == "media.home"
        assert server.root == "/srv/media/public"
        assert [r.path for r in server.routes] == ["/static", "/"]

    def test_render(self):
        conf = ReverseProxyConverter(parse(STACK), listen=8080).render()
        assert "listen 8080;" in conf
        assert "server_name media.home;" in conf
        assert "root /srv/media/public;" in conf
        assert "proxy_pass http://127.0.0.1:8000;" in conf
        assert "proxy_set_header Upgrade $http_upgrade;" in conf
        assert 'proxy_set_header Connection "upgrade";' in conf
        assert "try_files $uri $uri/ =404;" in conf

    def test_websocket_headers_are_opt_in(self):
        config = parse("""
            services:
              api:
                image: x
                expose: ["3000"]
                labels:
                  homestack.proxy.host: api.home
        """)
        conf = ReverseProxyConverter(config).render()
        assert "proxy_pass http://127.0.0.1:3000;" in conf
        assert "Upgrade" not in conf

    def test_rendered_config_passes_the_linter(self):
        conf = ReverseProxyConverter(parse(STACK)).render()
        issues = MarkdownLinter().lint_text(f"```nginx\n{conf}```\n")
        assert issues == []

    def test_upstream_uses_live_addresses(self):
        config = parse(STACK)
        network = NetworkManager("media")
        network.connect_service("app", "media_default")
        network.service_ports["app"] = {8000: 18000}
        conf = ReverseProxyConverter(config, network_manager=network).render()
        assert "proxy_pass http://127.30.0.2:18000;" in conf

    def test_route_without_port(self):
        config = parse("""
            services:
              worker:
                image: x
                labels:
                  homestack.proxy.host: worker.home
        """)
        with pytest.raises(ConfigError, match="exposes no port"):
            ReverseProxyConverter(config).routes()

    def test_duplicate_route(self):
        config = parse("""
            services:
              a:
                image: x
                expose: ["1"]
                labels: {homestack.proxy.host: x.home}
              b:
                image: x
                expose: ["2"]
                labels: {homestack.proxy.host: x.home}
        """)
        with pytest.raises(ConfigError, match="Duplicate route"):
            ReverseProxyConverter(config).servers()

    def test_convert_writes_file(self, tmp_path):
        path = ReverseProxyConverter(parse(STACK)).convert(str(tmp_path))
        assert path == str(tmp_path / "media.conf")
        assert "server {" in (tmp_path / "media.conf").read_text()
