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

import sys
import time

from homestack.MANAGERS.service_orchestrator import ServiceOrchestrator
from homestack.PARSERS.compose_parser import ComposeParser
from homestack.RUNNERS.dependency_resolver import DependencyResolver
from homestack.UTILS.settings import Settings


def test_stress_orchestration(tmp_path):
    """
    Starts 30 services sharing the default network, each depending on the previous one.
    """
    lines = ["services:"]
    for i in range(30):
        lines.append(f"  service_{i}:")
        lines.append(f"    command: ['{sys.executable}', '-c', 'import time; time.sleep(30)']")
        if i:
            lines.append(f"    depends_on: [service_{i - 1}]")
    config = ComposeParser(context={}, project_name="stress").parse_from_string(
        "\n".join(lines) + "\n", base_dir=str(tmp_path)
    )
    orchestrator = ServiceOrchestrator(config, settings=Settings())

    start_time = time.time()
    try:
        order = orchestrator.up(supervise=False)
        print(f"Started 30 services in {time.time() - start_time:.2f}s")

        assert order == [f"service_{i}" for i in range(30)]
        status = orchestrator.ps()
        assert len(status) == 30
        assert all(s == "running" for s in status.values())

        addresses = {row["address"] for row in orchestrator.ps_detailed()}
        assert len(addresses) == 30
    finally:
        orchestrator.down()

    assert all(s != "running" for s in orchestrator.ps().values())


def test_large_config_parsing():
    parser = ComposeParser(context={})

    # Generate a large compose file
    content = "services:\n"
    for i in range(1000):
        content += f"  service_{i}:\n"
        content += f"    image: image_{i}\n"
        content += "    environment:\n"
        content += f"      - VAR_{i}=VALUE_{i}\n"
        if i:
            content += f"    depends_on: [service_{i // 2}]\n"

    start_time = time.time()
    config = parser.parse_from_string(content)
    order = DependencyResolver().resolve_order(config)
    end_time = time.time()

    assert len(order) == 1000
    assert order.index("service_0") < order.index("service_999")
    assert end_time - start_time < 5.0
