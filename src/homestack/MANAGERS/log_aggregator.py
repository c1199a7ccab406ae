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
Log aggregation and tailing for services.
"""
import os
import time
from collections import deque
from typing import Dict, List, Optional

import click

COLORS = ["cyan", "yellow", "green", "magenta", "blue", "red"]


class LogAggregator:
    """
    Aggregates and tails logs from multiple service log files.
    """
    def __init__(self, log_dir: str, color: bool = True):
        """
        Initializes the log aggregator.

        :param log_dir: The directory where log files are stored.
        :param color: Colorize the service prefix.
        """
        self.log_dir = log_dir
        self.color = color

    def log_path(self, name: str) -> str:
        return os.path.join(self.log_dir, f"{name}.log")

    def prefix(self, name: str, services: List[str]) -> str:
        """
        Fixed-width ``name |`` prefix, colored per service.
        """
        width = max((len(s) for s in services), default=len(name))
        text = f"{name:<{width}} | "
        if not self.color:
            return text
        # Position in the list gives each service a stable color
        index = services.index(name) if name in services else 0
        return click.style(text, fg=COLORS[index % len(COLORS)])

    def read_logs(self, service_names: List[str], tail: Optional[int] = None) -> List[str]:
        """
        Returns the prefixed lines of every service log, service by service.

        :param service_names: Names of the services to read.
        :param tail: Only keep the last ``tail`` lines of each service.
        """
        lines = []
        for name in service_names:
            path = self.log_path(name)
            if not os.path.exists(path):
                continue
            with open(path, 'r', errors='replace') as f:
                content = deque(f, maxlen=tail) if tail is not None else f.readlines()
            prefix = self.prefix(name, service_names)
            lines.extend(prefix + line.rstrip('\n') for line in content)
        return lines

    def tail_logs(self, service_names: List[str], follow: bool = True, tail: Optional[int] = None):
        """
        Prints existing logs, then follows new lines until interrupted.

        :param service_names: Names of the services to tail.
        :param follow: Keep streaming new lines.
        :param tail: Number of existing lines to print per service.
        """
        for line in self.read_logs(service_names, tail=tail):
            click.echo(line)
        if not follow:
            return

        files: Dict[str, object] = {}
        try:
            while True:
                idle = True
                for name in service_names:
                    if name not in files:
                        path = self.log_path(name)
                        if os.path.exists(path):
                            f = open(path, 'r', errors='replace')
                            f.seek(0, os.SEEK_END)
                            files[name] = f

                    if name in files:
                        line = files[name].readline()
                        while line:
                            idle = False
                            click.echo(self.prefix(name, service_names) + line.rstrip('\n'))
                            line = files[name].readline()

                if idle:
                    time.sleep(0.1)
        except KeyboardInterrupt:
            click.echo("\nStopping log tailing...")
        finally:
            for f in files.values():
                f.close()
