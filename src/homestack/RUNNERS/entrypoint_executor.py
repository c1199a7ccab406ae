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
Resolution of the full execution command of a service.
"""
import os
import shutil
from typing import Dict, List

from ..exceptions import ServiceStartError


class EntrypointExecutor:
    """
    Builds a service's argv from its entrypoint and command, the way a
    container runtime combines ENTRYPOINT and CMD.
    """
    def get_full_command(self, entrypoint: List[str], cmd: List[str]) -> List[str]:
        """
        Combines entrypoint and cmd into a single command list.

        :param entrypoint: The ENTRYPOINT list.
        :param cmd: The CMD list.
        :return: The full command list.
        """
        # An entrypoint is the executable and cmd becomes its arguments
        if entrypoint:
            return list(entrypoint) + list(cmd)
        return list(cmd)

    def resolve(self,
                entrypoint: List[str],
                cmd: List[str],
                env: Dict[str, str],
                working_dir: str) -> List[str]:
        """
        Returns the full command with its executable made absolute.

        Bare names are looked up on the service's own ``PATH``, paths are
        taken relative to its working directory.

        :raises ServiceStartError: If the executable does not exist or is not executable.
        """
        command = self.get_full_command(entrypoint, cmd)
        if not command:
            return command

        executable = os.path.expanduser(command[0])
        if os.sep in executable:
            path = os.path.normpath(os.path.join(working_dir, executable))
            if not (os.path.isfile(path) and os.access(path, os.X_OK)):
                path = None
        else:
            path = shutil.which(executable, path=env.get("PATH", os.defpath))

        if path is None:
            raise ServiceStartError(f"Executable {command[0]} not found or not executable")
        return [path] + command[1:]
