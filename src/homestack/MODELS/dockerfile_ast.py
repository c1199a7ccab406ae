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
Models for parsed Dockerfiles.
"""
from typing import Dict, List, Optional
from pydantic import BaseModel


class Instruction(BaseModel):
    """
    One Dockerfile instruction. Leading ``--name=value`` options are kept
    in ``flags`` and left out of ``arguments``.
    """
    instruction: str
    arguments: List[str]
    raw: str
    line: int = 0
    flags: Dict[str, str] = {}

    @property
    def stage_name(self) -> Optional[str]:
        """The ``AS name`` of a FROM instruction."""
        if self.instruction != "FROM" or not self.arguments:
            return None
        parts = self.arguments[0].split()
        if len(parts) == 3 and parts[1].upper() == "AS":
            return parts[2]
        return None
