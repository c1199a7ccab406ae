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
Parsers for .env files, supporting quotes, comments and variable expansion.
"""
import io
from typing import Dict, Optional

from dotenv import dotenv_values


class EnvParser:
    """
    Parser for .env files, backed by python-dotenv.
    """
    @staticmethod
    def parse(env_path: str, interpolate: bool = True) -> Dict[str, str]:
        """
        Parses an .env file from a path.

        Args:
            env_path (str): Path to the .env file.
            interpolate (bool): Expand ${VAR} references between entries.

        Returns:
            Dict[str, str]: Dictionary of environment variables.
        """
        with open(env_path, 'r') as f:
            content = f.read()
        return EnvParser.parse_from_string(content, interpolate=interpolate)

    @staticmethod
    def parse_from_string(content: str, interpolate: bool = True) -> Dict[str, str]:
        """
        Parses environment variables from a string.
        Keys declared without a value are skipped.
        """
        values: Dict[str, Optional[str]] = dotenv_values(
            stream=io.StringIO(content), interpolate=interpolate
        )
        return {k: v for k, v in values.items() if v is not None}
