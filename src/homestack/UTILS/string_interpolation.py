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
Utilities for string interpolation using environment variables.
"""
import logging
import re
from typing import Any, Dict

from ..exceptions import InterpolationError

logger = logging.getLogger(__name__)


class EnvironmentInterpolator:
    """
    Utility for interpolating environment variables in strings.
    Supports $VAR, ${VAR}, ${VAR:-default}, ${VAR-default}, ${VAR:+value},
    ${VAR+value}, ${VAR:?error}, ${VAR?error} and the $$ escape.
    """
    # Group 1: $$ escape
    # Group 2: bare $VAR name
    # Group 3: braced VAR name
    # Group 4: modifier (:-, -, :+, +, :?, ?)
    # Group 5: modifier argument
    PATTERN = re.compile(
        r"\$(?:(\$)"
        r"|([A-Za-z_][A-Za-z0-9_]*)"
        r"|\{([A-Za-z_][A-Za-z0-9_]*)(?:(:?[-+?])([^}]*))?\})"
    )

    @staticmethod
    def interpolate(template: str, context: Dict[str, str], warn: bool = True) -> str:
        """
        Interpolates environment variables in the template string using the provided context.

        An unset variable without a modifier becomes an empty string.

        :param template: The string containing ${VAR} placeholders.
        :param context: The environment variables context.
        :param warn: Log a warning for every unset variable.
        :return: The interpolated string.
        :raises InterpolationError: If a ``?`` modifier finds its variable missing.
        """
        def replace(match):
            if match.group(1):
                return "$"

            var_name = match.group(2) or match.group(3)
            modifier = match.group(4)
            alt_value = match.group(5) or ""
            value = context.get(var_name)

            if modifier is None:
                if value is None:
                    if warn:
                        logger.warning(
                            "The %s variable is not set. Defaulting to a blank string.",
                            var_name,
                        )
                    return ""
                return value

            # ":x" modifiers treat an empty value like an unset one
            missing = not value if modifier.startswith(":") else value is None
            op = modifier[-1]

            if op == "-":
                return alt_value if missing else value
            if op == "+":
                return "" if missing else alt_value
            if missing:
                raise InterpolationError(
                    alt_value or f"Required variable {var_name} is missing a value"
                )
            return value

        return EnvironmentInterpolator.PATTERN.sub(replace, template)

    @classmethod
    def interpolate_tree(cls, node: Any, context: Dict[str, str], warn: bool = True) -> Any:
        """
        Recursively interpolates every string value of a loaded YAML document.
        Mapping keys are left untouched.
        """
        if isinstance(node, str):
            return cls.interpolate(node, context, warn)
        if isinstance(node, dict):
            return {k: cls.interpolate_tree(v, context, warn) for k, v in node.items()}
        if isinstance(node, list):
            return [cls.interpolate_tree(v, context, warn) for v in node]
        return node
