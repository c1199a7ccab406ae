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
Parsers for Dockerfiles, extracting and validating instructions.
"""
import json
import re
from typing import List
from ..MODELS.dockerfile_ast import Instruction

KNOWN_INSTRUCTIONS = {
    "ADD", "ARG", "CMD", "COPY", "ENTRYPOINT", "ENV", "EXPOSE", "FROM",
    "HEALTHCHECK", "LABEL", "MAINTAINER", "ONBUILD", "RUN", "SHELL",
    "STOPSIGNAL", "USER", "VOLUME", "WORKDIR",
}

# Options accepted before the arguments, per instruction
KNOWN_FLAGS = {
    "FROM": {"platform"},
    "COPY": {"from", "chown", "chmod", "link", "parents", "exclude"},
    "ADD": {"chown", "chmod", "link", "checksum", "keep-git-dir", "exclude"},
    "RUN": {"mount", "network", "security"},
    "HEALTHCHECK": {"interval", "timeout", "start-period", "start-interval", "retries"},
}


class DockerfileParser:
    """
    Parser for Dockerfile instructions.
    """
    def parse(self, dockerfile_path: str) -> List[Instruction]:
        """
        Parses a Dockerfile from a file path.

        Args:
            dockerfile_path (str): Path to the Dockerfile.

        Returns:
            List[Instruction]: List of parsed instructions.
        """
        with open(dockerfile_path, 'r') as f:
            content = f.read()
        return self.parse_from_string(content)

    def parse_from_string(self, content: str) -> List[Instruction]:
        """
        Parses a Dockerfile from a string content.

        Args:
            content (str): Content of the Dockerfile.

        Returns:
            List[Instruction]: List of parsed instructions, in file order.
        """
        instructions = []
        pending = ""
        start_line = 0

        for lineno, line in enumerate(content.splitlines(), start=1):
            stripped = line.strip()
            # Comments are dropped even inside a continuation
            if not stripped or stripped.startswith('#'):
                continue
            if not pending:
                start_line = lineno
            if stripped.endswith('\\'):
                pending += stripped[:-1].rstrip() + ' '
                continue
            pending += stripped
            instructions.append(self._parse_instruction(pending, start_line))
            pending = ""

        if pending.strip():
            instructions.append(self._parse_instruction(pending.strip(), start_line))

        return instructions

    def validate(self, content: str) -> List[str]:
        """
        Checks a Dockerfile for structural mistakes.

        Returns:
            List[str]: Human readable problems, prefixed with their line number.
        """
        problems = []
        instructions = self.parse_from_string(content)
        if not instructions:
            return ["line 1: empty Dockerfile"]

        seen_from = False
        stages = 0
        for inst in instructions:
            if inst.instruction not in KNOWN_INSTRUCTIONS:
                problems.append(f"line {inst.line}: unknown instruction {inst.instruction}")
                continue
            for flag in inst.flags:
                if flag not in KNOWN_FLAGS[inst.instruction]:
                    problems.append(f"line {inst.line}: unknown flag --{flag} for {inst.instruction}")
            source = inst.flags.get("from", "")
            if source.isdigit() and int(source) >= stages:
                problems.append(f"line {inst.line}: {inst.instruction} --from={source} refers to a later stage")
            if inst.instruction == "FROM":
                seen_from = True
                stages += 1
            elif inst.instruction != "ARG" and not seen_from:
                problems.append(f"line {inst.line}: {inst.instruction} before FROM")
            if not inst.arguments or not any(a.strip() for a in inst.arguments):
                problems.append(f"line {inst.line}: {inst.instruction} has no arguments")
        return problems

    def _parse_instruction(self, text: str, line: int) -> Instruction:
        parts = text.split(None, 1)
        inst = parts[0].upper()
        args_str = parts[1].strip() if len(parts) > 1 else ""

        flags = {}
        if inst in KNOWN_FLAGS:
            while args_str.startswith("--"):
                token, _, args_str = args_str.partition(" ")
                name, _, value = token[2:].partition("=")
                flags[name] = value
                args_str = args_str.strip()

        # Exec form vs shell form
        if args_str.startswith('[') and args_str.endswith(']'):
            try:
                args = [str(a) for a in json.loads(args_str)]
            except json.JSONDecodeError:
                args = [args_str]
        elif inst in ("ENV", "LABEL") and '=' in args_str:
            # KEY=VALUE pairs, possibly several on one line
            args = re.findall(r'(\S+=(?:"[^"]*"|\'[^\']*\'|\S*))', args_str)
        elif inst == "ENV":
            args = args_str.split(None, 1)
        else:
            args = [args_str] if args_str else []

        return Instruction(instruction=inst, arguments=args, raw=text, line=line, flags=flags)
