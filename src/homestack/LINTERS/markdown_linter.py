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
Linter checking that the code blocks of Markdown documents are syntactically valid.
"""
import ast
import json
import os
import re
import shlex
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional

import yaml

from ..exceptions import ConfigError, InterpolationError
from ..PARSERS.compose_parser import ComposeParser
from ..PARSERS.dockerfile_parser import DockerfileParser

FENCE = re.compile(r'^(?P<indent>\s{0,3})(?P<fence>`{3,}|~{3,})\s*(?P<info>[^`\s]*)')
PROMPT = re.compile(r"^[\w@.~:/-]*\$\s")
HEREDOC = re.compile(r'(?<!<)<<-?(?!<)\s*([\'"]?)([A-Za-z_][A-Za-z0-9_]*)\1')
SHELL_PAIRS = {"if": "fi", "case": "esac", "do": "done"}
KEYWORDS = set(SHELL_PAIRS) | set(SHELL_PAIRS.values()) | {"then", "else", "elif", "while", "until", "!"}
SEPARATORS = {';', '&&', '||', '|', '&', '{', '(', ')', ';;'}


@dataclass
class CodeBlock:
    language: str
    line: int  # first content line, 1-based
    content: str


@dataclass
class LintIssue:
    path: str
    line: int
    language: str
    message: str

    def __str__(self) -> str:
        return f"{self.path}:{self.line}: [{self.language or 'text'}] {self.message}"


class UnterminatedFenceError(ValueError):
    def __init__(self, line: int):
        super().__init__(f"line {line}: unterminated code fence")
        self.line = line


def extract_code_blocks(text: str) -> List[CodeBlock]:
    """
    Returns the fenced code blocks of a Markdown document.

    :raises UnterminatedFenceError: If a fence is never closed.
    """
    blocks = []
    lines = text.splitlines()
    i = 0
    while i < len(lines):
        match = FENCE.match(lines[i])
        if not match:
            i += 1
            continue
        fence = match.group('fence')
        language = match.group('info').lower().lstrip('{.').rstrip('}')
        start = i + 1
        j = start
        while j < len(lines):
            stripped = lines[j].strip()
            if stripped.startswith(fence[0] * len(fence)) and not stripped.strip(fence[0]):
                break
            j += 1
        if j == len(lines):
            raise UnterminatedFenceError(i + 1)
        blocks.append(CodeBlock(language=language, line=start + 1, content="\n".join(lines[start:j])))
        i = j + 1
    return blocks


class MarkdownLinter:
    """
    Validates YAML, compose, Dockerfile, shell, JSON, nginx and Python code blocks.
    Blocks in other languages are ignored.
    """

    def __init__(self):
        self.dockerfile_parser = DockerfileParser()
        self.compose_parser = ComposeParser(context={}, warn_unset=False)
        self.checkers: Dict[str, Callable[[str], List[tuple]]] = {
            "yaml": self._check_yaml,
            "yml": self._check_yaml,
            "dockerfile": self._check_dockerfile,
            "docker": self._check_dockerfile,
            "sh": self._check_shell,
            "bash": self._check_shell,
            "shell": self._check_shell,
            "zsh": self._check_shell,
            "console": self._check_console,
            "shell-session": self._check_console,
            "json": self._check_json,
            "nginx": self._check_nginx,
            "python": self._check_python,
            "py": self._check_python,
        }

    def lint_text(self, text: str, path: str = "<text>") -> List[LintIssue]:
        try:
            blocks = extract_code_blocks(text)
        except UnterminatedFenceError as e:
            return [LintIssue(path, e.line, "", "unterminated code fence")]

        issues = []
        for block in blocks:
            checker = self.checkers.get(block.language)
            if checker is None:
                continue
            for offset, message in checker(block.content):
                issues.append(LintIssue(path, block.line + offset, block.language, message))
        return issues

    def lint_file(self, path: str) -> List[LintIssue]:
        try:
            with open(path, 'rb') as f:
                text = f.read().decode('utf-8')
        except UnicodeDecodeError as e:
            line = e.object[:e.start].count(b'\n') + 1
            return [LintIssue(path, line, "", "file is not valid UTF-8")]
        except OSError as e:
            return [LintIssue(path, 1, "", f"cannot read file: {e.strerror or e}")]
        return self.lint_text(text, path)

    def lint_paths(self, paths: Iterable[str]) -> List[LintIssue]:
        """
        Lints files and every ``*.md`` file below directories.
        """
        issues = []
        for path in paths:
            if os.path.isdir(path):
                for root, dirs, files in os.walk(path):
                    dirs[:] = sorted(d for d in dirs if not d.startswith('.'))
                    for name in sorted(files):
                        if name.lower().endswith(('.md', '.markdown')):
                            issues.extend(self.lint_file(os.path.join(root, name)))
            else:
                issues.extend(self.lint_file(path))
        return issues

    # Checkers return (line offset within the block, message) pairs

    def _check_yaml(self, content: str) -> List[tuple]:
        try:
            documents = list(yaml.safe_load_all(content))
        except yaml.YAMLError as e:
            mark = getattr(e, 'problem_mark', None)
            problem = getattr(e, 'problem', None) or str(e)
            return [(mark.line if mark else 0, f"invalid YAML: {problem}")]

        for doc in documents:
            if isinstance(doc, dict) and isinstance(doc.get('services'), dict):
                try:
                    self.compose_parser.parse_from_string(yaml.safe_dump(doc))
                except InterpolationError:
                    # Required variables are supplied at deploy time
                    continue
                except ConfigError as e:
                    return [(0, f"invalid compose file: {e}")]
        return []

    def _check_dockerfile(self, content: str) -> List[tuple]:
        problems = []
        for problem in self.dockerfile_parser.validate(content):
            match = re.match(r'line (\d+): (.*)', problem)
            if match:
                problems.append((int(match.group(1)) - 1, match.group(2)))
            else:
                problems.append((0, problem))
        return problems

    def _check_console(self, content: str) -> List[tuple]:
        # Only prompt lines are commands, the rest is output
        commands = []
        heredoc = None
        for line in content.splitlines():
            if heredoc is not None:
                commands.append(line)
                if line.strip() == heredoc:
                    heredoc = None
            elif PROMPT.match(line):
                commands.append(PROMPT.sub('', line, count=1))
                match = HEREDOC.search(commands[-1])
                heredoc = match.group(2) if match else None
            elif commands and commands[-1].endswith('\\'):
                commands.append(line)
            else:
                commands.append('')
        return self._check_shell("\n".join(commands))

    def _check_shell(self, content: str) -> List[tuple]:
        problems = []
        stack: List[tuple] = []
        heredoc: Optional[str] = None
        pending = ""
        pending_start = 0
        pending_error = "unexpected end of input"

        for idx, line in enumerate(content.splitlines()):
            if heredoc is not None:
                if line.strip() == heredoc:
                    heredoc = None
                continue
            if not pending:
                pending_start = idx
            if line.rstrip().endswith('\\'):
                pending += line.rstrip()[:-1] + ' '
                continue
            logical = pending + line
            pending = ""

            try:
                lexer = shlex.shlex(logical, posix=True, punctuation_chars=True)
                lexer.whitespace_split = True
                lexer.commenters = '#'
                tokens = list(lexer)
            except ValueError as e:
                # An open quote may continue on the next line
                pending = logical + '\n'
                pending_error = str(e)
                continue

            match = HEREDOC.search(logical)
            if match:
                heredoc = match.group(2)
            self._track_keywords(tokens, pending_start, stack, problems)

        if pending:
            problems.append((pending_start, f"shell syntax: {pending_error.lower()}"))
        if heredoc is not None:
            problems.append((0, f"here-document delimited by {heredoc} is never closed"))
        for keyword, line in stack:
            problems.append((line, f"'{keyword}' without matching '{SHELL_PAIRS[keyword]}'"))
        return problems

    def _track_keywords(self, tokens: List[str], line: int, stack: List[tuple], problems: List[tuple]):
        # Keywords only count in command position
        command_start = True
        for token in tokens:
            keyword = command_start and token in KEYWORDS
            if keyword and token in SHELL_PAIRS:
                stack.append((token, line))
            elif keyword and token in SHELL_PAIRS.values():
                opener = next(k for k, v in SHELL_PAIRS.items() if v == token)
                if stack and stack[-1][0] == opener:
                    stack.pop()
                else:
                    problems.append((line, f"unexpected '{token}'"))
            command_start = keyword or token in SEPARATORS

    def _check_json(self, content: str) -> List[tuple]:
        try:
            json.loads(content)
        except json.JSONDecodeError as e:
            return [(e.lineno - 1, f"invalid JSON: {e.msg}")]
        return []

    def _check_nginx(self, content: str) -> List[tuple]:
        problems = []
        depth = 0
        for idx, raw in enumerate(content.splitlines()):
            line = self._nginx_code(raw).strip()
            if not line:
                continue
            depth += line.count('{') - line.count('}')
            if depth < 0:
                problems.append((idx, "unexpected '}'"))
                depth = 0
            if not line.endswith((';', '{', '}')):
                problems.append((idx, "directive is not terminated by ';'"))
        if depth > 0:
            problems.append((0, f"{depth} unclosed block(s)"))
        return problems

    def _nginx_code(self, line: str) -> str:
        """
        Returns the line with its comment and the contents of quoted strings removed.
        """
        code = []
        quote = None
        for ch in line:
            if quote:
                if ch == quote:
                    quote = None
                    code.append(ch)
            elif ch in ('"', "'"):
                quote = ch
                code.append(ch)
            elif ch == '#':
                break
            else:
                code.append(ch)
        return "".join(code)

    def _check_python(self, content: str) -> List[tuple]:
        try:
            ast.parse(content)
        except SyntaxError as e:
            return [((e.lineno or 1) - 1, f"invalid Python: {e.msg}")]
        return []
