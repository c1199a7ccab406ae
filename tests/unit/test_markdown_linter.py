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
Unit tests for the documentation code-block linter.
"""
import pytest
from homestack.LINTERS.markdown_linter import (
    LintIssue,
    MarkdownLinter,
    UnterminatedFenceError,
    extract_code_blocks,
)


def lint(language, body):
    text = f"# Guide\n\nSome prose.\n\n```{language}\n{body}\n```\n"
    return MarkdownLinter().lint_text(text, "guide.md")


class TestExtractCodeBlocks:
    """Fence detection."""

    def test_blocks_and_lines(self):
        text = "intro\n```yaml\na: 1\n```\n\n~~~bash\necho hi\n~~~\n"
        blocks = extract_code_blocks(text)
        assert [(b.language, b.line, b.content) for b in blocks] == [
            ("yaml", 3, "a: 1"),
            ("bash", 7, "echo hi"),
        ]

    def test_longer_fence_contains_shorter(self):
        text = "````markdown\n```yaml\nnot: closed\n````\n"
        blocks = extract_code_blocks(text)
        assert len(blocks) == 1
        assert blocks[0].language == "markdown"

    def test_info_string_variants(self):
        blocks = extract_code_blocks("```{.python}\nx = 1\n```\n```YAML title=x\na: 1\n```\n")
        assert [b.language for b in blocks] == ["python", "yaml"]

    def test_unterminated(self):
        with pytest.raises(UnterminatedFenceError) as exc_info:
            extract_code_blocks("text\n```bash\necho hi\n")
        assert exc_info.value.line == 2

    def test_unterminated_is_reported(self):
        issues = MarkdownLinter().lint_text("```bash\necho hi\n", "a.md")
        assert [str(i) for i in issues] == ["a.md:1: [text] unterminated code fence"]


class TestYaml:
    """YAML and compose blocks."""

    def test_valid(self):
        assert lint("yaml", "a: 1\nb: [1, 2]") == []

    def test_invalid_yaml(self):
        issues = lint("yaml", "a: 1\nb: [1, 2\nc: 3")
        assert len(issues) == 1
        assert issues[0].language == "yaml"
        assert "invalid YAML" in issues[0].message

    def test_valid_compose(self):
        body = (
            "services:\n"
            "  web:\n"
            "    image: nginx\n"
            "    ports: [\"8080:80\"]\n"
            "    environment:\n"
            "      PASSWORD: ${WEB_PASSWORD:?required}\n"
            "    depends_on: [db]\n"
            "  db:\n"
            "    image: postgres"
        )
        assert lint("yaml", body) == []

    def test_invalid_compose(self):
        body = "services:\n  web:\n    image: nginx\n    volumes: ['data:/data']"
        issues = lint("yml", body)
        assert len(issues) == 1
        assert "undefined volume data" in issues[0].message
        assert issues[0].line == 6

    def test_malformed_compose_value(self):
        body = "services:\n  web:\n    image: nginx\n    healthcheck:\n      test: [CMD, 'true']\n      retries: many"
        issues = lint("yaml", body)
        assert len(issues) == 1
        assert "healthcheck.retries must be an integer" in issues[0].message


class TestShell:
    """Shell and console blocks."""

    def test_valid_script(self):
        body = "\n".join([
            "set -e",
            "if [ -f .env ]; then",
            "  source .env",
            "fi",
            "for f in *.yml; do echo \"$f\"; done",
            "case \"$1\" in",
            "  start) homestack up -d ;;",
            "  *) echo usage ;;",
            "esac",
            "curl -fsSL https://example.com/install.sh \\",
            "  | sh  # don't pipe blindly",
            "cat > /etc/motd <<'EOF'",
            "it's a heredoc with an 'unbalanced quote",
            "EOF",
        ])
        assert lint("bash", body) == []

    def test_unbalanced_quote(self):
        issues = lint("sh", "echo hi\necho \"unterminated")
        assert len(issues) == 1
        assert issues[0].line == 7
        assert "shell syntax" in issues[0].message

    def test_multiline_quote_is_fine(self):
        assert lint("bash", "echo \"line one\nline two\"") == []

    def test_missing_fi(self):
        issues = lint("bash", "if true; then\n  echo hi")
        assert [i.message for i in issues] == ["'if' without matching 'fi'"]
        assert issues[0].line == 6

    def test_unexpected_done(self):
        issues = lint("bash", "echo hi\ndone")
        assert [i.message for i in issues] == ["unexpected 'done'"]

    def test_keywords_as_arguments(self):
        assert lint("bash", "echo if then fi done") == []

    def test_unclosed_heredoc(self):
        issues = lint("bash", "cat <<EOF\nhello")
        assert "never closed" in issues[0].message

    def test_console_only_checks_commands(self):
        body = "$ homestack ps\nSERVICE  STATUS\nweb      it's running\nuser@box:~$ echo ok"
        assert lint("console", body) == []

    def test_console_bad_command(self):
        issues = lint("console", "$ echo 'oops\noutput")
        assert len(issues) == 1


class TestOtherLanguages:
    """Dockerfile, JSON, nginx and Python blocks."""

    def test_dockerfile(self):
        assert lint("dockerfile", "FROM python:3.12\nRUN pip install flask\nCMD [\"flask\", \"run\"]") == []
        issues = lint("Dockerfile", "FROM alpine\nCOPYY a b")
        assert [(i.line, i.message) for i in issues] == [(7, "unknown instruction COPYY")]

    def test_json(self):
        assert lint("json", '{"a": [1, 2]}') == []
        issues = lint("json", '{\n  "a": 1,\n}')
        assert issues[0].line == 8
        assert "invalid JSON" in issues[0].message

    def test_nginx(self):
        good = "\n".join([
            "server {",
            "    listen 80;  # http",
            "    location /ws {",
            "        proxy_pass http://127.0.0.1:8000;",
            "        proxy_set_header Upgrade $http_upgrade;",
            "        proxy_set_header Connection \"upgrade\";",
            "        return 200 '{\"ok\": true}';",
            "    }",
            "}",
        ])
        assert lint("nginx", good) == []

    def test_nginx_missing_semicolon_and_brace(self):
        issues = lint("nginx", "server {\n    listen 80\n")
        messages = [i.message for i in issues]
        assert "directive is not terminated by ';'" in messages
        assert "1 unclosed block(s)" in messages

    def test_python(self):
        assert lint("python", "def f():\n    return 1") == []
        issues = lint("python", "def f(:\n    pass")
        assert issues[0].line == 6
        assert "invalid Python" in issues[0].message

    def test_unknown_language_is_ignored(self):
        assert lint("text", "{{{ whatever") == []
        assert lint("", "{{{ whatever") == []


class TestLintPaths:
    """Walking files and directories."""

    def test_directory(self, tmp_path):
        docs = tmp_path / "docs"
        (docs / "nested").mkdir(parents=True)
        (docs / "ok.md").write_text("```json\n{}\n```\n")
        (docs / "nested" / "bad.md").write_text("```json\n{\n```\n")
        (docs / "notes.txt").write_text("```json\n{\n```\n")
        (docs / ".hidden").mkdir()
        (docs / ".hidden" / "bad.md").write_text("```json\n{\n```\n")

        issues = MarkdownLinter().lint_paths([str(docs)])
        assert len(issues) == 1
        assert issues[0].path == str(docs / "nested" / "bad.md")
        assert isinstance(issues[0], LintIssue)

    def test_file_that_is_not_utf8(self, tmp_path):
        guide = tmp_path / "guide.md"
        guide.write_bytes(b"# Guide\n\ncaf\xe9\n```bash\necho hi\n```\n")
        issues = MarkdownLinter().lint_paths([str(guide)])
        assert [str(i) for i in issues] == [f"{guide}:3: [text] file is not valid UTF-8"]

    def test_explicit_file(self, tmp_path):
        readme = tmp_path / "README.txt"
        readme.write_text("```python\nprint(\n```\n")
        assert len(MarkdownLinter().lint_paths([str(readme)])) == 1
