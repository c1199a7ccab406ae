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
Unit tests for LogAggregator.
"""
import pytest
from homestack.MANAGERS.log_aggregator import LogAggregator


@pytest.fixture
def log_dir(tmp_path):
    (tmp_path / "web.log").write_text("".join(f"web line {i}\n" for i in range(5)))
    (tmp_path / "db.log").write_text("db ready\n")
    return tmp_path


class TestLogAggregator:
    """Tests for LogAggregator."""

    def test_read_logs_prefixes_lines(self, log_dir):
        lines = LogAggregator(str(log_dir), color=False).read_logs(["db", "web"])
        assert lines[0] == "db  | db ready"
        assert lines[1] == "web | web line 0"
        assert len(lines) == 6

    def test_tail(self, log_dir):
        lines = LogAggregator(str(log_dir), color=False).read_logs(["web"], tail=2)
        assert lines == ["web | web line 3", "web | web line 4"]

    def test_missing_log_is_skipped(self, log_dir):
        lines = LogAggregator(str(log_dir), color=False).read_logs(["cache", "db"])
        assert lines == ["db    | db ready"]

    def test_colored_prefix(self, log_dir):
        aggregator = LogAggregator(str(log_dir))
        assert "\x1b[" in aggregator.prefix("web", ["db", "web"])
        assert aggregator.prefix("db", ["db", "web"]) != aggregator.prefix("web", ["db", "web"])

    def test_tail_logs_without_follow(self, log_dir, capsys):
        LogAggregator(str(log_dir), color=False).tail_logs(["db"], follow=False)
        assert capsys.readouterr().out == "db | db ready\n"
