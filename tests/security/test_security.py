import os
import stat
import sys

import pytest

from homestack.exceptions import ConfigError
from homestack.MANAGERS.secret_manager import SecretManager
from homestack.MODELS.orchestration_config import SecretDefinition
from homestack.MODELS.service_definition import SecretReference, ServiceDefinition
from homestack.PARSERS.compose_parser import ComposeParser
from homestack.PARSERS.dockerfile_parser import DockerfileParser
from homestack.RUNNERS.process_runner import ProcessRunner


def test_command_injection_attempt(tmp_path):
    """
    Shell operators in a command are passed as literal arguments.
    """
    injected_file = tmp_path / "injected.txt"
    runner = ProcessRunner(name="test_injection")
    runner.start(
        command=["echo", "hello", ";", "touch", str(injected_file)],
        env={"PATH": os.environ.get("PATH", "/usr/bin:/bin")},
        working_dir=str(tmp_path),
    )
    runner.wait(timeout=5)
    runner.stop()

    assert not injected_file.exists(), "Command injection successful! Security vulnerability found."


def test_interpolated_values_are_not_evaluated(tmp_path):
    marker = tmp_path / "pwned"
    parser = ComposeParser(context={"PAYLOAD": f"$(touch {marker})"})
    config = parser.parse_from_string(
        "services:\n  app:\n    command: [\"echo\", \"${PAYLOAD}\"]\n", base_dir=str(tmp_path)
    )
    assert config.services["app"].cmd == ["echo", f"$(touch {marker})"]

    runner = ProcessRunner(name="app")
    runner.start(config.services["app"].cmd, env={"PATH": os.environ.get("PATH", "")})
    runner.wait(timeout=5)
    assert not marker.exists()


@pytest.mark.parametrize("name", ["../etc", "a/b", ".hidden", "with space"])
def test_service_names_cannot_escape_state_dir(name):
    with pytest.raises(ConfigError, match="Invalid service name"):
        ComposeParser(context={}).parse_from_string(f"services:\n  '{name}':\n    image: nginx\n")


def test_secret_target_stays_in_service_dir(tmp_path, monkeypatch):
    monkeypatch.setenv("API_TOKEN", "s3cret")
    manager = SecretManager(str(tmp_path / "secrets"), {
        "token": SecretDefinition(name="token", environment="API_TOKEN"),
    })
    svc = ServiceDefinition(
        name="api",
        cmd=[sys.executable],
        secrets=[SecretReference(source="token", target="../../../outside")],
    )
    directory = manager.materialize(svc)
    written = os.path.join(directory, "outside")
    assert os.path.isfile(written)
    assert not (tmp_path / "outside").exists()
    assert stat.S_IMODE(os.stat(written).st_mode) == 0o400
    assert stat.S_IMODE(os.stat(directory).st_mode) & 0o077 == 0

    svc.secrets[0].target = ".."
    with pytest.raises(ConfigError, match="invalid secret target"):
        manager.materialize(svc)


def test_dockerfile_parse_missing_file():
    parser = DockerfileParser()
    with pytest.raises(FileNotFoundError):
        parser.parse("non_existent_file_12345.txt")
