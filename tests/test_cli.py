import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from conftest import build_fake_venv
from pocket_runtime.cli import app
from pocket_runtime.models import HealthResult

runner = CliRunner()


class StubVerifier:
    result = HealthResult(is_healthy=True, status_code=200, is_service_confirmed=True)
    seen: list[str] = []

    def __init__(self, *, timeout: float) -> None:
        self.timeout = timeout

    async def check(self, url: str) -> HealthResult:
        StubVerifier.seen.append(url)
        return StubVerifier.result


def test_help_lists_commands():
    result = runner.invoke(app, ["--help"])

    assert result.exit_code == 0
    for command in ("install", "serve", "health", "paths"):
        assert command in result.output


def test_version_flag():
    result = runner.invoke(app, ["--version"])

    assert result.exit_code == 0
    assert result.output.startswith("pocket-runtime ")


def test_paths_reports_layout(tmp_path: Path):
    venv = build_fake_venv(tmp_path / "pocket" / ".venv")

    result = runner.invoke(app, ["paths", "--venv", str(venv), "--json"])

    assert result.exit_code == 0
    payload = json.loads(result.output)
    assert payload["service_binary"] == str(venv / "bin" / "pocket-tts")
    assert payload["log_file"] == str(tmp_path / "pocket" / "logs" / "server.log")
    assert payload["installed"] is True


def test_paths_text_output_for_missing_runtime(tmp_path: Path):
    result = runner.invoke(app, ["paths", "--venv", str(tmp_path / ".venv")])

    assert result.exit_code == 0
    assert "installed: no" in result.output


def test_health_healthy(monkeypatch: pytest.MonkeyPatch):
    StubVerifier.seen = []
    StubVerifier.result = HealthResult(is_healthy=True, status_code=200, is_service_confirmed=True)
    monkeypatch.setattr("pocket_runtime.cli.HealthVerifier", StubVerifier)

    result = runner.invoke(app, ["health", "--host", "::1", "--port", "8123"])

    assert result.exit_code == 0
    assert result.output.strip() == "http://[::1]:8123: healthy"
    assert StubVerifier.seen == ["http://[::1]:8123"]


def test_health_collision_exits_non_zero(monkeypatch: pytest.MonkeyPatch):
    StubVerifier.result = HealthResult(
        is_healthy=False,
        status_code=200,
        message="Another service appears to be running on this port.",
    )
    monkeypatch.setattr("pocket_runtime.cli.HealthVerifier", StubVerifier)

    result = runner.invoke(app, ["health", "--url", "http://127.0.0.1:9000", "--json"])

    assert result.exit_code == 1
    payload = json.loads(result.output)
    assert payload["url"] == "http://127.0.0.1:9000"
    assert payload["is_service_confirmed"] is False


def test_install_without_uv_fails(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    empty = tmp_path / "empty-bin"
    empty.mkdir()
    monkeypatch.setenv("PATH", str(empty))
    monkeypatch.setattr("pocket_runtime.commands.uv_fallback_paths", lambda: [])

    result = runner.invoke(app, ["install", "--venv", str(tmp_path / ".venv")])

    assert result.exit_code == 1
    assert "uv was not found" in result.output


def test_invalid_config_file_is_reported(tmp_path: Path):
    config = tmp_path / "pocket-runtime.yml"
    config.write_text("pocket_runtime:\n  port: 0\n", encoding="utf-8")

    result = runner.invoke(app, ["install", "--config", str(config)])

    assert result.exit_code == 1
    assert "port must be an integer" in result.output
