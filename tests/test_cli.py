from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from qwen_code_api import cli
from qwen_code_api.main import app
from qwen_code_api.settings import get_settings
from tests.client_test_utils import write_credentials


@pytest.fixture(autouse=True)
def _isolate(monkeypatch: Any) -> None:
    for name in (
        "QWEN_CODE_API_KEY",
        "QWEN_CODE_API_UPSTREAM_BASE_URL",
        "QWEN_CODE_OAUTH_CREDENTIALS_PATH",
    ):
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    monkeypatch.setattr(app.state, "settings", None, raising=False)


def _capture_uvicorn(monkeypatch: Any) -> list[dict[str, Any]]:
    calls: list[dict[str, Any]] = []

    def fake_run(app_obj: Any, **kwargs: Any) -> None:
        calls.append({"app": app_obj, **kwargs})

    monkeypatch.setattr(cli.uvicorn, "run", fake_run)
    return calls


def test_cli_serves_after_successful_preflight(
    monkeypatch: Any, tmp_path: Path, capsys: Any
) -> None:
    path = write_credentials(tmp_path / "oauth_creds.json")
    calls = _capture_uvicorn(monkeypatch)

    exit_code = cli.main(
        [
            "--host",
            "0.0.0.0",
            "-p",
            "9001",
            "--api-key",
            "cli-key",
            "--credentials-file",
            str(path),
        ]
    )

    assert exit_code == 0
    assert calls == [{"app": app, "host": "0.0.0.0", "port": 9001}]
    assert app.state.settings.api_key == "cli-key"
    out = capsys.readouterr().out
    assert "http://0.0.0.0:9001" in out
    assert "Upstream base URL: https://portal.qwen.ai/v1" in out
    assert f"Credentials file: {path}" in out
    assert "API key: (provided via --api-key or env)" in out
    assert "cli-key" not in out


def test_cli_prints_generated_key(monkeypatch: Any, tmp_path: Path, capsys: Any) -> None:
    path = write_credentials(tmp_path / "oauth_creds.json")
    _capture_uvicorn(monkeypatch)

    assert cli.main(["--credentials-file", str(path)]) == 0

    generated_key = app.state.settings.api_key
    assert app.state.settings.api_key_generated is True
    assert f"API key: {generated_key}" in capsys.readouterr().out


def test_cli_upstream_override_wins(monkeypatch: Any, tmp_path: Path, capsys: Any) -> None:
    path = write_credentials(tmp_path / "oauth_creds.json")
    _capture_uvicorn(monkeypatch)

    exit_code = cli.main(
        [
            "--credentials-file",
            str(path),
            "--upstream-base-url",
            "http://localhost:9000",
        ]
    )

    assert exit_code == 0
    assert "Upstream base URL: http://localhost:9000/v1" in capsys.readouterr().out


def test_cli_fails_when_credentials_are_missing(
    monkeypatch: Any, tmp_path: Path, capsys: Any
) -> None:
    calls = _capture_uvicorn(monkeypatch)

    exit_code = cli.main(["--credentials-file", str(tmp_path / "absent.json")])

    assert exit_code == 1
    assert calls == []
    err = capsys.readouterr().err
    assert err.startswith("Failed to start qwen-code-api: OAuth credentials not found")


def test_cli_fails_on_invalid_configuration(
    monkeypatch: Any, tmp_path: Path, capsys: Any
) -> None:
    path = write_credentials(tmp_path / "oauth_creds.json")
    calls = _capture_uvicorn(monkeypatch)

    exit_code = cli.main(["--credentials-file", str(path), "--port", "0"])

    assert exit_code == 1
    assert calls == []
    assert "Failed to start qwen-code-api:" in capsys.readouterr().err
