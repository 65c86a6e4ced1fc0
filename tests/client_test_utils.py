from __future__ import annotations

import asyncio
import json
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator

import httpx
from fastapi.testclient import TestClient

from qwen_code_api.main import app
from qwen_code_api.oauth.token_endpoint import QwenTokenEndpoint
from qwen_code_api.settings import get_settings

TEST_API_KEY = "local-test-key"
AUTH_HEADERS = {"Authorization": f"Bearer {TEST_API_KEY}"}
TOKEN_HOST = "chat.qwen.ai"
FAR_FUTURE_MS = 4_102_444_800_000


def write_credentials(path: Path, **fields: Any) -> Path:
    payload = {
        "access_token": "access-1",
        "refresh_token": "refresh-1",
        "token_type": "Bearer",
        "expiry_date": FAR_FUTURE_MS,
        "resource_url": "portal.qwen.ai",
    }
    payload.update(fields)
    payload = {key: value for key, value in payload.items() if value is not None}
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


def read_credentials(path: Path) -> dict[str, Any]:
    return json.loads(path.read_text(encoding="utf-8"))


def token_response(
    access_token: str = "access-2",
    *,
    expires_in: int | None = 3600,
    **extra: Any,
) -> httpx.Response:
    payload: dict[str, Any] = {"access_token": access_token, "token_type": "Bearer"}
    if expires_in is not None:
        payload["expires_in"] = expires_in
    payload.update(extra)
    return httpx.Response(200, json=payload)


def build_token_endpoint(client: httpx.AsyncClient) -> QwenTokenEndpoint:
    return QwenTokenEndpoint(client_getter=lambda: client)


def build_test_client(monkeypatch: Any, credentials_path: Path, **env: Any) -> TestClient:
    monkeypatch.setenv("QWEN_CODE_API_KEY", TEST_API_KEY)
    monkeypatch.setenv("QWEN_CODE_OAUTH_CREDENTIALS_PATH", str(credentials_path))
    monkeypatch.delenv("QWEN_CODE_API_UPSTREAM_BASE_URL", raising=False)
    for key, value in env.items():
        monkeypatch.setenv(key, str(value))
    get_settings.cache_clear()
    app.state.settings = None
    return TestClient(app)


@contextmanager
def mock_upstream(
    handler: Callable[[httpx.Request], Any],
) -> Iterator[httpx.AsyncClient]:
    """Route the running app's outbound calls through ``handler``."""
    mock_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    lifespan_client = app.state.http_client
    app.state.http_client = mock_client
    try:
        yield mock_client
    finally:
        app.state.http_client = lifespan_client
        asyncio.run(mock_client.aclose())
