from __future__ import annotations

import asyncio
from typing import Callable

import httpx
import pytest

from qwen_code_api.errors import ErrorKind, OAuthCredentialsError
from qwen_code_api.oauth.credentials import TokenRefreshResult
from qwen_code_api.oauth.token_endpoint import (
    QWEN_OAUTH_CLIENT_ID,
    QWEN_OAUTH_TOKEN_ENDPOINT,
)
from tests.client_test_utils import build_token_endpoint


def _refresh(handler: Callable[[httpx.Request], httpx.Response]) -> TokenRefreshResult:
    async def scenario() -> TokenRefreshResult:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await build_token_endpoint(client).refresh("refresh-1")

    return asyncio.run(scenario())


def _refresh_error(
    handler: Callable[[httpx.Request], httpx.Response],
) -> OAuthCredentialsError:
    with pytest.raises(OAuthCredentialsError) as exc_info:
        _refresh(handler)
    return exc_info.value


def test_refresh_posts_form_encoded_grant() -> None:
    captured: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(
            200,
            json={
                "access_token": "access-2",
                "refresh_token": "refresh-2",
                "token_type": "Bearer",
                "expires_in": 7200,
                "resource_url": "portal.qwen.ai",
            },
        )

    result = _refresh(handler)

    request = captured[0]
    assert request.method == "POST"
    assert str(request.url) == QWEN_OAUTH_TOKEN_ENDPOINT
    assert request.headers["content-type"] == "application/x-www-form-urlencoded"
    assert request.headers["accept"] == "application/json"
    assert request.headers["x-request-id"]
    assert request.content.decode("utf-8") == (
        "grant_type=refresh_token&refresh_token=refresh-1"
        f"&client_id={QWEN_OAUTH_CLIENT_ID}"
    )
    assert result == TokenRefreshResult(
        access_token="access-2",
        refresh_token="refresh-2",
        token_type="Bearer",
        expires_in=7200.0,
        resource_url="portal.qwen.ai",
    )


def test_refresh_network_failure_is_classified() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    error = _refresh_error(handler)
    assert error.kind is ErrorKind.REFRESH_NETWORK_ERROR
    assert error.http_status() == 502
    assert "connection refused" in error.message


def test_refresh_bad_request_adds_reauth_guidance() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            400,
            json={"error": "invalid_grant", "error_description": "Refresh token expired"},
        )

    error = _refresh_error(handler)
    assert error.kind is ErrorKind.REFRESH_FAILED
    assert error.http_status() == 400
    assert error.error_type() == "api_error"
    assert "OAuth refresh failed (400): Refresh token expired." in error.message
    assert "/auth" in error.message


def test_refresh_unauthorized_is_an_authentication_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": "invalid_client"})

    error = _refresh_error(handler)
    assert error.http_status() == 401
    assert error.error_type() == "authentication_error"
    assert "invalid_client" in error.message


def test_refresh_server_error_is_coerced_to_bad_gateway() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="")

    error = _refresh_error(handler)
    assert error.kind is ErrorKind.REFRESH_FAILED
    assert error.status_code == 500
    assert error.http_status() == 502
    assert "Internal Server Error" in error.message


def test_refresh_invalid_json_is_a_parse_failure() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>")

    error = _refresh_error(handler)
    assert error.kind is ErrorKind.REFRESH_PARSE_FAILED
    assert error.http_status() == 502
    assert error.error_type() == "api_error"


@pytest.mark.parametrize(
    "payload",
    [
        {"token_type": "Bearer"},
        {"access_token": ""},
        {"access_token": 12},
        ["access_token"],
    ],
)
def test_refresh_requires_access_token(payload: object) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=payload)

    error = _refresh_error(handler)
    assert error.kind is ErrorKind.REFRESH_MISSING_ACCESS_TOKEN
    assert error.http_status() == 502


def test_refresh_ignores_invalid_optional_fields() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={"access_token": "access-2", "expires_in": "3600", "token_type": 1},
        )

    result = _refresh(handler)
    assert result.expires_in is None
    assert result.token_type is None
