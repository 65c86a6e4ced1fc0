from __future__ import annotations

import json
import logging
import math
from typing import Any, Callable
from uuid import uuid4

import httpx

from qwen_code_api.errors import REAUTH_GUIDANCE, ErrorKind, OAuthCredentialsError
from qwen_code_api.oauth.credentials import TokenRefreshResult

QWEN_OAUTH_TOKEN_ENDPOINT = "https://chat.qwen.ai/api/v1/oauth2/token"
QWEN_OAUTH_CLIENT_ID = "f0304373b74a44d2b584a3fb70ca9e56"

logger = logging.getLogger("uvicorn.error")


class QwenTokenEndpoint:
    """Client for the Qwen OAuth ``refresh_token`` grant."""

    def __init__(
        self,
        *,
        client_getter: Callable[[], httpx.AsyncClient],
        token_url: str = QWEN_OAUTH_TOKEN_ENDPOINT,
        client_id: str = QWEN_OAUTH_CLIENT_ID,
    ) -> None:
        self._client_getter = client_getter
        self.token_url = token_url
        self.client_id = client_id

    async def refresh(self, refresh_token: str) -> TokenRefreshResult:
        request_id = str(uuid4())
        try:
            response = await self._client_getter().post(
                self.token_url,
                data={
                    "grant_type": "refresh_token",
                    "refresh_token": refresh_token,
                    "client_id": self.client_id,
                },
                headers={
                    "Content-Type": "application/x-www-form-urlencoded",
                    "Accept": "application/json",
                    "x-request-id": request_id,
                },
            )
        except httpx.RequestError as exc:
            error_message = str(exc).strip() or repr(exc)
            logger.warning(
                "oauth_refresh_error request_id=%s reason=request_error error_type=%s error=%s",
                request_id,
                exc.__class__.__name__,
                error_message,
            )
            raise OAuthCredentialsError(
                f"Failed to refresh OAuth token: {error_message}",
                ErrorKind.REFRESH_NETWORK_ERROR,
            ) from exc

        payload = response.text
        if not response.is_success:
            upstream_message = _extract_upstream_error_message(
                payload, response.reason_phrase
            )
            guidance = ""
            if response.status_code == 400:
                guidance = f" Qwen OAuth credentials may be expired. {REAUTH_GUIDANCE}"
            logger.warning(
                "oauth_refresh_error request_id=%s status=%d",
                request_id,
                response.status_code,
            )
            raise OAuthCredentialsError(
                f"OAuth refresh failed ({response.status_code}): "
                f"{upstream_message}.{guidance}",
                ErrorKind.REFRESH_FAILED,
                status_code=response.status_code,
            )

        try:
            body = json.loads(payload)
        except ValueError as exc:
            logger.warning(
                "oauth_refresh_error request_id=%s reason=invalid_json", request_id
            )
            raise OAuthCredentialsError(
                f"OAuth refresh returned invalid JSON: {exc}",
                ErrorKind.REFRESH_PARSE_FAILED,
            ) from exc

        raw_access = body.get("access_token") if isinstance(body, dict) else None
        if not isinstance(raw_access, str) or not raw_access:
            logger.warning(
                "oauth_refresh_error request_id=%s reason=missing_access_token",
                request_id,
            )
            raise OAuthCredentialsError(
                "OAuth refresh response is missing access_token.",
                ErrorKind.REFRESH_MISSING_ACCESS_TOKEN,
            )

        return TokenRefreshResult(
            access_token=raw_access,
            refresh_token=_optional_string(body.get("refresh_token")),
            token_type=_optional_string(body.get("token_type")),
            expires_in=_optional_seconds(body.get("expires_in")),
            resource_url=_optional_string(body.get("resource_url")),
        )


def _extract_upstream_error_message(payload: str, fallback: str) -> str:
    try:
        parsed = json.loads(payload)
    except ValueError:
        parsed = None
    if isinstance(parsed, dict):
        for key in ("error_description", "error"):
            value = parsed.get(key)
            if isinstance(value, str) and value:
                return value
    if payload.strip():
        return payload
    return fallback


def _optional_string(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def _optional_seconds(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    return float(value)
