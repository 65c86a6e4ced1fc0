from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any

from qwen_code_api.errors import ErrorKind, OAuthCredentialsError

DEFAULT_TOKEN_EXPIRES_IN_SECONDS = 3600

_STRING_FIELDS = ("access_token", "refresh_token", "token_type", "resource_url")


@dataclass(slots=True)
class QwenCredentials:
    access_token: str | None = None
    refresh_token: str | None = None
    token_type: str | None = None
    expiry_date: int | None = None
    resource_url: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expiry_date": self.expiry_date,
            "resource_url": self.resource_url,
        }


@dataclass(slots=True)
class TokenRefreshResult:
    access_token: str
    refresh_token: str | None = None
    token_type: str | None = None
    expires_in: float | None = None
    resource_url: str | None = None


def parse_credentials(raw: Any) -> QwenCredentials:
    if not isinstance(raw, dict):
        raise OAuthCredentialsError(
            "Invalid OAuth credentials JSON format.",
            ErrorKind.INVALID_CREDENTIALS_FORMAT,
        )

    fields: dict[str, Any] = {
        name: raw[name] for name in _STRING_FIELDS if isinstance(raw.get(name), str)
    }
    expiry_date = raw.get("expiry_date")
    if _is_number(expiry_date):
        fields["expiry_date"] = int(expiry_date)

    credentials = QwenCredentials(**fields)
    if not credentials.access_token and not credentials.refresh_token:
        raise OAuthCredentialsError(
            "OAuth credentials are missing both access_token and refresh_token.",
            ErrorKind.MISSING_CREDENTIALS,
        )
    return credentials


def merge_refreshed_credentials(
    current: QwenCredentials,
    refreshed: TokenRefreshResult,
    *,
    now_ms: int,
) -> QwenCredentials:
    expires_in = refreshed.expires_in
    if expires_in is None or expires_in <= 0:
        expires_in = DEFAULT_TOKEN_EXPIRES_IN_SECONDS
    return QwenCredentials(
        access_token=refreshed.access_token,
        refresh_token=(
            refreshed.refresh_token
            if refreshed.refresh_token is not None
            else current.refresh_token
        ),
        token_type=(
            refreshed.token_type
            if refreshed.token_type is not None
            else current.token_type
        ),
        expiry_date=now_ms + int(expires_in * 1000),
        resource_url=(
            refreshed.resource_url
            if refreshed.resource_url is not None
            else current.resource_url
        ),
    )


def _is_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)
