from __future__ import annotations

from enum import Enum
from typing import Any

from fastapi import status
from fastapi.responses import JSONResponse

REAUTH_GUIDANCE = "Run `qwen` and execute `/auth` again."


class ErrorKind(str, Enum):
    CREDENTIALS_NOT_FOUND = "credentials_not_found"
    CREDENTIALS_READ_FAILED = "credentials_read_failed"
    CREDENTIALS_PARSE_FAILED = "credentials_parse_failed"
    INVALID_CREDENTIALS_FORMAT = "invalid_credentials_format"
    MISSING_CREDENTIALS = "missing_credentials"
    MISSING_REFRESH_TOKEN = "missing_refresh_token"
    MISSING_ACCESS_TOKEN = "missing_access_token"
    REFRESH_NETWORK_ERROR = "refresh_network_error"
    REFRESH_FAILED = "refresh_failed"
    REFRESH_PARSE_FAILED = "refresh_parse_failed"
    REFRESH_MISSING_ACCESS_TOKEN = "refresh_missing_access_token"
    INVALID_PROXY_PATH = "invalid_proxy_path"
    REQUEST_BODY_TOO_LARGE = "request_body_too_large"
    UPSTREAM_TIMEOUT = "upstream_timeout"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    INVALID_API_KEY = "invalid_api_key"
    INTERNAL_ERROR = "internal_error"


_KIND_STATUS: dict[ErrorKind, int] = {
    ErrorKind.REFRESH_NETWORK_ERROR: status.HTTP_502_BAD_GATEWAY,
    ErrorKind.REFRESH_PARSE_FAILED: status.HTTP_502_BAD_GATEWAY,
    ErrorKind.REFRESH_MISSING_ACCESS_TOKEN: status.HTTP_502_BAD_GATEWAY,
    ErrorKind.INVALID_PROXY_PATH: status.HTTP_500_INTERNAL_SERVER_ERROR,
    ErrorKind.REQUEST_BODY_TOO_LARGE: status.HTTP_413_CONTENT_TOO_LARGE,
    ErrorKind.UPSTREAM_TIMEOUT: status.HTTP_504_GATEWAY_TIMEOUT,
    ErrorKind.UPSTREAM_UNAVAILABLE: status.HTTP_502_BAD_GATEWAY,
    ErrorKind.INTERNAL_ERROR: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


class GatewayError(Exception):
    """Base for every failure the gateway classifies and reports to clients."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.status_code = status_code

    @property
    def code(self) -> str:
        return self.kind.value

    def http_status(self) -> int:
        if self.status_code is not None:
            return self.status_code
        return _KIND_STATUS.get(self.kind, status.HTTP_401_UNAUTHORIZED)

    def error_type(self) -> str:
        http_status = self.http_status()
        if http_status == status.HTTP_401_UNAUTHORIZED:
            return "authentication_error"
        if http_status == status.HTTP_413_CONTENT_TOO_LARGE:
            return "invalid_request_error"
        return "api_error"

    def to_response(self) -> JSONResponse:
        return openai_error_response(
            self.http_status(),
            self.message,
            error_type=self.error_type(),
            code=self.code,
        )


class OAuthCredentialsError(GatewayError):
    """Raised for credential file, validity and token refresh failures.

    ``status_code`` is only set for refresh failures that carry the token
    endpoint's HTTP status.
    """

    def http_status(self) -> int:
        if self.status_code is not None and self.status_code >= 500:
            return status.HTTP_502_BAD_GATEWAY
        return super().http_status()


class ProxyRequestError(GatewayError):
    """Raised while building or performing the outbound request."""


def openai_error_response(
    status_code: int,
    message: str,
    *,
    error_type: str = "invalid_request_error",
    code: str | None = None,
    param: str | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        headers=headers,
        content=build_error_envelope(
            message,
            error_type=error_type,
            code=code,
            param=param,
        ),
    )


def build_error_envelope(
    message: str,
    *,
    error_type: str = "invalid_request_error",
    code: str | None = None,
    param: str | None = None,
) -> dict[str, Any]:
    return {
        "error": {
            "message": message,
            "type": error_type,
            "param": param,
            "code": code,
        },
    }


def internal_error_response(exc: BaseException) -> JSONResponse:
    return openai_error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        f"Unexpected server error: {exc}",
        error_type="api_error",
        code=ErrorKind.INTERNAL_ERROR.value,
    )
