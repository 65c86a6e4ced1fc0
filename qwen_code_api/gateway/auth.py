from __future__ import annotations

import re
import secrets

from fastapi import Request, status
from fastapi.responses import JSONResponse

from qwen_code_api.errors import ErrorKind, openai_error_response

_BEARER_PATTERN = re.compile(r"^Bearer\s+(.+)$", re.IGNORECASE)


def extract_bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    match = _BEARER_PATTERN.match(authorization.strip())
    if match is None:
        return None
    return match.group(1).strip() or None


class Authenticator:
    """Checks the local API key every client must present as a Bearer token."""

    def __init__(self, api_key: str):
        if not api_key:
            raise ValueError("api_key must not be empty")
        self.api_key = api_key

    def is_authorized(self, authorization: str | None) -> bool:
        token = extract_bearer_token(authorization)
        if token is None:
            return False
        return secrets.compare_digest(token.encode("utf-8"), self.api_key.encode("utf-8"))

    async def authenticate_request(self, request: Request) -> JSONResponse | None:
        if self.is_authorized(request.headers.get("authorization")):
            return None
        return _unauthorized("Invalid or missing API key.")


def _unauthorized(message: str) -> JSONResponse:
    return openai_error_response(
        status.HTTP_401_UNAUTHORIZED,
        message,
        error_type="authentication_error",
        code=ErrorKind.INVALID_API_KEY.value,
        headers={"WWW-Authenticate": "Bearer"},
    )
