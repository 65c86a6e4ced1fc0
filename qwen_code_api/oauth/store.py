from __future__ import annotations

import asyncio
import json
import logging
import time
from pathlib import Path
from typing import Callable

from qwen_code_api.errors import REAUTH_GUIDANCE, ErrorKind, OAuthCredentialsError
from qwen_code_api.oauth.credentials import (
    QwenCredentials,
    merge_refreshed_credentials,
    parse_credentials,
)
from qwen_code_api.oauth.token_endpoint import QwenTokenEndpoint
from qwen_code_api.oauth.urls import normalize_resource_url
from qwen_code_api.runtime.single_flight import SingleFlight
from qwen_code_api.utils.persistence import JsonFileStore

logger = logging.getLogger("uvicorn.error")


def _now_ms() -> int:
    return int(time.time() * 1000)


class OAuthCredentialStore:
    """Owns the on-disk Qwen OAuth credential and its refresh lifecycle.

    The credential file is re-read on every validity check. Refreshes are
    coalesced: however many requests find the token stale at the same time,
    at most one refresh call reaches the token endpoint and every waiter gets
    its result.
    """

    def __init__(
        self,
        *,
        credentials_file: str | Path,
        token_refresh_buffer_ms: int,
        token_endpoint: QwenTokenEndpoint,
        clock_ms: Callable[[], int] = _now_ms,
    ) -> None:
        self._file_store = JsonFileStore(credentials_file)
        self._token_refresh_buffer_ms = token_refresh_buffer_ms
        self._token_endpoint = token_endpoint
        self._clock_ms = clock_ms
        self._refresh_flight: SingleFlight[QwenCredentials] = SingleFlight()

    @property
    def credentials_file_path(self) -> Path:
        return self._file_store.path

    @property
    def refresh_in_flight(self) -> bool:
        return self._refresh_flight.in_flight

    async def read_credentials(self) -> QwenCredentials:
        path = self._file_store.path
        try:
            content = await asyncio.to_thread(self._file_store.read_text)
        except FileNotFoundError as exc:
            raise OAuthCredentialsError(
                f"OAuth credentials not found: {path}. "
                "Run `qwen` and execute `/auth` first.",
                ErrorKind.CREDENTIALS_NOT_FOUND,
            ) from exc
        except (OSError, UnicodeDecodeError) as exc:
            raise OAuthCredentialsError(
                f"Failed to read OAuth credentials: {exc}",
                ErrorKind.CREDENTIALS_READ_FAILED,
            ) from exc

        try:
            raw = json.loads(content)
        except ValueError as exc:
            raise OAuthCredentialsError(
                f"Invalid OAuth credentials JSON: {exc}",
                ErrorKind.CREDENTIALS_PARSE_FAILED,
            ) from exc
        return parse_credentials(raw)

    async def get_valid_credentials(self, force_refresh: bool = False) -> QwenCredentials:
        current = await self.read_credentials()

        if not force_refresh and self.is_token_valid(current):
            return current

        refresh_token = current.refresh_token
        if not refresh_token:
            raise OAuthCredentialsError(
                f"OAuth refresh_token is missing. {REAUTH_GUIDANCE}",
                ErrorKind.MISSING_REFRESH_TOKEN,
            )

        if self._refresh_flight.in_flight:
            logger.info("oauth_refresh_joined force_refresh=%s", force_refresh)
        return await self._refresh_flight.run(
            lambda: self._refresh_credentials(current, refresh_token)
        )

    def get_upstream_base_url(
        self,
        credentials: QwenCredentials,
        override_base_url: str | None = None,
    ) -> str:
        if override_base_url is not None:
            return normalize_resource_url(override_base_url)
        return normalize_resource_url(credentials.resource_url)

    def is_token_valid(self, credentials: QwenCredentials) -> bool:
        if not credentials.access_token:
            return False
        if not credentials.expiry_date:
            return False
        return self._clock_ms() < credentials.expiry_date - self._token_refresh_buffer_ms

    async def _refresh_credentials(
        self,
        current: QwenCredentials,
        refresh_token: str,
    ) -> QwenCredentials:
        logger.info(
            "oauth_refresh_start token_url=%s path=%s",
            self._token_endpoint.token_url,
            self._file_store.path,
        )
        refreshed = await self._token_endpoint.refresh(refresh_token)
        next_credentials = merge_refreshed_credentials(
            current,
            refreshed,
            now_ms=self._clock_ms(),
        )
        await self.save_credentials(next_credentials)
        logger.info(
            "oauth_refresh_success expiry_date=%s resource_url=%s",
            next_credentials.expiry_date,
            next_credentials.resource_url,
        )
        return next_credentials

    async def save_credentials(self, credentials: QwenCredentials) -> None:
        await asyncio.to_thread(self._file_store.write, credentials.to_payload())
