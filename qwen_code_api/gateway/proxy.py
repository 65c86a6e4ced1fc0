from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Iterable
from uuid import uuid4

import httpx
from fastapi import Request, status
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from qwen_code_api.errors import (
    REAUTH_GUIDANCE,
    ErrorKind,
    OAuthCredentialsError,
    ProxyRequestError,
)
from qwen_code_api.gateway.streaming import UpstreamBodyRelay, discard_response
from qwen_code_api.oauth.store import OAuthCredentialStore
from qwen_code_api.oauth.urls import build_upstream_url

MAX_REQUEST_BODY_BYTES = 20 * 1024 * 1024
DEFAULT_USER_AGENT = "qwen-code-api/0.1.0"

HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
        "proxy-connection",
    }
)
REDERIVED_REQUEST_HEADERS = frozenset({"host", "authorization", "content-length"})
# Stale once httpx has decoded a body it loaded eagerly.
DECODED_BODY_HEADERS = frozenset({"content-encoding", "content-length"})
BODYLESS_METHODS = frozenset({"GET", "HEAD"})

logger = logging.getLogger("uvicorn.error")


def _request_error_details(exc: httpx.RequestError) -> dict[str, Any]:
    error_repr = repr(exc)
    return {
        "error": str(exc).strip() or error_repr,
        "error_type": exc.__class__.__name__.strip() or "RequestError",
        "is_timeout": isinstance(exc, httpx.TimeoutException),
    }


def build_upstream_headers(
    incoming_headers: Iterable[tuple[str, str]],
    access_token: str,
) -> list[tuple[str, str]]:
    headers: list[tuple[str, str]] = []
    has_user_agent = False
    for name, value in incoming_headers:
        lower = name.lower()
        if lower in HOP_BY_HOP_HEADERS or lower in REDERIVED_REQUEST_HEADERS:
            continue
        if lower == "user-agent":
            has_user_agent = True
        headers.append((name, value))

    headers.append(("Authorization", f"Bearer {access_token}"))
    if not has_user_agent:
        headers.append(("User-Agent", DEFAULT_USER_AGENT))
    return headers


def filter_response_headers(
    headers: httpx.Headers,
    *,
    body_decoded: bool = False,
) -> list[tuple[str, str]]:
    excluded = HOP_BY_HOP_HEADERS
    if body_decoded:
        excluded = excluded | DECODED_BODY_HEADERS
    return [
        (name, value)
        for name, value in headers.multi_items()
        if name.lower() not in excluded
    ]


def may_have_body(method: str) -> bool:
    return method.upper() not in BODYLESS_METHODS


async def read_request_body(
    request: Request,
    *,
    limit: int = MAX_REQUEST_BODY_BYTES,
) -> bytes | None:
    if not may_have_body(request.method):
        return None

    too_large = ProxyRequestError(
        f"Request body is too large (limit: {limit} bytes).",
        ErrorKind.REQUEST_BODY_TOO_LARGE,
        status_code=status.HTTP_413_CONTENT_TOO_LARGE,
    )
    declared_length = request.headers.get("content-length", "").strip()
    if declared_length.isdigit() and int(declared_length) > limit:
        raise too_large

    chunks: list[bytes] = []
    total_size = 0
    async for chunk in request.stream():
        total_size += len(chunk)
        if total_size > limit:
            raise too_large
        if chunk:
            chunks.append(chunk)

    if not chunks:
        return None
    return b"".join(chunks)


class UpstreamForwarder:
    """Forwards one inbound ``/v1`` request to the Qwen upstream.

    Every attempt gets a freshly validated credential. A 401 from the upstream
    forces one credential refresh and exactly one retry; any other status,
    and the retry's status, is relayed as-is.
    """

    def __init__(
        self,
        *,
        credential_store: OAuthCredentialStore,
        client_getter: Callable[[], httpx.AsyncClient],
        request_timeout_seconds: float,
        upstream_base_url: str | None = None,
    ) -> None:
        self.credential_store = credential_store
        self._client_getter = client_getter
        self.request_timeout_seconds = request_timeout_seconds
        self.upstream_base_url = upstream_base_url

    async def forward(
        self,
        *,
        method: str,
        path: str,
        query: str,
        headers: Iterable[tuple[str, str]],
        body: bytes | None,
        request_id: str | None = None,
    ) -> StreamingResponse:
        request_id = request_id or uuid4().hex[:12]
        incoming_headers = list(headers)

        upstream = await self.send_upstream_request(
            method=method,
            path=path,
            query=query,
            headers=incoming_headers,
            body=body,
            force_refresh=False,
            request_id=request_id,
        )
        if upstream.status_code == status.HTTP_401_UNAUTHORIZED:
            logger.info(
                "proxy_retry_unauthorized request_id=%s method=%s path=%s",
                request_id,
                method,
                path,
            )
            await discard_response(upstream)
            upstream = await self.send_upstream_request(
                method=method,
                path=path,
                query=query,
                headers=incoming_headers,
                body=body,
                force_refresh=True,
                request_id=request_id,
            )

        return self.relay_response(upstream, request_id=request_id)

    async def send_upstream_request(
        self,
        *,
        method: str,
        path: str,
        query: str,
        headers: list[tuple[str, str]],
        body: bytes | None,
        force_refresh: bool,
        request_id: str,
    ) -> httpx.Response:
        credentials = await self.credential_store.get_valid_credentials(force_refresh)
        if not credentials.access_token:
            raise OAuthCredentialsError(
                f"OAuth access_token is missing. {REAUTH_GUIDANCE}",
                ErrorKind.MISSING_ACCESS_TOKEN,
            )

        upstream_base_url = self.credential_store.get_upstream_base_url(
            credentials, self.upstream_base_url
        )
        upstream_url = build_upstream_url(upstream_base_url, path, query)
        client = self._client_getter()
        request = client.build_request(
            method=method,
            url=upstream_url,
            headers=build_upstream_headers(headers, credentials.access_token),
            content=body,
        )

        attempt_started = time.perf_counter()
        try:
            upstream = await asyncio.wait_for(
                client.send(request, stream=True),
                timeout=self.request_timeout_seconds,
            )
        except TimeoutError as exc:
            timeout_ms = int(self.request_timeout_seconds * 1000)
            logger.warning(
                "proxy_request_error request_id=%s url=%s error_type=timeout timeout_ms=%d",
                request_id,
                upstream_url,
                timeout_ms,
            )
            raise ProxyRequestError(
                f"Upstream request timed out after {timeout_ms}ms.",
                ErrorKind.UPSTREAM_TIMEOUT,
                status_code=status.HTTP_504_GATEWAY_TIMEOUT,
            ) from exc
        except httpx.RequestError as exc:
            details = _request_error_details(exc)
            logger.warning(
                "proxy_request_error request_id=%s url=%s error_type=%s is_timeout=%s error=%s",
                request_id,
                upstream_url,
                details["error_type"],
                details["is_timeout"],
                details["error"],
            )
            raise ProxyRequestError(
                f"Failed to reach upstream API: {details['error']}",
                ErrorKind.UPSTREAM_UNAVAILABLE,
                status_code=status.HTTP_502_BAD_GATEWAY,
            ) from exc

        logger.info(
            "proxy_upstream_connected request_id=%s method=%s url=%s connect_ms=%.2f "
            "status=%d force_refresh=%s",
            request_id,
            method,
            upstream_url,
            (time.perf_counter() - attempt_started) * 1000.0,
            upstream.status_code,
            force_refresh,
        )
        return upstream

    @staticmethod
    def relay_response(
        upstream: httpx.Response,
        *,
        request_id: str | None = None,
    ) -> StreamingResponse:
        relay = UpstreamBodyRelay(upstream, request_id=request_id)
        response = StreamingResponse(
            content=relay,
            status_code=upstream.status_code,
            background=BackgroundTask(relay.aclose),
        )
        response_headers = filter_response_headers(
            upstream.headers,
            body_decoded=upstream.is_stream_consumed,
        )
        for name, value in response_headers:
            response.headers.append(name, value)
        return response
