from __future__ import annotations

import contextlib
import logging
from typing import AsyncIterator

import httpx

logger = logging.getLogger("uvicorn.error")


class UpstreamBodyRelay:
    """Pull-based relay of an upstream response body.

    Chunks are read from the upstream only when the consumer asks for the
    next one, so at most one chunk is held in memory and a slow client slows
    the upstream read. The upstream response is closed exactly once, whether
    the body ends normally, fails, or the consumer abandons it.
    A read failure partway through is logged and re-raised, so the client
    connection is aborted instead of ending with a truncated body.
    """

    def __init__(self, upstream: httpx.Response, *, request_id: str | None = None) -> None:
        self._upstream = upstream
        self._request_id = request_id
        self._closed = False
        self.bytes_relayed = 0

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[bytes]:
        try:
            if self._upstream.is_stream_consumed:
                # Body already loaded and decoded by the transport; write it directly.
                body = self._upstream.content
                if body:
                    self.bytes_relayed += len(body)
                    yield body
                return

            async for chunk in self._upstream.aiter_raw():
                self.bytes_relayed += len(chunk)
                yield chunk
        except httpx.RequestError as exc:
            logger.warning(
                "proxy_upstream_stream_error request_id=%s url=%s error_type=%s error=%s",
                self._request_id,
                self._upstream.request.url,
                exc.__class__.__name__,
                str(exc) or repr(exc),
            )
            raise
        finally:
            await self.aclose()
            logger.info(
                "proxy_relay_complete request_id=%s status=%d bytes=%d",
                self._request_id,
                self._upstream.status_code,
                self.bytes_relayed,
            )

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._upstream.aclose()


async def discard_response(upstream: httpx.Response) -> None:
    # Best effort: the response is being replaced by a retry.
    with contextlib.suppress(Exception):
        await upstream.aclose()
