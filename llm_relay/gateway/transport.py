"""HTTP transport — the single send primitive the dispatcher relies on.

The dispatcher only needs ``send(method, url, headers, body, token,
stream=...)`` returning a TransportResponse. HttpxTransport provides it
over a shared httpx.AsyncClient; tests and embedders may pass any object
with the same shape.

Network failures and timeouts are raised as TransportError with status 0
so the retry policy treats them as retryable. HTTP error statuses are
returned as-is; classifying them is the dispatcher's job.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from llm_relay.gateway.cancellation import CancellationToken
from llm_relay.gateway.errors import TransportError

logger = logging.getLogger(__name__)


@dataclass
class TransportResponse:
    """Status, headers and either a parsed body or an open chunk stream."""

    status: int
    headers: dict[str, str] = field(default_factory=dict)
    body: Any = None
    chunks: AsyncIterator[bytes] | None = None
    closer: Callable[[], Awaitable[None]] | None = None

    async def iter_chunks(self, token: CancellationToken | None = None) -> AsyncIterator[bytes]:
        """Yield body chunks, aborting between reads when ``token`` fires."""
        if self.chunks is None:
            return

        iterator = self.chunks.__aiter__()

        async def _next() -> tuple[bool, bytes]:
            try:
                return True, await iterator.__anext__()
            except StopAsyncIteration:
                return False, b""

        while True:
            if token is not None:
                has_more, chunk = await token.guard(_next())
            else:
                has_more, chunk = await _next()
            if not has_more:
                return
            yield chunk

    async def read_error_body(self) -> Any:
        """Drain a failed response and return its JSON detail, or raw text."""
        if self.chunks is None:
            return self.body
        raw = b""
        async for chunk in self.chunks:
            raw += chunk
        text = raw.decode("utf-8", errors="replace")
        try:
            return json.loads(text)
        except ValueError:
            return text or None

    async def aclose(self) -> None:
        if self.closer is not None:
            closer, self.closer = self.closer, None
            await closer()


class Transport(Protocol):
    async def send(
        self,
        method: str,
        url: str,
        headers: dict[str, str],
        body: Any,
        token: CancellationToken,
        *,
        stream: bool = False,
    ) -> TransportResponse: ...

    async def aclose(self) -> None: ...


class HttpxTransport:
    """Transport backed by one pooled httpx.AsyncClient."""

    def __init__(self, timeout: float = 30.0, client: httpx.AsyncClient | None = None):
        self.timeout = timeout
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    async def send(
        self,
        method: str,
        url: str,
        headers: dict[str, str],
        body: Any,
        token: CancellationToken,
        *,
        stream: bool = False,
    ) -> TransportResponse:
        token.raise_if_cancelled()
        request = self._client.build_request(
            method,
            url,
            headers=headers,
            json=body if body is not None else None,
        )

        try:
            resp = await self._client.send(request, stream=stream)
        except httpx.TimeoutException as e:
            raise TransportError(f"Timeout after {self.timeout}s", type="timeout") from e
        except httpx.HTTPError as e:
            raise TransportError(f"Network error: {e}", type="network_error") from e

        headers_out = dict(resp.headers)
        if stream:
            return TransportResponse(
                status=resp.status_code,
                headers=headers_out,
                chunks=self._iter_bytes(resp),
                closer=resp.aclose,
            )

        try:
            payload = resp.json()
        except ValueError:
            payload = resp.text or None
        return TransportResponse(status=resp.status_code, headers=headers_out, body=payload)

    async def _iter_bytes(self, resp: httpx.Response) -> AsyncIterator[bytes]:
        try:
            async for chunk in resp.aiter_bytes():
                yield chunk
        except httpx.TimeoutException as e:
            raise TransportError(f"Stream read timed out after {self.timeout}s", type="timeout") from e
        except httpx.HTTPError as e:
            raise TransportError(f"Stream interrupted: {e}", type="network_error") from e

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
