"""Dispatcher — runs one request through the full gateway pipeline.

Order of operations for ``execute``:
  1. Validate the request and derive a deterministic cache key
  2. Return a cached response on hit (non-streaming only)
  3. Throttle through the shared rate limiter
  4. Apply pre-middleware
  5. Send through the transport, wrapped in retry with backoff
  6. Apply post-middleware
  7. Cache the result when cacheable
  8. On any error, apply error-middleware and re-raise

An in-flight handle is registered before step 3 and always released,
whether the dispatch succeeds, fails or is cancelled.
"""

from __future__ import annotations

import asyncio
import copy
import hashlib
import json
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import replace
from typing import Any, NoReturn

from llm_relay.core.config import Settings
from llm_relay.core.logging import bind_dispatch_id
from llm_relay.core.metrics import DISPATCH_COUNT, DISPATCH_DURATION
from llm_relay.gateway.cache import ResponseCache
from llm_relay.gateway.cancellation import CancellationRegistry, CancellationToken, InFlightHandle
from llm_relay.gateway.errors import CancellationError, TransportError, ValidationError
from llm_relay.gateway.middleware import MiddlewarePipeline
from llm_relay.gateway.rate_limiter import SlidingWindowRateLimiter
from llm_relay.gateway.retry import call_with_retry
from llm_relay.gateway.streaming import open_event_stream
from llm_relay.gateway.transport import Transport, TransportResponse
from llm_relay.gateway.types import BaseRequest, ChatRequest, ClientResponse, StreamEvent, parse_request

logger = logging.getLogger(__name__)


class Dispatcher:
    """Single-request orchestration over shared cache, limiter and middleware."""

    def __init__(
        self,
        settings: Settings,
        transport: Transport,
        cache: ResponseCache,
        rate_limiter: SlidingWindowRateLimiter,
        middleware: MiddlewarePipeline,
        registry: CancellationRegistry,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings
        self.transport = transport
        self.cache = cache
        self.rate_limiter = rate_limiter
        self.middleware = middleware
        self.registry = registry
        self._sleep = sleep

    # -- helpers ----------------------------------------------------------

    @staticmethod
    def cache_key(request: BaseRequest) -> str:
        """Build a deterministic key from method, endpoint and payload."""
        normalized = json.dumps(
            {"method": request.method, "path": request.path, "payload": request.payload()},
            ensure_ascii=True,
            sort_keys=True,
            default=str,
        )
        return hashlib.sha256(normalized.encode("utf-8")).hexdigest()

    def _url(self, request: BaseRequest) -> str:
        return f"{self.settings.base_url.rstrip('/')}{request.path}"

    def _headers(self) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "X-Title": "llm-relay",
        }
        if self.settings.api_key:
            headers["Authorization"] = f"Bearer {self.settings.api_key}"
        headers.update(self.settings.extra_headers)
        return headers

    def _prepare(self, request: BaseRequest | dict[str, Any]) -> BaseRequest:
        return parse_request(request).with_default_model(self.settings.default_model)

    def _should_cache(self, request: BaseRequest, response: ClientResponse) -> bool:
        if not (self.settings.enable_caching and request.cacheable):
            return False
        # Chat replies without a choice are not worth replaying
        if isinstance(request, ChatRequest):
            return bool(response.choices)
        return True

    async def _raise_transformed(self, error: Exception) -> NoReturn:
        transformed = await self.middleware.apply_error(error)
        if transformed is error:
            raise error
        raise transformed from error

    async def _send(
        self,
        request: BaseRequest,
        token: CancellationToken,
        *,
        stream: bool = False,
    ) -> TransportResponse:
        """One transport call, bounded by the per-call deadline and the token."""
        call = self.transport.send(
            request.method,
            self._url(request),
            self._headers(),
            request.payload(),
            token,
            stream=stream,
        )
        try:
            raw = await asyncio.wait_for(token.guard(call), timeout=self.settings.timeout_seconds)
        except asyncio.TimeoutError as e:
            raise TransportError(
                f"Request timed out after {self.settings.timeout_ms}ms",
                type="timeout",
            ) from e

        if not stream and not 200 <= raw.status < 300:
            await raw.aclose()
            raise TransportError(
                f"Request failed with status {raw.status}",
                status=raw.status,
                data=raw.body,
            )
        return raw

    # -- execute ----------------------------------------------------------

    async def execute(self, request: BaseRequest | dict[str, Any]) -> ClientResponse:
        start = time.monotonic()
        kind = request.get("kind", "unknown") if isinstance(request, dict) else getattr(request, "kind", "unknown")
        outcome = "error"
        dispatch_id: str | None = None
        try:
            request = self._prepare(request)
            if request.streaming:
                raise ValidationError("Streaming requests must go through stream()")

            key = self.cache_key(request)
            if self.settings.enable_caching and request.cacheable:
                cached = self.cache.get(key)
                if cached is not None:
                    logger.debug("Using cached %s response", request.kind)
                    outcome = "cache_hit"
                    # Callers own what they receive; the stored copy stays pristine
                    return replace(copy.deepcopy(cached), cached=True)

            with self.registry.track() as handle, bind_dispatch_id(handle.dispatch_id):
                dispatch_id = handle.dispatch_id
                response = await self._dispatch(request, handle)
                if self._should_cache(request, response):
                    self.cache.set(key, copy.deepcopy(response), self.settings.effective_cache_ttl_ms)

            outcome = "success"
            return response
        except Exception as e:
            if isinstance(e, CancellationError):
                outcome = "cancelled"
            logger.debug("Dispatch of %s request failed: %r", kind, e, extra={"dispatch_id": dispatch_id})
            await self._raise_transformed(e)
        finally:
            DISPATCH_COUNT.labels(kind=kind, outcome=outcome).inc()
            DISPATCH_DURATION.labels(kind=kind).observe(time.monotonic() - start)

    async def _dispatch(self, request: BaseRequest, handle: InFlightHandle) -> ClientResponse:
        token = handle.token
        logger.debug("Dispatching %s request to %s", request.kind, request.path)
        await self.rate_limiter.throttle(token)
        request = await self.middleware.apply_pre(request)

        started = time.monotonic()
        raw = await call_with_retry(
            lambda: self._send(request, token),
            self.settings.max_retries,
            self.settings.retry_base_delay_ms,
            token=token,
            sleep=self._sleep,
        )

        response = ClientResponse(
            kind=request.kind,
            data=raw.body,
            status=raw.status,
            headers=raw.headers,
            latency_ms=int((time.monotonic() - started) * 1000),
            dispatch_id=handle.dispatch_id,
        )
        return await self.middleware.apply_post(response)

    # -- stream -----------------------------------------------------------

    async def stream(self, request: ChatRequest | dict[str, Any]) -> AsyncIterator[StreamEvent]:
        """Lazily dispatch a chat request and yield its decoded events.

        Nothing is sent until the first event is requested. Streams are
        neither retried nor cached; closing the iterator early releases
        the in-flight handle and the underlying connection.
        """
        kind = "chat"
        outcome = "error"
        start = time.monotonic()
        handle: InFlightHandle | None = None
        try:
            if isinstance(request, dict):
                request = {"kind": "chat", **request}
            request = self._prepare(request)
            if not isinstance(request, ChatRequest):
                raise ValidationError(f"Only chat requests can be streamed, got {request.kind}")
            request = request.model_copy(update={"stream": True})
            handle = self.registry.register()
            logger.info(
                "Streaming chat completion with model %s",
                request.model,
                extra={"dispatch_id": handle.dispatch_id},
            )
            await self.rate_limiter.throttle(handle.token)
            request = await self.middleware.apply_pre(request)

            raw = await self._send(request, handle.token, stream=True)
            events = open_event_stream(raw, handle.token)
            try:
                async for event in events:
                    yield await self.middleware.apply_post(event)
            finally:
                await events.aclose()
            outcome = "success"
        except GeneratorExit:
            outcome = "closed"
            raise
        except Exception as e:
            if isinstance(e, CancellationError):
                outcome = "cancelled"
            await self._raise_transformed(e)
        finally:
            if handle is not None:
                self.registry.release(handle)
            DISPATCH_COUNT.labels(kind=kind, outcome=outcome).inc()
            DISPATCH_DURATION.labels(kind=kind).observe(time.monotonic() - start)
