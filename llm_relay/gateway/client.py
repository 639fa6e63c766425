"""GatewayClient — the caller-facing entry point.

One explicit object owns the configuration and every piece of shared
state (cache, rate window, middleware chain, in-flight registry, cost
total). Create one per provider endpoint and pass it to whoever needs it.

Usage:
    async with GatewayClient(Settings(api_key="sk-...")) as client:
        response = await client.execute(
            ChatRequest(messages=[ChatMessage(role="user", content="Hello")])
        )

        async for event in client.stream({"kind": "chat", "messages": [...]}):
            print(event.delta_content, end="")

        results = await client.batch(requests, concurrency=3)
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

from llm_relay.core.config import Settings, validate_settings
from llm_relay.gateway.batch import BatchCoordinator
from llm_relay.gateway.cache import ResponseCache
from llm_relay.gateway.cancellation import CancellationRegistry
from llm_relay.gateway.cost import count_tokens, estimate_cost
from llm_relay.gateway.dispatcher import Dispatcher
from llm_relay.gateway.middleware import Middleware, MiddlewarePipeline
from llm_relay.gateway.rate_limiter import SlidingWindowRateLimiter
from llm_relay.gateway.transport import HttpxTransport, Transport
from llm_relay.gateway.types import (
    BaseRequest,
    BatchResult,
    ChatRequest,
    ClientResponse,
    CostEstimate,
    ModelInfo,
    ModelListRequest,
    ModelPricing,
    StreamEvent,
    parse_request,
)

logger = logging.getLogger(__name__)


class GatewayClient:
    """Resilient client for one LLM HTTP API."""

    def __init__(
        self,
        settings: Settings | None = None,
        transport: Transport | None = None,
        *,
        pricing: dict[str, ModelPricing] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Args:
            settings: Client configuration; read from the environment when omitted
            transport: Send primitive; an httpx-backed transport when omitted
            pricing: Known model prices used for the running cost total
            sleep: Awaitable used for throttle and retry waits
        """
        self.settings = settings or Settings()
        validate_settings(self.settings)

        self.transport = transport or HttpxTransport(timeout=self.settings.timeout_seconds)
        self.cache = ResponseCache(default_ttl_ms=self.settings.effective_cache_ttl_ms)
        self.rate_limiter = SlidingWindowRateLimiter(self.settings.rate_limit_per_minute, sleep=sleep)
        self.middleware = MiddlewarePipeline()
        self.registry = CancellationRegistry()
        self.dispatcher = Dispatcher(
            settings=self.settings,
            transport=self.transport,
            cache=self.cache,
            rate_limiter=self.rate_limiter,
            middleware=self.middleware,
            registry=self.registry,
            sleep=sleep,
        )
        self.batcher = BatchCoordinator(self.dispatcher)

        self._pricing: dict[str, ModelPricing] = dict(pricing or {})
        self._total_cost = 0.0

    async def __aenter__(self) -> GatewayClient:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        self.cancel_all()
        await self.transport.aclose()

    # -- middleware -------------------------------------------------------

    def use(self, middleware: Middleware) -> GatewayClient:
        self.middleware.use(middleware)
        return self

    def clear_middleware(self) -> GatewayClient:
        self.middleware.clear()
        return self

    # -- dispatch ---------------------------------------------------------

    async def execute(self, request: BaseRequest | dict[str, Any]) -> ClientResponse:
        """Send one request and return its response, or raise a ClientError."""
        response = await self.dispatcher.execute(request)
        if response.kind == "chat" and not response.cached:
            usage = response.usage
            if usage is not None:
                self._track_cost(response.model, usage.prompt_tokens, usage.completion_tokens)
        return response

    async def stream(self, request: ChatRequest | dict[str, Any]) -> AsyncIterator[StreamEvent]:
        """Stream a chat completion as a lazy sequence of events."""
        prompt_text = ""
        completion_text = ""
        model = ""
        events = self.dispatcher.stream(request)
        try:
            async for event in events:
                completion_text += event.delta_content
                model = model or event.model_id
                yield event
        finally:
            await events.aclose()

        # Providers report no usage mid-stream; approximate it
        if isinstance(request, dict):
            request = parse_request({"kind": "chat", **request})
        if isinstance(request, ChatRequest):
            prompt_text = "".join(m.content for m in request.messages if isinstance(m.content, str))
            model = model or request.model or self.settings.default_model
        self._track_cost(model, count_tokens(prompt_text), count_tokens(completion_text))

    async def batch(
        self,
        requests: list[BaseRequest | dict[str, Any]],
        concurrency: int = 3,
    ) -> list[BatchResult]:
        """Run requests with bounded concurrency; results[i] belongs to requests[i]."""
        results = await self.batcher.run(requests, concurrency)
        for result in results:
            if result.ok and result.response.kind == "chat" and not result.response.cached:
                usage = result.response.usage
                if usage is not None:
                    self._track_cost(result.response.model, usage.prompt_tokens, usage.completion_tokens)
        return results

    def cancel_all(self) -> int:
        """Signal every in-flight dispatch to abort. Returns how many were signalled."""
        return self.registry.cancel_all()

    @property
    def in_flight(self) -> int:
        return len(self.registry)

    # -- models & cost ----------------------------------------------------

    async def list_models(self) -> list[ModelInfo]:
        """Fetch the provider's model catalogue (cached like any other GET)."""
        response = await self.dispatcher.execute(ModelListRequest())
        rows = response.data.get("data", []) if isinstance(response.data, dict) else []
        models = [ModelInfo.from_dict(row) for row in rows if isinstance(row, dict) and "id" in row]
        for model in models:
            self._pricing[model.id] = model.pricing
        logger.debug("Fetched %d models", len(models))
        return models

    async def get_model_info(self, model_id: str) -> ModelInfo | None:
        for model in await self.list_models():
            if model.id == model_id:
                return model
        return None

    def register_pricing(self, model_id: str, pricing: ModelPricing) -> None:
        self._pricing[model_id] = pricing

    def estimate_cost(
        self,
        pricing: ModelPricing | dict[str, Any] | None,
        prompt_tokens: int,
        completion_tokens: int = 0,
    ) -> CostEstimate:
        return estimate_cost(pricing, prompt_tokens, completion_tokens)

    def _track_cost(self, model: str, prompt_tokens: int, completion_tokens: int) -> None:
        pricing = self._pricing.get(model)
        if pricing is None:
            return
        estimate = estimate_cost(pricing, prompt_tokens, completion_tokens)
        self._total_cost += estimate.total_cost
        logger.debug(
            "Cost estimate for %s: %d prompt + %d completion tokens = $%.6f",
            model,
            prompt_tokens,
            completion_tokens,
            estimate.total_cost,
        )

    @property
    def total_cost(self) -> float:
        """Estimated USD spent by this client since creation or the last reset."""
        return self._total_cost

    def reset_cost_tracker(self) -> None:
        self._total_cost = 0.0

    def clear_cache(self) -> int:
        return self.cache.clear()
