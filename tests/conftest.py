import asyncio
from typing import Any

import pytest

from llm_relay.core.config import Settings
from llm_relay.gateway.client import GatewayClient
from llm_relay.gateway.transport import TransportResponse


class FakeClock:
    """Manual clock whose sleep advances time instead of waiting."""

    def __init__(self, start: float = 1_000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def ms(self) -> float:
        return self.now * 1000

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.now += delay
        await asyncio.sleep(0)


class FakeTransport:
    """Scripted transport: pops one queued item per send.

    Items may be a TransportResponse, an exception to raise, or a callable
    taking the request body and returning either of those.
    """

    def __init__(self, delay: float = 0.0):
        self.responses: list[Any] = []
        self.calls: list[dict[str, Any]] = []
        self.delay = delay
        self.closed = False

    def queue(self, *items: Any) -> "FakeTransport":
        self.responses.extend(items)
        return self

    async def send(self, method, url, headers, body, token, *, stream=False):
        self.calls.append(
            {"method": method, "url": url, "headers": headers, "body": body, "stream": stream, "token": token}
        )
        if self.delay:
            await asyncio.sleep(self.delay)
        item = self.responses.pop(0) if self.responses else self.chat("ok")
        if callable(item):
            item = item(body)
        if isinstance(item, Exception):
            raise item
        return item

    async def aclose(self) -> None:
        self.closed = True

    # -- response builders --

    @staticmethod
    def json(status: int, body: Any) -> TransportResponse:
        return TransportResponse(status=status, headers={"content-type": "application/json"}, body=body)

    @staticmethod
    def chat(text: str = "Hello world", model: str = "openai/gpt-4o-mini", prompt_tokens=10, completion_tokens=20):
        return FakeTransport.json(
            200,
            {
                "id": "gen-1",
                "model": model,
                "choices": [{"message": {"role": "assistant", "content": text}, "finish_reason": "stop"}],
                "usage": {"prompt_tokens": prompt_tokens, "completion_tokens": completion_tokens},
            },
        )

    @staticmethod
    def sse(chunks: list[bytes | str], status: int = 200) -> TransportResponse:
        closed = {"value": False}

        async def _iter():
            for chunk in chunks:
                yield chunk.encode("utf-8") if isinstance(chunk, str) else chunk

        async def _close():
            closed["value"] = True

        response = TransportResponse(status=status, chunks=_iter(), closer=_close)
        response.closed_flag = closed
        return response


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def settings():
    return Settings(
        api_key="test-key",
        base_url="https://llm.example.com/api/v1",
        default_model="openai/gpt-4o-mini",
        max_retries=2,
        retry_base_delay_ms=10,
        timeout_ms=5_000,
        rate_limit_per_minute=0,
        enable_caching=True,
        cache_ttl_ms=60_000,
    )


async def instant_sleep(delay: float) -> None:
    await asyncio.sleep(0)


@pytest.fixture
def no_sleep():
    return instant_sleep


@pytest.fixture
def client(settings, transport):
    return GatewayClient(settings, transport, sleep=instant_sleep)


@pytest.fixture
def dispatcher(client):
    return client.dispatcher


def chat_request(text: str = "Hello", **kwargs: Any) -> dict[str, Any]:
    return {"kind": "chat", "messages": [{"role": "user", "content": text}], **kwargs}
