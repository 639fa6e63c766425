"""Tests for the httpx-backed transport (mocked HTTP)."""

from __future__ import annotations

import json

import httpx
import pytest

from llm_relay.gateway.cancellation import CancellationToken
from llm_relay.gateway.errors import CancellationError, TransportError
from llm_relay.gateway.transport import HttpxTransport, TransportResponse


def _transport(handler) -> HttpxTransport:
    return HttpxTransport(timeout=5.0, client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


class TestHttpxTransport:
    @pytest.mark.asyncio
    async def test_json_round_trip(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["method"] = request.method
            captured["auth"] = request.headers["Authorization"]
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json={"choices": [{"message": {"content": "hi"}}]})

        transport = _transport(handler)
        response = await transport.send(
            "POST",
            "https://llm.example.com/api/v1/chat/completions",
            {"Authorization": "Bearer k"},
            {"model": "m"},
            CancellationToken(),
        )

        assert response.status == 200
        assert response.body["choices"][0]["message"]["content"] == "hi"
        assert captured == {"method": "POST", "auth": "Bearer k", "body": {"model": "m"}}

    @pytest.mark.asyncio
    async def test_error_status_returned_not_raised(self):
        transport = _transport(lambda request: httpx.Response(503, json={"error": "overloaded"}))
        response = await transport.send("GET", "https://x.test/models", {}, None, CancellationToken())
        assert response.status == 503
        assert response.body == {"error": "overloaded"}

    @pytest.mark.asyncio
    async def test_non_json_body_kept_as_text(self):
        transport = _transport(lambda request: httpx.Response(502, text="Bad Gateway"))
        response = await transport.send("GET", "https://x.test/models", {}, None, CancellationToken())
        assert response.body == "Bad Gateway"

    @pytest.mark.asyncio
    async def test_timeout_maps_to_transport_error(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(TransportError) as exc_info:
            await _transport(handler).send("GET", "https://x.test/", {}, None, CancellationToken())
        assert exc_info.value.type == "timeout"
        assert exc_info.value.status == 0

    @pytest.mark.asyncio
    async def test_network_error_maps_to_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(TransportError) as exc_info:
            await _transport(handler).send("GET", "https://x.test/", {}, None, CancellationToken())
        assert exc_info.value.type == "network_error"

    @pytest.mark.asyncio
    async def test_cancelled_token_sends_nothing(self):
        calls = []
        transport = _transport(lambda request: calls.append(request) or httpx.Response(200))
        token = CancellationToken()
        token.cancel()
        with pytest.raises(CancellationError):
            await transport.send("GET", "https://x.test/", {}, None, token)
        assert calls == []

    @pytest.mark.asyncio
    async def test_streaming_response(self):
        body = b'data: {"choices": [{"delta": {"content": "a"}}]}\n\ndata: [DONE]\n\n'
        transport = _transport(lambda request: httpx.Response(200, content=body))
        response = await transport.send("POST", "https://x.test/chat", {}, {}, CancellationToken(), stream=True)

        raw = b""
        async for chunk in response.iter_chunks():
            raw += chunk
        await response.aclose()
        assert raw == body
        assert response.body is None

    @pytest.mark.asyncio
    async def test_streaming_error_body(self):
        transport = _transport(lambda request: httpx.Response(401, json={"error": "bad key"}))
        response = await transport.send("POST", "https://x.test/chat", {}, {}, CancellationToken(), stream=True)
        assert response.status == 401
        assert await response.read_error_body() == {"error": "bad key"}
        await response.aclose()

    @pytest.mark.asyncio
    async def test_aclose_leaves_injected_client_open(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200)))
        transport = HttpxTransport(client=client)
        await transport.aclose()
        assert client.is_closed is False
        await client.aclose()

    @pytest.mark.asyncio
    async def test_aclose_closes_owned_client(self):
        transport = HttpxTransport(timeout=1.0)
        await transport.aclose()
        assert transport._client.is_closed is True


class TestTransportResponse:
    @pytest.mark.asyncio
    async def test_aclose_runs_closer_once(self):
        closes = []

        async def closer():
            closes.append(1)

        response = TransportResponse(status=200, closer=closer)
        await response.aclose()
        await response.aclose()
        assert closes == [1]

    @pytest.mark.asyncio
    async def test_read_error_body_plain_text(self):
        async def chunks():
            yield b"upstream "
            yield b"exploded"

        response = TransportResponse(status=500, chunks=chunks())
        assert await response.read_error_body() == "upstream exploded"

    @pytest.mark.asyncio
    async def test_iter_chunks_without_stream(self):
        response = TransportResponse(status=200, body={"a": 1})
        assert [c async for c in response.iter_chunks()] == []
