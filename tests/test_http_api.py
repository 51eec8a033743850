"""Tests for the gateway HTTP API client."""

import json

import httpx
import pytest

from clawlink.http_api import HttpGateway, HttpGatewayError, model_for_agent


def make_gateway(handler, base_url="http://gateway.test:18789/", token="tok"):
    return HttpGateway(lambda: base_url, lambda: token, transport=httpx.MockTransport(handler))


def sse(*events):
    return "".join(f"data: {event}\n\n" for event in events)


def delta(text, finish_reason=None):
    choice = {"delta": {"content": text} if text is not None else {}}
    if finish_reason:
        choice["finish_reason"] = finish_reason
    return json.dumps({"choices": [choice]})


async def collect(gateway, **kwargs):
    return [piece async for piece in gateway.stream_chat_completion("main", [{"role": "user", "content": "hi"}], **kwargs)]


class TestHealth:
    """GET /health."""

    @pytest.mark.asyncio
    async def test_healthy(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200)

        gateway = make_gateway(handler)
        assert await gateway.health()

        assert str(requests[0].url) == "http://gateway.test:18789/health"
        assert requests[0].headers["authorization"] == "Bearer tok"
        await gateway.close()

    @pytest.mark.asyncio
    async def test_timeout_is_unhealthy(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        gateway = make_gateway(handler)
        assert not await gateway.health()
        await gateway.close()


class TestChatCompletion:
    """Non-streaming POST /v1/chat/completions."""

    def test_model_name(self):
        assert model_for_agent("coder") == "openclaw:coder"

    @pytest.mark.asyncio
    async def test_returns_message_content(self):
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"choices": [{"message": {"role": "assistant", "content": "Hello"}}]})

        gateway = make_gateway(handler)
        reply = await gateway.chat_completion("main", [{"role": "user", "content": "hi"}])

        assert reply == "Hello"
        assert bodies[0] == {
            "model": "openclaw:main",
            "messages": [{"role": "user", "content": "hi"}],
            "stream": False,
        }
        await gateway.close()

    @pytest.mark.asyncio
    async def test_empty_choices(self):
        gateway = make_gateway(lambda request: httpx.Response(200, json={"choices": []}))
        assert await gateway.chat_completion("main", []) == ""
        await gateway.close()

    @pytest.mark.asyncio
    async def test_error_status(self):
        gateway = make_gateway(lambda request: httpx.Response(403, text="forbidden"))

        with pytest.raises(HttpGatewayError) as exc_info:
            await gateway.chat_completion("main", [])

        assert exc_info.value.status_code == 403
        assert "403" in str(exc_info.value)
        assert "forbidden" in str(exc_info.value)
        await gateway.close()


class TestStreaming:
    """SSE parsing."""

    @pytest.mark.asyncio
    async def test_yields_deltas_until_done(self):
        body = sse(delta("Hel"), delta("lo"), "[DONE]", delta("ignored"))
        gateway = make_gateway(lambda request: httpx.Response(200, text=body))

        assert await collect(gateway) == ["Hel", "lo"]
        await gateway.close()

    @pytest.mark.asyncio
    async def test_finish_reason_ends_stream(self):
        body = sse(delta("a"), delta("b", finish_reason="stop"), delta("c"))
        gateway = make_gateway(lambda request: httpx.Response(200, text=body))

        assert await collect(gateway) == ["a", "b"]
        await gateway.close()

    @pytest.mark.asyncio
    async def test_skips_noise(self):
        body = ": keep-alive\n\n" + sse("{broken", json.dumps({"choices": []}), delta(None), delta("x"), "[DONE]")
        gateway = make_gateway(lambda request: httpx.Response(200, text=body))

        assert await collect(gateway) == ["x"]
        await gateway.close()

    @pytest.mark.asyncio
    async def test_request_body_and_user(self):
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(200, text=sse("[DONE]"))

        gateway = make_gateway(handler)
        await collect(gateway, user="session-7")

        assert bodies[0]["stream"] is True
        assert bodies[0]["user"] == "session-7"
        await gateway.close()

    @pytest.mark.asyncio
    async def test_error_status_raises(self):
        gateway = make_gateway(lambda request: httpx.Response(502, text="bad gateway"))

        with pytest.raises(HttpGatewayError) as exc_info:
            await collect(gateway)

        assert exc_info.value.status_code == 502
        assert "bad gateway" in str(exc_info.value)
        await gateway.close()
