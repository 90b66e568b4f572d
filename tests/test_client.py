"""Tests for the model client: SSE parsing, tool-call assembly, errors.

HTTP is served by httpx.MockTransport so no network is involved.
"""

from __future__ import annotations

import json

import httpx
import pytest

from conductor.api import client as client_module
from conductor.api.cancellation import CancellationToken
from conductor.api.client import (
    MODEL_API_ERROR_PREFIX,
    ChatClient,
    ModelApiError,
    StreamAccumulator,
    parse_sse_line,
    retry_after_seconds,
)

from tests.conftest import make_settings


def _chunk(delta: dict | None = None, finish_reason: str | None = None) -> dict:
    return {"choices": [{"index": 0, "delta": delta or {}, "finish_reason": finish_reason}]}


def _sse(*chunks: dict) -> str:
    lines = [f"data: {json.dumps(c)}\n\n" for c in chunks]
    lines.append("data: [DONE]\n\n")
    return "".join(lines)


def _client_with(handler, **settings_overrides) -> ChatClient:
    client = ChatClient(make_settings(**settings_overrides))
    client._http = httpx.AsyncClient(
        transport=httpx.MockTransport(handler),
        base_url="https://model.test/v1",
    )
    return client


async def _collect(client: ChatClient, **kwargs) -> list:
    return [event async for event in client.stream([{"role": "user", "content": "hi"}], **kwargs)]


# ------------------------------------------------------------------
# Parsing
# ------------------------------------------------------------------


class TestParseSseLine:
    def test_data_line(self):
        assert parse_sse_line('data: {"a": 1}') == {"a": 1}

    def test_non_data_and_done(self):
        assert parse_sse_line(": keepalive") is None
        assert parse_sse_line("event: ping") is None
        assert parse_sse_line("data: [DONE]") is None
        assert parse_sse_line("") is None

    def test_malformed(self):
        with pytest.raises(ModelApiError) as exc_info:
            parse_sse_line("data: {oops")
        assert str(exc_info.value).startswith(MODEL_API_ERROR_PREFIX)


class TestStreamAccumulator:
    def test_content_and_thinking(self):
        acc = StreamAccumulator()
        events = acc.feed(_chunk({"reasoning_content": "hmm", "content": "Hello"}))
        assert [(e.type, e.text) for e in events] == [
            ("thinking_delta", "hmm"),
            ("content_delta", "Hello"),
        ]

    def test_tool_call_fragments_assembled_by_index(self):
        acc = StreamAccumulator()
        acc.feed(_chunk({"tool_calls": [{"index": 0, "id": "call_a", "function": {"name": "read_file", "arguments": '{"pa'}}]}))
        acc.feed(_chunk({"tool_calls": [{"index": 1, "id": "call_b", "function": {"name": "bash", "arguments": ""}}]}))
        acc.feed(_chunk({"tool_calls": [{"index": 0, "function": {"arguments": 'th": "a.py"}'}}]}))
        acc.feed(_chunk({"tool_calls": [{"index": 1, "function": {"arguments": '{"command": "ls"}'}}]}))
        events = acc.feed(_chunk(finish_reason="tool_calls"))

        assert len(events) == 1
        assert events[0].type == "tool_calls"
        calls = events[0].tool_calls
        assert [(c.id, c.name, c.arguments) for c in calls] == [
            ("call_a", "read_file", '{"path": "a.py"}'),
            ("call_b", "bash", '{"command": "ls"}'),
        ]

    def test_tool_calls_announced_once(self):
        acc = StreamAccumulator()
        acc.feed(_chunk({"tool_calls": [{"index": 0, "function": {"name": "bash"}}]}))
        first = acc.feed(_chunk(finish_reason="tool_calls"))
        final = acc.finish()
        assert len(first) == 1
        assert first[0].tool_calls[0].id.startswith("call_")
        assert [e.type for e in final] == ["stream_end"]
        assert acc.finish() == []

    def test_finish_announces_pending_tool_calls(self):
        acc = StreamAccumulator()
        acc.feed(_chunk({"tool_calls": [{"index": 0, "id": "c", "function": {"name": "bash"}}]}))
        assert [e.type for e in acc.finish()] == ["tool_calls", "stream_end"]

    def test_in_stream_error(self):
        acc = StreamAccumulator()
        with pytest.raises(ModelApiError, match="rate_limit - slow down"):
            acc.feed({"error": {"type": "rate_limit", "message": "slow down"}})


# ------------------------------------------------------------------
# ChatClient over MockTransport
# ------------------------------------------------------------------


class TestChatClientStream:
    @pytest.mark.asyncio
    async def test_stream_events(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["payload"] = json.loads(request.content)
            body = _sse(_chunk({"content": "Hi"}), _chunk({"content": " there"}), _chunk(finish_reason="stop"))
            return httpx.Response(200, text=body, headers={"content-type": "text/event-stream"})

        client = _client_with(handler)
        events = await _collect(client, tools=[{"type": "function", "function": {"name": "bash"}}])
        await client.close()

        assert [e.type for e in events] == ["content_delta", "content_delta", "stream_end"]
        assert events[-1].finish_reason == "stop"
        assert captured["payload"]["stream"] is True
        assert captured["payload"]["tool_choice"] == "auto"
        assert captured["payload"]["thinking"] == {"type": "enabled"}

    @pytest.mark.asyncio
    async def test_http_error_raises_prefixed(self):
        def handler(request):
            return httpx.Response(401, json={"error": {"message": "bad key"}})

        client = _client_with(handler)
        with pytest.raises(ModelApiError) as exc_info:
            await _collect(client)
        assert str(exc_info.value) == f"{MODEL_API_ERROR_PREFIX}HTTP 401: bad key"
        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_transport_error_wrapped(self):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        client = _client_with(handler)
        with pytest.raises(ModelApiError, match="connection refused"):
            await _collect(client)

    @pytest.mark.asyncio
    async def test_cancelled_before_read_yields_nothing(self):
        def handler(request):
            return httpx.Response(200, text=_sse(_chunk({"content": "never"})))

        token = CancellationToken()
        token.cancel()
        client = _client_with(handler)
        assert await _collect(client, cancel=token) == []

    @pytest.mark.asyncio
    async def test_requires_start(self):
        client = ChatClient(make_settings())
        with pytest.raises(RuntimeError, match="start"):
            await _collect(client)


class TestChatClientComplete:
    @pytest.mark.asyncio
    async def test_returns_first_choice_message(self):
        def handler(request):
            return httpx.Response(
                200, json={"choices": [{"message": {"role": "assistant", "content": "summary"}}]}
            )

        client = _client_with(handler)
        reply = await client.complete([{"role": "user", "content": "x"}], model_override="small")
        assert reply["content"] == "summary"

    @pytest.mark.asyncio
    async def test_retries_once_on_500(self):
        attempts = []

        def handler(request):
            attempts.append(1)
            if len(attempts) == 1:
                return httpx.Response(500, json={"error": {"message": "overloaded"}}, headers={"retry-after": "0"})
            return httpx.Response(200, json={"choices": [{"message": {"content": "ok"}}]})

        client = _client_with(handler)
        reply = await client.complete([{"role": "user", "content": "x"}])
        assert reply["content"] == "ok"
        assert len(attempts) == 2

    @pytest.mark.asyncio
    async def test_no_retry_on_400(self):
        attempts = []

        def handler(request):
            attempts.append(1)
            return httpx.Response(400, json={"error": {"message": "bad request"}})

        client = _client_with(handler)
        with pytest.raises(ModelApiError, match="HTTP 400: bad request"):
            await client.complete([{"role": "user", "content": "x"}])
        assert len(attempts) == 1

    @pytest.mark.asyncio
    async def test_retry_after_http_date_falls_back(self, monkeypatch):
        delays = []

        async def fake_sleep(seconds):
            delays.append(seconds)

        monkeypatch.setattr(client_module.asyncio, "sleep", fake_sleep)
        attempts = []

        def handler(request):
            attempts.append(1)
            if len(attempts) == 1:
                return httpx.Response(
                    429,
                    json={"error": {"message": "slow down"}},
                    headers={"retry-after": "Wed, 21 Oct 2015 07:28:00 GMT"},
                )
            return httpx.Response(200, json={"choices": [{"message": {"content": "ok"}}]})

        client = _client_with(handler)
        reply = await client.complete([{"role": "user", "content": "x"}])
        assert reply["content"] == "ok"
        assert delays == [1.0]


class TestRetryAfterSeconds:
    def test_delta_seconds(self):
        assert retry_after_seconds("2.5") == 2.5

    def test_capped(self):
        assert retry_after_seconds("600") == 30.0

    def test_unparseable_or_missing(self):
        assert retry_after_seconds("Wed, 21 Oct 2015 07:28:00 GMT") == 1.0
        assert retry_after_seconds(None) == 1.0
        assert retry_after_seconds("-3") == 1.0


class TestModelSelection:
    @pytest.mark.asyncio
    async def test_set_model_changes_payload(self):
        models = []

        def handler(request):
            models.append(json.loads(request.content)["model"])
            return httpx.Response(200, json={"choices": [{"message": {"content": "ok"}}]})

        client = _client_with(handler, model="glm-a")
        assert client.model == "glm-a"
        await client.complete([{"role": "user", "content": "x"}])
        client.set_model("glm-b")
        await client.complete([{"role": "user", "content": "x"}])
        assert client.model == "glm-b"
        assert models == ["glm-a", "glm-b"]

    def test_empty_model_rejected(self):
        client = ChatClient(make_settings())
        with pytest.raises(ValueError):
            client.set_model("")
