"""Tests for ChatModelClient SSE parsing and tool-call accumulation."""

import json
from unittest.mock import patch

import httpx
import pytest

from persona.core.exceptions import LLMProviderError, LLMTimeoutError
from persona.llm.chat_client import (
    ChatModelClient,
    ContentDelta,
    StreamCompleted,
    ToolCall,
    ToolCallsRequested,
)


def sse(*chunks, done=True) -> bytes:
    lines = [f"data: {json.dumps(c)}\n\n" for c in chunks]
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines).encode()


def delta(content=None, tool_calls=None, finish_reason=None) -> dict:
    d = {}
    if content is not None:
        d["content"] = content
    if tool_calls is not None:
        d["tool_calls"] = tool_calls
    return {"choices": [{"index": 0, "delta": d, "finish_reason": finish_reason}]}


def make_client(handler, max_attempts=3) -> ChatModelClient:
    return ChatModelClient(
        api_base="https://llm.test/v1",
        api_key="k",
        model="chat-model",
        max_attempts=max_attempts,
        transport=httpx.MockTransport(handler),
    )


async def collect(client, messages=None, tools=None) -> list:
    return [e async for e in client.stream_chat(messages or [{"role": "user", "content": "hi"}], tools)]


class TestPayload:
    def test_tools_are_optional(self) -> None:
        client = make_client(lambda r: httpx.Response(200))
        payload = client.build_payload([{"role": "user", "content": "hi"}], None)
        assert payload["stream"] is True
        assert "tools" not in payload

        tools = [{"type": "function", "function": {"name": "f", "parameters": {}}}]
        payload = client.build_payload([], tools)
        assert payload["tools"] == tools
        assert payload["tool_choice"] == "auto"


class TestStreaming:
    async def test_content_increments_in_order(self) -> None:
        body = sse(
            delta("Hel"),
            delta("lo"),
            delta("", finish_reason="stop"),
            {"choices": [], "usage": {"total_tokens": 7}},
        )
        events = await collect(make_client(lambda r: httpx.Response(200, content=body)))

        assert [e.content for e in events if isinstance(e, ContentDelta)] == ["Hel", "lo"]
        assert events[-1] == StreamCompleted(finish_reason="stop", usage={"total_tokens": 7})

    async def test_control_lines_and_garbage_are_skipped(self) -> None:
        body = b": keep-alive\n\nevent: message\ndata: not-json\n\ndata: {broken\n\n" + sse(delta("ok"))
        events = await collect(make_client(lambda r: httpx.Response(200, content=body)))
        assert [e.content for e in events if isinstance(e, ContentDelta)] == ["ok"]

    async def test_tool_call_fragments_are_merged(self) -> None:
        body = sse(
            delta(tool_calls=[{"index": 0, "id": "call_a", "function": {"name": "search_", "arguments": '{"q'}}]),
            delta(tool_calls=[{"index": 0, "function": {"name": "kb", "arguments": '": "x"}'}}]),
            delta(tool_calls=[{"index": 1, "id": "call_b", "function": {"name": "dice"}}]),
            delta(finish_reason="tool_calls"),
        )
        events = await collect(make_client(lambda r: httpx.Response(200, content=body)))

        requested = [e for e in events if isinstance(e, ToolCallsRequested)]
        assert requested[0].tool_calls == [
            ToolCall(id="call_a", name="search_kb", arguments='{"q": "x"}'),
            ToolCall(id="call_b", name="dice", arguments="{}"),
        ]
        message = requested[0].assistant_message()
        assert message["role"] == "assistant"
        assert message["tool_calls"][0]["function"]["name"] == "search_kb"
        assert isinstance(events[-1], StreamCompleted)

    async def test_in_stream_error_chunk(self) -> None:
        body = sse({"error": {"message": "content filtered"}})
        with pytest.raises(LLMProviderError) as exc_info:
            await collect(make_client(lambda r: httpx.Response(200, content=body)))
        assert "content filtered" in exc_info.value.message


class TestErrors:
    async def test_retryable_status_is_retried_before_output(self) -> None:
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                return httpx.Response(503, json={"error": {"message": "overloaded"}})
            return httpx.Response(200, content=sse(delta("ok")))

        with patch("persona.llm.chat_client.get_retry_delay", return_value=0):
            events = await collect(make_client(handler))
        assert len(calls) == 2
        assert [e.content for e in events if isinstance(e, ContentDelta)] == ["ok"]

    async def test_client_error_surfaces_provider_message(self) -> None:
        client = make_client(lambda r: httpx.Response(400, json={"error": {"message": "bad tools"}}))
        with pytest.raises(LLMProviderError) as exc_info:
            await collect(client)
        assert "bad tools" in exc_info.value.message
        assert exc_info.value.details["status"] == 400

    async def test_read_timeout(self) -> None:
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(LLMTimeoutError):
            await collect(make_client(handler))

    async def test_connect_error(self) -> None:
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(LLMProviderError) as exc_info:
            await collect(make_client(handler))
        assert exc_info.value.details["error_type"] == "ConnectError"
