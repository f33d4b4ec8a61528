"""Streaming chat-completions client for OpenAI-compatible providers.

The client speaks the SSE dialect of ``POST /chat/completions`` with
``stream: true`` and turns provider chunks into three event types:
``ContentDelta`` for text increments, ``ToolCallsRequested`` once the model
finishes a round with tool calls, and ``StreamCompleted`` at the end of every
round.
"""

import asyncio
import json
from collections.abc import AsyncGenerator
from dataclasses import dataclass, field
from typing import Any

import httpcore
import httpx
import jmespath

from ..core.config import get_settings_instance
from ..core.exceptions import LLMProviderError, LLMTimeoutError
from ..core.logging import get_logger
from .retry import extract_provider_message, get_retry_delay, should_retry

logger = get_logger(__name__)

_CONTENT_PATH = jmespath.compile("choices[*].delta.content | [0]")
_TOOL_CALLS_PATH = jmespath.compile("choices[*].delta.tool_calls | []")
_FINISH_REASON_PATH = jmespath.compile("choices[*].finish_reason | [0]")


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: str

    def to_message_entry(self) -> dict[str, Any]:
        return {"id": self.id, "type": "function", "function": {"name": self.name, "arguments": self.arguments}}


@dataclass
class ContentDelta:
    content: str


@dataclass
class ToolCallsRequested:
    tool_calls: list[ToolCall]

    def assistant_message(self) -> dict[str, Any]:
        """The assistant turn that must precede the tool results in the next round."""
        return {"role": "assistant", "content": None, "tool_calls": [c.to_message_entry() for c in self.tool_calls]}


@dataclass
class StreamCompleted:
    finish_reason: str | None = None
    usage: dict[str, Any] = field(default_factory=dict)


ChatStreamEvent = ContentDelta | ToolCallsRequested | StreamCompleted


class _ToolCallAccumulator:
    """Merge incremental ``delta.tool_calls`` fragments by their ``index``."""

    def __init__(self) -> None:
        self._calls: dict[int, dict[str, str]] = {}

    def add(self, fragment: dict[str, Any]) -> None:
        index = fragment.get("index", len(self._calls))
        entry = self._calls.setdefault(index, {"id": "", "name": "", "arguments": ""})
        if fragment.get("id"):
            entry["id"] = fragment["id"]
        function = fragment.get("function") or {}
        if function.get("name"):
            entry["name"] += function["name"]
        if function.get("arguments"):
            entry["arguments"] += function["arguments"]

    def build(self) -> list[ToolCall]:
        calls = []
        for index in sorted(self._calls):
            entry = self._calls[index]
            calls.append(
                ToolCall(id=entry["id"] or f"call_{index}", name=entry["name"], arguments=entry["arguments"] or "{}")
            )
        return calls


class ChatModelClient:
    """Stream chat completions with tool calling.

    Args:
        api_base: Provider base URL (``.../v1``).
        api_key: Bearer token; omitted from requests when empty.
        model: Chat model name.
        temperature: Sampling temperature.
        timeout: Connect/write/pool timeout in seconds.
        read_timeout: Read timeout while streaming, in seconds.
        max_attempts: Total attempts for retryable HTTP errors before any output.
        transport: Optional httpx transport (tests use ``httpx.MockTransport``).

    """

    def __init__(
        self,
        api_base: str,
        api_key: str | None,
        model: str,
        temperature: float = 0.7,
        timeout: float = 30.0,
        read_timeout: float = 120.0,
        max_attempts: int = 3,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.model = model
        self.temperature = temperature
        self._max_attempts = max(1, max_attempts)

        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self.client = httpx.AsyncClient(
            base_url=api_base.rstrip("/"),
            headers=headers,
            timeout=httpx.Timeout(connect=timeout, read=read_timeout, write=timeout, pool=timeout),
            limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings=None) -> "ChatModelClient":
        settings = settings or get_settings_instance()
        return cls(
            api_base=settings.llm_api_base,
            api_key=settings.llm_api_key,
            model=settings.llm_model,
            temperature=settings.llm_temperature,
            timeout=settings.llm_global_timeout,
            read_timeout=settings.llm_streaming_read_timeout,
            max_attempts=settings.llm_max_attempts,
        )

    async def aclose(self) -> None:
        await self.client.aclose()

    def build_payload(self, messages: list[dict[str, Any]], tools: list[dict[str, Any]] | None) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": self.temperature,
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = "auto"
        return payload

    async def stream_chat(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
    ) -> AsyncGenerator[ChatStreamEvent, None]:
        """Run one model round, retrying retryable HTTP errors until output starts."""
        payload = self.build_payload(messages, tools)
        attempt = 0
        while True:
            has_yielded = False
            try:
                async for event in self._stream_response(payload):
                    has_yielded = True
                    yield event
                return
            except httpx.HTTPStatusError as e:
                status = e.response.status_code
                if has_yielded or not should_retry(status, attempt, self._max_attempts):
                    raise LLMProviderError(
                        f"AI provider returned HTTP {status}: {extract_provider_message(e.response)}",
                        details={"status": status, "model": self.model},
                    ) from e
                delay = get_retry_delay(attempt)
                logger.warning(
                    "Retrying chat completion",
                    extra={"status": status, "attempt": attempt + 1, "max_attempts": self._max_attempts, "delay": delay},
                )
                attempt += 1
                await asyncio.sleep(delay)

    async def _stream_response(self, payload: dict[str, Any]) -> AsyncGenerator[ChatStreamEvent, None]:
        tool_calls = _ToolCallAccumulator()
        finish_reason: str | None = None
        usage: dict[str, Any] = {}

        try:
            async with self.client.stream("POST", "/chat/completions", json=payload) as response:
                if response.is_error:
                    # Body must be read before the stream closes for error details
                    await response.aread()
                response.raise_for_status()

                async for line in response.aiter_lines():
                    raw = line.strip()
                    if not raw:
                        continue
                    # SSE control lines carry no payload
                    if raw.startswith(("event:", ":", "id:", "retry:")):
                        continue

                    data = raw[5:].lstrip() if raw.startswith("data:") else raw
                    if data in ("[DONE]", "DONE"):
                        break
                    if not data.startswith("{"):
                        continue
                    try:
                        chunk = json.loads(data)
                    except json.JSONDecodeError:
                        logger.debug("Skipping unparseable stream line", extra={"line": data[:200]})
                        continue
                    if not isinstance(chunk, dict):
                        continue

                    if isinstance(chunk.get("error"), dict):
                        raise LLMProviderError(
                            f"AI provider error: {chunk['error'].get('message', 'unknown error')}",
                            details={"error": chunk["error"]},
                        )

                    content = _CONTENT_PATH.search(chunk)
                    if content:
                        yield ContentDelta(content=content)

                    for fragment in _TOOL_CALLS_PATH.search(chunk) or []:
                        tool_calls.add(fragment)

                    reason = _FINISH_REASON_PATH.search(chunk)
                    if reason:
                        finish_reason = reason
                    # Providers may send running totals; the last one wins
                    if isinstance(chunk.get("usage"), dict):
                        usage = chunk["usage"]

        except (httpcore.RemoteProtocolError, httpx.RemoteProtocolError) as e:
            logger.warning("Streaming connection closed early", extra={"error": str(e)})
            raise LLMProviderError(
                "Connection to AI provider was interrupted",
                details={"original_error": str(e), "error_type": type(e).__name__},
            ) from e
        except httpx.ReadTimeout as e:
            raise LLMTimeoutError(
                "AI provider stopped responding. Please try again.",
                details={"original_error": str(e), "error_type": "ReadTimeout"},
            ) from e
        except httpx.ConnectTimeout as e:
            raise LLMTimeoutError(
                "Could not connect to AI provider. Please try again.",
                details={"original_error": str(e), "error_type": "ConnectTimeout"},
            ) from e
        except httpx.TimeoutException as e:
            raise LLMTimeoutError(
                "Request to AI provider timed out. Please try again.",
                details={"original_error": str(e), "error_type": type(e).__name__},
            ) from e
        except httpx.HTTPStatusError:
            # stream_chat decides whether to retry
            raise
        except httpx.HTTPError as e:
            raise LLMProviderError(
                f"Request to AI provider failed: {e}",
                details={"original_error": str(e), "error_type": type(e).__name__},
            ) from e

        calls = tool_calls.build()
        if calls:
            yield ToolCallsRequested(tool_calls=calls)
        yield StreamCompleted(finish_reason=finish_reason, usage=usage)


_chat_client: ChatModelClient | None = None


def get_chat_client() -> ChatModelClient:
    global _chat_client  # noqa: PLW0603
    if _chat_client is None:
        _chat_client = ChatModelClient.from_settings()
    return _chat_client


async def close_chat_client() -> None:
    global _chat_client  # noqa: PLW0603
    if _chat_client is not None:
        await _chat_client.aclose()
        _chat_client = None
