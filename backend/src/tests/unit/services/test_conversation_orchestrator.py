"""Tests for ConversationOrchestrator streaming, tool rounds and persistence."""

import copy
import json
from contextlib import aclosing
from unittest.mock import AsyncMock, MagicMock

import pytest

from persona.core.exceptions import LLMProviderError
from persona.llm.chat_client import ContentDelta, StreamCompleted, ToolCall, ToolCallsRequested
from persona.models.character import Character
from persona.models.chat import Message
from persona.plugins.tool_registry import RAG_TOOL_NAME, ToolRegistry
from persona.services.conversation_orchestrator import (
    NO_CHARACTER_MESSAGE,
    ConversationOrchestrator,
    format_error_marker,
    history_to_messages,
)
from persona.services.retrieval_service import RetrievedChunk

USER_CONTENT = [{"type": "text", "text": "Where were you born?"}]


class ScriptedChatClient:
    """Replays one scripted event list per model round and records each request."""

    def __init__(self, rounds):
        self.rounds = list(rounds)
        self.calls = []

    async def stream_chat(self, messages, tools=None):
        self.calls.append({"messages": copy.deepcopy(messages), "tools": tools})
        for event in self.rounds.pop(0):
            if isinstance(event, Exception):
                raise event
            yield event


def make_character(**overrides) -> Character:
    fields = {"id": "char-1", "name": "Aria", "bio": "a wandering mage", "origin_prompt": "Speak softly."}
    fields.update(overrides)
    return Character(**fields)


@pytest.fixture
def chat_service():
    service = MagicMock()
    service.db = MagicMock()
    service.db.rollback = AsyncMock()
    service.save_user_message = AsyncMock()
    service.get_chat_character = AsyncMock(return_value=make_character())
    service.get_subscribed_knowledge_base_ids = AsyncMock(return_value=["kb-1"])
    service.get_active_plugins = AsyncMock(return_value=[])
    service.get_recent_history = AsyncMock(
        return_value=[Message.from_user("chat-1", "user-1", USER_CONTENT)]
    )
    service.save_character_message = AsyncMock()
    service.update_last_message = AsyncMock()
    return service


@pytest.fixture
def retrieval():
    service = MagicMock()
    service.search = AsyncMock(return_value=[RetrievedChunk("c1", "Aria was born in Vell.", 0.9, {}, "kb-1", None)])
    return service


def make_orchestrator(chat_service, client, retrieval, max_tool_rounds=5) -> ConversationOrchestrator:
    registry = ToolRegistry(retrieval, MagicMock(), result_limit=5, threshold=0.5)
    return ConversationOrchestrator(
        chat_service, registry, client, history_limit=20, max_tool_rounds=max_tool_rounds, preview_length=50
    )


async def collect(orchestrator) -> list[str]:
    return [text async for text in orchestrator.stream_message("chat-1", "user-1", USER_CONTENT)]


class TestStreamMessage:
    async def test_plain_reply_is_streamed_and_saved(self, chat_service, retrieval) -> None:
        client = ScriptedChatClient([[ContentDelta("Hello"), ContentDelta(", traveller."), StreamCompleted("stop")]])
        orchestrator = make_orchestrator(chat_service, client, retrieval)

        assert await collect(orchestrator) == ["Hello", ", traveller."]

        chat_service.save_user_message.assert_awaited_once_with("chat-1", "user-1", USER_CONTENT)
        chat_service.save_character_message.assert_awaited_once_with("chat-1", "char-1", "Hello, traveller.")
        chat_service.update_last_message.assert_awaited_once_with("chat-1", "Hello, traveller.", 50)
        chat_service.db.rollback.assert_not_awaited()

        request = client.calls[0]
        assert request["messages"][0]["role"] == "system"
        assert request["messages"][1] == {"role": "user", "content": USER_CONTENT}
        assert request["tools"][0]["function"]["name"] == RAG_TOOL_NAME

    async def test_chat_without_character(self, chat_service, retrieval) -> None:
        chat_service.get_chat_character.return_value = None
        client = ScriptedChatClient([])

        assert await collect(make_orchestrator(chat_service, client, retrieval)) == [NO_CHARACTER_MESSAGE]
        chat_service.save_user_message.assert_awaited_once()
        chat_service.save_character_message.assert_not_awaited()
        assert client.calls == []

    async def test_no_tools_offered_without_sources(self, chat_service, retrieval) -> None:
        chat_service.get_subscribed_knowledge_base_ids.return_value = []
        client = ScriptedChatClient([[ContentDelta("Hi")]])
        await collect(make_orchestrator(chat_service, client, retrieval))
        assert client.calls[0]["tools"] is None

    async def test_tool_round_feeds_results_back(self, chat_service, retrieval) -> None:
        call = ToolCall(id="call_1", name=RAG_TOOL_NAME, arguments=json.dumps({"query": "Aria birthplace"}))
        client = ScriptedChatClient(
            [
                [ContentDelta("Let me think. "), ToolCallsRequested([call]), StreamCompleted("tool_calls")],
                [ContentDelta("I was born in Vell."), StreamCompleted("stop")],
            ]
        )
        orchestrator = make_orchestrator(chat_service, client, retrieval)

        assert "".join(await collect(orchestrator)) == "Let me think. I was born in Vell."

        second_round = client.calls[1]["messages"]
        assistant, tool_result = second_round[-2], second_round[-1]
        assert assistant["role"] == "assistant"
        assert assistant["content"] == "Let me think. "
        assert assistant["tool_calls"][0]["id"] == "call_1"
        assert tool_result == {"role": "tool", "tool_call_id": "call_1", "content": "Aria was born in Vell."}
        retrieval.search.assert_awaited_once_with("Aria birthplace", ["kb-1"], threshold=0.5, limit=5)
        chat_service.save_character_message.assert_awaited_once_with(
            "chat-1", "char-1", "Let me think. I was born in Vell."
        )

    async def test_unknown_tool_is_reported_to_model(self, chat_service, retrieval) -> None:
        client = ScriptedChatClient(
            [
                [ToolCallsRequested([ToolCall(id="c", name="teleport", arguments="{}")])],
                [ContentDelta("I cannot do that.")],
            ]
        )
        await collect(make_orchestrator(chat_service, client, retrieval))
        assert client.calls[1]["messages"][-1]["content"] == "Unknown tool: teleport"

    async def test_last_round_offers_no_tools(self, chat_service, retrieval) -> None:
        call = ToolCall(id="c", name=RAG_TOOL_NAME, arguments='{"query": "x"}')
        client = ScriptedChatClient([[ToolCallsRequested([call])], [ContentDelta("Done.")]])

        await collect(make_orchestrator(chat_service, client, retrieval, max_tool_rounds=1))

        assert client.calls[0]["tools"] is not None
        assert client.calls[1]["tools"] is None

    async def test_failure_yields_marker_and_keeps_partial_text(self, chat_service, retrieval) -> None:
        client = ScriptedChatClient([[ContentDelta("I was born"), LLMProviderError("upstream exploded")]])

        increments = await collect(make_orchestrator(chat_service, client, retrieval))

        assert increments == ["I was born", "\n[Error: upstream exploded]"]
        chat_service.db.rollback.assert_awaited_once()
        chat_service.save_character_message.assert_awaited_once_with("chat-1", "char-1", "I was born")

    async def test_failure_before_any_text_saves_nothing(self, chat_service, retrieval) -> None:
        chat_service.get_recent_history.side_effect = RuntimeError("db gone")
        client = ScriptedChatClient([])

        assert await collect(make_orchestrator(chat_service, client, retrieval)) == ["\n[Error: db gone]"]
        chat_service.save_character_message.assert_not_awaited()

    async def test_client_disconnect_persists_partial_reply(self, chat_service, retrieval) -> None:
        client = ScriptedChatClient([[ContentDelta("Hel"), ContentDelta("lo")]])
        orchestrator = make_orchestrator(chat_service, client, retrieval)

        async with aclosing(orchestrator.stream_message("chat-1", "user-1", USER_CONTENT)) as stream:
            async for text in stream:
                assert text == "Hel"
                break

        chat_service.save_character_message.assert_awaited_once_with("chat-1", "char-1", "Hel")

    async def test_save_failure_is_swallowed(self, chat_service, retrieval) -> None:
        chat_service.save_character_message.side_effect = RuntimeError("write failed")
        client = ScriptedChatClient([[ContentDelta("Hi")]])
        assert await collect(make_orchestrator(chat_service, client, retrieval)) == ["Hi"]


class TestSystemPrompt:
    def test_full_prompt(self, chat_service, retrieval) -> None:
        orchestrator = make_orchestrator(chat_service, ScriptedChatClient([]), retrieval)
        tools = orchestrator.tool_registry.build_tools(["kb-1"], [])
        prompt = orchestrator.render_system_prompt(make_character(), tools)

        assert prompt.startswith("You are Aria, a wandering mage\nSpeak softly.\n")
        assert f"- {RAG_TOOL_NAME}: " in prompt
        assert "do not invent it" in prompt
        assert "plugins" not in prompt

    def test_minimal_prompt(self, chat_service, retrieval) -> None:
        orchestrator = make_orchestrator(chat_service, ScriptedChatClient([]), retrieval)
        prompt = orchestrator.render_system_prompt(make_character(bio=None, origin_prompt=None), [])
        assert prompt == "You are Aria"

    def test_user_text_is_not_template_evaluated(self, chat_service, retrieval) -> None:
        orchestrator = make_orchestrator(chat_service, ScriptedChatClient([]), retrieval)
        prompt = orchestrator.render_system_prompt(make_character(origin_prompt="{{ 7 * 7 }}"), [])
        assert "{{ 7 * 7 }}" in prompt


class TestHelpers:
    def test_history_to_messages(self) -> None:
        history = [
            Message.from_user(
                "c", "u", [{"type": "text", "text": "Look"}, {"type": "image_url", "image_url": {"url": "https://x/y.png"}}]
            ),
            Message.from_character("c", "char", "A dragon!"),
            Message.from_user("c", "u", [{"type": "text", "text": ""}]),
            Message.from_character("c", "char", ""),
        ]
        assert history_to_messages(history) == [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": "Look"},
                    {"type": "image_url", "image_url": {"url": "https://x/y.png"}},
                ],
            },
            {"role": "assistant", "content": "A dragon!"},
        ]

    def test_format_error_marker(self) -> None:
        assert format_error_marker(LLMProviderError("quota")) == "\n[Error: quota]"
        assert format_error_marker(RuntimeError()) == "\n[Error: RuntimeError]"
