"""Conversation Orchestrator.

Streams one character reply for a chat turn:
- Persists the user's message before anything else
- Gathers the character, its knowledge bases, the user's plugins and recent history
- Renders the system prompt and drives the tool-calling loop against the chat model
- Persists whatever text was produced, even when the client goes away mid-stream
"""

from collections.abc import AsyncGenerator, Sequence
from typing import Any

import structlog
from jinja2 import StrictUndefined
from jinja2.sandbox import SandboxedEnvironment

from ..core.config import get_settings_instance
from ..core.exceptions import PersonaException
from ..llm.chat_client import ChatModelClient, ContentDelta, ToolCallsRequested
from ..models.character import Character
from ..models.chat import Message
from ..plugins.tool_registry import RAG_TOOL_NAME, AgentTool, ToolRegistry
from .chat_service import ChatService

logger = structlog.get_logger(__name__)

NO_CHARACTER_MESSAGE = "No AI in this chat."

SYSTEM_PROMPT_TEMPLATE = """\
You are {{ name }}{{ ", " ~ bio if bio else "" }}
{% if origin_prompt %}
{{ origin_prompt }}
{% endif %}
{% if tools %}
You can use the following tools:
{% for tool in tools %}
- {{ tool.name }}: {{ tool.description }}
{% endfor %}
{% endif %}
{% if has_knowledge %}
When the user asks about facts concerning you or your world, look them up with {{ rag_tool }} \
instead of relying on memory, and answer from what it returns.
If the search fails or finds nothing relevant, say plainly that you could not find the information; \
do not invent it.
{% endif %}
{% if has_plugins %}
When the user asks you to carry out a task one of your plugins covers, use that plugin.
{% endif %}
"""


def format_error_marker(error: Exception) -> str:
    message = error.message if isinstance(error, PersonaException) else (str(error) or type(error).__name__)
    return f"\n[Error: {message}]"


def history_to_messages(history: Sequence[Message]) -> list[dict[str, Any]]:
    """Convert stored messages to chat-completion messages."""
    messages: list[dict[str, Any]] = []
    for message in history:
        if message.is_from_user:
            parts = []
            for part in message.content or []:
                if part.get("type") == "text" and part.get("text"):
                    parts.append({"type": "text", "text": part["text"]})
                elif part.get("type") == "image_url" and part.get("image_url"):
                    url = part["image_url"].get("url") if isinstance(part["image_url"], dict) else part["image_url"]
                    if url:
                        parts.append({"type": "image_url", "image_url": {"url": url}})
            if parts:
                messages.append({"role": "user", "content": parts})
        else:
            text = message.text_content()
            if text:
                messages.append({"role": "assistant", "content": text})
    return messages


class ConversationOrchestrator:
    """Drive a single streamed character reply."""

    def __init__(
        self,
        chat_service: ChatService,
        tool_registry: ToolRegistry,
        chat_client: ChatModelClient,
        history_limit: int | None = None,
        max_tool_rounds: int | None = None,
        preview_length: int | None = None,
    ) -> None:
        settings = get_settings_instance()
        self.chat_service = chat_service
        self.tool_registry = tool_registry
        self.chat_client = chat_client
        self.history_limit = history_limit if history_limit is not None else settings.chat_history_limit
        self.max_tool_rounds = max_tool_rounds if max_tool_rounds is not None else settings.chat_max_tool_rounds
        self.preview_length = preview_length if preview_length is not None else settings.chat_preview_length
        self._jinja_env = SandboxedEnvironment(
            autoescape=False,
            undefined=StrictUndefined,
            trim_blocks=True,
            lstrip_blocks=True,
        )
        self._prompt_template = self._jinja_env.from_string(SYSTEM_PROMPT_TEMPLATE)

    def render_system_prompt(self, character: Character, tools: Sequence[AgentTool]) -> str:
        return self._prompt_template.render(
            name=character.name,
            bio=character.bio or "",
            origin_prompt=character.origin_prompt or "",
            tools=[{"name": t.name, "description": t.description} for t in tools],
            has_knowledge=any(t.name == RAG_TOOL_NAME for t in tools),
            has_plugins=any(t.name != RAG_TOOL_NAME for t in tools),
            rag_tool=RAG_TOOL_NAME,
        ).strip()

    async def stream_message(
        self,
        chat_id: str,
        sender_profile_id: str,
        content_parts: list[dict[str, Any]],
    ) -> AsyncGenerator[str, None]:
        """Yield the character's reply as text increments.

        The user message is committed before the model is called. Failures
        during generation are yielded as an inline ``[Error: ...]`` marker.
        """
        await self.chat_service.save_user_message(chat_id, sender_profile_id, content_parts)

        character = await self.chat_service.get_chat_character(chat_id)
        if character is None:
            logger.info("chat_has_no_character", chat_id=chat_id)
            yield NO_CHARACTER_MESSAGE
            return

        produced: list[str] = []
        failed = False
        log = logger.bind(chat_id=chat_id, character_id=character.id)
        try:
            knowledge_base_ids = await self.chat_service.get_subscribed_knowledge_base_ids(character.id)
            plugins = await self.chat_service.get_active_plugins(sender_profile_id)
            history = await self.chat_service.get_recent_history(chat_id, self.history_limit)

            tools = self.tool_registry.build_tools(knowledge_base_ids, plugins)
            messages = [{"role": "system", "content": self.render_system_prompt(character, tools)}]
            messages.extend(history_to_messages(history))
            log.info(
                "conversation_turn_started",
                history_count=len(history),
                knowledge_base_count=len(knowledge_base_ids),
                tools=[t.name for t in tools],
            )

            async for increment in self._run_agent_loop(messages, tools, log):
                produced.append(increment)
                yield increment
        except Exception as e:
            failed = True
            log.warning("conversation_turn_failed", error=str(e), error_type=type(e).__name__)
            yield format_error_marker(e)
        finally:
            await self._persist_reply(chat_id, character.id, "".join(produced), failed, log)

    async def _run_agent_loop(
        self,
        messages: list[dict[str, Any]],
        tools: Sequence[AgentTool],
        log: Any,
    ) -> AsyncGenerator[str, None]:
        tools_by_name = {t.name: t for t in tools}
        openai_tools = [t.to_openai_tool() for t in tools]

        for round_index in range(self.max_tool_rounds + 1):
            # The last round offers no tools so the model has to answer
            offered = openai_tools if openai_tools and round_index < self.max_tool_rounds else None
            round_text: list[str] = []
            requested: ToolCallsRequested | None = None

            async for event in self.chat_client.stream_chat(messages, offered):
                if isinstance(event, ContentDelta):
                    if event.content:
                        round_text.append(event.content)
                        yield event.content
                elif isinstance(event, ToolCallsRequested):
                    requested = event

            if requested is None:
                return

            assistant_message = requested.assistant_message()
            if round_text:
                assistant_message["content"] = "".join(round_text)
            messages.append(assistant_message)

            for call in requested.tool_calls:
                tool = tools_by_name.get(call.name)
                if tool is None:
                    result = f"Unknown tool: {call.name}"
                else:
                    result = await tool.invoke(call.arguments)
                log.info("tool_call_completed", round=round_index, tool=call.name, result_length=len(result))
                messages.append({"role": "tool", "tool_call_id": call.id, "content": result})

    async def _persist_reply(self, chat_id: str, character_id: str, text: str, failed: bool, log: Any) -> None:
        if not text:
            return
        try:
            if failed:
                await self.chat_service.db.rollback()
            await self.chat_service.save_character_message(chat_id, character_id, text)
            await self.chat_service.update_last_message(chat_id, text, self.preview_length)
            log.info("character_reply_saved", length=len(text))
        except Exception as e:
            log.error("character_reply_save_failed", error=str(e), error_type=type(e).__name__)
