"""Tools the conversation model may call.

``ToolRegistry.build_tools`` assembles, per conversation turn, the knowledge
search tool (when the character has knowledge bases) and one tool per
active plugin. Building is pure; work happens only when a tool is invoked.
Invocation never raises: failures come back as text the model can relay.
"""

import json
import re
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

import structlog
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from ..core.config import get_settings_instance
from ..core.exceptions import PersonaException
from ..models.plugin import Plugin
from ..services.retrieval_service import RetrievalService
from .sandbox import PluginSandbox
from .schema_mapping import json_schema_to_model, tool_parameters

logger = structlog.get_logger(__name__)

RAG_TOOL_NAME = "search_knowledge_base"
RAG_TOOL_DESCRIPTION = (
    "Search for information in the knowledge base. Use this when the user asks questions "
    "about specific documents or domain knowledge."
)
NO_RESULTS_MESSAGE = "No relevant information found."

_TOOL_NAME_RE = re.compile(r"[^A-Za-z0-9_-]")
_MAX_TOOL_NAME = 64


class KnowledgeSearchArgs(BaseModel):
    query: str = Field(..., description="The search query")


def _error_text(error: Exception) -> str:
    if isinstance(error, PersonaException):
        return error.message
    return str(error) or type(error).__name__


def _result_text(result: Any) -> str:
    if result is None:
        return ""
    if isinstance(result, str):
        return result
    return json.dumps(result, ensure_ascii=False, default=str)


@dataclass
class AgentTool:
    """A callable tool with validated arguments.

    ``handler`` receives the validated argument dict and returns text.
    ``error_template`` formats failures; it receives ``error``.
    """

    name: str
    description: str
    args_model: type[BaseModel]
    parameters: dict[str, Any]
    handler: Callable[[dict[str, Any]], Awaitable[str]]
    error_template: str = "Error executing tool {name}: {error}"
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_openai_tool(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    def format_error(self, error: Exception) -> str:
        return self.error_template.format(name=self.name, error=_error_text(error))

    async def invoke(self, raw_arguments: str | dict[str, Any] | None) -> str:
        """Validate the model's arguments and run the tool; errors become text."""
        try:
            if isinstance(raw_arguments, str):
                parsed = json.loads(raw_arguments) if raw_arguments.strip() else {}
            else:
                parsed = raw_arguments or {}
            if not isinstance(parsed, dict):
                raise ValueError("tool arguments must be a JSON object")
            validated = self.args_model.model_validate(parsed)
        except (json.JSONDecodeError, ValueError, PydanticValidationError) as e:
            logger.warning("tool_arguments_invalid", tool=self.name, error=str(e))
            return self.format_error(ValueError(f"invalid arguments: {e}"))

        try:
            return await self.handler(validated.model_dump(by_alias=True, exclude_unset=True))
        except Exception as e:
            logger.warning("tool_invocation_failed", tool=self.name, error=_error_text(e), error_type=type(e).__name__)
            return self.format_error(e)


def sanitize_tool_name(raw: str, taken: set[str]) -> str:
    """Fit *raw* to ``[A-Za-z0-9_-]{1,64}`` and make it unique within *taken*."""
    base = _TOOL_NAME_RE.sub("_", raw or "").strip("_")[:_MAX_TOOL_NAME] or "plugin"
    name = base
    counter = 2
    while name in taken:
        suffix = f"_{counter}"
        name = base[: _MAX_TOOL_NAME - len(suffix)] + suffix
        counter += 1
    return name


class ToolRegistry:
    """Build the tool set for one conversation turn."""

    def __init__(
        self,
        retrieval: RetrievalService,
        sandbox: PluginSandbox,
        result_limit: int | None = None,
        threshold: float | None = None,
    ) -> None:
        settings = get_settings_instance()
        self.retrieval = retrieval
        self.sandbox = sandbox
        self.result_limit = result_limit if result_limit is not None else settings.rag_tool_result_limit
        self.threshold = threshold if threshold is not None else settings.rag_tool_threshold

    def build_tools(self, knowledge_base_ids: Sequence[str], plugins: Sequence[Plugin]) -> list[AgentTool]:
        tools: list[AgentTool] = []
        taken: set[str] = set()

        if knowledge_base_ids:
            tools.append(self._knowledge_search_tool(list(knowledge_base_ids)))
            taken.add(RAG_TOOL_NAME)

        for plugin in plugins:
            name = sanitize_tool_name(plugin.name, taken)
            taken.add(name)
            tools.append(self._plugin_tool(plugin, name))

        logger.debug(
            "tools_built",
            knowledge_base_count=len(knowledge_base_ids),
            plugin_count=len(plugins),
            tools=[t.name for t in tools],
        )
        return tools

    def _knowledge_search_tool(self, knowledge_base_ids: list[str]) -> AgentTool:
        async def _search(args: dict[str, Any]) -> str:
            results = await self.retrieval.search(
                args["query"],
                knowledge_base_ids,
                threshold=self.threshold,
                limit=self.result_limit,
            )
            if not results:
                return NO_RESULTS_MESSAGE
            return "\n\n".join(r.content for r in results)

        return AgentTool(
            name=RAG_TOOL_NAME,
            description=RAG_TOOL_DESCRIPTION,
            args_model=KnowledgeSearchArgs,
            parameters=KnowledgeSearchArgs.model_json_schema(),
            handler=_search,
            error_template="Error searching knowledge base: {error}",
            metadata={"knowledge_base_ids": knowledge_base_ids},
        )

    def _plugin_tool(self, plugin: Plugin, tool_name: str) -> AgentTool:
        code = plugin.code
        plugin_name = plugin.name

        async def _run(args: dict[str, Any]) -> str:
            result = await self.sandbox.execute(code, args)
            return _result_text(result)

        return AgentTool(
            name=tool_name,
            description=plugin.description or f"Run the {plugin_name} plugin.",
            args_model=json_schema_to_model(tool_name, plugin.schema),
            parameters=tool_parameters(plugin.schema),
            handler=_run,
            error_template="Error executing plugin " + plugin_name.replace("{", "{{").replace("}", "}}") + ": {error}",
            metadata={"plugin_id": plugin.id},
        )
