"""Tests for ToolRegistry and AgentTool invocation."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from persona.core.exceptions import PluginExecutionError, PluginTimeoutError, StoreError
from persona.models.plugin import Plugin, PluginStatus
from persona.plugins.tool_registry import (
    NO_RESULTS_MESSAGE,
    RAG_TOOL_NAME,
    ToolRegistry,
    sanitize_tool_name,
)
from persona.services.retrieval_service import RetrievedChunk


def make_plugin(name="Dice Roller", schema=None, code="return args", plugin_id="p-1") -> Plugin:
    return Plugin(
        id=plugin_id,
        author_id="author",
        name=name,
        description=f"{name} plugin",
        schema=schema,
        code=code,
        status=PluginStatus.APPROVED.value,
    )


def chunk(content) -> RetrievedChunk:
    return RetrievedChunk("c", content, 0.9, {}, "kb-1", "f-1")


@pytest.fixture
def retrieval():
    service = MagicMock()
    service.search = AsyncMock(return_value=[])
    return service


@pytest.fixture
def sandbox():
    box = MagicMock()
    box.execute = AsyncMock(return_value={"roll": 4})
    return box


@pytest.fixture
def registry(retrieval, sandbox):
    return ToolRegistry(retrieval, sandbox, result_limit=3, threshold=0.4)


class TestBuildTools:
    def test_no_sources_no_tools(self, registry) -> None:
        assert registry.build_tools([], []) == []

    def test_knowledge_tool_comes_first(self, registry) -> None:
        tools = registry.build_tools(["kb-1"], [make_plugin()])
        assert [t.name for t in tools] == [RAG_TOOL_NAME, "Dice_Roller"]
        spec = tools[0].to_openai_tool()
        assert spec["type"] == "function"
        assert spec["function"]["parameters"]["required"] == ["query"]

    def test_plugin_names_are_sanitized_and_unique(self, registry) -> None:
        plugins = [make_plugin("dice", plugin_id="a"), make_plugin("dice", plugin_id="b"), make_plugin("search_knowledge_base", plugin_id="c")]
        names = [t.name for t in registry.build_tools(["kb-1"], plugins)]
        assert names == [RAG_TOOL_NAME, "dice", "dice_2", "search_knowledge_base_2"]

    def test_sanitize_tool_name(self) -> None:
        assert sanitize_tool_name("weather / forecast!", set()) == "weather___forecast"
        assert sanitize_tool_name("***", set()) == "plugin"
        long_name = sanitize_tool_name("x" * 80, {"x" * 64})
        assert len(long_name) == 64
        assert long_name.endswith("_2")

    def test_building_does_no_work(self, registry, retrieval, sandbox) -> None:
        registry.build_tools(["kb-1"], [make_plugin()])
        retrieval.search.assert_not_called()
        sandbox.execute.assert_not_called()


class TestKnowledgeTool:
    async def test_joins_results(self, registry, retrieval) -> None:
        retrieval.search.return_value = [chunk("Aria was born in Vell."), chunk("She fears thunder.")]
        tool = registry.build_tools(["kb-1", "kb-2"], [])[0]

        text = await tool.invoke('{"query": "where was aria born"}')

        assert text == "Aria was born in Vell.\n\nShe fears thunder."
        retrieval.search.assert_awaited_once_with("where was aria born", ["kb-1", "kb-2"], threshold=0.4, limit=3)

    async def test_no_results(self, registry) -> None:
        tool = registry.build_tools(["kb-1"], [])[0]
        assert await tool.invoke({"query": "x"}) == NO_RESULTS_MESSAGE

    async def test_failure_becomes_text(self, registry, retrieval) -> None:
        retrieval.search.side_effect = StoreError("similarity_search", "connection lost")
        tool = registry.build_tools(["kb-1"], [])[0]
        text = await tool.invoke('{"query": "x"}')
        assert text.startswith("Error searching knowledge base:")
        assert "connection lost" in text

    @pytest.mark.parametrize("raw", ["{not json", "[1, 2]", "{}"])
    async def test_invalid_arguments_become_text(self, registry, retrieval, raw) -> None:
        tool = registry.build_tools(["kb-1"], [])[0]
        text = await tool.invoke(raw)
        assert "invalid arguments" in text
        retrieval.search.assert_not_awaited()


class TestPluginTool:
    async def test_validated_arguments_reach_sandbox(self, registry, sandbox) -> None:
        schema = {"type": "object", "properties": {"sides": {"type": "integer"}}, "required": ["sides"]}
        tool = registry.build_tools([], [make_plugin(schema=schema, code="return {'roll': 4}")])[0]

        assert await tool.invoke('{"sides": 6}') == '{"roll": 4}'
        sandbox.execute.assert_awaited_once_with("return {'roll': 4}", {"sides": 6})

    async def test_schema_violation_never_reaches_sandbox(self, registry, sandbox) -> None:
        schema = {"type": "object", "properties": {"sides": {"type": "integer"}}, "required": ["sides"]}
        tool = registry.build_tools([], [make_plugin(schema=schema)])[0]
        text = await tool.invoke('{"sides": "six"}')
        assert text.startswith("Error executing plugin Dice Roller:")
        sandbox.execute.assert_not_awaited()

    @pytest.mark.parametrize(
        ("result", "expected"),
        [("plain text", "plain text"), (None, ""), ([1, "二"], '[1, "二"]')],
    )
    async def test_result_rendering(self, registry, sandbox, result, expected) -> None:
        sandbox.execute.return_value = result
        tool = registry.build_tools([], [make_plugin()])[0]
        assert await tool.invoke("") == expected

    @pytest.mark.parametrize(
        ("error", "fragment"),
        [(PluginTimeoutError(5000), "timed out after 5000ms"), (PluginExecutionError("division by zero"), "division by zero")],
    )
    async def test_sandbox_errors_become_text(self, registry, sandbox, error, fragment) -> None:
        sandbox.execute.side_effect = error
        tool = registry.build_tools([], [make_plugin(name="Calc {x}")])[0]
        text = await tool.invoke("{}")
        assert text.startswith("Error executing plugin Calc {x}:")
        assert fragment in text
