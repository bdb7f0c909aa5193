"""Tests for native tools, the registry and the built-in tools."""

import pytest

from dotprompt_runner.capabilities.tool import NativeTool, schema_from_signature
from dotprompt_runner.errors import ToolExecutionFailure
from dotprompt_runner.tools.builtin import builtin_tools, record_insight, set_phase
from dotprompt_runner.tools.registry import ToolRegistry
from dotprompt_runner.workflow.context import ExecutionContext


def search(query: str, limit: int = 5, context=None):
    """Search the index."""
    return [f"{query}-{i}" for i in range(limit)]


def test_schema_from_signature():
    """Test schema derivation from annotations and defaults."""
    schema = schema_from_signature(search)

    assert schema == {
        "type": "object",
        "properties": {"query": {"type": "string"}, "limit": {"type": "integer"}},
        "required": ["query"],
    }


def test_native_tool_schema_uses_docstring():
    """Test the declaration sent to the engine."""
    tool = NativeTool(search)

    assert tool.schema()["name"] == "search"
    assert tool.schema()["description"] == "Search the index."


@pytest.mark.asyncio
async def test_native_tool_invokes_sync_function():
    """Test that sync functions run and receive converted arguments."""
    tool = NativeTool(search)

    result = await tool.invoke({"query": "cat", "limit": "2"}, ExecutionContext())

    assert result.success
    assert result.value == ["cat-0", "cat-1"]
    assert result.variables == {}


@pytest.mark.asyncio
async def test_native_tool_injects_context():
    """Test that a `context` parameter receives the execution context."""
    async def remember(key: str, context):
        context.set_variable(key, True, source="tool:remember")
        return key

    context = ExecutionContext()
    await NativeTool(remember).invoke({"key": "seen"}, context)

    assert context.variables == {"seen": True}


@pytest.mark.asyncio
async def test_native_tool_outputs_become_variables():
    """Test declared outputs, including wrapping of non-mapping results."""
    def compute(x: int):
        return x * 2

    def split(text: str):
        return {"head": text[:1], "tail": text[1:], "extra": 0}

    wrapped = await NativeTool(compute, outputs=["result"]).invoke({"x": 21}, ExecutionContext())
    selected = await NativeTool(split, outputs=["head", "tail"]).invoke({"text": "abc"}, ExecutionContext())

    assert wrapped.variables == {"result": 42}
    assert selected.variables == {"head": "a", "tail": "bc"}


@pytest.mark.asyncio
async def test_native_tool_rejects_bad_arguments():
    """Test that invalid or unexpected arguments are tool failures."""
    tool = NativeTool(search)

    with pytest.raises(ToolExecutionFailure, match="invalid arguments"):
        await tool.invoke({"limit": 2}, ExecutionContext())
    with pytest.raises(ToolExecutionFailure, match="invalid arguments"):
        await tool.invoke({"query": "x", "colour": "red"}, ExecutionContext())


@pytest.mark.asyncio
async def test_native_tool_wraps_exceptions():
    """Test that exceptions from the function become ToolExecutionFailure."""
    def explode():
        raise RuntimeError("kaboom")

    with pytest.raises(ToolExecutionFailure) as excinfo:
        await NativeTool(explode).invoke({}, ExecutionContext())

    assert excinfo.value.tool_name == "explode"
    assert excinfo.value.reason == "kaboom"


def test_registry():
    """Test registration, lookup and selection."""
    registry = ToolRegistry()
    registry.register(search)

    @registry.tool(name="fetch", idempotent=True)
    def fetch_url(url: str):
        return url

    assert registry.names() == ["search", "fetch"]
    assert "fetch" in registry
    assert registry.get("fetch").idempotent is True
    assert [t.name for t in registry.select(["fetch", "missing"])] == ["fetch"]
    assert len(registry.select()) == 2
    with pytest.raises(ValueError, match="Tool not found"):
        registry.get("missing")

    registry.unregister("search")
    assert len(registry) == 1


@pytest.mark.asyncio
async def test_builtin_tools():
    """Test the insight and phase built-ins."""
    context = ExecutionContext()

    assert await record_insight("prices rose", context=context) == {"recorded": "prices rose", "total": 1}
    assert await set_phase("analysis", context=context, strategy="breadth") == {
        "phase": "analysis", "strategy": "breadth"}
    assert context.evolution.key_insights == ["prices rose"]
    assert [t.name for t in builtin_tools()] == ["record_insight", "set_phase"]
