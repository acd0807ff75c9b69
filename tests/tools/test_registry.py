"""Tests for tools/registry.py and tools/runtime.py.

Tests cover:
- ToolResult defaults and payload shapes
- ToolRegistry uniqueness, ordering, unregister
- ToolRuntime execution of sync/async tools, raw value normalization,
  unknown tools and raised exceptions
"""

import pytest

from agent.cancellation import InferenceCancelled
from tools.registry import ToolCall, ToolContext, ToolDefinition, ToolRegistry, ToolResult
from tools.runtime import ToolRuntime, normalize_tool_result


def _tool(name, run=None, schema=None):
    return ToolDefinition(name=name, description=f"{name} tool", run=run or (lambda i, c: None), input_schema=schema)


# ---------------------------------------------------------------------------
# ToolResult
# ---------------------------------------------------------------------------

class TestToolResult:
    def test_failure_gets_default_error(self):
        assert ToolResult(ok=False).error == "tool execution failed"

    def test_to_dict_omits_missing_error(self):
        assert ToolResult(ok=True, output=1).to_dict() == {"ok": True, "output": 1}
        assert ToolResult(ok=False, error="x").to_dict() == {"ok": False, "output": None, "error": "x"}

    def test_model_payload(self):
        assert ToolResult(ok=True, output={"a": 1}).to_model_payload() == {"output": {"a": 1}}
        assert ToolResult(ok=False, output="partial", error="boom").to_model_payload() == {
            "error": "boom",
            "output": "partial",
        }


# ---------------------------------------------------------------------------
# ToolRegistry
# ---------------------------------------------------------------------------

class TestToolRegistry:
    def test_register_and_lookup(self):
        registry = ToolRegistry().register(_tool("echo"))
        assert registry.has("echo")
        assert "echo" in registry
        assert registry.get("echo").description == "echo tool"
        assert registry.get("missing") is None

    def test_duplicate_name_rejected(self):
        registry = ToolRegistry().register(_tool("echo"))
        with pytest.raises(ValueError, match="tool already registered: echo"):
            registry.register(_tool("echo"))
        assert len(registry) == 1

    def test_list_is_name_sorted(self):
        registry = ToolRegistry().register_many([_tool("zeta"), _tool("alpha"), _tool("mid")])
        assert [t.name for t in registry.list()] == ["alpha", "mid", "zeta"]

    def test_manifest(self):
        schema = {"type": "object", "properties": {"x": {"type": "string"}}}
        registry = ToolRegistry().register(_tool("b", schema=schema)).register(_tool("a"))
        manifest = registry.get_model_manifest()
        assert [m["name"] for m in manifest] == ["a", "b"]
        assert manifest[1]["input_schema"] == schema
        assert manifest[0]["input_schema"] is None

    def test_unregister(self):
        registry = ToolRegistry().register(_tool("echo"))
        registry.unregister("echo").unregister("never-there")
        assert len(registry) == 0


# ---------------------------------------------------------------------------
# ToolRuntime
# ---------------------------------------------------------------------------

class TestNormalize:
    def test_passthrough(self):
        result = ToolResult(ok=True, output=3)
        assert normalize_tool_result(result) is result

    def test_result_shaped_mapping(self):
        result = normalize_tool_result({"ok": False, "output": None, "error": "nope"})
        assert result.ok is False
        assert result.error == "nope"

    def test_raw_value_wrapped(self):
        result = normalize_tool_result({"value": 42})
        assert result.ok is True
        assert result.output == {"value": 42}


class TestToolRuntime:
    @pytest.mark.asyncio
    async def test_sync_tool(self):
        registry = ToolRegistry().register(_tool("add", run=lambda i, c: i["a"] + i["b"]))
        result = await ToolRuntime(registry).execute(ToolCall(id="1", name="add", input={"a": 1, "b": 2}))
        assert result.ok is True
        assert result.output == 3

    @pytest.mark.asyncio
    async def test_async_tool_receives_context(self):
        seen = {}

        async def run(tool_input, context):
            seen["context"] = context
            return ToolResult(ok=True, output="done")

        registry = ToolRegistry().register(_tool("work", run=run))
        context = ToolContext()
        result = await ToolRuntime(registry).execute(ToolCall(id="1", name="work"), context)
        assert result.output == "done"
        assert seen["context"] is context

    @pytest.mark.asyncio
    async def test_unknown_tool(self):
        result = await ToolRuntime(ToolRegistry()).execute(ToolCall(id="1", name="ghost"))
        assert result.ok is False
        assert result.error == "unknown tool: ghost"

    @pytest.mark.asyncio
    async def test_exception_becomes_failure(self):
        def explode(tool_input, context):
            raise RuntimeError("disk on fire")

        registry = ToolRegistry().register(_tool("explode", run=explode))
        result = await ToolRuntime(registry).execute(ToolCall(id="1", name="explode"))
        assert result.ok is False
        assert result.error == "disk on fire"

    @pytest.mark.asyncio
    async def test_empty_exception_message_uses_class_name(self):
        def explode(tool_input, context):
            raise KeyError()

        registry = ToolRegistry().register(_tool("explode", run=explode))
        result = await ToolRuntime(registry).execute(ToolCall(id="1", name="explode"))
        assert result.error == "KeyError"

    @pytest.mark.asyncio
    async def test_cancellation_inside_tool_is_a_result(self):
        def cancelled(tool_input, context):
            raise InferenceCancelled()

        registry = ToolRegistry().register(_tool("slow", run=cancelled))
        result = await ToolRuntime(registry).execute(ToolCall(id="1", name="slow"))
        assert result.ok is False
        assert result.error == "Request interrupted by user."

    @pytest.mark.asyncio
    async def test_input_is_copied(self):
        def mutate(tool_input, context):
            tool_input["touched"] = True
            return "ok"

        original = {"a": 1}
        registry = ToolRegistry().register(_tool("mutate", run=mutate))
        await ToolRuntime(registry).execute(ToolCall(id="1", name="mutate", input=original))
        assert original == {"a": 1}
