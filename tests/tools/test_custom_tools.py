"""Tests for tools/custom_tools.py - user tools under {LOAF_HOME}/tools.

Tests cover:
- Both export styles (TOOL mapping and module attributes)
- Sync and async run functions, raw return normalization
- Invalid names, missing exports, import errors
- Collisions with already-registered tools
- Directory walking rules
"""

import textwrap

import pytest

from tools.custom_tools import (
    discover_custom_tools,
    list_tool_files,
    normalize_input_schema,
    register_custom_tools,
)
from tools.registry import ToolContext, ToolDefinition, ToolRegistry


def _write_tool(home, relative, source):
    path = home / "tools" / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(textwrap.dedent(source), encoding="utf-8")
    return path


class TestDiscovery:
    def test_missing_directory(self, tmp_path):
        discovery = discover_custom_tools(tmp_path)
        assert discovery.searched_directories == [str(tmp_path / "tools")]
        assert discovery.tools == []
        assert discovery.errors == []

    def test_tool_mapping_export(self, tmp_path):
        _write_tool(tmp_path, "shout.py", """
            def _run(tool_input, context):
                return tool_input["text"].upper()

            TOOL = {
                "name": "shout",
                "description": "Upper-case text.",
                "input_schema": {"type": "object", "properties": {"text": {"type": "string"}}, "required": ["text"]},
                "run": _run,
            }
        """)
        discovery = discover_custom_tools(tmp_path)
        assert [t.name for t in discovery.tools] == ["shout"]
        tool = discovery.tools[0]
        assert tool.description == "Upper-case text."
        assert tool.input_schema["required"] == ["text"]

    def test_module_attribute_export(self, tmp_path):
        _write_tool(tmp_path, "nested/word_count.py", """
            NAME = "text.word_count"
            INPUT_SCHEMA = {"type": "object", "properties": {"text": {"type": "string"}}}

            async def run(tool_input, context):
                return {"words": len(tool_input.get("text", "").split())}
        """)
        discovery = discover_custom_tools(tmp_path)
        tool = discovery.tools[0]
        assert tool.name == "text.word_count"
        assert tool.description == "custom tool from word_count.py"
        assert discovery.loaded[0][0] == "text.word_count"

    def test_invalid_name(self, tmp_path):
        _write_tool(tmp_path, "bad.py", """
            NAME = "has space"
            def run(tool_input, context):
                return None
        """)
        discovery = discover_custom_tools(tmp_path)
        assert discovery.tools == []
        assert "invalid tool name" in discovery.errors[0]

    def test_no_export(self, tmp_path):
        _write_tool(tmp_path, "helper.py", "VALUE = 1\n")
        discovery = discover_custom_tools(tmp_path)
        assert discovery.errors[0].endswith("no valid tool export found")

    def test_import_error_collected(self, tmp_path):
        _write_tool(tmp_path, "broken.py", "raise RuntimeError('nope')\n")
        _write_tool(tmp_path, "ok.py", """
            NAME = "ok"
            def run(tool_input, context):
                return "fine"
        """)
        discovery = discover_custom_tools(tmp_path)
        assert [t.name for t in discovery.tools] == ["ok"]
        assert discovery.errors[0].startswith("failed loading")
        assert "nope" in discovery.errors[0]


class TestRunners:
    @pytest.mark.asyncio
    async def test_sync_runner_is_normalized(self, tmp_path):
        _write_tool(tmp_path, "add.py", """
            NAME = "add"
            def run(tool_input, context):
                return tool_input["a"] + tool_input["b"]
        """)
        tool = discover_custom_tools(tmp_path).tools[0]
        result = await tool.run({"a": 2, "b": 3}, ToolContext())
        assert result.ok is True
        assert result.output == 5

    @pytest.mark.asyncio
    async def test_result_shaped_return(self, tmp_path):
        _write_tool(tmp_path, "fail.py", """
            NAME = "fail"
            async def run(tool_input, context):
                return {"ok": False, "output": None, "error": "not today"}
        """)
        tool = discover_custom_tools(tmp_path).tools[0]
        result = await tool.run({}, ToolContext())
        assert result.ok is False
        assert result.error == "not today"


class TestRegistration:
    def test_collision_becomes_error(self, tmp_path):
        _write_tool(tmp_path, "run_js.py", """
            NAME = "run_js"
            def run(tool_input, context):
                return None
        """)
        registry = ToolRegistry()
        registry.register(ToolDefinition(name="run_js", description="built in", run=lambda i, c: None))

        discovery = register_custom_tools(registry, tmp_path)
        assert discovery.loaded == []
        assert "tool already registered: run_js" in discovery.errors[0]
        assert registry.get("run_js").description == "built in"

    def test_registers_new_tools(self, tmp_path):
        _write_tool(tmp_path, "hello.py", """
            NAME = "hello"
            DESCRIPTION = "Say hello."
            def run(tool_input, context):
                return "hi"
        """)
        registry = ToolRegistry()
        discovery = register_custom_tools(registry, tmp_path)
        assert registry.has("hello")
        assert discovery.loaded == [("hello", str(tmp_path / "tools" / "hello.py"))]


class TestHelpers:
    def test_list_tool_files_skips_hidden_and_cache(self, tmp_path):
        root = tmp_path / "tools"
        for relative in ("a.py", "sub/b.py", ".hidden/c.py", "__pycache__/d.py", "node_modules/e.py", "notes.txt"):
            path = root / relative
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text("", encoding="utf-8")
        files = [p.relative_to(root).as_posix() for p in list_tool_files(root)]
        assert files == ["a.py", "sub/b.py"]

    def test_normalize_input_schema(self):
        assert normalize_input_schema(None) is None
        assert normalize_input_schema({"type": "object"}) is None
        assert normalize_input_schema({
            "properties": {"x": {}},
            "required": ["x", 1],
            "additionalProperties": True,
        }) == {"type": "object", "properties": {"x": {}}, "additionalProperties": True}
