"""Tests for agent/tool_declarations.py - provider-safe tool names."""

from agent.tool_declarations import (
    EMPTY_OBJECT_SCHEMA,
    ToolDeclarations,
    strict_parameters,
    to_provider_tool_name,
)
from tools.registry import ToolDefinition, ToolRegistry


def _registry(*names):
    registry = ToolRegistry()
    for name in names:
        registry.register(ToolDefinition(name=name, description="", run=lambda i, c: None))
    return registry


class TestProviderToolName:
    def test_safe_name_unchanged(self):
        assert to_provider_tool_name("run_js", set()) == "run_js"

    def test_unsafe_characters_replaced(self):
        assert to_provider_tool_name("fs.read:file", set()) == "fs_read_file"

    def test_must_start_with_letter_or_underscore(self):
        assert to_provider_tool_name("3d-render", set()) == "tool_3d-render"

    def test_empty_name(self):
        assert to_provider_tool_name("  ", set()) == "tool"
        assert to_provider_tool_name("...", set()) == "tool"

    def test_length_capped(self):
        name = to_provider_tool_name("a" * 100, set())
        assert len(name) == 64

    def test_collisions_get_suffixes(self):
        used = set()
        assert to_provider_tool_name("a.b", used) == "a_b"
        assert to_provider_tool_name("a:b", used) == "a_b_2"
        assert to_provider_tool_name("a_b", used) == "a_b_3"

    def test_suffix_respects_length_cap(self):
        used = {"a" * 64}
        name = to_provider_tool_name("a" * 64, used)
        assert name == "a" * 62 + "_2"


class TestToolDeclarations:
    def test_build_maps_both_ways(self):
        registry = _registry("web.fetch", "run_js")
        declarations = ToolDeclarations.build(registry, lambda name, tool: {"name": name, "src": tool.name})

        assert declarations.declarations == [
            {"name": "run_js", "src": "run_js"},
            {"name": "web_fetch", "src": "web.fetch"},
        ]
        assert declarations.runtime_name("web_fetch") == "web.fetch"
        # Names the model invents pass through unchanged
        assert declarations.runtime_name("made_up") == "made_up"

    def test_strict_parameters(self):
        schema = {"type": "object", "properties": {"x": {"type": "string"}}, "required": ["x"]}
        assert strict_parameters(schema) == {
            "type": "object",
            "properties": {"x": {"type": "string"}},
            "required": ["x"],
            "additionalProperties": False,
        }

    def test_strict_parameters_default(self):
        params = strict_parameters(None)
        assert params["properties"] == EMPTY_OBJECT_SCHEMA["properties"]
        assert params["additionalProperties"] is False
