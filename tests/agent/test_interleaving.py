"""Tests for agent/interleaving.py - CLI tool preview helpers."""

from agent.interleaving import (
    ToolCallPreview,
    format_tool_preview,
    parse_tool_call_preview,
)


class TestParsePreview:
    def test_started_event_shape(self):
        preview = parse_tool_call_preview({"toolRound": 1, "call": {"name": "run_js", "input": {"code": "1"}}})
        assert preview == ToolCallPreview("run_js", {"code": "1"})

    def test_json_string_arguments(self):
        preview = parse_tool_call_preview({"name": "x", "arguments": '{"a": 2}'})
        assert preview.input == {"a": 2}

    def test_provider_shape(self):
        assert parse_tool_call_preview({"providerToolName": "fs_read", "args": {}}).name == "fs_read"

    def test_openai_function_shape(self):
        raw = {"function": {"name": "run_js", "arguments": '{"code": "2+2"}'}}
        assert parse_tool_call_preview(raw) == ToolCallPreview("run_js", {"code": "2+2"})

    def test_unrecognized(self):
        assert parse_tool_call_preview("nope") is None
        assert parse_tool_call_preview({"call": {"name": "  "}}) is None


class TestFormatPreview:
    def test_no_arguments(self):
        assert format_tool_preview("list_background_js", {}) == "list_background_js()"

    def test_compact_json(self):
        assert format_tool_preview("run_js", {"code": "1 + 1"}) == 'run_js({"code":"1 + 1"})'

    def test_whitespace_collapsed(self):
        assert format_tool_preview("run_js", {"code": "a\n  b"}) == 'run_js({"code":"a\\n b"})'

    def test_truncated(self):
        text = format_tool_preview("run_js", {"code": "x" * 500}, max_chars=40)
        assert len(text) == 40
        assert text.endswith("...")
