"""Helpers the CLI uses to render tool-call rows between streamed answer text."""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from agent.inference_loop import safe_parse_object


@dataclass
class ToolCallPreview:
    name: str
    input: Dict[str, Any] = field(default_factory=dict)


def _trimmed(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def parse_tool_call_preview(raw: Any) -> Optional[ToolCallPreview]:
    if not isinstance(raw, dict):
        return None
    call = raw["call"] if isinstance(raw.get("call"), dict) else raw

    name = _trimmed(call.get("name"))
    if name:
        raw_input = call.get("input") if call.get("input") is not None else call.get("arguments")
        return ToolCallPreview(name, safe_parse_object(raw_input))

    name = _trimmed(call.get("providerToolName"))
    if name:
        return ToolCallPreview(name, safe_parse_object(call.get("args")))

    function = call.get("function") if isinstance(call.get("function"), dict) else {}
    name = _trimmed(function.get("name"))
    if name:
        return ToolCallPreview(name, safe_parse_object(function.get("arguments")))
    return None


def format_tool_preview(name: str, tool_input: Dict[str, Any], max_chars: int = 120) -> str:
    """One-line ``name(args)`` preview, truncated with an ellipsis."""
    if tool_input:
        args = json.dumps(tool_input, ensure_ascii=False, separators=(",", ":"), default=str)
        text = f"{name}({args})"
    else:
        text = f"{name}()"
    text = " ".join(text.split())
    if len(text) > max_chars:
        text = text[: max(0, max_chars - 3)] + "..."
    return text
