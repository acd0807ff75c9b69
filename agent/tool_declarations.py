"""Provider-safe function names for registry tools.

Providers only accept function names matching ``[a-zA-Z0-9_-]`` (starting
with a letter or underscore, at most 64 chars), while registry names may
contain ``.`` or ``:``.  ``ToolDeclarations`` sanitizes each name,
disambiguates collisions with ``_2``, ``_3``... and keeps the reverse map
so calls always resolve back to the runtime name before execution.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

from loaf_constants import PROVIDER_TOOL_NAME_MAX_CHARS
from tools.registry import ToolDefinition, ToolRegistry

_SAFE_NAME = re.compile(r"^[a-zA-Z0-9_-]+$")
_UNSAFE_RUN = re.compile(r"[^a-zA-Z0-9_-]+")

EMPTY_OBJECT_SCHEMA = {"type": "object", "properties": {}, "required": []}


def to_provider_tool_name(runtime_name: str, used_names: Set[str]) -> str:
    base = runtime_name.strip() or "tool"
    if _SAFE_NAME.match(base):
        candidate = base
    else:
        candidate = _UNSAFE_RUN.sub("_", base)
        candidate = re.sub(r"_+", "_", candidate).strip("_")

    if not candidate:
        candidate = "tool"
    if not re.match(r"^[a-zA-Z_]", candidate):
        candidate = f"tool_{candidate}"
    if len(candidate) > PROVIDER_TOOL_NAME_MAX_CHARS:
        candidate = candidate[:PROVIDER_TOOL_NAME_MAX_CHARS].rstrip("_") or "tool"

    unique = candidate
    suffix = 2
    while unique in used_names:
        suffix_text = f"_{suffix}"
        suffix += 1
        max_base = max(1, PROVIDER_TOOL_NAME_MAX_CHARS - len(suffix_text))
        unique = f"{candidate[:max_base]}{suffix_text}"
    used_names.add(unique)
    return unique


@dataclass
class ToolDeclarations:
    declarations: List[Dict[str, Any]] = field(default_factory=list)
    provider_to_runtime: Dict[str, str] = field(default_factory=dict)

    def runtime_name(self, provider_name: str) -> str:
        return self.provider_to_runtime.get(provider_name, provider_name)

    @classmethod
    def build(
        cls,
        registry: ToolRegistry,
        render: Callable[[str, ToolDefinition], Dict[str, Any]],
    ) -> "ToolDeclarations":
        """Build declarations with *render(provider_name, tool)* for each tool in name order."""
        result = cls()
        used: Set[str] = set()
        for tool in registry.list():
            provider_name = to_provider_tool_name(tool.name, used)
            result.provider_to_runtime[provider_name] = tool.name
            result.declarations.append(render(provider_name, tool))
        return result


def strict_parameters(schema: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """JSON-schema parameters block with additionalProperties pinned off."""
    schema = schema or EMPTY_OBJECT_SCHEMA
    return {
        "type": schema.get("type", "object"),
        "properties": schema.get("properties", {}),
        "required": list(schema.get("required") or []),
        "additionalProperties": False,
    }
