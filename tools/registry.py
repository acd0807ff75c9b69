"""
Tool registry for Loaf.

Tools follow a simple pattern:
1. Describe the tool (name, description, JSON-schema input)
2. Provide a ``run(input, context)`` callable (sync or async)
3. Return a ToolResult with ``ok``/``output``/``error``

Names are unique; ``list()`` is name-sorted so the manifest sent to the
model is identical between runs for the same set of tools.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from agent.cancellation import CancelToken


@dataclass
class ToolResult:
    """Result from executing a tool.

    ``ok=False`` always carries a human-readable ``error``; ``output`` may
    still hold partial diagnostic data on failure.
    """

    ok: bool
    output: Any = None
    error: Optional[str] = None

    def __post_init__(self):
        if not self.ok and not self.error:
            self.error = "tool execution failed"

    def to_dict(self) -> Dict[str, Any]:
        data = {"ok": self.ok, "output": self.output}
        if self.error is not None:
            data["error"] = self.error
        return data

    def to_model_payload(self) -> Dict[str, Any]:
        """Shape fed back to the model as the tool-result message body."""
        if self.ok:
            return {"output": self.output}
        return {"error": self.error or "tool execution failed", "output": self.output}


@dataclass
class ToolCall:
    """A model-requested invocation.  ``id`` is unique within one round."""

    id: str
    name: str
    input: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolContext:
    now: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    cancel_token: Optional[CancelToken] = None


# run(input, context) -> ToolResult | Awaitable[ToolResult]
ToolRunner = Callable[[Dict[str, Any], ToolContext], Any]


@dataclass
class ToolDefinition:
    name: str
    description: str
    run: ToolRunner
    input_schema: Optional[Dict[str, Any]] = None

    def manifest_entry(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


class ToolRegistry:
    """Registry of available tools, keyed by unique name."""

    def __init__(self):
        self._tools: Dict[str, ToolDefinition] = {}

    def register(self, tool: ToolDefinition) -> "ToolRegistry":
        if tool.name in self._tools:
            raise ValueError(f"tool already registered: {tool.name}")
        self._tools[tool.name] = tool
        return self

    def register_many(self, tools: Iterable[ToolDefinition]) -> "ToolRegistry":
        for tool in tools:
            self.register(tool)
        return self

    def unregister(self, name: str) -> "ToolRegistry":
        self._tools.pop(name, None)
        return self

    def get(self, name: str) -> Optional[ToolDefinition]:
        return self._tools.get(name)

    def has(self, name: str) -> bool:
        return name in self._tools

    def list(self) -> List[ToolDefinition]:
        return [self._tools[name] for name in sorted(self._tools)]

    def get_model_manifest(self) -> List[Dict[str, Any]]:
        return [tool.manifest_entry() for tool in self.list()]

    def __contains__(self, name: str) -> bool:
        return self.has(name)

    def __len__(self) -> int:
        return len(self._tools)
