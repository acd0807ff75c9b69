"""Executes single tool calls against a ToolRegistry.

The runtime sits inside a loop that is driving a live model conversation,
so a tool fault must never escape as an exception: unknown names and
anything a tool raises (cancellation included) come back as
``ToolResult(ok=False, error=...)`` for the model to react to.
"""

import inspect
import logging
import time
from collections.abc import Mapping
from typing import Any, Optional

from tools.registry import ToolCall, ToolContext, ToolRegistry, ToolResult

logger = logging.getLogger(__name__)


def normalize_tool_result(raw: Any) -> ToolResult:
    """Coerce whatever a tool returned into a ToolResult."""
    if isinstance(raw, ToolResult):
        return raw
    if isinstance(raw, Mapping) and isinstance(raw.get("ok"), bool) and "output" in raw:
        error = raw.get("error")
        return ToolResult(
            ok=raw["ok"],
            output=raw["output"],
            error=error if isinstance(error, str) else None,
        )
    return ToolResult(ok=True, output=raw)


class ToolRuntime:
    def __init__(self, registry: ToolRegistry):
        self.registry = registry

    async def execute(self, call: ToolCall, context: Optional[ToolContext] = None) -> ToolResult:
        context = context or ToolContext()
        tool = self.registry.get(call.name)
        if tool is None:
            logger.warning("Model requested unknown tool %r", call.name)
            return ToolResult(ok=False, error=f"unknown tool: {call.name}")

        started = time.monotonic()
        try:
            raw = tool.run(dict(call.input or {}), context)
            if inspect.isawaitable(raw):
                raw = await raw
            result = normalize_tool_result(raw)
        except Exception as e:
            message = str(e).strip() or type(e).__name__
            logger.warning("Tool %s raised %s: %s", call.name, type(e).__name__, message)
            return ToolResult(ok=False, error=message)

        elapsed_ms = int((time.monotonic() - started) * 1000)
        if result.ok:
            logger.debug("Tool %s (%s) completed in %d ms", call.name, call.id, elapsed_ms)
        else:
            logger.warning("Tool %s (%s) failed in %d ms: %s", call.name, call.id, elapsed_ms, result.error)
        return result
