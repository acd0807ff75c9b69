#!/usr/bin/env python3
"""
Tools Package

Everything the model can call, plus the runtime that executes it:

- registry: ToolDefinition / ToolResult data model and the ToolRegistry
- runtime: ToolRuntime, which executes a ToolCall and never raises
- process_runner: bounded one-shot child processes and command probing
- process_registry: long-lived background sessions with cursor-addressable output
- javascript_tool: the javascript tool suite built on the two modules above
- custom_tools: user tools discovered under ``{LOAF_HOME}/tools``
- persistent_tool: create_persistent_tool, which writes and loads such a tool mid-conversation

``build_default_registry`` assembles the registry the agent runs with.
"""

import logging
from pathlib import Path
from typing import Optional

from .javascript_tool import create_javascript_tools
from .persistent_tool import PERSISTENT_TOOL_NAME, PersistentToolCreator
from .process_registry import ProcessSessionManager
from .process_runner import CommandProbe
from .registry import ToolCall, ToolContext, ToolDefinition, ToolRegistry, ToolResult
from .runtime import ToolRuntime

logger = logging.getLogger(__name__)


def build_default_registry(
    sessions: ProcessSessionManager,
    probe: Optional[CommandProbe] = None,
    custom_tools_home: Optional[Path] = None,
) -> ToolRegistry:
    """Built-in tools, then custom tools from *custom_tools_home* when given.

    create_persistent_tool writes into *custom_tools_home*, falling back to
    the session manager's data directory.
    """
    registry = ToolRegistry()
    builtins = create_javascript_tools(sessions, probe=probe)
    registry.register_many(builtins)
    builtin_names = frozenset([PERSISTENT_TOOL_NAME, *(tool.name for tool in builtins)])
    home = custom_tools_home if custom_tools_home is not None else sessions.data_dir
    registry.register(PersistentToolCreator(registry, home, builtin_names.__contains__).definition())

    if custom_tools_home is not None:
        from .custom_tools import register_custom_tools
        discovery = register_custom_tools(registry, custom_tools_home)
        logger.debug(
            "Custom tools: %d loaded, %d error(s)", len(discovery.loaded), len(discovery.errors),
        )
    return registry


__all__ = [
    "ToolCall",
    "ToolContext",
    "ToolDefinition",
    "ToolRegistry",
    "ToolResult",
    "ToolRuntime",
    "ProcessSessionManager",
    "CommandProbe",
    "build_default_registry",
]
