"""
User-supplied Python tools.

Every ``*.py`` file under ``{LOAF_HOME}/tools/`` (recursively, in sorted
order) is imported and may contribute one tool, declared either as:

    TOOL = {"name": "...", "description": "...", "input_schema": {...}, "run": fn}

or as module-level attributes:

    NAME = "word_count"
    DESCRIPTION = "Count words in text."
    INPUT_SCHEMA = {"type": "object", "properties": {"text": {"type": "string"}}}

    def run(input, context):
        return {"words": len(input.get("text", "").split())}

``run`` may be sync or async and may return anything JSON-serializable;
raw values are normalized the same way ToolRuntime normalizes them.
Problems never raise: they are collected in ``CustomToolsDiscovery.errors``.
"""

import importlib.util
import inspect
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from tools.registry import ToolDefinition, ToolRegistry
from tools.runtime import normalize_tool_result

logger = logging.getLogger(__name__)

TOOL_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.:-]+$")
_SKIPPED_DIRS = {"__pycache__", "node_modules"}


@dataclass
class CustomToolsDiscovery:
    searched_directories: List[str] = field(default_factory=list)
    loaded: List[Tuple[str, str]] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    tools: List[ToolDefinition] = field(default_factory=list)


def normalize_input_schema(value: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(value, Mapping) or not isinstance(value.get("properties"), Mapping):
        return None
    schema: Dict[str, Any] = {"type": "object", "properties": dict(value["properties"])}
    required = value.get("required")
    if isinstance(required, list) and all(isinstance(item, str) for item in required):
        schema["required"] = list(required)
    if isinstance(value.get("additionalProperties"), bool):
        schema["additionalProperties"] = value["additionalProperties"]
    return schema


def list_tool_files(root: Path) -> List[Path]:
    files = []
    for path in root.rglob("*.py"):
        relative = path.relative_to(root).parts
        if any(part in _SKIPPED_DIRS or part.startswith(".") for part in relative[:-1]):
            continue
        if path.is_file():
            files.append(path)
    return sorted(files)


def _wrap_runner(runner):
    async def run(tool_input, context):
        raw = runner(tool_input, context)
        if inspect.isawaitable(raw):
            raw = await raw
        return normalize_tool_result(raw)
    return run


def _resolve_candidate(module, source: Path) -> Optional[ToolDefinition]:
    default_description = f"custom tool from {source.name}"

    tool = getattr(module, "TOOL", None)
    if isinstance(tool, ToolDefinition):
        return tool
    if isinstance(tool, Mapping):
        name = str(tool.get("name") or "").strip()
        runner = tool.get("run")
        if name and callable(runner):
            return ToolDefinition(
                name=name,
                description=str(tool.get("description") or "").strip() or default_description,
                input_schema=normalize_input_schema(tool.get("input_schema") or tool.get("inputSchema")),
                run=_wrap_runner(runner),
            )

    name = getattr(module, "NAME", None) or getattr(module, "name", None)
    runner = getattr(module, "run", None)
    if isinstance(name, str) and name.strip() and callable(runner):
        description = getattr(module, "DESCRIPTION", None) or getattr(module, "description", None)
        return ToolDefinition(
            name=name.strip(),
            description=str(description or "").strip() or default_description,
            input_schema=normalize_input_schema(getattr(module, "INPUT_SCHEMA", None)),
            run=_wrap_runner(runner),
        )
    return None


def _load_module(path: Path, tag):
    spec = importlib.util.spec_from_file_location(f"loaf_custom_tool_{tag}_{path.stem}", path)
    if spec is None or spec.loader is None:
        raise ImportError("could not create module spec")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def discover_custom_tools(home: Path) -> CustomToolsDiscovery:
    directory = Path(home) / "tools"
    result = CustomToolsDiscovery(searched_directories=[str(directory)])
    if not directory.is_dir():
        return result

    for index, path in enumerate(list_tool_files(directory)):
        try:
            module = _load_module(path, index)
        except Exception as e:
            result.errors.append(f"failed loading {path}: {e}")
            continue

        tool = _resolve_candidate(module, path)
        if tool is None:
            result.errors.append(f"skipped {path}: no valid tool export found")
            continue
        if not TOOL_NAME_PATTERN.match(tool.name):
            result.errors.append(
                f'skipped {path}: invalid tool name "{tool.name}" (allowed: letters, numbers, _ . : -)'
            )
            continue
        result.tools.append(tool)
        result.loaded.append((tool.name, str(path)))

    for error in result.errors:
        logger.warning("Custom tools: %s", error)
    return result


def register_custom_tools(registry: ToolRegistry, home: Path) -> CustomToolsDiscovery:
    """Discover tools and register them; name collisions become errors."""
    discovery = discover_custom_tools(home)
    registered = []
    for tool, (name, source) in zip(discovery.tools, discovery.loaded):
        try:
            registry.register(tool)
        except ValueError as e:
            discovery.errors.append(f"skipped {source}: {e}")
            logger.warning("Custom tools: %s", e)
            continue
        registered.append((name, source))
        logger.info("Loaded custom tool %r from %s", name, source)
    discovery.loaded = registered
    return discovery
