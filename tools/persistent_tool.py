"""
create_persistent_tool: the model writes a Python tool into
``{LOAF_HOME}/tools/`` and can call it in the same conversation.

The generated file uses the module-attribute export that custom_tools
understands (NAME, DESCRIPTION, INPUT_SCHEMA, run), so it is also picked
up by discovery on the next start.
"""

import importlib.util
import json
import logging
import pprint
import re
import textwrap
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional

from tools.custom_tools import TOOL_NAME_PATTERN, _load_module, _resolve_candidate
from tools.javascript_tool import as_bool, as_non_empty_string, invalid_input
from tools.registry import ToolContext, ToolDefinition, ToolRegistry, ToolResult

logger = logging.getLogger(__name__)

PERSISTENT_TOOL_NAME = "create_persistent_tool"
VALID_FILE_NAME = re.compile(r"^[a-zA-Z0-9._-]+$")

CREATE_PERSISTENT_TOOL_SCHEMA = {
    "type": "object",
    "properties": {
        "name": {"type": "string", "description": "tool name (pattern: [a-zA-Z0-9_.:-]+)."},
        "description": {"type": "string", "description": "short human-readable tool description."},
        "args_schema": {
            "type": "object",
            "description": "json schema object for tool args (type/object/properties/required/additionalProperties).",
        },
        "handler_code": {
            "type": "string",
            "description": (
                "python code for the body of `async def run(tool_input, context):`. "
                "return a json-serializable value."
            ),
        },
        "filename": {
            "type": "string",
            "description": "optional target filename inside the tools dir (e.g. my_tool.py). defaults to a name-based .py file.",
        },
        "overwrite": {
            "type": "boolean",
            "description": "when true, allows replacing an existing custom tool file and registration.",
        },
    },
    "required": ["name", "description", "handler_code"],
    "additionalProperties": False,
}

_DEFAULT_ARGS_SCHEMA = {"type": "object", "properties": {}, "additionalProperties": True}


def resolve_target_file_name(raw_value: Any, fallback_name: str) -> Optional[str]:
    """Base name of the file to write, or None when *raw_value* is unusable."""
    fallback = re.sub(r"[^a-zA-Z0-9_-]+", "_", fallback_name) + ".py"
    if not isinstance(raw_value, str) or not raw_value.strip():
        return fallback
    base_name = Path(raw_value.strip()).name
    if not VALID_FILE_NAME.match(base_name) or Path(base_name).suffix.lower() != ".py":
        return None
    return base_name


def normalize_args_schema(value: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(value, Mapping):
        return None
    if value.get("type") != "object" or not isinstance(value.get("properties"), Mapping):
        return None
    try:
        return json.loads(json.dumps(value))
    except (TypeError, ValueError):
        return None


def build_tool_source(
    name: str,
    description: str,
    handler_code: str,
    args_schema: Optional[Dict[str, Any]] = None,
) -> str:
    schema = args_schema or _DEFAULT_ARGS_SCHEMA
    body_lines = textwrap.dedent(handler_code.replace("\r\n", "\n")).strip("\n").split("\n")
    body = "\n".join(f"    {line}" if line.strip() else "" for line in body_lines)
    return (
        '"""Persistent tool written by create_persistent_tool."""\n'
        "\n"
        f"NAME = {name!r}\n"
        f"DESCRIPTION = {description!r}\n"
        f"INPUT_SCHEMA = {pprint.pformat(schema, sort_dicts=False)}\n"
        "\n"
        "\n"
        "async def run(tool_input, context):\n"
        f"{body or '    return None'}\n"
    )


def _error_result(message: str, **data: Any) -> ToolResult:
    return ToolResult(ok=False, output={"status": "error", "message": message, **data}, error=message)


class PersistentToolCreator:
    """Writes tool files under *home*/tools and registers them on the spot."""

    def __init__(
        self,
        registry: ToolRegistry,
        home: Path,
        is_builtin_tool_name: Callable[[str], bool],
    ):
        self.registry = registry
        self.tools_dir = Path(home) / "tools"
        self.is_builtin_tool_name = is_builtin_tool_name
        self._loads = 0

    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name=PERSISTENT_TOOL_NAME,
            description="create or update a persistent python tool in the loaf tools directory and autoload it immediately.",
            input_schema=CREATE_PERSISTENT_TOOL_SCHEMA,
            run=self.create_persistent_tool,
        )

    def create_persistent_tool(self, args: dict, context: ToolContext) -> ToolResult:
        name = as_non_empty_string(args.get("name"))
        if not name or not TOOL_NAME_PATTERN.match(name):
            return invalid_input("create_persistent_tool requires a valid `name` matching [a-zA-Z0-9_.:-]+.")

        description = as_non_empty_string(args.get("description"))
        if not description:
            return invalid_input("create_persistent_tool requires a non-empty `description`.")

        handler_code = args.get("handler_code")
        if not as_non_empty_string(handler_code):
            return invalid_input("create_persistent_tool requires non-empty `handler_code`.")

        args_schema = normalize_args_schema(args.get("args_schema"))
        if args.get("args_schema") is not None and args_schema is None:
            return invalid_input('`args_schema` must be an object schema with `type: "object"` and `properties`.')

        overwrite = as_bool(args.get("overwrite"))
        file_name = resolve_target_file_name(args.get("filename"), name)
        if file_name is None:
            return invalid_input("invalid `filename` (use letters, numbers, ., _, - and a .py extension).")

        target = self.tools_dir / file_name
        existed_on_disk = target.exists()
        if existed_on_disk and not overwrite:
            return invalid_input(f"tool file already exists: {target}. set overwrite=true to replace.")

        already_registered = self.registry.has(name)
        if already_registered and self.is_builtin_tool_name(name):
            return invalid_input(f"cannot overwrite built-in tool: {name}")
        if already_registered and not overwrite:
            return invalid_input(f"tool already registered: {name}. set overwrite=true to replace.")

        try:
            self.tools_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            return _error_result(f"failed to create tools directory: {e}", tool_name=name, path=str(target))

        try:
            target.write_text(build_tool_source(name, description, handler_code, args_schema), encoding="utf-8")
        except OSError as e:
            return _error_result(f"failed writing tool file: {e}", tool_name=name, path=str(target))

        # A same-size rewrite within the mtime granularity would reuse stale bytecode
        Path(importlib.util.cache_from_source(str(target))).unlink(missing_ok=True)
        self._loads += 1
        try:
            module = _load_module(target, f"persistent_{self._loads}")
        except Exception as e:
            logger.warning("Persistent tool %s failed to load: %s", target, e)
            return _error_result(f"tool file written, but autoload failed: {e}", tool_name=name, path=str(target))

        tool = _resolve_candidate(module, target)
        if tool is None:
            return _error_result("written file does not export a valid tool object.", tool_name=name, path=str(target))
        if tool.name != name:
            return _error_result(
                f"tool export name mismatch: expected {name}, got {tool.name}",
                tool_name=name,
                exported_name=tool.name,
                path=str(target),
            )

        if already_registered:
            self.registry.unregister(name)
        self.registry.register(tool)
        logger.info("Persistent tool %r %s from %s", name, "reloaded" if already_registered else "loaded", target)

        message = (
            f"persistent tool updated and reloaded: {name}"
            if already_registered
            else f"persistent tool created and loaded: {name}"
        )
        return ToolResult(ok=True, output={
            "status": "ok",
            "message": message,
            "tool_name": name,
            "path": str(target),
            "overwritten": already_registered or existed_on_disk,
        })
