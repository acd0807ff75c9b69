"""
JavaScript tools for Loaf.

Synchronous tools (run to completion, bounded capture, wall-clock timeout):
    run_js               - write code to a script file and run it with bun or node
    install_js_packages  - add packages with bun / pnpm / yarn / npm
    run_js_module        - run a package binary via bunx / pnpm dlx / yarn dlx / npx

Background tools (thin wrappers around ProcessSessionManager):
    start_background_js, read_background_js, write_background_js,
    stop_background_js, list_background_js

Malformed input never raises; it comes back as an ``invalid_input``
result so the model can correct itself.
"""

import json
import math
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from tools.process_registry import (
    DEFAULT_BACKGROUND_READ_CHARS,
    MAX_BACKGROUND_READ_CHARS,
    ProcessSessionManager,
    RuntimeUnavailable,
    STREAM_SELECTORS,
    create_script_file_name,
)
from tools.process_runner import (
    DEFAULT_TIMEOUT_SECONDS,
    MAX_TIMEOUT_SECONDS,
    CommandProbe,
    install_args_for_manager,
    run_command,
)
from tools.registry import ToolContext, ToolDefinition, ToolResult

JAVASCRIPT_TOOL_NAMES = (
    "run_js",
    "install_js_packages",
    "run_js_module",
    "start_background_js",
    "read_background_js",
    "write_background_js",
    "stop_background_js",
    "list_background_js",
)

_TIMEOUT_PROP = {"type": "number", "description": "optional timeout in seconds (default 120, max 1200)."}
_CWD_PROP = {"type": "string", "description": "optional working directory."}
_RUNTIME_PROP = {"type": "string", "description": "runtime: auto, node, or bun. default auto."}
_FORMAT_PROP = {"type": "string", "description": "script format: module or commonjs. default module."}
_MANAGER_PROP = {"type": "string", "description": "package manager: auto, bun, pnpm, yarn, npm. default auto."}
_SESSION_ID_PROP = {"type": "string", "description": "session id returned by start_background_js."}


def _object_schema(properties: Dict[str, Any], required: List[str]) -> Dict[str, Any]:
    return {
        "type": "object",
        "properties": properties,
        "required": required,
        "additionalProperties": False,
    }


RUN_JS_SCHEMA = _object_schema({
    "code": {"type": "string", "description": "the full javascript code to execute."},
    "args": {"type": "array", "items": {"type": "string"}, "description": "optional argv passed to the script."},
    "cwd": {"type": "string", "description": "optional working directory for script execution."},
    "timeout_seconds": _TIMEOUT_PROP,
    "keep_script": {"type": "boolean", "description": "keep generated script file on disk for debugging. default false."},
    "runtime": _RUNTIME_PROP,
    "format": _FORMAT_PROP,
}, ["code"])

INSTALL_JS_PACKAGES_SCHEMA = _object_schema({
    "packages": {"type": "array", "items": {"type": "string"}, "description": "package names to install."},
    "args": {"type": "array", "items": {"type": "string"}, "description": "extra package-manager args."},
    "dev": {"type": "boolean", "description": "install as dev dependencies."},
    "package_manager": _MANAGER_PROP,
    "cwd": _CWD_PROP,
    "timeout_seconds": _TIMEOUT_PROP,
}, ["packages"])

RUN_JS_MODULE_SCHEMA = _object_schema({
    "module": {"type": "string", "description": "module or package binary to run."},
    "args": {"type": "array", "items": {"type": "string"}, "description": "optional module args."},
    "package_manager": {"type": "string", "description": "executor manager: auto, bun, pnpm, yarn, npm. default auto."},
    "cwd": _CWD_PROP,
    "timeout_seconds": _TIMEOUT_PROP,
}, ["module"])

START_BACKGROUND_JS_SCHEMA = _object_schema({
    "code": {"type": "string", "description": "full javascript code to execute in the background."},
    "args": {"type": "array", "items": {"type": "string"}, "description": "optional argv passed to the script."},
    "cwd": {"type": "string", "description": "optional working directory for script execution."},
    "keep_script": {"type": "boolean", "description": "keep generated script file on disk after process exit. default false."},
    "runtime": _RUNTIME_PROP,
    "format": _FORMAT_PROP,
    "session_name": {"type": "string", "description": "optional friendly label for this background session."},
    "reuse_session": {
        "type": "boolean",
        "description": "when true, reuse an existing running session with the same session_name and cwd. default true.",
    },
}, ["code"])

READ_BACKGROUND_JS_SCHEMA = _object_schema({
    "session_id": _SESSION_ID_PROP,
    "max_chars": {"type": "number", "description": "max characters per stream to return (default 8000, max 120000)."},
    "stream": {"type": "string", "description": "stream selector: both, stdout, or stderr. default both."},
    "peek": {"type": "boolean", "description": "when true, do not advance the internal read cursor."},
}, ["session_id"])

WRITE_BACKGROUND_JS_SCHEMA = _object_schema({
    "session_id": _SESSION_ID_PROP,
    "input": {"type": "string", "description": "text to write to stdin."},
    "append_newline": {"type": "boolean", "description": "append newline to input before writing. default true."},
}, ["session_id", "input"])

STOP_BACKGROUND_JS_SCHEMA = _object_schema({
    "session_id": _SESSION_ID_PROP,
    "force": {"type": "boolean", "description": "when true, send SIGKILL. default false (SIGTERM)."},
}, ["session_id"])

LIST_BACKGROUND_JS_SCHEMA = {
    "type": "object",
    "properties": {
        "include_exited": {"type": "boolean", "description": "include exited sessions. default false."},
    },
    "additionalProperties": False,
}


# ---------------------------------------------------------------------------
# Input normalization
# ---------------------------------------------------------------------------

def invalid_input(message: str) -> ToolResult:
    return ToolResult(ok=False, output={"status": "invalid_input", "message": message}, error=message)


def as_non_empty_string(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def as_bool(value: Any) -> bool:
    return value is True


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def parse_string_array(value: Any) -> List[str]:
    """Accept a list of strings, a JSON array string, or a whitespace-separated string."""
    if isinstance(value, list):
        return [item.strip() for item in value if isinstance(item, str) and item.strip()]
    if isinstance(value, str):
        trimmed = value.strip()
        if not trimmed:
            return []
        if trimmed.startswith("[") and trimmed.endswith("]"):
            try:
                parsed = json.loads(trimmed)
            except json.JSONDecodeError:
                parsed = None
            if isinstance(parsed, list):
                return [item.strip() for item in parsed if isinstance(item, str) and item.strip()]
        return trimmed.split()
    return []


def parse_timeout_seconds(value: Any) -> int:
    if not _is_number(value) or value <= 0:
        return DEFAULT_TIMEOUT_SECONDS
    return max(1, min(MAX_TIMEOUT_SECONDS, math.floor(value)))


def parse_read_chars(value: Any) -> int:
    if not _is_number(value) or value <= 0:
        return DEFAULT_BACKGROUND_READ_CHARS
    return max(1, min(MAX_BACKGROUND_READ_CHARS, math.floor(value)))


def normalize_script_runtime(value: Any) -> str:
    normalized = as_non_empty_string(value).lower()
    return normalized if normalized in ("node", "bun") else "auto"


def normalize_script_format(value: Any) -> str:
    normalized = as_non_empty_string(value).lower()
    return "commonjs" if normalized in ("commonjs", "cjs") else "module"


def normalize_package_manager(value: Any) -> str:
    normalized = as_non_empty_string(value).lower()
    return normalized if normalized in ("bun", "pnpm", "yarn", "npm") else "auto"


def normalize_stream_selector(value: Any) -> Optional[str]:
    if value is None:
        return "both"
    if not isinstance(value, str):
        return None
    normalized = value.strip().lower()
    return normalized if normalized in STREAM_SELECTORS else None


# ---------------------------------------------------------------------------
# Tool implementations
# ---------------------------------------------------------------------------

class JavaScriptTools:
    """The javascript tool suite bound to one session manager and command probe."""

    def __init__(
        self,
        sessions: ProcessSessionManager,
        probe: Optional[CommandProbe] = None,
        data_dir: Optional[Path] = None,
    ):
        self.sessions = sessions
        self.probe = probe or CommandProbe()
        self.data_dir = Path(data_dir) if data_dir is not None else sessions.data_dir
        self.run_dir = self.data_dir / "js-runtime" / "runs"

    def definitions(self) -> List[ToolDefinition]:
        return [
            ToolDefinition(
                name="run_js",
                description="run javascript code with bun when available, otherwise node. returns stdout, stderr, and exit status.",
                input_schema=RUN_JS_SCHEMA,
                run=self.run_js,
            ),
            ToolDefinition(
                name="install_js_packages",
                description="install javascript packages with bun, pnpm, yarn, or npm.",
                input_schema=INSTALL_JS_PACKAGES_SCHEMA,
                run=self.install_js_packages,
            ),
            ToolDefinition(
                name="run_js_module",
                description="run a javascript module/binary with package-manager executors (bunx/pnpm dlx/yarn dlx/npx).",
                input_schema=RUN_JS_MODULE_SCHEMA,
                run=self.run_js_module,
            ),
            ToolDefinition(
                name="start_background_js",
                description=(
                    "start javascript in a long-lived background session. use read_background_js to poll "
                    "output, write_background_js for stdin, and stop_background_js to terminate."
                ),
                input_schema=START_BACKGROUND_JS_SCHEMA,
                run=self.start_background_js,
            ),
            ToolDefinition(
                name="read_background_js",
                description="read buffered stdout/stderr from a background js session.",
                input_schema=READ_BACKGROUND_JS_SCHEMA,
                run=self.read_background_js,
            ),
            ToolDefinition(
                name="write_background_js",
                description="write input text to stdin of a running background js session.",
                input_schema=WRITE_BACKGROUND_JS_SCHEMA,
                run=self.write_background_js,
            ),
            ToolDefinition(
                name="stop_background_js",
                description="stop a background js session.",
                input_schema=STOP_BACKGROUND_JS_SCHEMA,
                run=self.stop_background_js,
            ),
            ToolDefinition(
                name="list_background_js",
                description="list known background js sessions and their state.",
                input_schema=LIST_BACKGROUND_JS_SCHEMA,
                run=self.list_background_js,
            ),
        ]

    @staticmethod
    def _process_result(result, details: Dict[str, Any]) -> ToolResult:
        return ToolResult(
            ok=result.ok,
            output=result.to_output(details),
            error=None if result.ok else result.summarize_error(),
        )

    # -- synchronous ------------------------------------------------------

    async def run_js(self, args: dict, context: ToolContext) -> ToolResult:
        code = as_non_empty_string(args.get("code"))
        if not code:
            return invalid_input("run_js requires a non-empty `code` string.")

        argv = parse_string_array(args.get("args"))
        cwd = as_non_empty_string(args.get("cwd")) or os.getcwd()
        timeout = parse_timeout_seconds(args.get("timeout_seconds"))
        keep_script = as_bool(args.get("keep_script"))
        requested_runtime = normalize_script_runtime(args.get("runtime"))
        fmt = normalize_script_format(args.get("format"))

        runtime = await self.probe.resolve_script_runtime(requested_runtime)
        if runtime is None:
            return invalid_input(f'run_js could not resolve runtime "{requested_runtime}".')

        self.run_dir.mkdir(parents=True, exist_ok=True)
        script_path = self.run_dir / create_script_file_name(fmt)
        script_path.write_text(code, encoding="utf-8")
        try:
            result = await run_command(
                runtime.command,
                [*runtime.base_args, str(script_path), *argv],
                cwd=cwd,
                timeout_seconds=timeout,
                cancel_token=context.cancel_token,
            )
        finally:
            if not keep_script:
                script_path.unlink(missing_ok=True)

        return self._process_result(result, {
            "mode": "run_js",
            "cwd": cwd,
            "script_path": str(script_path),
            "runtime": runtime.name,
            "format": fmt,
        })

    async def install_js_packages(self, args: dict, context: ToolContext) -> ToolResult:
        packages = parse_string_array(args.get("packages"))
        if not packages:
            return invalid_input("install_js_packages requires at least one package name in `packages`.")

        extra_args = parse_string_array(args.get("args"))
        cwd = as_non_empty_string(args.get("cwd")) or os.getcwd()
        timeout = parse_timeout_seconds(args.get("timeout_seconds"))
        dev = as_bool(args.get("dev"))
        manager = await self.probe.resolve_install_manager(normalize_package_manager(args.get("package_manager")))
        if manager is None:
            return invalid_input("install_js_packages could not resolve an installed package manager.")

        result = await run_command(
            manager,
            install_args_for_manager(manager, dev=dev, extra_args=extra_args, packages=packages),
            cwd=cwd,
            timeout_seconds=timeout,
            cancel_token=context.cancel_token,
        )
        return self._process_result(result, {
            "mode": "install_js_packages",
            "cwd": cwd,
            "package_manager": manager,
            "packages": packages,
        })

    async def run_js_module(self, args: dict, context: ToolContext) -> ToolResult:
        module = as_non_empty_string(args.get("module"))
        if not module:
            return invalid_input("run_js_module requires a non-empty `module` string.")

        argv = parse_string_array(args.get("args"))
        cwd = as_non_empty_string(args.get("cwd")) or os.getcwd()
        timeout = parse_timeout_seconds(args.get("timeout_seconds"))
        runner = await self.probe.resolve_module_runner(normalize_package_manager(args.get("package_manager")))
        if runner is None:
            return invalid_input("run_js_module could not resolve an installed module runner.")

        result = await run_command(
            runner.command,
            [*runner.base_args, module, *argv],
            cwd=cwd,
            timeout_seconds=timeout,
            cancel_token=context.cancel_token,
        )
        return self._process_result(result, {
            "mode": "run_js_module",
            "cwd": cwd,
            "package_manager": runner.manager,
            "module": module,
        })

    # -- background -------------------------------------------------------

    async def start_background_js(self, args: dict, context: ToolContext) -> ToolResult:
        code = as_non_empty_string(args.get("code"))
        if not code:
            return invalid_input("start_background_js requires a non-empty `code` string.")

        reuse = args.get("reuse_session")
        requested_runtime = normalize_script_runtime(args.get("runtime"))
        try:
            started = await self.sessions.start(
                code,
                args=parse_string_array(args.get("args")),
                cwd=as_non_empty_string(args.get("cwd")) or os.getcwd(),
                runtime=requested_runtime,
                fmt=normalize_script_format(args.get("format")),
                session_name=as_non_empty_string(args.get("session_name")) or None,
                reuse_session=True if reuse is None else as_bool(reuse),
                keep_script=as_bool(args.get("keep_script")),
            )
        except RuntimeUnavailable:
            return invalid_input(f'start_background_js could not resolve runtime "{requested_runtime}".')
        return ToolResult(ok=True, output=started)

    def read_background_js(self, args: dict, context: ToolContext) -> ToolResult:
        session = self.sessions.get(args.get("session_id"))
        if session is None:
            return invalid_input("read_background_js requires a valid `session_id`.")

        stream = normalize_stream_selector(args.get("stream"))
        if stream is None:
            return invalid_input("`stream` must be one of: both, stdout, stderr.")
        return ToolResult(ok=True, output=self.sessions.read(
            session.id,
            max_chars=parse_read_chars(args.get("max_chars")),
            stream=stream,
            peek=as_bool(args.get("peek")),
        ))

    async def write_background_js(self, args: dict, context: ToolContext) -> ToolResult:
        session = self.sessions.get(args.get("session_id"))
        if session is None:
            return invalid_input("write_background_js requires a valid `session_id`.")
        if not session.running:
            output = self.sessions.write_failure_output(session, "not_running")
            return ToolResult(ok=False, output=output, error="background session is not running")

        text = args.get("input")
        if not isinstance(text, str):
            return invalid_input("write_background_js requires `input` as a string.")

        append_newline = args.get("append_newline")
        output = await self.sessions.write(
            session.id,
            text,
            append_newline=True if append_newline is None else as_bool(append_newline),
        )
        if output["status"] == "not_running":
            return ToolResult(ok=False, output=output, error="background session is not running")
        if output["status"] == "stdin_unavailable":
            return ToolResult(ok=False, output=output, error="background session stdin is unavailable")
        return ToolResult(ok=True, output=output)

    async def stop_background_js(self, args: dict, context: ToolContext) -> ToolResult:
        session = self.sessions.get(args.get("session_id"))
        if session is None:
            return invalid_input("stop_background_js requires a valid `session_id`.")
        return ToolResult(ok=True, output=await self.sessions.stop(session.id, force=as_bool(args.get("force"))))

    def list_background_js(self, args: dict, context: ToolContext) -> ToolResult:
        return ToolResult(ok=True, output=self.sessions.list(include_exited=as_bool(args.get("include_exited"))))


def create_javascript_tools(
    sessions: ProcessSessionManager,
    probe: Optional[CommandProbe] = None,
) -> List[ToolDefinition]:
    return JavaScriptTools(sessions, probe=probe).definitions()
