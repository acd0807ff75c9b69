"""Tests for tools/javascript_tool.py.

Tests cover:
- Input normalization helpers (string arrays, timeouts, selectors)
- invalid_input results for malformed tool calls
- run_js / install_js_packages / run_js_module wiring through a stub probe
- Background tool wrappers end to end

A stub probe resolves every runtime to the current Python interpreter, so
"javascript" snippets in these tests are Python source.
"""

import asyncio
import sys

import pytest

from tools.javascript_tool import (
    JAVASCRIPT_TOOL_NAMES,
    JavaScriptTools,
    normalize_package_manager,
    normalize_script_format,
    normalize_script_runtime,
    normalize_stream_selector,
    parse_read_chars,
    parse_string_array,
    parse_timeout_seconds,
)
from tools.process_registry import ProcessSessionManager
from tools.process_runner import ModuleRunner, ProcessRunResult, ScriptRuntime
from tools.registry import ToolContext


class StubProbe:
    def __init__(self, runtime=True, manager="npm", runner=True):
        self.runtime = ScriptRuntime("python", sys.executable) if runtime else None
        self.manager = manager
        self.runner = ModuleRunner("npm", sys.executable, ("-m",)) if runner else None
        self.requests = []

    async def resolve_script_runtime(self, requested="auto"):
        self.requests.append(("runtime", requested))
        return self.runtime

    async def resolve_install_manager(self, requested="auto"):
        self.requests.append(("manager", requested))
        return self.manager

    async def resolve_module_runner(self, requested="auto"):
        self.requests.append(("runner", requested))
        return self.runner


@pytest.fixture
def probe():
    return StubProbe()


@pytest.fixture
def sessions(tmp_path, probe):
    return ProcessSessionManager(data_dir=tmp_path, runtime_resolver=probe.resolve_script_runtime)


@pytest.fixture
def js(sessions, probe, tmp_path):
    return JavaScriptTools(sessions, probe=probe, data_dir=tmp_path)


CTX = ToolContext()


# ---------------------------------------------------------------------------
# Normalization helpers
# ---------------------------------------------------------------------------

class TestNormalization:
    def test_parse_string_array(self):
        assert parse_string_array(["a", " b ", "", 3]) == ["a", "b"]
        assert parse_string_array('["x", "y"]') == ["x", "y"]
        assert parse_string_array("lodash  react") == ["lodash", "react"]
        assert parse_string_array("[broken") == ["[broken"]
        assert parse_string_array(None) == []
        assert parse_string_array("   ") == []

    def test_parse_timeout_seconds(self):
        assert parse_timeout_seconds(None) == 120
        assert parse_timeout_seconds(-1) == 120
        assert parse_timeout_seconds(True) == 120
        assert parse_timeout_seconds(2.7) == 2
        assert parse_timeout_seconds(10_000) == 1200
        assert parse_timeout_seconds(float("inf")) == 120

    def test_parse_read_chars(self):
        assert parse_read_chars(None) == 8000
        assert parse_read_chars(10) == 10
        assert parse_read_chars(10**9) == 120_000

    def test_selectors(self):
        assert normalize_script_runtime("BUN") == "bun"
        assert normalize_script_runtime("deno") == "auto"
        assert normalize_script_format("cjs") == "commonjs"
        assert normalize_script_format(None) == "module"
        assert normalize_package_manager("Yarn") == "yarn"
        assert normalize_package_manager("cargo") == "auto"
        assert normalize_stream_selector(None) == "both"
        assert normalize_stream_selector(" STDERR ") == "stderr"
        assert normalize_stream_selector("stdin") is None
        assert normalize_stream_selector(5) is None


class TestDefinitions:
    def test_all_tools_defined(self, js):
        definitions = js.definitions()
        assert tuple(d.name for d in definitions) == JAVASCRIPT_TOOL_NAMES
        for definition in definitions:
            assert definition.input_schema["type"] == "object"
            assert definition.description


# ---------------------------------------------------------------------------
# Synchronous tools
# ---------------------------------------------------------------------------

class TestRunJs:
    @pytest.mark.asyncio
    async def test_missing_code(self, js):
        result = await js.run_js({"code": "  "}, CTX)
        assert result.ok is False
        assert result.output["status"] == "invalid_input"
        assert result.error == "run_js requires a non-empty `code` string."

    @pytest.mark.asyncio
    async def test_runs_script_and_removes_it(self, js, tmp_path):
        result = await js.run_js({
            "code": "import sys; print('args=' + ','.join(sys.argv[1:]))",
            "args": ["a", "b"],
            "cwd": str(tmp_path),
        }, CTX)
        assert result.ok is True
        assert result.output["status"] == "ok"
        assert result.output["stdout"].strip() == "args=a,b"
        assert result.output["runtime"] == "python"
        assert result.output["format"] == "module"
        assert result.output["script_path"].endswith(".mjs")
        assert list(js.run_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_keep_script(self, js, tmp_path):
        result = await js.run_js({"code": "pass", "keep_script": True, "format": "cjs", "cwd": str(tmp_path)}, CTX)
        assert result.output["script_path"].endswith(".cjs")
        assert len(list(js.run_dir.iterdir())) == 1

    @pytest.mark.asyncio
    async def test_failure_reports_exit_code(self, js, tmp_path):
        result = await js.run_js({"code": "raise SystemExit(2)", "cwd": str(tmp_path)}, CTX)
        assert result.ok is False
        assert result.output["status"] == "error"
        assert result.output["exit_code"] == 2
        assert result.error == "process failed (exit code 2)"

    @pytest.mark.asyncio
    async def test_unresolved_runtime(self, sessions, tmp_path):
        js = JavaScriptTools(sessions, probe=StubProbe(runtime=False), data_dir=tmp_path)
        result = await js.run_js({"code": "1", "runtime": "bun"}, CTX)
        assert result.output["status"] == "invalid_input"
        assert 'could not resolve runtime "bun"' in result.error


class TestPackageTools:
    @pytest.mark.asyncio
    async def test_install_requires_packages(self, js):
        result = await js.install_js_packages({"packages": []}, CTX)
        assert result.output["status"] == "invalid_input"

    @pytest.mark.asyncio
    async def test_install_without_manager(self, sessions, tmp_path):
        js = JavaScriptTools(sessions, probe=StubProbe(manager=None), data_dir=tmp_path)
        result = await js.install_js_packages({"packages": "lodash"}, CTX)
        assert result.error == "install_js_packages could not resolve an installed package manager."

    @pytest.mark.asyncio
    async def test_install_builds_manager_command(self, js, probe, tmp_path, monkeypatch):
        captured = {}

        async def fake_run_command(command, args, **kwargs):
            captured["command"] = command
            captured["args"] = args
            return ProcessRunResult(command=command, args=args, exit_code=0)

        monkeypatch.setattr("tools.javascript_tool.run_command", fake_run_command)
        result = await js.install_js_packages(
            {"packages": ["lodash"], "dev": True, "package_manager": "npm", "cwd": str(tmp_path)}, CTX
        )
        assert result.ok is True
        assert captured == {"command": "npm", "args": ["install", "--save-dev", "lodash"]}
        assert result.output["package_manager"] == "npm"
        assert ("manager", "npm") in probe.requests

    @pytest.mark.asyncio
    async def test_run_js_module(self, js, tmp_path):
        result = await js.run_js_module({"module": "json.tool", "args": ["--help"], "cwd": str(tmp_path)}, CTX)
        assert result.ok is True
        assert result.output["module"] == "json.tool"
        assert result.output["args"] == ["-m", "json.tool", "--help"]

    @pytest.mark.asyncio
    async def test_run_js_module_requires_module(self, js):
        result = await js.run_js_module({}, CTX)
        assert result.output["status"] == "invalid_input"


# ---------------------------------------------------------------------------
# Background tools
# ---------------------------------------------------------------------------

class TestBackgroundTools:
    @pytest.mark.asyncio
    async def test_lifecycle(self, js, sessions, tmp_path):
        code = (
            "import sys\n"
            "print('ready', flush=True)\n"
            "for line in sys.stdin:\n"
            "    print('echo:' + line.strip(), flush=True)\n"
        )
        started = await js.start_background_js({"code": code, "cwd": str(tmp_path), "session_name": "echo"}, CTX)
        assert started.ok is True
        session_id = started.output["session_id"]

        listed = js.list_background_js({}, CTX)
        assert listed.output["count"] == 1

        written = await js.write_background_js({"session_id": session_id, "input": "hi"}, CTX)
        assert written.ok is True

        collected = ""
        for _ in range(200):
            read = js.read_background_js({"session_id": session_id, "stream": "stdout"}, CTX)
            collected += read.output["stdout"]
            if "echo:hi" in collected:
                break
            await asyncio.sleep(0.05)
        assert "ready" in collected
        assert "echo:hi" in collected

        stopped = await js.stop_background_js({"session_id": session_id, "force": True}, CTX)
        assert stopped.output["status"] == "stop_requested"
        await sessions.wait(session_id, timeout=10)

        after = await js.write_background_js({"session_id": session_id, "input": "late"}, CTX)
        assert after.ok is False
        assert after.error == "background session is not running"
        assert after.output["status"] == "not_running"

    @pytest.mark.asyncio
    async def test_unknown_session_ids(self, js):
        for tool in (js.read_background_js,):
            result = tool({"session_id": "bg-nope"}, CTX)
            assert result.output["status"] == "invalid_input"
        for tool in (js.write_background_js, js.stop_background_js):
            result = await tool({"session_id": "bg-nope", "input": "x"}, CTX)
            assert result.output["status"] == "invalid_input"

    @pytest.mark.asyncio
    async def test_bad_stream_selector(self, js, sessions, tmp_path):
        started = await js.start_background_js({"code": "pass", "cwd": str(tmp_path)}, CTX)
        session_id = started.output["session_id"]
        await sessions.wait(session_id, timeout=10)
        result = js.read_background_js({"session_id": session_id, "stream": "stdin"}, CTX)
        assert result.error == "`stream` must be one of: both, stdout, stderr."

    @pytest.mark.asyncio
    async def test_write_requires_string_input(self, js, sessions, tmp_path):
        started = await js.start_background_js(
            {"code": "import time; time.sleep(30)", "cwd": str(tmp_path)}, CTX
        )
        session_id = started.output["session_id"]
        try:
            result = await js.write_background_js({"session_id": session_id, "input": 5}, CTX)
            assert result.error == "write_background_js requires `input` as a string."
        finally:
            await sessions.stop(session_id, force=True)
            await sessions.wait(session_id, timeout=10)

    @pytest.mark.asyncio
    async def test_start_with_unresolved_runtime(self, tmp_path):
        probe = StubProbe(runtime=False)
        sessions = ProcessSessionManager(data_dir=tmp_path, runtime_resolver=probe.resolve_script_runtime)
        js = JavaScriptTools(sessions, probe=probe)
        result = await js.start_background_js({"code": "1", "runtime": "bun"}, CTX)
        assert result.output["status"] == "invalid_input"
