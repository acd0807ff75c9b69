"""Run-to-completion process execution with bounded capture.

Used by the synchronous javascript tools (``run_js``, ``install_js_packages``,
``run_js_module``) and by command probing.  Output is captured per stream
up to ``MAX_CAPTURE_CHARS``; anything past the cap is discarded and the
stream's truncated flag is set (the head is kept, unlike background
sessions which keep the tail).

Timeouts send SIGTERM to the process group, then SIGKILL after
``KILL_GRACE_SECONDS`` if the process is still around.
"""

import asyncio
import codecs
import logging
import os
import platform
import shutil
import signal
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from agent.cancellation import CancelToken, InferenceCancelled

logger = logging.getLogger(__name__)

_IS_WINDOWS = platform.system() == "Windows"

MAX_CAPTURE_CHARS = 300_000
DEFAULT_TIMEOUT_SECONDS = 120
MAX_TIMEOUT_SECONDS = 60 * 20
KILL_GRACE_SECONDS = 1.5
COMMAND_DETECTION_TIMEOUT_SECONDS = 8
_READ_CHUNK_BYTES = 64 * 1024

PACKAGE_MANAGERS = ("bun", "pnpm", "yarn", "npm")


def subprocess_kwargs() -> dict:
    """Spawn options shared by every child: its own process group on POSIX."""
    if _IS_WINDOWS:
        return {}
    return {"start_new_session": True}


def signal_process_tree(proc, *, force: bool = False) -> Optional[str]:
    """Send SIGTERM (or SIGKILL when *force*) to a child and its process group.

    On Windows the child is terminated directly because there is no
    ``os.killpg`` equivalent.  Returns the signal name sent, or None when
    the process was already gone.
    """
    if proc is None or proc.returncode is not None:
        return None

    if _IS_WINDOWS:
        try:
            proc.kill() if force else proc.terminate()
        except (ProcessLookupError, PermissionError, OSError):
            return None
        return "SIGKILL" if force else "SIGTERM"

    sig = signal.SIGKILL if force else signal.SIGTERM
    try:
        os.killpg(os.getpgid(proc.pid), sig)
    except (ProcessLookupError, PermissionError, OSError):
        # Fallback: signal the process directly if we can't reach the group.
        try:
            proc.send_signal(sig)
        except (ProcessLookupError, PermissionError, OSError):
            return None
    return sig.name


def split_returncode(returncode: Optional[int]):
    """Map an asyncio returncode to ``(exit_code, signal_name)``.

    A negative returncode means the child died from a signal, in which case
    there is no exit code.
    """
    if returncode is None:
        return None, None
    if returncode < 0:
        try:
            return None, signal.Signals(-returncode).name
        except ValueError:
            return None, f"SIG{-returncode}"
    return returncode, None


class HeadCapture:
    """Keeps the first ``limit`` characters of a stream."""

    def __init__(self, limit: int = MAX_CAPTURE_CHARS):
        self.limit = limit
        self.text = ""
        self.truncated = False

    def append(self, chunk: str) -> None:
        if not chunk:
            return
        combined = self.text + chunk
        if len(combined) > self.limit:
            self.text = combined[: self.limit]
            self.truncated = True
        else:
            self.text = combined


async def pump_stream(reader, sink) -> None:
    """Copy a subprocess pipe into ``sink.append`` as decoded text."""
    if reader is None:
        return
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while True:
        data = await reader.read(_READ_CHUNK_BYTES)
        if not data:
            break
        text = decoder.decode(data)
        if text:
            sink.append(text)
    tail = decoder.decode(b"", final=True)
    if tail:
        sink.append(tail)


@dataclass
class ProcessRunResult:
    command: str
    args: List[str]
    exit_code: Optional[int] = None
    signal: Optional[str] = None
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    duration_ms: int = 0
    truncated_stdout: bool = False
    truncated_stderr: bool = False

    @property
    def ok(self) -> bool:
        return not self.timed_out and self.exit_code == 0

    def summarize_error(self) -> str:
        code_label = "no exit code" if self.exit_code is None else f"exit code {self.exit_code}"
        if self.timed_out:
            return f"process timed out ({code_label})"
        return f"process failed ({code_label})"

    def to_output(self, details: Dict) -> Dict:
        output = {"status": "ok" if self.ok else "error"}
        output.update(details)
        output.update({
            "command": self.command,
            "args": list(self.args),
            "exit_code": self.exit_code,
            "signal": self.signal,
            "timed_out": self.timed_out,
            "duration_ms": self.duration_ms,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "truncated_stdout": self.truncated_stdout,
            "truncated_stderr": self.truncated_stderr,
        })
        return output


async def run_command(
    command: str,
    args: List[str],
    *,
    cwd: Optional[str] = None,
    timeout_seconds: Optional[float] = None,
    env: Optional[Dict[str, str]] = None,
    cancel_token: Optional[CancelToken] = None,
    max_capture_chars: int = MAX_CAPTURE_CHARS,
) -> ProcessRunResult:
    """Spawn ``command args`` and wait for it, enforcing a wall-clock timeout.

    Raises:
        InferenceCancelled: the cancel token fired; the child is killed first.
    """
    cwd = cwd or os.getcwd()
    timeout = timeout_seconds if timeout_seconds and timeout_seconds > 0 else DEFAULT_TIMEOUT_SECONDS
    started = time.monotonic()
    stdout = HeadCapture(max_capture_chars)
    stderr = HeadCapture(max_capture_chars)
    result = ProcessRunResult(command=command, args=list(args))

    try:
        proc = await asyncio.create_subprocess_exec(
            command, *args,
            cwd=cwd,
            env=env if env is not None else os.environ.copy(),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            **subprocess_kwargs(),
        )
    except OSError as e:
        logger.debug("Failed to spawn %s: %s", command, e)
        result.stderr = f"[spawn error] {e}\n"
        result.duration_ms = int((time.monotonic() - started) * 1000)
        return result

    async def _complete():
        await asyncio.gather(pump_stream(proc.stdout, stdout), pump_stream(proc.stderr, stderr))
        return await proc.wait()

    waiter = asyncio.ensure_future(_complete())
    cancel_waiter = asyncio.ensure_future(cancel_token.wait()) if cancel_token is not None else None
    cancelled = False
    try:
        pending = {waiter} if cancel_waiter is None else {waiter, cancel_waiter}
        done, _ = await asyncio.wait(pending, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        if waiter not in done:
            if cancel_waiter is not None and cancel_waiter in done:
                cancelled = True
            else:
                result.timed_out = True
                logger.info("%s timed out after %ss, terminating", command, timeout)
            signal_process_tree(proc)
            try:
                await asyncio.wait_for(asyncio.shield(waiter), KILL_GRACE_SECONDS)
            except asyncio.TimeoutError:
                signal_process_tree(proc, force=True)
                await waiter
    finally:
        if cancel_waiter is not None:
            cancel_waiter.cancel()

    result.exit_code, result.signal = split_returncode(proc.returncode)
    result.stdout, result.truncated_stdout = stdout.text, stdout.truncated
    result.stderr, result.truncated_stderr = stderr.text, stderr.truncated
    result.duration_ms = int((time.monotonic() - started) * 1000)

    if cancelled:
        raise InferenceCancelled()
    return result


@dataclass(frozen=True)
class ScriptRuntime:
    name: str  # "node" | "bun"
    command: str
    base_args: tuple = ()


@dataclass(frozen=True)
class ModuleRunner:
    manager: str
    command: str
    base_args: tuple = ()


_MODULE_RUNNERS = {
    "bun": ModuleRunner("bun", "bun", ("x",)),
    "pnpm": ModuleRunner("pnpm", "pnpm", ("dlx",)),
    "yarn": ModuleRunner("yarn", "yarn", ("dlx",)),
    "npm": ModuleRunner("npm", "npx", ("--yes",)),
}


def install_args_for_manager(manager: str, *, dev: bool, extra_args: List[str], packages: List[str]) -> List[str]:
    if manager == "bun":
        head = ["add"] + (["--dev"] if dev else [])
    elif manager == "pnpm":
        head = ["add"] + (["--save-dev"] if dev else [])
    elif manager == "yarn":
        head = ["add"] + (["--dev"] if dev else [])
    else:
        head = ["install"] + (["--save-dev"] if dev else [])
    return head + list(extra_args) + list(packages)


class CommandProbe:
    """Detects which javascript runtimes and package managers are installed.

    ``has_command`` runs ``<cmd> --version`` once per command and caches the
    answer for the life of the probe.
    """

    def __init__(self, node_command: Optional[str] = None):
        self._cache: Dict[str, "asyncio.Future[bool]"] = {}
        self.node_command = node_command or shutil.which("node") or "node"

    async def has_command(self, command: str) -> bool:
        cached = self._cache.get(command)
        if cached is None:
            cached = asyncio.ensure_future(self._probe(command))
            self._cache[command] = cached
        return await asyncio.shield(cached)

    async def _probe(self, command: str) -> bool:
        result = await run_command(command, ["--version"], timeout_seconds=COMMAND_DETECTION_TIMEOUT_SECONDS)
        logger.debug("Probe %s --version -> %s", command, "ok" if result.ok else "missing")
        return result.ok

    async def resolve_script_runtime(self, requested: str = "auto") -> Optional[ScriptRuntime]:
        if requested == "node":
            return ScriptRuntime("node", self.node_command)
        if requested == "bun":
            return ScriptRuntime("bun", "bun") if await self.has_command("bun") else None
        if await self.has_command("bun"):
            return ScriptRuntime("bun", "bun")
        return ScriptRuntime("node", self.node_command)

    async def resolve_install_manager(self, requested: str = "auto") -> Optional[str]:
        if requested != "auto":
            return requested if await self.has_command(requested) else None
        for candidate in PACKAGE_MANAGERS:
            if await self.has_command(candidate):
                return candidate
        return None

    async def resolve_module_runner(self, requested: str = "auto") -> Optional[ModuleRunner]:
        if requested != "auto":
            runner = _MODULE_RUNNERS.get(requested)
            if runner is None:
                return None
            return runner if await self.has_command(runner.command) else None
        for candidate in PACKAGE_MANAGERS:
            runner = _MODULE_RUNNERS[candidate]
            if await self.has_command(runner.command):
                return runner
        return None
