"""
Background process sessions for long-lived, interactive child processes.

A ``ProcessSessionManager`` owns every background session started by the
javascript tools.  Each session's stdout and stderr are pumped by reader
tasks into a ``StreamBuffer``: a capped, cursor-addressable buffer that
evicts its oldest text once it grows past ``MAX_BACKGROUND_CAPTURE_CHARS``.
Callers poll with ``read``; a read whose cursor fell behind the eviction
point reports ``dropped=True`` so silent output loss is detectable.

Session lifecycle is ``running -> exited`` and only the process ``close``
(pipes drained and process reaped) moves a session to ``exited``.
``stop`` merely requests termination.

Exited sessions are evicted after ``FINISHED_TTL_SECONDS`` or, when more
than ``MAX_SESSIONS`` are tracked, oldest-exited first.  Running sessions
are never evicted.

Everything runs on one asyncio event loop, so the reader tasks and the
tool calls never interleave mid-update and no locking is needed.

Usage:
    from tools.process_registry import ProcessSessionManager

    manager = ProcessSessionManager()
    started = await manager.start("console.log('hi')", session_name="dev")
    chunk = manager.read(started["session_id"])
"""

import asyncio
import atexit
import logging
import os
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

from tools.process_runner import (
    CommandProbe,
    ScriptRuntime,
    pump_stream,
    signal_process_tree,
    split_returncode,
    subprocess_kwargs,
)

logger = logging.getLogger(__name__)

MAX_BACKGROUND_CAPTURE_CHARS = 300_000
DEFAULT_BACKGROUND_READ_CHARS = 8_000
MAX_BACKGROUND_READ_CHARS = 120_000
FINISHED_TTL_SECONDS = 1800
MAX_SESSIONS = 64
DEFAULT_SESSION_NAME = "background-js"
STREAM_SELECTORS = ("both", "stdout", "stderr")

# Grace delay after signalling, before reporting status back
STOP_GRACE_SECONDS = 0.12
FORCE_STOP_GRACE_SECONDS = 0.05

RuntimeResolver = Callable[[str], Awaitable[Optional[ScriptRuntime]]]


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _time_ms() -> int:
    return int(time.time() * 1000)


def create_script_file_name(fmt: str = "module") -> str:
    extension = "cjs" if fmt == "commonjs" else "mjs"
    return f"run-{_time_ms()}-{uuid.uuid4().hex[:8]}.{extension}"


def create_session_id() -> str:
    return f"bg-{_time_ms()}-{uuid.uuid4().hex[:8]}"


class SessionNotFound(LookupError):
    """No session is tracked under the requested id."""


class RuntimeUnavailable(RuntimeError):
    """The requested script runtime is not installed."""


@dataclass
class StreamRead:
    text: str
    cursor: int
    has_more: bool
    dropped: bool


class StreamBuffer:
    """Capped text buffer with an absolute read cursor.

    ``total_chars`` counts everything ever appended; ``dropped_chars``
    counts text evicted from the front.  The buffer therefore holds the
    absolute range ``[dropped_chars, total_chars)``.
    """

    def __init__(self, capacity: int = MAX_BACKGROUND_CAPTURE_CHARS):
        self.capacity = capacity
        self.buffer = ""
        self.total_chars = 0
        self.dropped_chars = 0
        self.read_cursor = 0

    def append(self, chunk: str) -> None:
        if not chunk:
            return
        self.total_chars += len(chunk)
        self.buffer += chunk
        if len(self.buffer) > self.capacity:
            drop_count = len(self.buffer) - self.capacity
            self.buffer = self.buffer[drop_count:]
            self.dropped_chars += drop_count

    def read(self, max_chars: int = DEFAULT_BACKGROUND_READ_CHARS, peek: bool = False) -> StreamRead:
        dropped = self.read_cursor < self.dropped_chars
        start_cursor = max(self.read_cursor, self.dropped_chars)
        available = max(0, self.total_chars - start_cursor)
        read_chars = min(max_chars, available)
        start_index = start_cursor - self.dropped_chars
        text = self.buffer[start_index:start_index + read_chars] if read_chars > 0 else ""
        next_cursor = start_cursor + len(text)
        if not peek:
            self.read_cursor = next_cursor
        return StreamRead(
            text=text,
            cursor=next_cursor,
            has_more=self.total_chars > next_cursor,
            dropped=dropped,
        )

    def empty_read(self) -> StreamRead:
        return StreamRead(text="", cursor=self.read_cursor, has_more=False, dropped=False)

    @property
    def unread_chars(self) -> int:
        return max(0, self.total_chars - max(self.read_cursor, self.dropped_chars))


@dataclass
class BackgroundSession:
    id: str
    name: str
    cwd: str
    runtime: str
    command: str
    args: List[str]
    script_path: str
    keep_script: bool = False
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = ""
    pid: Optional[int] = None
    status: str = "running"
    exit_code: Optional[int] = None
    signal: Optional[str] = None
    stdout: StreamBuffer = field(default_factory=StreamBuffer)
    stderr: StreamBuffer = field(default_factory=StreamBuffer)
    process: Any = None
    exited_at: Optional[float] = None
    seq: int = 0
    _watcher: Optional[asyncio.Task] = field(default=None, repr=False)

    def __post_init__(self):
        if not self.updated_at:
            self.updated_at = self.created_at

    @property
    def running(self) -> bool:
        return self.status == "running"

    def touch(self) -> None:
        self.updated_at = utc_now_iso()

    def describe(self) -> Dict[str, Any]:
        return {
            "session_id": self.id,
            "session_name": self.name,
            "pid": self.pid,
            "runtime": self.runtime,
            "command": self.command,
            "args": list(self.args),
            "cwd": self.cwd,
            "created_at": self.created_at,
        }


class _SessionSink:
    """Adapts a session stream so pumped chunks also bump ``updated_at``."""

    def __init__(self, session: BackgroundSession, stream: StreamBuffer):
        self.session = session
        self.stream = stream

    def append(self, chunk: str) -> None:
        self.stream.append(chunk)
        self.session.touch()


class ProcessSessionManager:
    """Owns all background sessions for one agent process."""

    def __init__(
        self,
        data_dir: Optional[Path] = None,
        runtime_resolver: Optional[RuntimeResolver] = None,
        capacity: int = MAX_BACKGROUND_CAPTURE_CHARS,
        finished_ttl_seconds: float = FINISHED_TTL_SECONDS,
        max_sessions: int = MAX_SESSIONS,
        clock: Callable[[], float] = time.monotonic,
    ):
        if data_dir is None:
            from agent.config import get_loaf_home
            data_dir = get_loaf_home()
        self.data_dir = Path(data_dir)
        self.script_dir = self.data_dir / "js-runtime" / "background"
        self._resolve_runtime = runtime_resolver or CommandProbe().resolve_script_runtime
        self.capacity = capacity
        self.finished_ttl_seconds = finished_ttl_seconds
        self.max_sessions = max_sessions
        self._clock = clock
        self._sessions: Dict[str, BackgroundSession] = {}
        self._seq = 0
        self._cleanup_installed = False

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get(self, session_id: Optional[str]) -> Optional[BackgroundSession]:
        if not isinstance(session_id, str) or not session_id.strip():
            return None
        return self._sessions.get(session_id.strip())

    def _require(self, session_id: str) -> BackgroundSession:
        session = self.get(session_id)
        if session is None:
            raise SessionNotFound(f"no background session with id {session_id!r}")
        return session

    def find_running(self, name: str, cwd: str) -> Optional[BackgroundSession]:
        for session in self._sessions.values():
            if session.running and session.name == name and session.cwd == cwd:
                return session
        return None

    def __len__(self) -> int:
        return len(self._sessions)

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    async def start(
        self,
        code: str,
        args: Optional[List[str]] = None,
        cwd: Optional[str] = None,
        runtime: str = "auto",
        fmt: str = "module",
        session_name: Optional[str] = None,
        reuse_session: bool = True,
        keep_script: bool = False,
    ) -> Dict[str, Any]:
        """Write *code* to a script file and spawn it in the background.

        When *reuse_session* is set and an explicit *session_name* matches a
        running session in the same *cwd*, that session is returned with
        ``status="reused"`` and no new process is started.  The match is on
        ``(session_name, cwd)`` only, not on the script contents.

        Raises:
            RuntimeUnavailable: *runtime* could not be resolved.
        """
        cwd = cwd or os.getcwd()
        name = (session_name or "").strip()
        self.prune()

        if reuse_session and name:
            existing = self.find_running(name, cwd)
            if existing is not None:
                logger.debug("Reusing background session %s (%s)", existing.id, name)
                return {"status": "reused", **existing.describe()}

        resolved = await self._resolve_runtime(runtime)
        if resolved is None:
            raise RuntimeUnavailable(f'could not resolve runtime "{runtime}"')

        self.script_dir.mkdir(parents=True, exist_ok=True)
        script_path = self.script_dir / create_script_file_name(fmt)
        script_path.write_text(code, encoding="utf-8")
        self._install_cleanup_hook()

        command_args = [*resolved.base_args, str(script_path), *(args or [])]
        self._seq += 1
        session = BackgroundSession(
            id=create_session_id(),
            name=name or DEFAULT_SESSION_NAME,
            cwd=cwd,
            runtime=resolved.name,
            command=resolved.command,
            args=command_args,
            script_path=str(script_path),
            keep_script=keep_script,
            stdout=StreamBuffer(self.capacity),
            stderr=StreamBuffer(self.capacity),
            seq=self._seq,
        )
        self._sessions[session.id] = session

        try:
            proc = await asyncio.create_subprocess_exec(
                resolved.command, *command_args,
                cwd=cwd,
                env=os.environ.copy(),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                **subprocess_kwargs(),
            )
        except OSError as e:
            logger.warning("Background session %s failed to spawn: %s", session.id, e)
            session.stderr.append(f"[spawn error] {e}\n")
            self._mark_exited(session, None)
            return {"status": "started", **session.describe()}

        session.process = proc
        session.pid = proc.pid
        session._watcher = asyncio.ensure_future(self._watch(session))
        logger.info("Started background session %s (%s) pid=%s", session.id, session.name, proc.pid)
        return {"status": "started", **session.describe()}

    async def _watch(self, session: BackgroundSession) -> None:
        proc = session.process
        try:
            await asyncio.gather(
                pump_stream(proc.stdout, _SessionSink(session, session.stdout)),
                pump_stream(proc.stderr, _SessionSink(session, session.stderr)),
            )
        except Exception as e:
            session.stderr.append(f"[stream error] {e}\n")
            logger.warning("Background session %s stream error: %s", session.id, e)
        returncode = await proc.wait()
        self._mark_exited(session, returncode)

    def _mark_exited(self, session: BackgroundSession, returncode: Optional[int]) -> None:
        session.status = "exited"
        session.exit_code, session.signal = split_returncode(returncode)
        session.exited_at = self._clock()
        session.touch()
        logger.info(
            "Background session %s exited (exit_code=%s, signal=%s)",
            session.id, session.exit_code, session.signal,
        )
        if not session.keep_script:
            try:
                Path(session.script_path).unlink()
            except OSError:
                logger.debug("Could not remove script %s", session.script_path)

    # ------------------------------------------------------------------
    # Read / write / stop / list
    # ------------------------------------------------------------------

    def read(
        self,
        session_id: str,
        max_chars: int = DEFAULT_BACKGROUND_READ_CHARS,
        stream: str = "both",
        peek: bool = False,
    ) -> Dict[str, Any]:
        """Return unread output, advancing cursors unless *peek*."""
        session = self._require(session_id)
        if stream not in STREAM_SELECTORS:
            raise ValueError("`stream` must be one of: both, stdout, stderr.")
        max_chars = max(1, min(MAX_BACKGROUND_READ_CHARS, int(max_chars)))

        out = session.stdout.read(max_chars, peek) if stream in ("both", "stdout") else session.stdout.empty_read()
        err = session.stderr.read(max_chars, peek) if stream in ("both", "stderr") else session.stderr.empty_read()
        return {
            "status": "ok",
            "session_id": session.id,
            "session_name": session.name,
            "running": session.running,
            "exit_code": session.exit_code,
            "signal": session.signal,
            "stdout": out.text,
            "stderr": err.text,
            "stdout_cursor": out.cursor,
            "stderr_cursor": err.cursor,
            "stdout_has_more": out.has_more,
            "stderr_has_more": err.has_more,
            "stdout_dropped": out.dropped,
            "stderr_dropped": err.dropped,
        }

    async def write(self, session_id: str, text: str, append_newline: bool = True) -> Dict[str, Any]:
        """Write to a session's stdin.

        Misuse (exited session, closed stdin) is reported through the
        returned ``status`` rather than raised.
        """
        session = self._require(session_id)
        if not session.running:
            return self.write_failure_output(session, "not_running")

        payload = f"{text}\n" if append_newline else text
        stdin = getattr(session.process, "stdin", None)
        if stdin is None or stdin.is_closing():
            return self.write_failure_output(session, "stdin_unavailable")

        data = payload.encode("utf-8")
        try:
            stdin.write(data)
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.debug("stdin write to %s failed: %s", session.id, e)
            return self.write_failure_output(session, "stdin_unavailable")

        session.touch()
        return {
            "status": "ok",
            "session_id": session.id,
            "running": session.running,
            "exit_code": session.exit_code,
            "signal": session.signal,
            "bytes_written": len(data),
        }

    @staticmethod
    def write_failure_output(session: BackgroundSession, status: str) -> Dict[str, Any]:
        return {
            "status": status,
            "session_id": session.id,
            "running": session.running,
            "exit_code": session.exit_code,
            "signal": session.signal,
            "bytes_written": None,
        }

    async def stop(self, session_id: str, force: bool = False) -> Dict[str, Any]:
        """Signal a running session.  Does not wait for it to exit."""
        session = self._require(session_id)
        if not session.running:
            return {
                "status": "already_stopped",
                "session_id": session.id,
                "running": False,
                "exit_code": session.exit_code,
                "signal": session.signal,
            }

        signal_name = "SIGKILL" if force else "SIGTERM"
        signal_process_tree(session.process, force=force)
        logger.info("Sent %s to background session %s", signal_name, session.id)
        await asyncio.sleep(FORCE_STOP_GRACE_SECONDS if force else STOP_GRACE_SECONDS)
        return {
            "status": "stop_requested",
            "session_id": session.id,
            "signal": signal_name,
            "running": session.running,
            "exit_code": session.exit_code,
        }

    def list(self, include_exited: bool = False) -> Dict[str, Any]:
        self.prune()
        sessions = [s for s in self._sessions.values() if include_exited or s.running]
        sessions.sort(key=lambda s: (s.created_at, s.seq), reverse=True)
        rows = [
            {
                "session_id": s.id,
                "session_name": s.name,
                "pid": s.pid,
                "status": s.status,
                "running": s.running,
                "exit_code": s.exit_code,
                "signal": s.signal,
                "created_at": s.created_at,
                "updated_at": s.updated_at,
                "unread_stdout_chars": s.stdout.unread_chars,
                "unread_stderr_chars": s.stderr.unread_chars,
            }
            for s in sessions
        ]
        return {"status": "ok", "count": len(rows), "sessions": rows}

    async def wait(self, session_id: str, timeout: Optional[float] = None) -> Dict[str, Any]:
        """Block until the session exits (or *timeout* elapses); returns a status row."""
        session = self._require(session_id)
        if session.running and session._watcher is not None:
            try:
                await asyncio.wait_for(asyncio.shield(session._watcher), timeout)
            except asyncio.TimeoutError:
                pass
        return {
            "session_id": session.id,
            "status": session.status,
            "running": session.running,
            "exit_code": session.exit_code,
            "signal": session.signal,
        }

    # ------------------------------------------------------------------
    # Eviction and shutdown
    # ------------------------------------------------------------------

    def prune(self) -> List[str]:
        """Evict expired exited sessions, then trim to ``max_sessions``."""
        now = self._clock()
        evicted = [
            s.id for s in self._sessions.values()
            if not s.running and s.exited_at is not None and now - s.exited_at > self.finished_ttl_seconds
        ]
        for session_id in evicted:
            del self._sessions[session_id]

        overflow = len(self._sessions) - self.max_sessions
        if overflow > 0:
            exited = sorted(
                (s for s in self._sessions.values() if not s.running),
                key=lambda s: (s.exited_at or 0.0, s.seq),
            )
            for session in exited[:overflow]:
                del self._sessions[session.id]
                evicted.append(session.id)

        if evicted:
            logger.debug("Evicted %d exited background session(s)", len(evicted))
        return evicted

    def _install_cleanup_hook(self) -> None:
        if self._cleanup_installed:
            return
        self._cleanup_installed = True
        atexit.register(self.terminate_running)

    def terminate_running(self) -> int:
        """Best-effort SIGTERM to every running session.  Returns how many were signalled."""
        count = 0
        for session in self._sessions.values():
            if session.running and signal_process_tree(session.process) is not None:
                count += 1
        return count

    async def shutdown(self, timeout: float = 2.0) -> None:
        signalled = self.terminate_running()
        watchers = [s._watcher for s in self._sessions.values() if s.running and s._watcher is not None]
        if watchers:
            await asyncio.wait(watchers, timeout=timeout)
        if signalled:
            logger.info("Terminated %d background session(s) on shutdown", signalled)
