"""Framed JSON-RPC channel over an agent subprocess's stdio.

The agent speaks newline-delimited JSON-RPC: one JSON document per line on
stdin/stdout, diagnostics on stderr. :class:`AcpProcess` owns the subprocess,
splits stdout into lines, matches responses to in-flight requests by id and
hands id-less method frames to the notification callback.

Lifecycle::

    NOT_STARTED ──start()──▶ STARTING ──spawned──▶ RUNNING
         ▲                       │                    │
         └──── spawn failed ─────┘◀── exit / stop() ──┘

Sending on a channel that is not RUNNING starts it first. Every spawn bumps a
generation counter; stdout/stderr/exit events from an older generation are
ignored, so a process replaced by ``stop()`` + respawn cannot corrupt the new
one's state.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from acp_remote.config import AgentServerConfig
from acp_remote.log_buffer import DEFAULT_CAPACITY, LogBuffer, LogDirection, LogEntry

logger = logging.getLogger(__name__)

TIMEOUT_MESSAGE = "Response timeout"
DEFAULT_REQUEST_TIMEOUT = 30.0

NotificationHandler = Callable[[dict[str, Any]], None]
LogHandler = Callable[[LogEntry], None]


class ProcessState(str, Enum):
    NOT_STARTED = "not_started"
    STARTING = "starting"
    RUNNING = "running"


@dataclass
class _PendingCall:
    future: asyncio.Future
    timer: asyncio.TimerHandle


def build_spawn_env(base: Mapping[str, str], overlay: Mapping[str, Any] | None) -> dict[str, str]:
    """Overlay agent-specific variables on the parent environment.

    Overlay keys win. ``None`` removes a variable; non-string scalars are
    stringified and structured values are JSON-encoded.
    """
    merged = dict(base)
    for key, value in (overlay or {}).items():
        if value is None:
            merged.pop(key, None)
        elif isinstance(value, str):
            merged[key] = value
        elif isinstance(value, bool):
            merged[key] = "true" if value else "false"
        elif isinstance(value, (int, float)):
            merged[key] = str(value)
        else:
            try:
                merged[key] = json.dumps(value)
            except (TypeError, ValueError):
                merged[key] = str(value)
    return merged


def _id_key(value: Any) -> Any:
    """Return a hashable lookup key for a JSON-RPC id, or None if it has none."""
    try:
        hash(value)
    except TypeError:
        return None
    return value


class AcpProcess:
    """One agent subprocess plus its JSON-RPC bookkeeping."""

    def __init__(
        self,
        config: AgentServerConfig,
        *,
        on_notification: NotificationHandler | None = None,
        on_log: LogHandler | None = None,
        log_capacity: int = DEFAULT_CAPACITY,
    ) -> None:
        self._config = config
        self._on_notification = on_notification
        self._on_log = on_log
        self._logs = LogBuffer(maxlen=log_capacity)

        self._proc: asyncio.subprocess.Process | None = None
        self._state = ProcessState.NOT_STARTED
        self._generation = 0
        self._cwd = ""
        self._stdout_buffer = b""
        self._pending: dict[Any, _PendingCall] = {}
        self._tasks: set[asyncio.Task] = set()
        self._start_lock = asyncio.Lock()

    # ── Introspection ────────────────────────────────────────────────────

    @property
    def state(self) -> ProcessState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is ProcessState.RUNNING

    @property
    def working_directory(self) -> str:
        return self._cwd

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc else None

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def get_logs(self) -> list[LogEntry]:
        return self._logs.entries()

    # ── Lifecycle ────────────────────────────────────────────────────────

    def set_working_directory(self, cwd: str | os.PathLike[str] | None) -> bool:
        """Record the spawn directory. Only possible before the process starts."""
        if self._state is not ProcessState.NOT_STARTED:
            return False
        self._cwd = str(cwd) if cwd else ""
        return True

    async def start(self) -> None:
        """Spawn the subprocess. No-op if it is already running."""
        if self._state is ProcessState.RUNNING:
            return
        async with self._start_lock:
            if self._state is ProcessState.RUNNING:
                return
            self._state = ProcessState.STARTING
            self._generation += 1
            generation = self._generation
            try:
                proc = await asyncio.create_subprocess_exec(
                    self._config.command,
                    *self._config.args,
                    cwd=self._cwd or None,
                    env=build_spawn_env(os.environ, self._config.env),
                    stdin=asyncio.subprocess.PIPE,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except OSError as exc:
                if generation == self._generation:
                    self._state = ProcessState.NOT_STARTED
                self._push_log("error", f"Failed to start ACP process: {exc}")
                return

            if generation != self._generation:
                # stop() ran while we were spawning
                _kill_quietly(proc)
                return

            self._proc = proc
            self._stdout_buffer = b""
            self._state = ProcessState.RUNNING
            logger.debug(
                "Spawned agent %s (pid=%s, cwd=%s)",
                self._config.command,
                proc.pid,
                self._cwd or os.getcwd(),
            )
            self._spawn_task(self._pump_stdout(proc, generation))
            self._spawn_task(self._pump_stderr(proc, generation))
            self._spawn_task(self._watch_exit(proc, generation))

    def stop(self) -> None:
        """Kill the subprocess if there is one. Safe to call at any time."""
        self._generation += 1
        proc = self._proc
        self._proc = None
        self._state = ProcessState.NOT_STARTED
        self._stdout_buffer = b""
        if proc is not None:
            _kill_quietly(proc)

    async def aclose(self, timeout: float = 5.0) -> None:
        """Stop and wait for the pipe readers and exit watcher to finish."""
        self.stop()
        if self._tasks:
            await asyncio.wait(list(self._tasks), timeout=timeout)

    # ── Sending ──────────────────────────────────────────────────────────

    async def send_request(
        self, payload: Mapping[str, Any], timeout: float = DEFAULT_REQUEST_TIMEOUT
    ) -> dict[str, Any]:
        """Send a request and wait for the response with the same id.

        Never raises on timeout: the result is then ``{"error": {"message":
        "Response timeout"}}``. A response arriving after the timeout is
        dropped.
        """
        await self._ensure_started()
        if self._proc is None:
            return {"error": {"message": "ACP runtime is not started"}}

        outgoing = {
            "jsonrpc": payload.get("jsonrpc") or "2.0",
            "id": payload.get("id"),
            "method": payload.get("method"),
            "params": payload.get("params") if payload.get("params") is not None else {},
        }
        key = _id_key(outgoing["id"])
        if key is None:
            raise ValueError(f"Request id must be a string or number: {outgoing['id']!r}")
        if key in self._pending:
            raise ValueError(f"Request id already in flight: {key!r}")

        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        timer = loop.call_later(timeout, self._expire, key, future)
        pending = _PendingCall(future=future, timer=timer)
        self._pending[key] = pending

        self._push_log("outgoing", outgoing)
        try:
            await self._write(outgoing)
        except (OSError, RuntimeError) as exc:
            self._drop_pending(key, pending)
            self._push_log("error", f"Failed to write to ACP process: {exc}")
            return {"error": {"message": f"Failed to write to ACP process: {exc}"}}

        try:
            return await future
        finally:
            self._drop_pending(key, pending)

    async def send_notification(self, payload: Mapping[str, Any]) -> None:
        """Fire-and-forget: no id, no response bookkeeping."""
        await self._ensure_started()
        if self._proc is None:
            return
        outgoing = {
            "jsonrpc": payload.get("jsonrpc") or "2.0",
            "method": payload.get("method"),
            "params": payload.get("params") if payload.get("params") is not None else {},
        }
        self._push_log("outgoing", outgoing)
        try:
            await self._write(outgoing)
        except (OSError, RuntimeError) as exc:
            self._push_log("error", f"Failed to write to ACP process: {exc}")

    # ── Receiving ────────────────────────────────────────────────────────

    def feed_stdout(self, chunk: bytes) -> None:
        """Append raw stdout bytes and dispatch every complete line."""
        self._stdout_buffer += chunk
        while True:
            index = self._stdout_buffer.find(b"\n")
            if index < 0:
                break
            line = self._stdout_buffer[:index]
            self._stdout_buffer = self._stdout_buffer[index + 1 :]
            self._handle_line(line.decode("utf-8", errors="replace"))

    def _handle_line(self, line: str) -> None:
        trimmed = line.strip()
        if not trimmed:
            return
        try:
            parsed = json.loads(trimmed)
        except ValueError:
            self._push_log("raw", trimmed)
            return

        if not isinstance(parsed, dict):
            self._push_log("incoming" if isinstance(parsed, list) else "raw", parsed)
            return

        if "id" in parsed:
            key = _id_key(parsed["id"])
            pending = self._pending.pop(key, None) if key is not None else None
            if pending is not None:
                pending.timer.cancel()
                if not pending.future.done():
                    pending.future.set_result(parsed)
                self._push_log("incoming", parsed)
                return

        if isinstance(parsed.get("method"), str) and "id" not in parsed:
            self._push_log("notification", parsed)
            if self._on_notification is not None:
                try:
                    self._on_notification(parsed)
                except Exception:
                    logger.exception("Notification handler failed for %s", parsed.get("method"))
            return

        self._push_log("incoming", parsed)

    # ── Internals ────────────────────────────────────────────────────────

    async def _ensure_started(self) -> None:
        if self._state is not ProcessState.RUNNING:
            await self.start()

    async def _write(self, message: dict[str, Any]) -> None:
        proc = self._proc
        if proc is None or proc.stdin is None:
            raise RuntimeError("ACP process is not running")
        proc.stdin.write((json.dumps(message, ensure_ascii=False) + "\n").encode("utf-8"))
        await proc.stdin.drain()

    def _expire(self, key: Any, future: asyncio.Future) -> None:
        pending = self._pending.get(key)
        if pending is not None and pending.future is future:
            del self._pending[key]
        if not future.done():
            future.set_result({"error": {"message": TIMEOUT_MESSAGE}})

    def _drop_pending(self, key: Any, pending: _PendingCall) -> None:
        pending.timer.cancel()
        if self._pending.get(key) is pending:
            del self._pending[key]

    def _push_log(self, direction: LogDirection, payload: Any) -> None:
        entry = self._logs.push(direction, payload)
        if self._on_log is not None:
            try:
                self._on_log(entry)
            except Exception:
                logger.exception("Log handler failed")

    def _spawn_task(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _pump_stdout(self, proc: asyncio.subprocess.Process, generation: int) -> None:
        assert proc.stdout is not None
        while True:
            chunk = await proc.stdout.read(65536)
            if not chunk or generation != self._generation:
                break
            self.feed_stdout(chunk)
        if generation == self._generation and self._stdout_buffer:
            tail, self._stdout_buffer = self._stdout_buffer, b""
            self._handle_line(tail.decode("utf-8", errors="replace"))

    async def _pump_stderr(self, proc: asyncio.subprocess.Process, generation: int) -> None:
        assert proc.stderr is not None
        while True:
            chunk = await proc.stderr.read(65536)
            if not chunk or generation != self._generation:
                break
            message = chunk.decode("utf-8", errors="replace").strip()
            if message:
                self._push_log("error", message)

    async def _watch_exit(self, proc: asyncio.subprocess.Process, generation: int) -> None:
        code = await proc.wait()
        if generation != self._generation:
            return
        self._proc = None
        self._state = ProcessState.NOT_STARTED
        self._push_log("error", f"ACP process exited with code {code}")


def _kill_quietly(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is not None:
        return
    try:
        proc.kill()
    except ProcessLookupError:
        pass
    except OSError:
        logger.debug("Failed to kill agent process %s", proc.pid, exc_info=True)
