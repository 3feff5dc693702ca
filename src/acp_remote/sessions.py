"""Session registry: agent session id → runtime, git workspace and subscribers.

The registry is owned by the server, so a session can outlive the WebSocket
that created it. A *subscriber* is any object with a ``deliver(payload)``
method (in practice a :class:`~acp_remote.orchestrator.ConnectionSession`).

When the last subscriber of a session goes away the session is expired after
``idle_ttl`` seconds. With the default of ``0`` that happens as part of the
connection's own cleanup, which makes sessions effectively per-connection.
Expiry removes the run worktree and stops the runtime once it serves no other
session.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

from acp_remote.jsonrpc import get_session_id_from_params

if TYPE_CHECKING:
    from acp_remote.agent import AcpAgentRuntime
    from acp_remote.git import GitWorkspace, GitWorkspaceManager, RemoteGitInfo

logger = logging.getLogger(__name__)


class Subscriber(Protocol):
    def deliver(self, payload: dict[str, Any]) -> None: ...


@dataclass(eq=False)
class SessionRecord:
    session_id: str
    runtime: AcpAgentRuntime
    run_id: str | None = None
    remote: RemoteGitInfo | None = None
    workspace: GitWorkspace | None = None
    created_at: float = field(default_factory=time.time)
    last_active_at: float = field(default_factory=time.time)
    subscribers: set[Subscriber] = field(default_factory=set)
    cleanup_timer: asyncio.TimerHandle | None = None

    def cancel_cleanup(self) -> None:
        if self.cleanup_timer is not None:
            self.cleanup_timer.cancel()
            self.cleanup_timer = None


class SessionRegistry:
    def __init__(self, git: GitWorkspaceManager | None = None, *, idle_ttl: float = 0.0) -> None:
        self._git = git
        self.idle_ttl = idle_ttl
        self._sessions: dict[str, SessionRecord] = {}
        self._runtime_sessions: dict[str, set[str]] = {}
        self._subscriber_sessions: dict[Subscriber, set[str]] = {}
        self._runtimes: dict[str, AcpAgentRuntime] = {}
        self._runtime_subscribers: dict[str, set[Subscriber]] = {}
        self._expiry_tasks: set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def get(self, session_id: str | None) -> SessionRecord | None:
        if not session_id:
            return None
        return self._sessions.get(session_id)

    # ── Runtimes ─────────────────────────────────────────────────────────

    def register_runtime(self, runtime: AcpAgentRuntime, subscriber: Subscriber | None = None) -> None:
        self._runtimes[runtime.id] = runtime
        subscribers = self._runtime_subscribers.setdefault(runtime.id, set())
        if subscriber is not None:
            subscribers.add(subscriber)

    def subscribe_runtime(self, runtime_id: str, subscriber: Subscriber) -> None:
        if runtime_id in self._runtimes:
            self._runtime_subscribers.setdefault(runtime_id, set()).add(subscriber)

    def unsubscribe_runtime(self, subscriber: Subscriber) -> None:
        for subscribers in self._runtime_subscribers.values():
            subscribers.discard(subscriber)

    def release_runtime(self, runtime: AcpAgentRuntime) -> bool:
        """Stop and forget ``runtime`` unless a session still needs it."""
        if self.has_sessions_for_runtime(runtime.id):
            return False
        runtime.stop()
        self._runtimes.pop(runtime.id, None)
        self._runtime_subscribers.pop(runtime.id, None)
        return True

    def has_sessions_for_runtime(self, runtime_id: str) -> bool:
        return bool(self._runtime_sessions.get(runtime_id))

    @property
    def runtimes(self) -> list[AcpAgentRuntime]:
        return list(self._runtimes.values())

    def dispatch_notification(self, runtime: AcpAgentRuntime, payload: dict[str, Any]) -> int:
        """Deliver an agent notification; returns the number of recipients.

        Notifications about a known session go to that session's subscribers,
        everything else to the connections using the runtime.
        """
        record = self.get(get_session_id_from_params(payload.get("params")))
        if record is not None and record.subscribers:
            targets = set(record.subscribers)
        else:
            targets = set(self._runtime_subscribers.get(runtime.id, ()))
        for subscriber in targets:
            subscriber.deliver(payload)
        return len(targets)

    # ── Sessions ─────────────────────────────────────────────────────────

    def ensure(self, session_id: str, runtime: AcpAgentRuntime) -> SessionRecord:
        record = self._sessions.get(session_id)
        if record is not None:
            if record.runtime is not runtime:
                self._runtime_sessions.get(record.runtime.id, set()).discard(session_id)
                record.runtime = runtime
                self._runtime_sessions.setdefault(runtime.id, set()).add(session_id)
            return record
        record = SessionRecord(session_id=session_id, runtime=runtime)
        self._sessions[session_id] = record
        self._runtime_sessions.setdefault(runtime.id, set()).add(session_id)
        logger.debug("Registered session %s on %s", session_id, runtime.id)
        return record

    def set_git_context(
        self,
        session_id: str,
        *,
        run_id: str,
        remote: RemoteGitInfo,
        workspace: GitWorkspace,
    ) -> None:
        record = self._sessions.get(session_id)
        if record is None:
            return
        record.run_id = run_id
        record.remote = remote
        record.workspace = workspace

    def touch(self, session_id: str) -> None:
        record = self._sessions.get(session_id)
        if record is None:
            return
        record.last_active_at = time.time()
        record.cancel_cleanup()

    def attach(self, session_id: str, subscriber: Subscriber) -> None:
        record = self._sessions.get(session_id)
        if record is None:
            return
        record.cancel_cleanup()
        record.subscribers.add(subscriber)
        self._subscriber_sessions.setdefault(subscriber, set()).add(session_id)

    def sessions_for(self, subscriber: Subscriber) -> set[str]:
        return set(self._subscriber_sessions.get(subscriber, ()))

    async def detach(self, subscriber: Subscriber) -> None:
        """Drop ``subscriber`` everywhere and expire sessions nobody watches."""
        self.unsubscribe_runtime(subscriber)
        session_ids = self._subscriber_sessions.pop(subscriber, set())
        orphaned: list[SessionRecord] = []
        for session_id in session_ids:
            record = self._sessions.get(session_id)
            if record is None:
                continue
            record.subscribers.discard(subscriber)
            if not record.subscribers:
                orphaned.append(record)

        for record in orphaned:
            if self.idle_ttl <= 0:
                await self._expire(record.session_id)
            else:
                self._schedule_cleanup(record)

    async def aclose(self) -> None:
        """Expire every session and stop every runtime."""
        for record in self._sessions.values():
            record.cancel_cleanup()
            record.subscribers.clear()
        for session_id in list(self._sessions):
            await self._expire(session_id)
        for task in list(self._expiry_tasks):
            task.cancel()
        for runtime in list(self._runtimes.values()):
            runtime.stop()
        self._runtimes.clear()
        self._runtime_subscribers.clear()
        self._subscriber_sessions.clear()

    def _schedule_cleanup(self, record: SessionRecord) -> None:
        if record.cleanup_timer is not None or record.subscribers:
            return
        logger.debug("Scheduling cleanup of session %s in %.1fs", record.session_id, self.idle_ttl)
        loop = asyncio.get_running_loop()
        record.cleanup_timer = loop.call_later(self.idle_ttl, self._start_expiry, record.session_id)

    def _start_expiry(self, session_id: str) -> None:
        record = self._sessions.get(session_id)
        if record is not None:
            record.cleanup_timer = None
        task = asyncio.create_task(self._expire(session_id))
        self._expiry_tasks.add(task)
        task.add_done_callback(self._expiry_tasks.discard)

    async def _expire(self, session_id: str) -> None:
        record = self._sessions.get(session_id)
        if record is None or record.subscribers:
            return
        logger.debug("Expiring session %s", session_id)
        record.cancel_cleanup()
        del self._sessions[session_id]

        runtime_id = record.runtime.id
        remaining = self._runtime_sessions.get(runtime_id)
        if remaining is not None:
            remaining.discard(session_id)
            if not remaining:
                del self._runtime_sessions[runtime_id]
                if not self._runtime_subscribers.get(runtime_id):
                    record.runtime.stop()
                    self._runtimes.pop(runtime_id, None)
                    self._runtime_subscribers.pop(runtime_id, None)

        if record.workspace is not None and self._git is not None:
            try:
                await self._git.cleanup_workspace(record.workspace)
            except Exception:
                logger.error("Failed to clean up git workspace for session %s", session_id, exc_info=True)
