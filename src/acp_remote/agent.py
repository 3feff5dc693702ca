"""Request correlation on top of one agent subprocess.

Client ids cannot be forwarded to the agent as-is: the same agent process may
serve requests from several connections, and two clients are free to both use
``id: 1``. :class:`AcpAgentRuntime` sends every request under an internal id
``<runtimeId>:<n>`` and hands the response back to the caller, which puts the
client's id back with :func:`~acp_remote.jsonrpc.normalize_jsonrpc_response`.
"""

from __future__ import annotations

import itertools
import logging
import os
from collections.abc import Callable, Mapping
from typing import Any

from acp_remote.config import AgentInfo
from acp_remote.jsonrpc import (
    error_mentions_missing_session,
    normalize_jsonrpc_notification,
    strip_meta_from_params,
)
from acp_remote.log_buffer import LogEntry
from acp_remote.rpc_log import RpcLogger
from acp_remote.runtime import AcpProcess, ProcessState

logger = logging.getLogger(__name__)

RuntimeNotificationHandler = Callable[[dict[str, Any]], None]


class AcpAgentRuntime:
    """One named agent process with its own internal id space."""

    def __init__(
        self,
        runtime_id: str,
        agent: AgentInfo,
        *,
        on_notification: RuntimeNotificationHandler,
        rpc_logger: RpcLogger | None = None,
        spawn_cwd: str | os.PathLike[str] | None = None,
    ) -> None:
        self.id = runtime_id
        self.agent = agent
        self._on_notification = on_notification
        self._rpc_logger = rpc_logger or RpcLogger()
        self._counter = itertools.count(1)
        self._method_by_internal_id: dict[str, str] = {}
        self.process = AcpProcess(
            agent.config,
            on_notification=self._handle_notification,
            on_log=self._handle_log,
        )
        if spawn_cwd:
            self.process.set_working_directory(spawn_cwd)

    @property
    def in_flight(self) -> int:
        return len(self._method_by_internal_id)

    @property
    def log_context(self) -> str:
        return f"{self.id} agent"

    def set_spawn_cwd(self, cwd: str | os.PathLike[str]) -> None:
        """Point the agent at ``cwd``, restarting it if it already runs elsewhere."""
        if self.process.set_working_directory(cwd):
            return
        if self.process.working_directory == str(cwd):
            return
        logger.info(
            "%s restarting agent %s to change cwd %s -> %s",
            self.id,
            self.agent.name,
            self.process.working_directory or "<inherited>",
            cwd,
        )
        self.process.stop()
        self.process.set_working_directory(cwd)

    async def send_notification(self, message: Mapping[str, Any]) -> None:
        forward = {**message, "params": strip_meta_from_params(message.get("params"))}
        forward.pop("id", None)
        await self.process.send_notification(forward)

    async def send_request(self, message: Mapping[str, Any], timeout: float) -> dict[str, Any]:
        """Forward ``message`` under a fresh internal id and return the raw response."""
        internal_id = f"{self.id}:{next(self._counter)}"
        forward = {**message, "id": internal_id, "params": strip_meta_from_params(message.get("params"))}
        if isinstance(forward.get("method"), str):
            self._method_by_internal_id[internal_id] = forward["method"]
        try:
            return await self.process.send_request(forward, timeout)
        finally:
            self._method_by_internal_id.pop(internal_id, None)

    def stop(self) -> None:
        if self.process.state is not ProcessState.NOT_STARTED:
            logger.debug("%s stopping agent %s", self.id, self.agent.name)
        self.process.stop()

    async def aclose(self) -> None:
        await self.process.aclose()

    # ── Runtime callbacks ────────────────────────────────────────────────

    def _handle_notification(self, payload: dict[str, Any]) -> None:
        self._on_notification(normalize_jsonrpc_notification(payload))

    def _handle_log(self, entry: LogEntry) -> None:
        payload = entry.payload
        if entry.direction == "error":
            logger.error("%s error: %s", self.log_context, payload)
        elif entry.direction == "outgoing":
            self._rpc_logger.log(self.log_context, "->", payload)
        elif entry.direction == "incoming":
            method = None
            if isinstance(payload, dict) and payload.get("id") is not None:
                method = self._method_by_internal_id.get(str(payload["id"]))
            self._rpc_logger.log(self.log_context, "<-", payload, method=method)
            missing = error_mentions_missing_session(payload)
            if missing is not None:
                logger.warning(
                    "%s session %s missing in agent process; the agent restarted or the "
                    "WebSocket reconnected between session/new and session/prompt",
                    self.log_context,
                    missing or "<unknown>",
                )
        elif entry.direction == "notification":
            self._rpc_logger.log(self.log_context, "<-", payload)
        else:
            logger.debug("%s %s: %s", self.log_context, entry.direction, payload)
