"""Per-WebSocket control loop.

:class:`ConnectionSession` is transport-agnostic: it consumes raw text frames
through :meth:`ConnectionSession.handle_text` and puts outbound JSON-RPC
payloads on :attr:`ConnectionSession.outbox`, which the server drains into the
socket. States run strictly forward::

    CONNECTING ──open()──▶ ACTIVE ──close()──▶ CLOSING ──▶ CLOSED
        │                                                   ▲
        └────────────── agent config not found ─────────────┘

Most requests are forwarded to the agent untouched apart from id remapping.
Three methods get extra work:

- ``session/new`` with ``params._meta.remote`` prepares a git worktree, points
  the agent at it and reports the initial branch target;
- ``session/prompt`` on a git-backed session commits and pushes after the turn;
- ``session/load`` re-attaches to a session that outlived its connection.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable

from acp_remote.agent import AcpAgentRuntime
from acp_remote.config import AgentInfo, ConfigError, resolve_agent_config
from acp_remote.git import (
    GitWorkspace,
    RemoteGitInfo,
    generate_run_id,
    redact_git_url,
    summarize_meta_for_log,
)
from acp_remote.jsonrpc import (
    INVALID_PARAMS,
    INVALID_REQUEST,
    SERVER_ERROR,
    attach_target_meta,
    build_jsonrpc_error,
    build_notification,
    get_remote_meta,
    get_session_id_from_params,
    get_session_id_from_result,
    is_jsonrpc_request,
    is_notification,
    normalize_jsonrpc_response,
    normalize_prompt_response,
    parse_json,
    strip_meta_from_params,
)
from acp_remote.rpc_log import RpcLogger

if TYPE_CHECKING:
    from acp_remote.config import RemoteRunConfig
    from acp_remote.git import GitWorkspaceManager
    from acp_remote.sessions import SessionRecord, SessionRegistry

logger = logging.getLogger(__name__)

PROGRESS_METHOD = "remote/progress"

RuntimeFactory = Callable[..., AcpAgentRuntime]


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"


class ConnectionSession:
    """Orchestrates one client connection against one agent runtime."""

    def __init__(
        self,
        connection_id: str,
        config: RemoteRunConfig,
        *,
        registry: SessionRegistry,
        git: GitWorkspaceManager,
        rpc_logger: RpcLogger | None = None,
        agent_name: str | None = None,
        runtime_factory: RuntimeFactory = AcpAgentRuntime,
    ) -> None:
        self.id = connection_id
        self.config = config
        self.registry = registry
        self.git = git
        self.rpc_logger = rpc_logger or RpcLogger.from_config(config)
        self.requested_agent = agent_name or None
        self.runtime_factory = runtime_factory

        self.state = ConnectionState.CONNECTING
        self.agent: AgentInfo | None = None
        self.runtime: AcpAgentRuntime | None = None
        self.outbox: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue()
        # worktrees not (yet) claimed by a session id; removed on close
        self._unclaimed_workspaces: list[GitWorkspace] = []

    def __repr__(self) -> str:
        return f"<ConnectionSession {self.id} {self.state.value}>"

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def open(self) -> bool:
        """Resolve the agent and go ACTIVE. On config failure send an error and go CLOSED."""
        try:
            self.agent = resolve_agent_config(
                self.requested_agent,
                config_path=self.config.acp_config_path,
                default_agent=self.config.agent,
            )
        except ConfigError as exc:
            logger.error("%s agent configuration failed: %s", self.id, exc)
            self.send(build_jsonrpc_error(None, SERVER_ERROR, str(exc)))
            self.state = ConnectionState.CLOSED
            self.outbox.put_nowait(None)
            return False

        runtime = self.runtime_factory(
            self.id,
            self.agent,
            on_notification=lambda payload: self.registry.dispatch_notification(runtime, payload),
            rpc_logger=self.rpc_logger,
        )
        self.runtime = runtime
        self.registry.register_runtime(runtime, self)
        self.state = ConnectionState.ACTIVE
        logger.info("%s connected (agent=%s)", self.id, self.agent.name)
        self.notify("connection", "Connected", {"agent": self.agent.name})
        return True

    async def close(self) -> None:
        """Release sessions, worktrees and the runtime. Idempotent."""
        if self.state in (ConnectionState.CLOSING, ConnectionState.CLOSED):
            return
        self.state = ConnectionState.CLOSING
        try:
            await self.registry.detach(self)
            for workspace in self._unclaimed_workspaces:
                await self.git.cleanup_workspace(workspace)
            self._unclaimed_workspaces.clear()
            if self.runtime is not None:
                self.registry.release_runtime(self.runtime)
        finally:
            self.rpc_logger.flush(self.id)
            self.state = ConnectionState.CLOSED
            self.outbox.put_nowait(None)
            logger.info("%s closed", self.id)

    # ── Outbound ─────────────────────────────────────────────────────────

    def send(self, payload: dict[str, Any]) -> None:
        if self.state is ConnectionState.CLOSED:
            return
        self.rpc_logger.log(self.id, "->", payload)
        self.outbox.put_nowait(payload)

    def deliver(self, payload: dict[str, Any]) -> None:
        """Called by the registry with agent notifications for this client."""
        self.send(payload)

    def notify(self, stage: str, message: str, extra: dict[str, Any] | None = None) -> None:
        self.send(build_notification(PROGRESS_METHOD, {"stage": stage, "message": message, **(extra or {})}))

    # ── Inbound ──────────────────────────────────────────────────────────

    async def handle_text(self, text: str) -> None:
        """Handle one WebSocket text frame (a single message or a batch)."""
        ok, parsed = parse_json(text)
        if not ok:
            logger.error("%s invalid JSON payload: %.200s", self.id, text)
            self.send(build_jsonrpc_error(None, INVALID_REQUEST, "Invalid JSON"))
            return
        messages = parsed if isinstance(parsed, list) else [parsed]
        for message in messages:
            await self.handle_message(message)

    async def handle_message(self, message: Any) -> None:
        if self.state is not ConnectionState.ACTIVE or self.runtime is None:
            logger.debug("%s dropping message in state %s", self.id, self.state.value)
            return

        self.rpc_logger.log(self.id, "<-", message)
        if not is_jsonrpc_request(message):
            request_id = message.get("id") if isinstance(message, dict) else None
            self.send(build_jsonrpc_error(request_id, INVALID_REQUEST, "Invalid JSON-RPC payload"))
            return

        params = message.get("params")
        if isinstance(params, dict) and "_meta" in params:
            logger.debug("%s params._meta: %s", self.id, summarize_meta_for_log(params["_meta"]))

        record = self.registry.get(get_session_id_from_params(params))
        if record is not None:
            self.registry.subscribe_runtime(record.runtime.id, self)
            self.registry.attach(record.session_id, self)
            self.registry.touch(record.session_id)

        method = message["method"]
        request_id = message.get("id")
        if is_notification(message):
            await self._forward_notification(message, record)
            return

        try:
            if method == "session/new":
                response = await self._session_new(message)
            elif method == "session/load":
                response = await self._session_load(message)
            elif method == "session/prompt":
                response = await self._session_prompt(message, record)
            else:
                runtime = record.runtime if record else self.runtime
                raw = await runtime.send_request(message, self.config.request_timeout)
                response = normalize_jsonrpc_response(raw, request_id)
        except Exception as exc:
            logger.error("%s %s failed: %s", self.id, method, exc, exc_info=True)
            if method == "session/new":
                self.notify("session/new", "Failed", {"error": str(exc)})
            response = build_jsonrpc_error(request_id, SERVER_ERROR, str(exc) or "ACP runtime error")
        self.send(response)

    async def _forward_notification(self, message: dict[str, Any], record: SessionRecord | None) -> None:
        runtime = record.runtime if record else self.runtime
        try:
            await runtime.send_notification(message)
        except Exception:
            logger.error("%s failed to forward %s", self.id, message.get("method"), exc_info=True)

    # ── Methods with side effects ────────────────────────────────────────

    async def _session_new(self, message: dict[str, Any]) -> dict[str, Any]:
        runtime = self.runtime
        request_id = message["id"]
        params = message.get("params") if isinstance(message.get("params"), dict) else {}
        remote = RemoteGitInfo.from_meta(get_remote_meta(params))

        if remote is None:
            self.notify("session/new", "Missing _meta.remote (delegating without git prep)")
            raw = await runtime.send_request(message, self.config.request_timeout)
            response = normalize_jsonrpc_response(raw, request_id)
            session_id = get_session_id_from_result(response)
            if session_id:
                self.registry.ensure(session_id, runtime)
                self.registry.attach(session_id, self)
            return response

        run_id = generate_run_id()
        self.notify(
            "session/new",
            "Preparing git workspace",
            {"url": redact_git_url(remote.url), "branch": remote.branch, "revision": remote.revision, "runId": run_id},
        )
        workspace = await self.git.ensure_repo_workdir(remote, run_id, self.notify)
        # owned by this connection until a session id claims it
        self._unclaimed_workspaces.append(workspace)
        logger.info(
            "%s run %s workspace ready: %s (branch %s)", self.id, run_id, workspace.workdir, workspace.branch_name
        )

        initial_target = None
        try:
            self.notify("git", "Ensuring target branch exists", {"branch": workspace.branch_name})
            initial_target = await self.git.ensure_committed_and_pushed(workspace, self.notify)
            self.notify("git", "Target branch ready", {"target": initial_target.to_dict()})
        except Exception as exc:
            logger.error("%s initial push failed: %s", self.id, exc)
            self.notify("git", "Initial push failed", {"error": str(exc)})

        cwd = str(workspace.workdir)
        runtime.set_spawn_cwd(cwd)
        self.notify("session/new", "Starting ACP session", {"cwd": cwd})
        forward = {**message, "params": {**strip_meta_from_params(params), "cwd": cwd}}
        raw = await runtime.send_request(forward, self.config.request_timeout)
        response = normalize_jsonrpc_response(raw, request_id)

        session_id = get_session_id_from_result(response)
        if session_id:
            self._unclaimed_workspaces.remove(workspace)
            self.registry.ensure(session_id, runtime)
            self.registry.set_git_context(session_id, run_id=run_id, remote=remote, workspace=workspace)
            self.registry.attach(session_id, self)
            self.notify("session/new", "Session created", {"sessionId": session_id, "cwd": cwd})
        else:
            self.notify("session/new", "Session created (unknown sessionId)", {"cwd": cwd})

        if initial_target is not None:
            response = attach_target_meta(response, initial_target.to_dict())
        return response

    async def _session_load(self, message: dict[str, Any]) -> dict[str, Any]:
        request_id = message["id"]
        params = message.get("params") if isinstance(message.get("params"), dict) else {}
        session_id = get_session_id_from_params(params)
        if not session_id:
            return build_jsonrpc_error(request_id, INVALID_PARAMS, "Missing sessionId")
        record = self.registry.get(session_id)
        if record is None:
            return build_jsonrpc_error(request_id, SERVER_ERROR, f"Session not found: {session_id}")

        self.registry.subscribe_runtime(record.runtime.id, self)
        self.registry.attach(session_id, self)
        self.registry.touch(session_id)
        forward_params = strip_meta_from_params(params)
        if record.workspace is not None:
            forward_params["cwd"] = str(record.workspace.workdir)
        raw = await record.runtime.send_request({**message, "params": forward_params}, self.config.request_timeout)
        return normalize_jsonrpc_response(raw, request_id)

    async def _session_prompt(self, message: dict[str, Any], record: SessionRecord | None) -> dict[str, Any]:
        runtime = record.runtime if record else self.runtime
        raw = await runtime.send_request(message, self.config.request_timeout)
        response = normalize_prompt_response(normalize_jsonrpc_response(raw, message["id"]), self.id)
        if record is None or record.workspace is None:
            return response

        try:
            self.notify("git", "Committing and pushing changes", {"sessionId": record.session_id})
            target = await self.git.ensure_committed_and_pushed(record.workspace, self.notify)
        except Exception as exc:
            logger.error("%s push failed for session %s: %s", self.id, record.session_id, exc)
            self.notify("git", "Push failed", {"error": str(exc)})
            return response
        self.notify("git", "Target branch ready", {"target": target.to_dict()})
        return attach_target_meta(response, target.to_dict())
