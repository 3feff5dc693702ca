"""FastAPI application: health, agent catalogue and the ACP WebSocket."""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from acp_remote import __version__
from acp_remote.config import RemoteRunConfig, list_agents, load_remote_config
from acp_remote.git import GitWorkspaceManager
from acp_remote.orchestrator import ConnectionSession
from acp_remote.rpc_log import RpcLogger
from acp_remote.security import is_authorized
from acp_remote.sessions import SessionRegistry

logger = logging.getLogger(__name__)

CLOSE_INTERNAL_ERROR = 1011
CLOSE_POLICY_VIOLATION = 1008
_DENIAL_EXTENSION = "websocket.http.response"


async def _drain_outbox(websocket: WebSocket, session: ConnectionSession) -> None:
    """Single writer per socket so frames never interleave."""
    while True:
        payload = await session.outbox.get()
        if payload is None:
            return
        try:
            await websocket.send_text(json.dumps(payload, ensure_ascii=False))
        except (WebSocketDisconnect, RuntimeError, OSError):
            logger.debug("%s dropped outbound frame after disconnect", session.id)
            return


async def _reject(websocket: WebSocket) -> None:
    if _DENIAL_EXTENSION in websocket.scope.get("extensions", {}):
        await websocket.send_denial_response(
            JSONResponse({"error": {"message": "Unauthorized"}}, status_code=401)
        )
    else:
        await websocket.close(code=CLOSE_POLICY_VIOLATION)


def create_app(config: RemoteRunConfig | None = None) -> FastAPI:
    """Create the FastAPI application."""
    config = config or load_remote_config()
    git = GitWorkspaceManager(config)
    registry = SessionRegistry(git, idle_ttl=config.session_idle_ttl)
    rpc_logger = RpcLogger.from_config(config)
    connection_ids = itertools.count(1)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Log the effective settings on startup; expire sessions on shutdown."""
        logger.info(
            "acp-remote %s: ws=%s agents=%s git_root=%s (%s) push=%s",
            __version__,
            config.path,
            config.acp_config_path,
            config.git_root,
            config.git_root_source_label,
            config.push,
        )
        if config.git_root_map:
            logger.info(
                "git root map (%s): %s",
                config.git_root_map_source_label,
                {key: str(value) for key, value in config.git_root_map.items()},
            )
        if not config.token:
            logger.warning("No ACP_REMOTE_TOKEN configured; WebSocket connections are unauthenticated")
        yield
        await registry.aclose()
        rpc_logger.flush()

    app = FastAPI(
        title="acp-remote",
        version=__version__,
        description="WebSocket bridge from ACP clients to local coding agents",
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.registry = registry
    app.state.git = git

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type"],
    )

    @app.get("/health")
    async def health():
        return {"ok": True}

    @app.get("/acp/agents")
    async def agents():
        catalogue = list_agents(config.acp_config_path)
        if catalogue is None:
            return JSONResponse({"error": {"message": "ACP config not found"}}, status_code=404)
        return {"agents": catalogue}

    @app.websocket(config.path)
    async def acp_socket(websocket: WebSocket):
        if not is_authorized(
            config.token,
            websocket.headers.get("authorization"),
            websocket.query_params.get("token"),
        ):
            client = websocket.client.host if websocket.client else "unknown"
            logger.warning("Rejected unauthorized WebSocket from %s", client)
            await _reject(websocket)
            return

        await websocket.accept()
        session = ConnectionSession(
            f"ws#{next(connection_ids)}",
            config,
            registry=registry,
            git=git,
            rpc_logger=rpc_logger,
            agent_name=websocket.query_params.get("agent"),
        )
        writer = asyncio.create_task(_drain_outbox(websocket, session))

        if not await session.open():
            await writer
            await websocket.close(code=CLOSE_INTERNAL_ERROR)
            return

        handlers: set[asyncio.Task] = set()
        try:
            while True:
                text = await websocket.receive_text()
                task = asyncio.create_task(session.handle_text(text))
                handlers.add(task)
                task.add_done_callback(handlers.discard)
        except WebSocketDisconnect as exc:
            logger.info("%s disconnected (code=%s)", session.id, exc.code)
        finally:
            for task in list(handlers):
                task.cancel()
            if handlers:
                await asyncio.gather(*handlers, return_exceptions=True)
            await session.close()
            await writer

    return app
