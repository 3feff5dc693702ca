"""Tests for request correlation on top of one agent process."""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path

import pytest_asyncio

from acp_remote.agent import AcpAgentRuntime
from acp_remote.config import AgentInfo


@pytest_asyncio.fixture
async def runtime(fake_agent_config):
    notifications: list[dict] = []
    rt = AcpAgentRuntime("ws#1", AgentInfo("Fake", fake_agent_config), on_notification=notifications.append)
    rt.notifications = notifications
    yield rt
    await rt.aclose()


class TestInternalIds:
    async def test_agent_sees_internal_id(self, runtime):
        response = await runtime.send_request({"jsonrpc": "2.0", "id": 1, "method": "echo"}, timeout=5)
        assert response["id"] == "ws#1:1"
        assert response["result"]["id"] == "ws#1:1"

    async def test_ids_increase_per_request(self, runtime):
        first = await runtime.send_request({"id": 1, "method": "echo"}, timeout=5)
        second = await runtime.send_request({"id": 1, "method": "echo"}, timeout=5)
        assert (first["id"], second["id"]) == ("ws#1:1", "ws#1:2")

    async def test_meta_is_stripped(self, runtime):
        response = await runtime.send_request(
            {"id": "x", "method": "echo", "params": {"cwd": "/w", "_meta": {"remote": {"url": "u"}}}},
            timeout=5,
        )
        assert response["result"]["params"] == {"cwd": "/w"}

    async def test_in_flight_tracking(self, runtime):
        task = asyncio.create_task(runtime.send_request({"id": 1, "method": "hold"}, timeout=5))
        await asyncio.sleep(0.2)
        assert runtime.in_flight == 1
        await runtime.send_request({"id": 2, "method": "release"}, timeout=5)
        await task
        assert runtime.in_flight == 0


class TestNotifications:
    async def test_forwarded_notification_drops_id_and_meta(self, runtime):
        await runtime.send_notification({"jsonrpc": "2.0", "id": None, "method": "session/cancel", "params": {"sessionId": "s", "_meta": {}}})
        for _ in range(100):
            if runtime.notifications:
                break
            await asyncio.sleep(0.02)
        received = runtime.notifications[0]
        assert received["jsonrpc"] == "2.0"
        assert received["params"]["message"] == {
            "jsonrpc": "2.0",
            "method": "session/cancel",
            "params": {"sessionId": "s"},
        }


class TestSpawnCwd:
    async def test_cwd_applied_before_start(self, runtime, tmp_path: Path):
        runtime.set_spawn_cwd(tmp_path)
        response = await runtime.send_request({"id": 1, "method": "echo"}, timeout=5)
        assert os.path.realpath(response["result"]["cwd"]) == os.path.realpath(tmp_path)

    async def test_cwd_change_restarts_agent(self, runtime, tmp_path: Path):
        first_dir, second_dir = tmp_path / "one", tmp_path / "two"
        first_dir.mkdir()
        second_dir.mkdir()
        runtime.set_spawn_cwd(first_dir)
        await runtime.send_request({"id": 1, "method": "echo"}, timeout=5)
        pid = runtime.process.pid

        runtime.set_spawn_cwd(second_dir)
        response = await runtime.send_request({"id": 2, "method": "echo"}, timeout=5)

        assert runtime.process.pid != pid
        assert os.path.realpath(response["result"]["cwd"]) == os.path.realpath(second_dir)

    async def test_same_cwd_keeps_process(self, runtime, tmp_path: Path):
        runtime.set_spawn_cwd(tmp_path)
        await runtime.send_request({"id": 1, "method": "echo"}, timeout=5)
        pid = runtime.process.pid
        runtime.set_spawn_cwd(tmp_path)
        await runtime.send_request({"id": 2, "method": "echo"}, timeout=5)
        assert runtime.process.pid == pid


class TestLogging:
    async def test_missing_session_warning(self, runtime, caplog):
        caplog.set_level(logging.WARNING, logger="acp_remote.agent")
        runtime.process.feed_stdout(
            b'{"jsonrpc":"2.0","id":"ws#1:9","error":{"code":-32000,"message":"Session not found: s-1"}}\n'
        )
        assert any("session s-1 missing" in r.getMessage() for r in caplog.records)
