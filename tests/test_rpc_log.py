"""Tests for JSON-RPC traffic logging."""

from __future__ import annotations

import logging

import pytest

from acp_remote.rpc_log import REDACTED, RpcLogger, format_body, redact

LOGGER = "acp_remote.rpc_log"


@pytest.fixture
def debug_logs(caplog):
    caplog.set_level(logging.DEBUG, logger=LOGGER)
    return caplog


def _messages(caplog) -> list[str]:
    return [r.getMessage() for r in caplog.records if r.name == LOGGER]


class TestRedact:
    def test_sensitive_keys_masked_at_any_depth(self):
        value = {"params": {"env": {"API_KEY": "k", "OTHER": "v"}, "headers": [{"Authorization": "Bearer x"}]}}
        assert redact(value) == {
            "params": {"env": {"API_KEY": REDACTED, "OTHER": "v"}, "headers": [{"Authorization": REDACTED}]}
        }

    def test_long_strings_shortened(self):
        assert redact("x" * 10, max_string_chars=4) == "xxxx... (10 chars)"

    def test_input_not_mutated(self):
        value = {"token": "t"}
        redact(value)
        assert value == {"token": "t"}

    def test_body_truncated(self):
        body = format_body({"text": "y" * 200}, max_chars=50)
        assert body.endswith("chars)")
        assert "truncated" in body


class TestRpcLogger:
    def test_request_header_and_body(self, debug_logs):
        RpcLogger().log("ws#1", "<-", {"jsonrpc": "2.0", "id": 7, "method": "session/prompt", "params": {}})
        (message,) = _messages(debug_logs)
        assert message.startswith("ws#1 <- request session/prompt id=7\n")
        assert '"method": "session/prompt"' in message

    def test_response_uses_method_hint(self, debug_logs):
        RpcLogger(log_payloads=False).log("ws#1", "->", {"id": 7, "result": {}}, method="session/new")
        assert _messages(debug_logs) == ["ws#1 -> response session/new id=7"]

    def test_notification_body_hidden_by_default(self, debug_logs):
        RpcLogger(coalesce_session_updates=False).log("ws#1", "->", {"method": "remote/progress", "params": {}})
        assert _messages(debug_logs) == ["ws#1 -> notification remote/progress"]

    def test_nothing_logged_above_debug(self, caplog):
        caplog.set_level(logging.INFO, logger=LOGGER)
        RpcLogger().log("ws#1", "<-", {"id": 1, "method": "m"})
        assert _messages(caplog) == []

    async def test_session_updates_coalesced(self, debug_logs):
        rpc = RpcLogger(flush_interval=60)
        for _ in range(3):
            rpc.log("ws#1", "->", {"method": "session/update", "params": {"sessionId": "s"}})
        rpc.log("ws#2", "->", {"method": "session/update", "params": {"sessionId": "t"}})
        assert _messages(debug_logs) == []

        rpc.flush("ws#1")
        assert _messages(debug_logs) == ["ws#1 -> notification session/update (x3)"]
        rpc.flush()
        assert _messages(debug_logs)[-1] == "ws#2 -> notification session/update (x1)"

    def test_without_loop_flushes_immediately(self, debug_logs):
        RpcLogger().log("agent", "<-", {"method": "session/update"})
        assert _messages(debug_logs) == ["agent <- notification session/update (x1)"]
