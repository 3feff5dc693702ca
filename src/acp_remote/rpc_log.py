"""Readable logging of JSON-RPC traffic.

Every frame gets a one-line header such as::

    ws#3 <- request session/prompt id=7

optionally followed by a pretty-printed body. Bodies are redacted (anything
under a key that looks like a credential) and truncated so a single large
file read does not flood the log. ``session/update`` notifications are
streamed by agents many times per second; by default they are counted and
flushed as one ``session/update (xN)`` line per context and direction.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import TYPE_CHECKING, Any

from acp_remote.jsonrpc import describe_message

if TYPE_CHECKING:
    from acp_remote.config import RemoteRunConfig

logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"
_SENSITIVE_KEY_PARTS = ("token", "authorization", "api_key", "apikey", "password", "secret")
_COALESCED_METHOD = "session/update"


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(part in lowered for part in _SENSITIVE_KEY_PARTS)


def redact(value: Any, max_string_chars: int = 4_000) -> Any:
    """Deep copy of ``value`` with secrets masked and long strings shortened."""
    if isinstance(value, dict):
        return {
            key: REDACTED if isinstance(key, str) and _is_sensitive_key(key) else redact(item, max_string_chars)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [redact(item, max_string_chars) for item in value]
    if isinstance(value, str) and max_string_chars > 0 and len(value) > max_string_chars:
        return f"{value[:max_string_chars]}... ({len(value)} chars)"
    return value


def format_body(payload: Any, *, max_chars: int = 50_000, max_string_chars: int = 4_000) -> str:
    text = json.dumps(redact(payload, max_string_chars), indent=2, ensure_ascii=False, default=str)
    if max_chars > 0 and len(text) > max_chars:
        text = f"{text[:max_chars]}\n... (truncated {len(text) - max_chars} chars)"
    return text


class RpcLogger:
    """Header/body logger for one server, shared by all connections."""

    def __init__(
        self,
        *,
        log_payloads: bool = True,
        log_notification_payloads: bool = False,
        coalesce_session_updates: bool = True,
        flush_interval: float = 2.0,
        max_chars: int = 50_000,
        max_string_chars: int = 4_000,
    ) -> None:
        self.log_payloads = log_payloads
        self.log_notification_payloads = log_notification_payloads
        self.coalesce_session_updates = coalesce_session_updates
        self.flush_interval = flush_interval
        self.max_chars = max_chars
        self.max_string_chars = max_string_chars
        self._counts: dict[tuple[str, str], int] = {}
        self._timers: dict[tuple[str, str], asyncio.TimerHandle] = {}

    @classmethod
    def from_config(cls, config: RemoteRunConfig) -> RpcLogger:
        return cls(
            log_payloads=config.log_rpc_payloads,
            log_notification_payloads=config.log_rpc_notification_payloads,
            coalesce_session_updates=config.coalesce_session_updates,
            flush_interval=config.session_update_log_flush_ms / 1000.0,
            max_chars=config.log_max_chars,
            max_string_chars=config.log_max_string_chars,
        )

    def log(self, context: str, arrow: str, payload: Any, *, method: str | None = None) -> None:
        """Log one frame. ``arrow`` is ``"<-"`` for inbound and ``"->"`` for outbound."""
        if not logger.isEnabledFor(logging.DEBUG):
            return
        kind = describe_message(payload)
        if isinstance(payload, dict) and isinstance(payload.get("method"), str):
            method = payload["method"]

        if kind == "notification" and method == _COALESCED_METHOD and self.coalesce_session_updates:
            self._count_session_update(context, arrow)
            return

        request_id = payload.get("id") if isinstance(payload, dict) else None
        header = f"{context} {arrow} {kind} {method or '-'}"
        if request_id is not None:
            header += f" id={request_id}"

        show_body = self.log_notification_payloads if kind == "notification" else self.log_payloads
        if show_body:
            body = format_body(payload, max_chars=self.max_chars, max_string_chars=self.max_string_chars)
            logger.debug("%s\n%s", header, body)
        else:
            logger.debug("%s", header)

    def flush(self, context: str | None = None) -> None:
        """Emit pending ``session/update`` counts for one connection (and its agent) or all."""
        for key in [k for k in self._counts if context is None or k[0].split(" ", 1)[0] == context]:
            self._flush_key(key)

    def _count_session_update(self, context: str, arrow: str) -> None:
        key = (context, arrow)
        self._counts[key] = self._counts.get(key, 0) + 1
        if key in self._timers:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._flush_key(key)
            return
        self._timers[key] = loop.call_later(self.flush_interval, self._flush_key, key)

    def _flush_key(self, key: tuple[str, str]) -> None:
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        count = self._counts.pop(key, 0)
        if count:
            context, arrow = key
            logger.debug("%s %s notification %s (x%d)", context, arrow, _COALESCED_METHOD, count)
