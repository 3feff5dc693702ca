"""JSON-RPC 2.0 envelope helpers shared by the orchestrator and the runtime.

Agents are not always conformant: responses arrive without ``jsonrpc``,
errors arrive as bare strings, ``session/prompt`` results arrive as strings.
Everything that leaves the server towards a client goes through one of the
``normalize_*`` functions here so that clients always see a well-formed
envelope. None of these helpers raise on odd input.
"""

from __future__ import annotations

import copy
import json
import logging
from collections.abc import Mapping
from typing import Any

logger = logging.getLogger(__name__)

INVALID_REQUEST = -32600
INVALID_PARAMS = -32602
SERVER_ERROR = -32000

STOP_REASONS = frozenset({"end_turn", "max_tokens", "max_turn_requests", "refusal", "cancelled"})
DEFAULT_STOP_REASON = "end_turn"

_MISSING = object()


def build_jsonrpc_error(request_id: Any, code: int, message: str, data: Any = _MISSING) -> dict[str, Any]:
    error: dict[str, Any] = {"code": code, "message": message}
    if data is not _MISSING:
        error["data"] = data
    return {"jsonrpc": "2.0", "id": request_id, "error": error}


def build_notification(method: str, params: Mapping[str, Any] | None = None) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "method": method, "params": dict(params or {})}


def parse_json(text: str) -> tuple[bool, Any]:
    """Return ``(ok, value)``; ``ok`` is False when ``text`` is not JSON."""
    try:
        return True, json.loads(text)
    except (TypeError, ValueError):
        return False, None


def is_jsonrpc_request(payload: Any) -> bool:
    """True for an object carrying a string ``method`` (requests and notifications)."""
    return isinstance(payload, dict) and isinstance(payload.get("method"), str)


def is_notification(payload: Mapping[str, Any]) -> bool:
    return payload.get("id") is None


def has_remote_meta(params: Any) -> bool:
    return isinstance(params, dict) and isinstance(params.get("_meta"), dict) and isinstance(
        params["_meta"].get("remote"), dict
    )


def get_remote_meta(params: Any) -> dict[str, Any] | None:
    if not has_remote_meta(params):
        return None
    return params["_meta"]["remote"]


def strip_meta_from_params(params: Any) -> dict[str, Any]:
    """Shallow copy of ``params`` without ``_meta``; non-objects become ``{}``."""
    if not isinstance(params, dict):
        return {}
    return {key: value for key, value in params.items() if key != "_meta"}


def _session_id_from(container: Any) -> str | None:
    if not isinstance(container, dict):
        return None
    for key in ("sessionId", "session_id"):
        value = container.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def get_session_id_from_params(params: Any) -> str | None:
    return _session_id_from(params)


def get_session_id_from_result(response: Any) -> str | None:
    if not isinstance(response, dict):
        return None
    return _session_id_from(response.get("result"))


def normalize_jsonrpc_error(error: Any) -> dict[str, Any]:
    """Coerce an agent error into ``{code:int, message:str, data?}``."""
    if isinstance(error, str):
        return {"code": SERVER_ERROR, "message": error}
    if not isinstance(error, dict):
        return {"code": SERVER_ERROR, "message": "Unknown error"}
    normalized = dict(error)
    code = normalized.get("code")
    if not isinstance(code, int) or isinstance(code, bool):
        normalized["code"] = SERVER_ERROR
    if not isinstance(normalized.get("message"), str):
        normalized["message"] = "Unknown error"
    return normalized


def normalize_jsonrpc_response(response: Any, request_id: Any) -> dict[str, Any]:
    """Rewrap an agent response under the client's id.

    A dict carrying ``result`` or ``error`` is treated as an envelope; anything
    else is taken to be the bare result.
    """
    if isinstance(response, dict) and ("result" in response or "error" in response):
        normalized = dict(response)
        normalized["jsonrpc"] = normalized.get("jsonrpc") or "2.0"
        normalized["id"] = request_id
        if "error" in normalized and normalized["error"] is not None:
            normalized["error"] = normalize_jsonrpc_error(normalized["error"])
            normalized.pop("result", None)
        elif "error" in normalized:
            del normalized["error"]
            normalized.setdefault("result", None)
        return normalized
    return {"jsonrpc": "2.0", "id": request_id, "result": response}


def normalize_jsonrpc_notification(payload: Mapping[str, Any]) -> dict[str, Any]:
    normalized = dict(payload)
    if normalized.get("id") is None:
        normalized.pop("id", None)
    normalized["jsonrpc"] = normalized.get("jsonrpc") or "2.0"
    return normalized


def normalize_prompt_response(response: Any, context: str = "acp") -> Any:
    """Force ``result.stopReason`` into the known set.

    A string result becomes ``{"stopReason": <it>}`` and is then corrected like
    any other unknown reason. A non-object result becomes ``{}``. An invalid
    ``_meta`` is dropped to ``None``. Each correction is logged as a warning
    prefixed with ``context``. Error responses pass through untouched.
    """
    if not isinstance(response, dict) or "error" in response or "result" not in response:
        return response

    result = response["result"]
    if isinstance(result, str):
        result = {"stopReason": result}
    elif isinstance(result, dict):
        result = dict(result)
    else:
        result = {}

    stop_reason = result.get("stopReason")
    if not stop_reason or not isinstance(stop_reason, str):
        logger.warning("%s session/prompt response missing stopReason; defaulting to %s", context, DEFAULT_STOP_REASON)
        result["stopReason"] = DEFAULT_STOP_REASON
    elif stop_reason not in STOP_REASONS:
        logger.warning(
            "%s session/prompt response has invalid stopReason %r; defaulting to %s",
            context,
            stop_reason,
            DEFAULT_STOP_REASON,
        )
        result["stopReason"] = DEFAULT_STOP_REASON
    if "_meta" in result and result["_meta"] is not None and not isinstance(result["_meta"], dict):
        logger.warning("%s session/prompt response has invalid _meta; dropping", context)
        result["_meta"] = None

    normalized = dict(response)
    normalized["result"] = result
    return normalized


def attach_target_meta(response: Any, target: Mapping[str, Any] | None) -> Any:
    """Merge ``target`` into ``result._meta`` without clobbering other meta keys."""
    if not target or not isinstance(response, dict):
        return response
    result = response.get("result")
    if not isinstance(result, dict):
        return response
    normalized = copy.copy(response)
    new_result = dict(result)
    meta = new_result.get("_meta")
    new_result["_meta"] = {**(meta if isinstance(meta, dict) else {}), "target": dict(target)}
    normalized["result"] = new_result
    return normalized


def describe_message(payload: Any) -> str:
    """Classify a frame for log headers: request, notification, response, error, invalid."""
    if not isinstance(payload, dict):
        return "invalid"
    if isinstance(payload.get("method"), str):
        return "notification" if payload.get("id") is None else "request"
    if payload.get("error") is not None:
        return "error"
    if "result" in payload:
        return "response"
    return "invalid"


def error_mentions_missing_session(response: Any) -> str | None:
    """Return the session id if an agent error says ``Session not found: <id>``."""
    if not isinstance(response, dict):
        return None
    error = response.get("error")
    if not isinstance(error, dict):
        return None
    for candidate in (error.get("data"), error.get("message")):
        if isinstance(candidate, dict):
            candidate = candidate.get("details")
        if not isinstance(candidate, str) or "Session not found:" not in candidate:
            continue
        rest = candidate.split("Session not found:", 1)[1].split()
        return rest[0] if rest else ""
    return None
