"""Configuration loading for acp-remote.

Two files feed the server:

- the agent catalogue (``ACP_CONFIG``, default ``~/.jetbrains/acp.json``) listing
  the agent subprocesses that can be spawned, under ``agent_servers``;
- the remote-run settings (``ACP_REMOTE_CONFIG``, default ``acp-remote.json``
  next to the catalogue) holding server, git and logging options.

Both are read with ``yaml.safe_load`` (JSON documents are valid YAML) and
validated with pydantic. Every remote-run setting can be overridden by an
``ACP_REMOTE_*`` environment variable; environment beats file, file beats
default. Configuration is resolved once and passed to components explicitly.
"""

from __future__ import annotations

import logging
import math
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any, NamedTuple

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

DEFAULT_PATH = "/acp"
DEFAULT_PORT = 3011
# Slow models can take several minutes to finish a turn.
DEFAULT_REQUEST_TIMEOUT_MS = 10 * 60_000
DEFAULT_AGENT_NAME = "OpenCode"


class ConfigError(Exception):
    """Raised when the agent catalogue cannot satisfy a lookup."""


# ── Agent catalogue ──────────────────────────────────────────────────────────


class AgentServerConfig(BaseModel):
    """One spawnable agent: command line plus environment overlay."""

    command: str
    args: list[str] = Field(default_factory=list)
    env: dict[str, Any] = Field(default_factory=dict)

    @field_validator("args", mode="before")
    @classmethod
    def _stringify_args(cls, v: Any) -> Any:
        if v is None:
            return []
        if isinstance(v, list):
            return [str(item) for item in v]
        return v

    @field_validator("env", mode="before")
    @classmethod
    def _none_to_empty(cls, v: Any) -> Any:
        return {} if v is None else v


class AcpConfig(BaseModel):
    agent_servers: dict[str, AgentServerConfig] = Field(default_factory=dict)

    @field_validator("agent_servers", mode="before")
    @classmethod
    def _none_to_empty(cls, v: Any) -> Any:
        return v or {}


class AgentInfo(NamedTuple):
    name: str
    config: AgentServerConfig


def _expand_home(value: str) -> str:
    if not value:
        return ""
    return str(Path(value).expanduser())


def default_acp_config_path(env: Mapping[str, str] | None = None) -> Path:
    env = os.environ if env is None else env
    raw = env.get("ACP_CONFIG") or str(Path.home() / ".jetbrains" / "acp.json")
    return Path(_expand_home(raw))


def _read_document(path: Path) -> Any:
    """Parse a JSON/YAML file, returning None when it is missing or unreadable."""
    if not path.exists():
        return None
    try:
        return yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError):
        logger.warning("Failed to parse config file %s", path, exc_info=True)
        return None


def load_acp_config(config_path: Path) -> AcpConfig | None:
    """Load the agent catalogue. Returns None if the file is absent or invalid."""
    raw = _read_document(config_path)
    if not isinstance(raw, dict):
        return None
    try:
        return AcpConfig(**raw)
    except ValueError:
        logger.warning("Invalid agent catalogue at %s", config_path, exc_info=True)
        return None


def list_agents(config_path: Path) -> list[dict[str, Any]] | None:
    """Summarize the catalogue for ``GET /acp/agents``."""
    config = load_acp_config(config_path)
    if config is None:
        return None
    return [
        {"name": name, "command": server.command, "args": list(server.args)}
        for name, server in config.agent_servers.items()
    ]


def resolve_agent_config(
    agent_name: str | None,
    *,
    config_path: Path,
    default_agent: str = "",
) -> AgentInfo:
    """Pick the agent to spawn for a connection.

    Order: explicit name, configured default, an agent named ``OpenCode``,
    then the first catalogue entry. A name that is asked for but missing is
    an error rather than a silent fallback.
    """
    config = load_acp_config(config_path)
    if config is None:
        raise ConfigError(f"ACP config not found: {config_path}")
    servers = config.agent_servers
    if not servers:
        raise ConfigError("ACP config does not define any agent_servers")

    for requested in (agent_name, default_agent):
        if requested:
            server = servers.get(requested)
            if server is None:
                raise ConfigError(f"Unknown ACP agent: {requested}")
            return AgentInfo(requested, server)

    if DEFAULT_AGENT_NAME in servers:
        return AgentInfo(DEFAULT_AGENT_NAME, servers[DEFAULT_AGENT_NAME])

    name, server = next(iter(servers.items()))
    return AgentInfo(name, server)


# ── Remote-run settings ──────────────────────────────────────────────────────


class RemoteRunConfig(BaseModel):
    """Resolved server settings. Build with :func:`load_remote_config`."""

    acp_config_path: Path
    remote_config_path: Path

    # Server
    path: str = DEFAULT_PATH
    token: str = ""
    agent: str = ""
    port: int = DEFAULT_PORT
    bind_host: str = "0.0.0.0"

    # Git
    git_root: Path = Field(default_factory=lambda: Path.home() / "git")
    git_root_source_label: str = "default"
    git_root_map: dict[str, Path] = Field(default_factory=dict)
    git_root_map_source_label: str = "none"
    git_user_name: str = "ACP Remote"
    git_user_email: str = "acp-remote@localhost"
    push: bool = True

    # Timeouts
    request_timeout_ms: int = DEFAULT_REQUEST_TIMEOUT_MS
    session_idle_ttl_ms: int = 0

    # Logging
    verbose: bool = True
    log_rpc_payloads: bool = True
    log_rpc_notification_payloads: bool = False
    coalesce_session_updates: bool = True
    session_update_log_flush_ms: int = 2_000
    log_max_chars: int = 50_000
    log_max_string_chars: int = 4_000

    @field_validator("path")
    @classmethod
    def _normalize_path(cls, v: str) -> str:
        return normalize_path(v)

    @property
    def request_timeout(self) -> float:
        """Per-request timeout in seconds."""
        return self.request_timeout_ms / 1000.0

    @property
    def session_idle_ttl(self) -> float:
        return self.session_idle_ttl_ms / 1000.0


def normalize_path(value: str) -> str:
    trimmed = (value or "").rstrip("/")
    return trimmed or "/"


def parse_bool(value: Any, default: bool) -> bool:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() not in {"0", "false", "no"}


def parse_first_positive_number(values: list[Any], default: int) -> int:
    for value in values:
        if value is None or value == "" or isinstance(value, bool):
            continue
        try:
            parsed = float(value)
        except (TypeError, ValueError):
            continue
        if math.isfinite(parsed) and parsed > 0:
            return int(parsed)
    return default


# (field, camelCase file key, env var). The env var name doubles as the
# legacy file key.
_STRING_SETTINGS = [
    ("path", "path", "ACP_REMOTE_PATH"),
    ("token", "token", "ACP_REMOTE_TOKEN"),
    ("agent", "agent", "ACP_REMOTE_AGENT"),
    ("bind_host", "bindHost", "ACP_REMOTE_BIND_HOST"),
    ("git_user_name", "gitUserName", "ACP_REMOTE_GIT_USER_NAME"),
    ("git_user_email", "gitUserEmail", "ACP_REMOTE_GIT_USER_EMAIL"),
]
_NUMBER_SETTINGS = [
    ("request_timeout_ms", "requestTimeoutMs", "ACP_REMOTE_REQUEST_TIMEOUT_MS"),
    ("session_update_log_flush_ms", "sessionUpdateLogFlushMs", "ACP_REMOTE_SESSION_UPDATE_LOG_FLUSH_MS"),
    ("log_max_chars", "logMaxChars", "ACP_REMOTE_LOG_MAX_CHARS"),
    ("log_max_string_chars", "logMaxStringChars", "ACP_REMOTE_LOG_MAX_STRING_CHARS"),
]
_BOOL_SETTINGS = [
    ("push", "push", "ACP_REMOTE_PUSH"),
    ("verbose", "verbose", "ACP_REMOTE_VERBOSE"),
    ("log_rpc_payloads", "logRpcPayloads", "ACP_REMOTE_LOG_RPC_PAYLOADS"),
    (
        "log_rpc_notification_payloads",
        "logRpcNotificationPayloads",
        "ACP_REMOTE_LOG_RPC_NOTIFICATION_PAYLOADS",
    ),
    ("coalesce_session_updates", "coalesceSessionUpdates", "ACP_REMOTE_COALESCE_SESSION_UPDATES"),
]


def _parse_git_root_map(value: Any) -> dict[str, Path]:
    if not isinstance(value, dict):
        return {}
    result: dict[str, Path] = {}
    for raw_key, raw_dir in value.items():
        key = str(raw_key or "").strip()
        if not key or not isinstance(raw_dir, str) or not raw_dir.strip():
            continue
        result[key] = Path(_expand_home(raw_dir.strip())).resolve()
    return result


def load_remote_config(
    env: Mapping[str, str] | None = None,
    *,
    remote_config_path: Path | None = None,
) -> RemoteRunConfig:
    """Resolve remote-run settings from environment, config file and defaults."""
    env = os.environ if env is None else env
    acp_config_path = default_acp_config_path(env)

    if remote_config_path is None:
        raw_remote = env.get("ACP_REMOTE_CONFIG")
        remote_config_path = (
            Path(_expand_home(raw_remote))
            if raw_remote
            else acp_config_path.parent / "acp-remote.json"
        )

    document = _read_document(remote_config_path)
    file_values: dict[str, Any] = document if isinstance(document, dict) else {}
    basename = remote_config_path.name

    def from_file(key: str, legacy: str) -> Any:
        if file_values.get(key) is not None:
            return file_values[key]
        return file_values.get(legacy)

    def file_key_label(key: str, legacy: str) -> str:
        return key if file_values.get(key) is not None else legacy

    values: dict[str, Any] = {
        "acp_config_path": acp_config_path,
        "remote_config_path": remote_config_path,
    }

    for field, key, env_name in _STRING_SETTINGS:
        file_value = from_file(key, env_name)
        file_string = file_value.strip() if isinstance(file_value, str) else ""
        chosen = env.get(env_name) or file_string
        if chosen:
            values[field] = chosen

    values["port"] = parse_first_positive_number(
        [env.get("ACP_REMOTE_PORT"), from_file("port", "ACP_REMOTE_PORT"), env.get("PORT")],
        DEFAULT_PORT,
    )
    for field, key, env_name in _NUMBER_SETTINGS:
        default = RemoteRunConfig.model_fields[field].default
        values[field] = parse_first_positive_number(
            [env.get(env_name), from_file(key, env_name)], default
        )
    values["session_idle_ttl_ms"] = parse_first_positive_number(
        [
            env.get("ACP_REMOTE_SESSION_IDLE_TTL_MS"),
            from_file("sessionIdleTtlMs", "ACP_REMOTE_SESSION_IDLE_TTL_MS"),
        ],
        0,
    )

    for field, key, env_name in _BOOL_SETTINGS:
        default = RemoteRunConfig.model_fields[field].default
        raw = env.get(env_name)
        if raw in (None, ""):
            raw = from_file(key, env_name)
        values[field] = parse_bool(raw, default)

    file_git_root = from_file("gitRoot", "ACP_REMOTE_GIT_ROOT")
    file_git_root = file_git_root.strip() if isinstance(file_git_root, str) else ""
    if env.get("ACP_REMOTE_GIT_ROOT"):
        git_root_source = env["ACP_REMOTE_GIT_ROOT"]
        values["git_root_source_label"] = "env:ACP_REMOTE_GIT_ROOT"
    elif file_git_root:
        git_root_source = file_git_root
        values["git_root_source_label"] = (
            f"file:{basename}:{file_key_label('gitRoot', 'ACP_REMOTE_GIT_ROOT')}"
        )
    else:
        git_root_source = "~/git"
    values["git_root"] = Path(_expand_home(git_root_source)).resolve()

    raw_map = from_file("gitRootMap", "ACP_REMOTE_GIT_ROOT_MAP")
    if raw_map:
        values["git_root_map_source_label"] = (
            f"file:{basename}:{file_key_label('gitRootMap', 'ACP_REMOTE_GIT_ROOT_MAP')}"
        )
    values["git_root_map"] = _parse_git_root_map(raw_map)

    return RemoteRunConfig(**values)
