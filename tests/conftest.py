"""Shared fixtures.

Provides:
- a fake ACP agent (``tests/fake_agent.py`` run with the current interpreter)
- an agent catalogue pointing at it and a ``RemoteRunConfig`` factory
- real local git remotes reachable as ``git@example.test:<path>`` through an
  ``insteadOf`` rule in an isolated global git config
"""

from __future__ import annotations

import json
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path

import pytest

from acp_remote.config import AgentServerConfig, RemoteRunConfig

FAKE_AGENT = Path(__file__).parent / "fake_agent.py"
REMOTE_URL = "git@example.test:org/repo"


def git(*args: str, cwd: Path | None = None) -> str:
    result = subprocess.run(
        ["git", *args],
        cwd=str(cwd) if cwd else None,
        check=True,
        capture_output=True,
        text=True,
    )
    return result.stdout.strip()


# ── Fake agent ────────────────────────────────────────────────────────────────


@pytest.fixture
def fake_agent_config() -> AgentServerConfig:
    return AgentServerConfig(
        command=sys.executable,
        args=["-u", str(FAKE_AGENT)],
        env={"FAKE_AGENT_ENV": "from-overlay"},
    )


@pytest.fixture
def acp_config_path(tmp_path: Path, fake_agent_config: AgentServerConfig) -> Path:
    path = tmp_path / "acp.json"
    path.write_text(
        json.dumps(
            {
                "agent_servers": {
                    "Fake": {
                        "command": fake_agent_config.command,
                        "args": fake_agent_config.args,
                        "env": fake_agent_config.env,
                    }
                }
            }
        )
    )
    return path


@pytest.fixture
def make_config(tmp_path: Path, acp_config_path: Path):
    """Factory for RemoteRunConfig rooted in tmp_path."""

    def _make(**overrides) -> RemoteRunConfig:
        values = {
            "acp_config_path": acp_config_path,
            "remote_config_path": tmp_path / "acp-remote.json",
            "git_root": tmp_path / "gitroot",
            "request_timeout_ms": 10_000,
        }
        values.update(overrides)
        return RemoteRunConfig(**values)

    return _make


# ── Git remotes ───────────────────────────────────────────────────────────────


@dataclass
class RemoteRepo:
    url: str
    bare: Path
    head: str


@pytest.fixture
def git_env(tmp_path: Path, monkeypatch) -> Path:
    """Isolated git config mapping example.test remotes onto local directories."""
    remotes = tmp_path / "remotes"
    remotes.mkdir()
    gitconfig = tmp_path / "gitconfig"
    gitconfig.write_text(
        f'[url "{remotes}/"]\n'
        "\tinsteadOf = git@example.test:\n"
        "\tinsteadOf = https://example.test/\n"
        "[init]\n"
        "\tdefaultBranch = main\n"
        "[user]\n"
        "\tname = Fixture\n"
        "\temail = fixture@example.test\n"
    )
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", str(gitconfig))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_TERMINAL_PROMPT", "0")
    return remotes


@pytest.fixture
def remote_repo(tmp_path: Path, git_env: Path) -> RemoteRepo:
    """A bare repository with one commit on main, served as git@example.test:org/repo."""
    bare = git_env / "org" / "repo.git"
    bare.parent.mkdir(parents=True)
    git("init", "--bare", "--initial-branch=main", str(bare))

    seed = tmp_path / "seed"
    git("init", "--initial-branch=main", str(seed))
    (seed / "README.md").write_text("# repo\n")
    git("add", "README.md", cwd=seed)
    git("commit", "-m", "initial", cwd=seed)
    git("remote", "add", "origin", str(bare), cwd=seed)
    git("push", "origin", "main", cwd=seed)
    return RemoteRepo(url=REMOTE_URL, bare=bare, head=git("rev-parse", "HEAD", cwd=seed))
