"""Git workspace management for remote runs.

A *repo workspace* is a long-lived clone of a remote under the git root. It is
found by comparing ``origin`` URLs (``git@host:a/b`` and ``https://host/a/b``
are the same repository), never by directory name alone, and is never deleted
here.

A *run workspace* is a ``git worktree`` of that clone on a fresh branch::

    <gitRoot>/.acp-remote-worktrees/<repoName>/<runId>   (branch agent/changes-<runId>)

Everything that mutates a repo workspace (clone, remote update, fetch,
worktree add/remove) runs under a per-directory ``asyncio.Lock`` so two
sessions on the same repository never race, while different repositories
proceed in parallel.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import shutil
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any
from urllib.parse import urlsplit, urlunsplit

if TYPE_CHECKING:
    from acp_remote.config import RemoteRunConfig

logger = logging.getLogger(__name__)

WORKTREES_DIRNAME = ".acp-remote-worktrees"
BRANCH_PREFIX = "agent/changes-"
GIT_TIMEOUT = 300.0

ProgressNotify = Callable[[str, str, dict[str, Any]], None]

_SCP_REMOTE = re.compile(r"^[^@]+@([^:]+):(.+)$")
_URL_SCHEMES = ("ssh://", "http://", "https://")


def _no_progress(stage: str, message: str, extra: dict[str, Any]) -> None:
    pass


class GitError(Exception):
    """Base class for git workspace failures."""


class UnsupportedRemoteError(GitError):
    def __init__(self, url: Any) -> None:
        super().__init__("Unsupported git remote URL")
        self.url = url


class GitCommandError(GitError):
    """A git subprocess exited non-zero (or timed out)."""

    def __init__(self, args: tuple[str, ...], returncode: int, output: str) -> None:
        self.args_ = args
        self.returncode = returncode
        self.output = output
        super().__init__(f"git {' '.join(args)} exited with code {returncode}\n{output}".rstrip())


# ── Remote URL parsing ───────────────────────────────────────────────────────


@dataclass(frozen=True)
class ParsedGitRemote:
    host: str
    repo_path: str
    url: str

    @property
    def segments(self) -> list[str]:
        return [part for part in self.repo_path.split("/") if part]

    @property
    def repo_name(self) -> str:
        segments = self.segments
        return segments[-1] if segments else "repo"

    @property
    def owner(self) -> str:
        segments = self.segments
        return segments[0] if segments else "owner"


def _clean_repo_path(path: str) -> str:
    path = path.lstrip("/")
    if path.lower().endswith(".git"):
        path = path[:-4]
    return path


def parse_git_remote(remote_url: Any) -> ParsedGitRemote | None:
    """Split an SCP-style, ssh, http or https remote into host and repo path."""
    if not isinstance(remote_url, str):
        return None
    trimmed = remote_url.strip()
    if not trimmed:
        return None

    if trimmed.startswith(_URL_SCHEMES):
        try:
            parts = urlsplit(trimmed)
            host = parts.hostname or ""
        except ValueError:
            return None
        if not host:
            return None
        return ParsedGitRemote(host, _clean_repo_path(parts.path or ""), trimmed)

    match = _SCP_REMOTE.match(trimmed)
    if match:
        return ParsedGitRemote(match.group(1), _clean_repo_path(match.group(2)), trimmed)

    return None


def is_same_repo(url_a: Any, url_b: Any) -> bool:
    """Compare two remotes by host and path, ignoring case, ``.git`` and protocol."""
    parsed_a = parse_git_remote(url_a)
    parsed_b = parse_git_remote(url_b)
    if parsed_a and parsed_b:
        return (
            parsed_a.host.lower() == parsed_b.host.lower()
            and parsed_a.repo_path.lower() == parsed_b.repo_path.lower()
        )
    return str(url_a or "").strip() == str(url_b or "").strip()


def redact_git_url(value: Any) -> Any:
    """Mask credentials embedded in a remote URL."""
    if not isinstance(value, str) or not value:
        return value
    if value.startswith(_URL_SCHEMES):
        try:
            parts = urlsplit(value)
            if parts.username or parts.password:
                host = parts.netloc.rsplit("@", 1)[1]
                return urlunsplit(parts._replace(netloc=f"***:***@{host}"))
            return value
        except ValueError:
            pass
    return re.sub(r"^((?:https?|ssh)://)[^@/]+@", r"\1***@", value, flags=re.IGNORECASE)


def summarize_meta_for_log(meta: Any) -> dict[str, Any]:
    if not isinstance(meta, dict):
        return {"type": "array" if isinstance(meta, list) else type(meta).__name__}
    summary: dict[str, Any] = {"keys": sorted(meta)}
    remote = meta.get("remote")
    if isinstance(remote, dict):
        summary["remote"] = {
            "url": redact_git_url(remote["url"]) if isinstance(remote.get("url"), str) else None,
            "branch": remote.get("branch"),
            "revision": remote.get("revision"),
        }
    return summary


def generate_run_id() -> str:
    return str(uuid.uuid4())


def sanitize_branch_component(value: Any) -> str:
    return re.sub(r"[^a-zA-Z0-9._-]+", "-", str(value or "")).strip("-")


def branch_name_for_run(run_id: str) -> str:
    return BRANCH_PREFIX + sanitize_branch_component(run_id)[:24]


# ── Git root selection ───────────────────────────────────────────────────────


@dataclass
class GitRootResolution:
    git_root: Path
    source_label: str
    map_key: str | None = None
    map_match: str | None = None  # sameRepo | repoId | repoPath | repoName


@dataclass
class _RepoKey:
    repo_id: str | None = None
    repo_path: str | None = None
    repo_name: str | None = None


def _last_segment(path: str) -> str:
    segments = [part for part in path.split("/") if part]
    return segments[-1].lower() if segments else ""


def _normalize_repo_key(value: str) -> _RepoKey:
    """Interpret a git-root-map key as a full remote, ``host/owner/repo``, ``owner/repo`` or a name."""
    trimmed = (value or "").strip()
    if not trimmed:
        return _RepoKey()

    parsed = parse_git_remote(trimmed)
    if parsed:
        return _RepoKey(
            repo_id=f"{parsed.host}/{parsed.repo_path}".lower(),
            repo_path=parsed.repo_path.lower(),
            repo_name=_last_segment(parsed.repo_path),
        )

    cleaned = _clean_repo_path(trimmed)
    host_path = re.match(r"^([^/\s]+):(.+)$", cleaned)
    if host_path:
        host, repo_path = host_path.group(1), host_path.group(2).lstrip("/")
        return _RepoKey(
            repo_id=f"{host}/{repo_path}".lower(),
            repo_path=repo_path.lower(),
            repo_name=_last_segment(repo_path),
        )

    if "/" in cleaned:
        segments = [part for part in cleaned.split("/") if part]
        # hostnames usually contain a dot
        if len(segments) >= 3 and "." in segments[0]:
            repo_path = "/".join(segments[1:])
            return _RepoKey(
                repo_id=f"{segments[0]}/{repo_path}".lower(),
                repo_path=repo_path.lower(),
                repo_name=segments[-1].lower(),
            )
        return _RepoKey(repo_path=cleaned.lower(), repo_name=segments[-1].lower() if segments else "")

    return _RepoKey(repo_name=cleaned.lower())


def resolve_git_root_for_remote_url(
    remote_url: Any,
    *,
    default_root: Path,
    default_label: str = "default",
    git_root_map: Mapping[str, Path] | None = None,
    map_label: str = "none",
) -> GitRootResolution:
    """Pick the git root for a remote using the git-root map.

    A key naming the same repository wins outright; otherwise the most
    specific of ``host/owner/repo`` (3), ``owner/repo`` (2) and repo name (1).
    """
    default = GitRootResolution(git_root=default_root, source_label=default_label)
    parsed = parse_git_remote(remote_url)
    if parsed is None:
        return default

    remote_repo_path = parsed.repo_path.lower()
    remote_repo_id = f"{parsed.host}/{parsed.repo_path}".lower()
    remote_repo_name = _last_segment(parsed.repo_path)

    best: tuple[int, str, Path, str] | None = None
    for raw_key, root in (git_root_map or {}).items():
        key = str(raw_key or "").strip()
        if not key or not root:
            continue
        if is_same_repo(key, remote_url):
            best = (4, key, Path(root), "sameRepo")
            break

        normalized = _normalize_repo_key(key)
        if normalized.repo_id and normalized.repo_id == remote_repo_id:
            candidate = (3, key, Path(root), "repoId")
        elif normalized.repo_path and normalized.repo_path == remote_repo_path:
            candidate = (2, key, Path(root), "repoPath")
        elif normalized.repo_name and normalized.repo_name == remote_repo_name:
            candidate = (1, key, Path(root), "repoName")
        else:
            continue
        if best is None or candidate[0] > best[0]:
            best = candidate

    if best is None:
        return default
    _, key, root, match = best
    return GitRootResolution(git_root=root, source_label=map_label, map_key=key, map_match=match)


# ── Records ──────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class RemoteGitInfo:
    """The ``_meta.remote`` descriptor a client sends with ``session/new``."""

    url: str
    branch: str | None = None
    revision: str | None = None

    @classmethod
    def from_meta(cls, remote: Any) -> RemoteGitInfo | None:
        """Build from ``_meta.remote``; None if there is no url or nothing to check out."""
        if not isinstance(remote, dict):
            return None
        url = remote.get("url")
        branch = remote.get("branch") if isinstance(remote.get("branch"), str) else None
        revision = remote.get("revision") if isinstance(remote.get("revision"), str) else None
        if not isinstance(url, str) or not url.strip():
            return None
        if not revision and not branch:
            return None
        return cls(url=url.strip(), branch=branch or None, revision=revision or None)

    @property
    def ref(self) -> str:
        if self.revision:
            return self.revision
        if self.branch:
            return f"origin/{self.branch}"
        raise GitError("Missing remote revision")

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"url": self.url}
        if self.branch:
            data["branch"] = self.branch
        if self.revision:
            data["revision"] = self.revision
        return data


@dataclass(frozen=True)
class GitWorkspace:
    repo_dir: Path
    workdir: Path
    branch_name: str
    remote_url: str


@dataclass(frozen=True)
class TargetGitInfo:
    url: str
    branch: str
    revision: str

    def to_dict(self) -> dict[str, str]:
        return {"url": self.url, "branch": self.branch, "revision": self.revision}


# ── Subprocess + locking ─────────────────────────────────────────────────────


class RepoLocks:
    """One ``asyncio.Lock`` per repository directory."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def __call__(self, repo_dir: Path | str) -> asyncio.Lock:
        key = os.path.abspath(str(repo_dir))
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def __len__(self) -> int:
        return len(self._locks)


async def run_git(*args: str, cwd: Path | str | None = None, timeout: float = GIT_TIMEOUT) -> str:
    """Run git and return stdout. Raises :class:`GitCommandError` on failure."""
    try:
        proc = await asyncio.create_subprocess_exec(
            "git",
            *args,
            cwd=str(cwd) if cwd else None,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        raise GitCommandError(args, -1, str(exc)) from exc
    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise GitCommandError(args, -1, f"timed out after {timeout:g}s") from None
    except asyncio.CancelledError:
        # the caller's repo lock is released on the way out; git must not outlive it
        if proc.returncode is None:
            proc.kill()
        await proc.wait()
        raise
    stdout = (stdout_bytes or b"").decode(errors="replace")
    stderr = (stderr_bytes or b"").decode(errors="replace")
    if proc.returncode != 0:
        raise GitCommandError(args, proc.returncode or -1, stderr or stdout)
    return stdout


async def read_origin_url(repo_dir: Path) -> str:
    """The configured ``origin`` URL, as written (no ``insteadOf`` rewriting)."""
    return (await run_git("-C", str(repo_dir), "config", "--get", "remote.origin.url")).strip()


# ── Manager ──────────────────────────────────────────────────────────────────


class GitWorkspaceManager:
    """Prepares run worktrees and commits/pushes their changes."""

    def __init__(self, config: RemoteRunConfig, *, locks: RepoLocks | None = None) -> None:
        self._config = config
        self._locks = locks if locks is not None else RepoLocks()

    def resolve_git_root(self, remote_url: str) -> GitRootResolution:
        return resolve_git_root_for_remote_url(
            remote_url,
            default_root=self._config.git_root,
            default_label=self._config.git_root_source_label,
            git_root_map=self._config.git_root_map,
            map_label=self._config.git_root_map_source_label,
        )

    async def _find_existing_repo(
        self, remote_url: str, candidates: list[Path], git_root: Path
    ) -> tuple[Path | None, str]:
        for candidate in candidates:
            if not (candidate / ".git").exists():
                continue
            try:
                origin = await read_origin_url(candidate)
            except GitError:
                logger.debug("Failed to read origin of %s", candidate, exc_info=True)
                continue
            if is_same_repo(origin, remote_url):
                return candidate, f"matched existing repo origin ({candidate})"

        if not git_root.is_dir():
            return None, ""
        for entry in sorted(git_root.iterdir()):
            if not entry.is_dir() or not (entry / ".git").exists():
                continue
            try:
                origin = await read_origin_url(entry)
            except GitError:
                continue
            if is_same_repo(origin, remote_url):
                return entry, f"matched existing repo origin via git root scan ({entry})"
        return None, "no match in candidates or git root scan"

    async def ensure_repo_workdir(
        self,
        remote: RemoteGitInfo,
        run_id: str,
        notify: ProgressNotify | None = None,
    ) -> GitWorkspace:
        """Find or clone the repository and create a fresh worktree for ``run_id``."""
        notify = notify or _no_progress
        parsed = parse_git_remote(remote.url)
        if parsed is None:
            raise UnsupportedRemoteError(remote.url)

        url_for_logs = redact_git_url(remote.url)
        resolution = self.resolve_git_root(remote.url)
        git_root = resolution.git_root
        segments = parsed.segments
        repo_name = parsed.repo_name
        owner = parsed.owner

        candidates = list(
            dict.fromkeys(
                [
                    git_root / repo_name,
                    git_root.joinpath(parsed.host, *segments),
                    git_root.joinpath(*segments),
                    git_root / owner / repo_name,
                    git_root / f"{owner}-{repo_name}",
                    git_root / parsed.host / repo_name,
                ]
            )
        )

        repo_dir, reason = await self._find_existing_repo(remote.url, candidates, git_root)
        if repo_dir is None:
            clone_target = next((c for c in candidates if not c.exists()), None)
            if clone_target is None:
                raise GitError(f"No available directory under gitRoot to clone repo: {url_for_logs}")
            repo_dir, reason = clone_target, f"cloning into {clone_target}"

        worktrees_root = git_root / WORKTREES_DIRNAME / repo_name
        workdir = worktrees_root / run_id
        branch_name = branch_name_for_run(run_id)

        logger.info(
            "Git workdir selection: repo=%s dir=%s (%s) root=%s [%s%s]",
            url_for_logs,
            repo_dir,
            reason,
            git_root,
            resolution.source_label,
            f" key={redact_git_url(resolution.map_key)} match={resolution.map_match}"
            if resolution.map_key
            else "",
        )
        notify(
            "git/dir",
            "Resolved git directories",
            {
                "gitRoot": str(git_root),
                "gitRootSourceLabel": resolution.source_label,
                "gitRootMapKey": redact_git_url(resolution.map_key) if resolution.map_key else None,
                "gitRootMapMatch": resolution.map_match,
                "repoName": repo_name,
                "repoDir": str(repo_dir),
                "repoDirReason": reason,
                "worktreesRoot": str(worktrees_root),
            },
        )

        ref = remote.ref

        async with self._locks(repo_dir):
            repo_dir.parent.mkdir(parents=True, exist_ok=True)
            workdir.parent.mkdir(parents=True, exist_ok=True)

            if not repo_dir.exists():
                notify("git/clone", "Cloning repository", {"url": url_for_logs, "repoDir": str(repo_dir)})
                await run_git("clone", remote.url, str(repo_dir))
            elif not (repo_dir / ".git").exists():
                raise GitError(f"Path exists but is not a git repository: {repo_dir}")
            else:
                notify("git/open", "Using existing repository", {"repoDir": str(repo_dir)})

            try:
                actual = await read_origin_url(repo_dir)
            except GitError:
                actual = ""
            if actual and actual != remote.url:
                notify(
                    "git/remote",
                    "Updating origin remote URL",
                    {"from": redact_git_url(actual), "to": url_for_logs},
                )
                await run_git("-C", str(repo_dir), "remote", "set-url", "origin", remote.url)

            notify("git/fetch", "Fetching latest refs", {"repoDir": str(repo_dir)})
            await run_git("-C", str(repo_dir), "fetch", "--prune", "origin")

            if workdir.exists():
                notify("git/worktree", "Removing stale worktree", {"workdir": str(workdir)})
                await self._remove_worktree(repo_dir, workdir)

            notify(
                "git/worktree",
                "Creating worktree",
                {"workdir": str(workdir), "branchName": branch_name, "ref": ref},
            )
            await run_git("-C", str(repo_dir), "worktree", "add", "-B", branch_name, str(workdir), ref)

        return GitWorkspace(repo_dir=repo_dir, workdir=workdir, branch_name=branch_name, remote_url=remote.url)

    async def ensure_committed_and_pushed(
        self, workspace: GitWorkspace, notify: ProgressNotify | None = None
    ) -> TargetGitInfo:
        """Commit any changes in the worktree and push the run branch.

        Safe to call after every turn: a clean tree makes no commit but still
        reports the current HEAD.
        """
        notify = notify or _no_progress
        workdir = str(workspace.workdir)

        notify("git/status", "Checking working tree", {"workdir": workdir})
        status = await run_git("-C", workdir, "status", "--porcelain")

        if status.strip():
            notify("git/commit", "Creating commit", {})
            await run_git("-C", workdir, "add", "-A")
            message = f"ACP remote run changes ({datetime.now(timezone.utc).isoformat()})"
            await run_git(
                "-C",
                workdir,
                "-c",
                f"user.name={self._config.git_user_name}",
                "-c",
                f"user.email={self._config.git_user_email}",
                "commit",
                "-m",
                message,
            )
        else:
            notify("git/commit", "No uncommitted changes", {})

        revision = (await run_git("-C", workdir, "rev-parse", "HEAD")).strip()

        if self._config.push:
            notify("git/push", "Pushing branch", {"branch": workspace.branch_name})
            await run_git("-C", workdir, "push", "-u", "origin", workspace.branch_name)
        else:
            notify("git/push", "Push disabled", {"branch": workspace.branch_name})

        return TargetGitInfo(url=workspace.remote_url, branch=workspace.branch_name, revision=revision)

    async def cleanup_workspace(self, workspace: GitWorkspace) -> None:
        """Remove the run worktree. Failures are logged, never raised."""
        async with self._locks(workspace.repo_dir):
            await self._remove_worktree(workspace.repo_dir, workspace.workdir)
        logger.debug("Removed worktree %s", workspace.workdir)

    @staticmethod
    async def _remove_worktree(repo_dir: Path, workdir: Path) -> None:
        try:
            await run_git("-C", str(repo_dir), "worktree", "remove", "--force", str(workdir))
        except GitError:
            logger.debug("git worktree remove failed for %s", workdir, exc_info=True)
        shutil.rmtree(workdir, ignore_errors=True)
        try:
            await run_git("-C", str(repo_dir), "worktree", "prune")
        except GitError:
            logger.debug("git worktree prune failed in %s", repo_dir, exc_info=True)
