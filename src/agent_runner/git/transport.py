"""Async git transport: repository primitives with timeouts and normalized errors."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import re
from pathlib import Path
from typing import Iterable, Mapping, Sequence

from ..runner.utils import sanitize_environment
from .errors import (
    GitCommandError,
    GitServiceError,
    InvalidUrlFormatError,
    NetworkTimeoutError,
    NothingToCommitError,
    classify_git_error,
)
from .models import CommitResult, GitCommandResult, RebaseResult, StatusEntry

logger = logging.getLogger(__name__)

DEFAULT_NETWORK_TIMEOUT = 30.0
DEFAULT_IDENTITY = ("Claude Code", "noreply@anthropic.com")

_GIT_URL_RE = re.compile(r"^(git@|https?://)")
_GITHUB_HTTPS_RE = re.compile(r"^https?://github\.com/([^/]+)/([^/]+?)(\.git)?$")
_IDENTITY_NAME_RE = re.compile(r"\[user\][\s\S]*?\bname\s*=\s*(.+)")
_IDENTITY_EMAIL_RE = re.compile(r"\[user\][\s\S]*?\bemail\s*=\s*(.+)")
_TOKEN_RE = re.compile(r"(x-access-token:)[^@\s]+@")


def ssh_command(ssh_key_path: str | Path) -> str:
    return f"ssh -i {ssh_key_path} -o StrictHostKeyChecking=no -o UserKnownHostsFile=/dev/null"


def redact_credentials(text: str) -> str:
    """Hide installation tokens embedded in remote URLs."""

    return _TOKEN_RE.sub(r"\1***@", text)


class GitTransport:
    """Run git commands asynchronously against a workspace.

    Every command runs with interactive credential prompts disabled. Calls on
    the same working tree are serialized through a per-path lock so that two
    commands never contend for ``index.lock``.
    """

    def __init__(
        self,
        *,
        git_binary: str = "git",
        network_timeout: float = DEFAULT_NETWORK_TIMEOUT,
        default_identity: tuple[str, str] = DEFAULT_IDENTITY,
    ) -> None:
        self._git_binary = git_binary
        self._network_timeout = network_timeout
        self._default_identity = default_identity
        self._locks: dict[Path, asyncio.Lock] = {}

    @property
    def network_timeout(self) -> float:
        return self._network_timeout

    @staticmethod
    def is_valid_git_url(url: str) -> bool:
        return bool(_GIT_URL_RE.match(url))

    @staticmethod
    def convert_https_to_ssh(url: str) -> str:
        """Rewrite ``https://github.com/owner/repo[.git]`` to its SSH form."""

        match = _GITHUB_HTTPS_RE.match(url)
        if match:
            owner, repo = match.group(1), match.group(2)
            return f"git@github.com:{owner}/{repo}.git"
        return url

    # -- process plumbing -------------------------------------------------

    def _environment(self, ssh_key_path: str | Path | None) -> dict[str, str]:
        extra = {"GIT_TERMINAL_PROMPT": "0", "GIT_ASKPASS": "echo"}
        if ssh_key_path:
            extra["GIT_SSH_COMMAND"] = ssh_command(ssh_key_path)
        return sanitize_environment(extra)

    def _lock_for(self, cwd: Path) -> asyncio.Lock:
        key = cwd.resolve()
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    async def _run(
        self,
        cwd: str | Path,
        *args: str,
        ssh_key_path: str | Path | None = None,
        timeout: float | None = None,
    ) -> GitCommandResult:
        cwd = Path(cwd)
        env = self._environment(ssh_key_path)
        logger.debug("git %s (cwd=%s)", redact_credentials(" ".join(args)), cwd)
        async with self._lock_for(cwd):
            result = await self._invoke(cwd, args, env=env, timeout=timeout)
        if not result.ok:
            raise GitCommandError(
                tuple(redact_credentials(arg) for arg in result.args),
                result.returncode,
                redact_credentials(result.output),
            )
        return result

    async def _invoke(
        self,
        cwd: Path,
        args: Sequence[str],
        *,
        env: Mapping[str, str],
        timeout: float | None = None,
    ) -> GitCommandResult:
        cmd = [self._git_binary, *args]
        process = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=str(cwd),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=dict(env),
        )
        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()
            raise NetworkTimeoutError(
                f"Git {args[0]} operation timed out after {timeout:g} seconds"
            ) from None
        return GitCommandResult(
            args=tuple(cmd),
            returncode=process.returncode if process.returncode is not None else -1,
            stdout=stdout_bytes.decode("utf-8", errors="replace"),
            stderr=stderr_bytes.decode("utf-8", errors="replace"),
        )

    # -- repository primitives ------------------------------------------

    async def clone(
        self,
        url: str,
        target: str | Path,
        *,
        branch: str = "main",
        depth: int = 1,
        ssh_key_path: str | Path | None = None,
    ) -> None:
        if not self.is_valid_git_url(url):
            raise InvalidUrlFormatError(
                "Invalid git repository URL format. Use SSH (git@...) or HTTPS format."
            )

        target = Path(target)
        is_ssh = url.startswith("git@")
        logger.debug(
            "Cloning repository %s (branch: %s, depth: %s, protocol: %s)",
            redact_credentials(url),
            branch,
            depth,
            "SSH" if is_ssh else "HTTPS",
        )
        target.parent.mkdir(parents=True, exist_ok=True)
        try:
            await self._run(
                target.parent,
                "clone",
                "--branch",
                branch,
                "--depth",
                str(depth),
                "--single-branch",
                url,
                str(target),
                ssh_key_path=ssh_key_path if is_ssh else None,
                timeout=self._network_timeout,
            )
        except GitServiceError as exc:
            logger.error("Git clone failed: %s", exc)
            raise classify_git_error("clone repository", str(exc)) from exc
        logger.debug("Repository cloned into %s", target)

    def read_identity(self, workspace: str | Path) -> tuple[str | None, str | None]:
        """Read ``[user]`` name and email from ``<workspace>/.gitconfig``."""

        config_path = Path(workspace) / ".gitconfig"
        if not config_path.is_file():
            return None, None
        try:
            content = config_path.read_text(encoding="utf-8")
        except OSError as exc:
            logger.debug("Could not read .gitconfig: %s", exc)
            return None, None
        name_match = _IDENTITY_NAME_RE.search(content)
        email_match = _IDENTITY_EMAIL_RE.search(content)
        return (
            name_match.group(1).strip() if name_match else None,
            email_match.group(1).strip() if email_match else None,
        )

    async def configure_identity(
        self,
        workspace: str | Path,
        name: str | None = None,
        email: str | None = None,
    ) -> tuple[str, str]:
        """Set the local commit identity; must run before any commit."""

        if not name or not email:
            file_name, file_email = self.read_identity(workspace)
            name = name or file_name
            email = email or file_email
        name = name or self._default_identity[0]
        email = email or self._default_identity[1]

        try:
            await self._run(workspace, "config", "--local", "user.name", name)
            await self._run(workspace, "config", "--local", "user.email", email)
        except GitCommandError as exc:
            raise classify_git_error("configure git identity", str(exc)) from exc
        logger.debug("Git identity configured: %s <%s>", name, email)
        return name, email

    async def status(self, workspace: str | Path) -> list[StatusEntry]:
        try:
            result = await self._run(workspace, "status", "--porcelain")
        except GitCommandError as exc:
            raise classify_git_error("check git status", str(exc)) from exc

        entries: list[StatusEntry] = []
        for line in result.stdout.splitlines():
            if len(line) < 4:
                continue
            path = line[3:]
            if line[0] == "R" and " -> " in path:
                path = path.split(" -> ", 1)[1]
            entries.append(StatusEntry(index=line[0], worktree=line[1], path=path))
        return entries

    async def has_changes(self, workspace: str | Path) -> bool:
        entries = await self.status(workspace)
        logger.debug("Workspace has %d changed files", len(entries))
        return bool(entries)

    async def changed_files(self, workspace: str | Path) -> list[str]:
        return [entry.path for entry in await self.status(workspace)]

    async def commit(
        self,
        workspace: str | Path,
        message: str,
        files: Iterable[str] | None = None,
        ssh_key_path: str | Path | None = None,
    ) -> CommitResult:
        """Stage ``files`` (or everything) and commit them."""

        files = list(files or [])
        await self.configure_identity(workspace)
        try:
            if files:
                logger.debug("Staging specific files: %s", ", ".join(files))
                await self._run(workspace, "add", "--", *files, ssh_key_path=ssh_key_path)
            else:
                logger.debug("Staging all changes")
                await self._run(workspace, "add", "-A", ssh_key_path=ssh_key_path)

            entries = await self.status(workspace)
            staged = sum(1 for entry in entries if entry.staged)
            renamed = sum(1 for entry in entries if entry.renamed)
            logger.debug("Staged: %d files, Renamed: %d files", staged, renamed)
            if staged == 0 and renamed == 0:
                raise NothingToCommitError("No changes to commit after staging")

            await self._run(workspace, "commit", "-m", message, ssh_key_path=ssh_key_path)
            sha = await self.local_head(workspace)
        except GitCommandError as exc:
            logger.error("Failed to commit changes: %s", exc)
            raise classify_git_error("commit", str(exc)) from exc

        logger.info("Commit created: %s", sha)
        return CommitResult(sha=sha, message=message)

    async def fetch(
        self,
        workspace: str | Path,
        branch: str = "main",
        *,
        ssh_key_path: str | Path | None = None,
        depth: int | None = None,
    ) -> None:
        args = ["fetch", "origin", branch]
        if depth is not None:
            args.extend(["--depth", str(depth)])
        try:
            await self._run(workspace, *args, ssh_key_path=ssh_key_path)
        except GitCommandError as exc:
            logger.error("Failed to fetch from remote: %s", exc)
            raise classify_git_error("fetch", str(exc)) from exc

    async def remote_head(self, workspace: str | Path, branch: str = "main") -> str:
        try:
            result = await self._run(workspace, "rev-parse", f"origin/{branch}")
        except GitCommandError as exc:
            raise classify_git_error("get remote HEAD", str(exc)) from exc
        return result.stdout.strip()

    async def local_head(self, workspace: str | Path) -> str:
        try:
            result = await self._run(workspace, "rev-parse", "HEAD")
        except GitCommandError as exc:
            raise classify_git_error("get local HEAD", str(exc)) from exc
        return result.stdout.strip()

    def is_shallow(self, workspace: str | Path) -> bool:
        return (Path(workspace) / ".git" / "shallow").exists()

    async def unshallow(self, workspace: str | Path, *, ssh_key_path: str | Path | None = None) -> None:
        logger.debug("Converting shallow clone to full clone")
        try:
            await self._run(
                workspace,
                "fetch",
                "--unshallow",
                ssh_key_path=ssh_key_path,
                timeout=self._network_timeout,
            )
        except GitServiceError as exc:
            logger.error("Failed to unshallow repository: %s", exc)
            raise classify_git_error("unshallow", str(exc)) from exc

    async def conflicted_files(self, workspace: str | Path) -> list[str]:
        result = await self._run(workspace, "diff", "--name-only", "--diff-filter=U")
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    async def rebase_with_strategy(
        self,
        workspace: str | Path,
        branch: str = "main",
        strategy: str = "ours",
    ) -> RebaseResult:
        """Rebase onto ``origin/<branch>`` resolving hunks with ``-X strategy``.

        Conflicts abort the rebase and are reported, not raised. A failing
        abort is logged only; the caller falls back to a lease push anyway.
        """

        logger.debug("Rebasing onto origin/%s with strategy: %s", branch, strategy)
        try:
            await self._run(workspace, "rebase", f"origin/{branch}", "-X", strategy)
            return RebaseResult(success=True)
        except GitCommandError as rebase_error:
            try:
                conflicts = await self.conflicted_files(workspace)
            except GitCommandError as exc:
                raise classify_git_error("rebase", str(exc)) from exc
            if not conflicts:
                logger.error("Failed to rebase: %s", rebase_error)
                raise classify_git_error("rebase", str(rebase_error)) from rebase_error

            logger.warning(
                "Rebase failed with %d conflicted files",
                len(conflicts),
                extra={"conflict_files": conflicts},
            )
            try:
                await self._run(workspace, "rebase", "--abort")
            except GitServiceError as abort_error:
                logger.error("Failed to abort rebase: %s", abort_error)
            return RebaseResult(success=False, conflict_files=conflicts)

    async def push(
        self,
        workspace: str | Path,
        branch: str = "main",
        *,
        ssh_key_path: str | Path | None = None,
        force_with_lease: bool = False,
        set_upstream: bool = False,
        remote: str = "origin",
    ) -> None:
        """Push ``branch``; raises the raw :class:`GitCommandError` on rejection."""

        args = ["push"]
        if set_upstream:
            args.append("-u")
        if force_with_lease:
            args.append("--force-with-lease")
        args.extend([remote, branch])
        await self._run(workspace, *args, ssh_key_path=ssh_key_path, timeout=self._network_timeout)

    async def checkout(self, workspace: str | Path, branch: str, *, create: bool = False) -> None:
        args = ["checkout", "-b", branch] if create else ["checkout", branch]
        try:
            await self._run(workspace, *args)
        except GitCommandError as exc:
            raise classify_git_error(f"checkout {branch}", str(exc)) from exc

    async def raw(
        self,
        workspace: str | Path,
        *args: str,
        ssh_key_path: str | Path | None = None,
        timeout: float | None = None,
    ) -> str:
        """Run an arbitrary git command and return its stdout."""

        try:
            result = await self._run(workspace, *args, ssh_key_path=ssh_key_path, timeout=timeout)
        except GitCommandError as exc:
            raise classify_git_error(f"run git {args[0]}", str(exc)) from exc
        return result.stdout


class FakeGitTransport(GitTransport):
    """Test double that records git invocations and replays scripted results.

    ``responses`` maps a git subcommand (``"push"``, ``"rebase"``...) to the
    results returned by successive invocations of that subcommand; an
    exception in the list is raised instead. Unscripted calls succeed with
    empty output.
    """

    def __init__(
        self,
        responses: Mapping[str, Iterable[GitCommandResult | Exception]] | None = None,
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        self._responses = {key: list(value) for key, value in (responses or {}).items()}
        self._calls: list[tuple[Path, tuple[str, ...]]] = []
        self._environments: list[dict[str, str]] = []

    async def _invoke(  # type: ignore[override]
        self,
        cwd: Path,
        args: Sequence[str],
        *,
        env: Mapping[str, str],
        timeout: float | None = None,
    ) -> GitCommandResult:
        self._calls.append((Path(cwd), tuple(args)))
        self._environments.append(dict(env))
        queue = self._responses.get(args[0])
        if queue:
            response = queue.pop(0)
            if isinstance(response, Exception):
                raise response
            return response
        return GitCommandResult(args=("git", *args), returncode=0, stdout="", stderr="")

    @property
    def invocations(self) -> list[tuple[str, ...]]:
        return [args for _, args in self._calls]

    @property
    def calls(self) -> list[tuple[Path, tuple[str, ...]]]:
        return list(self._calls)

    @property
    def environments(self) -> list[dict[str, str]]:
        return list(self._environments)


def git_result(*args: str, returncode: int = 0, stdout: str = "", stderr: str = "") -> GitCommandResult:
    """Build a scripted :class:`GitCommandResult` for :class:`FakeGitTransport`."""

    return GitCommandResult(args=("git", *args), returncode=returncode, stdout=stdout, stderr=stderr)


__all__ = [
    "DEFAULT_IDENTITY",
    "DEFAULT_NETWORK_TIMEOUT",
    "FakeGitTransport",
    "GitTransport",
    "git_result",
    "redact_credentials",
    "ssh_command",
]
