"""Add-or-update of a nested test repository and its pull-request branch."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from .errors import DirectoryConflictError, GitServiceError, SubmoduleError
from .models import CommitResult
from .transport import GitTransport, redact_credentials

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SubmoduleOptions:
    # Continue work on an open pull request instead of the base branch.
    existing_pr_branch: str | None = None
    update_to_latest: bool = False


class SubmoduleManager:
    """Manage one submodule per workspace path.

    Registration state is read from ``.gitmodules`` on every call and never
    cached, so a crashed run cannot leave a stale flag that would make the
    next run add the submodule twice.
    """

    def __init__(self, transport: GitTransport) -> None:
        self._transport = transport

    @staticmethod
    def is_registered(workspace: str | Path, path: str) -> bool:
        manifest = Path(workspace) / ".gitmodules"
        if not manifest.is_file():
            return False
        return f'[submodule "{path}"]' in manifest.read_text(encoding="utf-8")

    async def init_submodule(
        self,
        workspace: str | Path,
        path: str,
        display_url: str,
        token_url: str,
        *,
        branch: str = "main",
        depth: int = 1,
        options: SubmoduleOptions | None = None,
    ) -> None:
        """Register or refresh the submodule at ``path`` and position its HEAD.

        ``display_url`` is only logged; every clone and fetch uses
        ``token_url`` because installation tokens rotate between runs.
        """

        options = options or SubmoduleOptions()
        workspace = Path(workspace)
        transport = self._transport
        try:
            if not self.is_registered(workspace, path):
                logger.info("Adding submodule %s at %s (first run)", display_url, path)
                await transport.raw(
                    workspace,
                    "submodule",
                    "add",
                    "--depth",
                    str(depth),
                    "-b",
                    branch,
                    token_url,
                    path,
                    timeout=transport.network_timeout,
                )
            else:
                logger.info("Initializing existing submodule %s at %s", display_url, path)
                await transport.raw(workspace, "config", f"submodule.{path}.url", token_url)
                await transport.raw(
                    workspace,
                    "submodule",
                    "update",
                    "--init",
                    "--depth",
                    str(depth),
                    path,
                    timeout=transport.network_timeout,
                )

            submodule_dir = workspace / path
            await transport.raw(submodule_dir, "remote", "set-url", "origin", token_url)
            if options.existing_pr_branch:
                pr_branch = options.existing_pr_branch
                logger.info("Checking out existing PR branch %s in %s", pr_branch, path)
                await transport.fetch(submodule_dir, pr_branch, depth=depth)
                await transport.checkout(submodule_dir, pr_branch)
            else:
                if options.update_to_latest:
                    logger.info("Advancing submodule %s to the latest %s", path, branch)
                await transport.fetch(submodule_dir, branch, depth=depth)
                await transport.raw(submodule_dir, "reset", "--hard", f"origin/{branch}")
                logger.info("Submodule %s HEAD at latest %s", path, branch)
        except GitServiceError as exc:
            message = redact_credentials(str(exc))
            raw = redact_credentials(exc.detail or message)
            logger.error("Failed to init submodule at %s: %s", path, message)
            if "already exists" in raw and "submodule" not in raw:
                raise DirectoryConflictError(path, detail=exc.detail) from exc
            raise SubmoduleError(
                f"Failed to initialize submodule: {message}", detail=exc.detail
            ) from exc

    async def has_submodule_changes(self, workspace: str | Path, path: str) -> bool:
        submodule_dir = Path(workspace) / path
        if not submodule_dir.exists():
            logger.debug("Submodule path does not exist: %s", submodule_dir)
            return False
        return await self._transport.has_changes(submodule_dir)

    async def commit_and_push_submodule(
        self,
        workspace: str | Path,
        path: str,
        branch: str,
        message: str,
        token_url: str,
        *,
        is_existing_branch: bool = False,
    ) -> CommitResult:
        """Commit everything in the submodule and push ``branch`` with upstream tracking."""

        submodule_dir = Path(workspace) / path
        transport = self._transport
        try:
            await transport.configure_identity(submodule_dir)
            if is_existing_branch:
                logger.debug("Using existing branch %s in submodule %s", branch, path)
            else:
                logger.debug("Creating branch %s in submodule %s", branch, path)
                await transport.checkout(submodule_dir, branch, create=True)

            await transport.raw(submodule_dir, "add", "-A")
            await transport.raw(submodule_dir, "commit", "-m", message)
            sha = await transport.local_head(submodule_dir)
            logger.info("Submodule commit: %s", sha)

            await transport.raw(submodule_dir, "remote", "set-url", "origin", token_url)
            await transport.raw(
                submodule_dir,
                "push",
                "-u",
                "origin",
                branch,
                timeout=transport.network_timeout,
            )
        except GitServiceError as exc:
            message_text = redact_credentials(str(exc))
            logger.error("Failed to commit and push submodule %s: %s", path, message_text)
            raise SubmoduleError(
                f"Failed to commit and push submodule: {message_text}", detail=exc.detail
            ) from exc

        logger.info("Submodule pushed to %s", branch)
        return CommitResult(sha=sha, message=message)


__all__ = ["SubmoduleManager", "SubmoduleOptions"]
