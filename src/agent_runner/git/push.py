"""Push with automatic recovery from a diverged remote."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable

from .errors import (
    GitCommandError,
    NothingToCommitError,
    PushRejectedError,
    classify_git_error,
    is_push_rejection,
)
from .models import ConflictStrategy, GitOperationResult, RebaseStrategy, RecoveryInfo
from .transport import GitTransport

logger = logging.getLogger(__name__)


async def _push_or_raise(
    transport: GitTransport,
    workspace: Path,
    branch: str,
    ssh_key_path: str | Path | None,
    *,
    force_with_lease: bool = False,
) -> None:
    try:
        await transport.push(
            workspace,
            branch,
            ssh_key_path=ssh_key_path,
            force_with_lease=force_with_lease,
        )
    except GitCommandError as exc:
        raise classify_git_error("push", str(exc)) from exc


async def push_with_recovery(
    transport: GitTransport,
    workspace: str | Path,
    branch: str = "main",
    *,
    ssh_key_path: str | Path | None = None,
    conflict_strategy: ConflictStrategy = "auto",
    rebase_strategy: RebaseStrategy = "ours",
) -> GitOperationResult:
    """Push ``branch`` to origin, recovering when the remote has diverged.

    A rejected push under the ``auto`` strategy fetches the remote branch,
    unshallows the clone when needed and rebases with ``-X rebase_strategy``.
    A clean rebase is pushed normally; a conflicting one is aborted and the
    local history is pushed with ``--force-with-lease``, which the remote
    refuses if its head moved after the fetch. The fallback push is never
    retried.

    The returned ``recovery`` is set only when the first push was rejected.
    """

    workspace = Path(workspace)
    logger.debug("Pushing to remote (branch: %s, conflict_strategy: %s)", branch, conflict_strategy)

    try:
        await transport.push(workspace, branch, ssh_key_path=ssh_key_path)
    except GitCommandError as exc:
        if not is_push_rejection(str(exc)):
            logger.error("Failed to push changes: %s", exc)
            raise classify_git_error("push", str(exc)) from exc
        rejection = exc
    else:
        logger.debug("Push completed (no conflicts)")
        return GitOperationResult(success=True)

    logger.warning("Push rejected: remote has diverged from local", extra={"branch": branch})
    if conflict_strategy == "fail":
        raise PushRejectedError(
            "Push rejected. Remote has changes that are not in local branch. "
            'Use conflict_strategy="auto" to enable automatic recovery.',
            detail=rejection.detail,
        ) from rejection

    logger.info("Attempting automatic push recovery (rebase strategy: %s)", rebase_strategy)
    await transport.fetch(workspace, branch, ssh_key_path=ssh_key_path)
    remote_sha = await transport.remote_head(workspace, branch)
    logger.debug("Remote HEAD: %s", remote_sha)

    if transport.is_shallow(workspace):
        logger.debug("Repository is shallow; unshallowing for rebase")
        await transport.unshallow(workspace, ssh_key_path=ssh_key_path)

    rebase = await transport.rebase_with_strategy(workspace, branch, rebase_strategy)
    if rebase.success:
        await _push_or_raise(transport, workspace, branch, ssh_key_path)
        logger.info(
            "Push completed after rebase recovery",
            extra={"branch": branch, "remote_sha": remote_sha},
        )
        return GitOperationResult(
            success=True,
            recovery=RecoveryInfo(
                method="rebase",
                remote_sha=remote_sha,
                conflict_files=rebase.conflict_files or None,
            ),
        )

    logger.warning(
        "Rebase hit conflicts in %d files; falling back to force-with-lease",
        len(rebase.conflict_files),
        extra={"branch": branch, "conflict_files": rebase.conflict_files},
    )
    await _push_or_raise(transport, workspace, branch, ssh_key_path, force_with_lease=True)
    logger.info(
        "Push completed with force-with-lease recovery",
        extra={"branch": branch, "remote_sha": remote_sha},
    )
    return GitOperationResult(
        success=True,
        recovery=RecoveryInfo(
            method="force-with-lease",
            remote_sha=remote_sha,
            conflict_files=list(rebase.conflict_files),
        ),
    )


async def commit_and_push(
    transport: GitTransport,
    workspace: str | Path,
    message: str,
    *,
    files: Iterable[str] | None = None,
    branch: str = "main",
    ssh_key_path: str | Path | None = None,
    conflict_strategy: ConflictStrategy = "auto",
    rebase_strategy: RebaseStrategy = "ours",
) -> GitOperationResult:
    """Commit the workspace changes and push them with recovery."""

    if not await transport.has_changes(workspace):
        logger.info("No changes to commit and push")
        raise NothingToCommitError("No changes to commit")

    commit = await transport.commit(workspace, message, files, ssh_key_path)
    result = await push_with_recovery(
        transport,
        workspace,
        branch,
        ssh_key_path=ssh_key_path,
        conflict_strategy=conflict_strategy,
        rebase_strategy=rebase_strategy,
    )
    result.sha = commit.sha
    return result


__all__ = ["commit_and_push", "push_with_recovery"]
