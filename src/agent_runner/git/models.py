"""Result records for git operations."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

RecoveryMethod = Literal["rebase", "force-with-lease"]
ConflictStrategy = Literal["auto", "fail"]
RebaseStrategy = Literal["ours", "theirs"]


@dataclass(slots=True)
class GitCommandResult:
    """Holds the outcome of a single git invocation."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stdout.strip(), self.stderr.strip()) if part)


@dataclass(slots=True)
class StatusEntry:
    """One line of ``git status --porcelain``."""

    index: str
    worktree: str
    path: str

    @property
    def staged(self) -> bool:
        return self.index in {"M", "A", "D", "T", "C"}

    @property
    def renamed(self) -> bool:
        return self.index == "R"


@dataclass(slots=True)
class CommitResult:
    sha: str
    message: str


@dataclass(slots=True)
class RebaseResult:
    success: bool
    conflict_files: list[str] = field(default_factory=list)


@dataclass(slots=True)
class RecoveryInfo:
    """Describes how a rejected push was recovered."""

    method: RecoveryMethod
    remote_sha: str
    conflict_files: list[str] | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"method": self.method, "remote_sha": self.remote_sha}
        if self.conflict_files:
            payload["conflict_files"] = list(self.conflict_files)
        return payload


@dataclass(slots=True)
class GitOperationResult:
    """Outcome of a commit/push attempt.

    ``recovery`` is set only when the initial push was rejected.
    """

    success: bool
    sha: str | None = None
    recovery: RecoveryInfo | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"success": self.success}
        if self.sha is not None:
            payload["sha"] = self.sha
        if self.recovery is not None:
            payload["recovery"] = self.recovery.to_dict()
        return payload


__all__ = [
    "CommitResult",
    "ConflictStrategy",
    "GitCommandResult",
    "GitOperationResult",
    "RebaseResult",
    "RebaseStrategy",
    "RecoveryInfo",
    "RecoveryMethod",
    "StatusEntry",
]
