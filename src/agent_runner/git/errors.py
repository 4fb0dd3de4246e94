"""Error taxonomy for git and GitHub operations."""

from __future__ import annotations


class GitServiceError(RuntimeError):
    """Base class for git synchronization errors.

    ``detail`` keeps the raw tool output so it can be logged without being
    shown to end users.
    """

    def __init__(self, message: str, *, detail: str | None = None) -> None:
        super().__init__(message)
        self.detail = detail


class GitCommandError(GitServiceError):
    """Raised when a git subprocess exits with a non-zero status."""

    def __init__(self, args: tuple[str, ...], returncode: int, output: str) -> None:
        command = " ".join(args)
        message = output.strip() or f"git {command} exited with status {returncode}"
        super().__init__(message, detail=output)
        self.command = args
        self.returncode = returncode


class InvalidUrlFormatError(GitServiceError):
    """Raised before any network I/O when a repository URL is malformed."""


class AuthenticationError(GitServiceError):
    """Raised when the remote refuses the supplied credentials."""


class RepositoryNotFoundError(GitServiceError):
    """Raised when the remote repository does not exist or is hidden."""


class NetworkTimeoutError(GitServiceError):
    """Raised when a network-bound git operation exceeds its deadline."""


class PermissionDeniedError(GitServiceError):
    """Raised when SSH key authentication is rejected."""


class HostKeyVerificationError(GitServiceError):
    """Raised when SSH host key verification fails."""


class NothingToCommitError(GitServiceError):
    """Raised when staging produced no changes to commit."""


class PushRejectedError(GitServiceError):
    """Raised when the remote diverged and the conflict strategy is ``fail``."""


class SubmoduleError(GitServiceError):
    """Raised when a submodule cannot be initialized or pushed."""


class DirectoryConflictError(SubmoduleError):
    """Raised when a regular directory already occupies the submodule path.

    The message is meant to be shown verbatim to the end user, since removing
    or renaming the directory requires a human.
    """

    def __init__(self, path: str, *, detail: str | None = None) -> None:
        super().__init__(
            f"Cannot add submodule at '{path}': a regular directory already exists there. "
            f"The external test repo requires that '{path}/' does not already exist as a regular directory.",
            detail=detail,
        )
        self.path = path


class RemoteApiError(GitServiceError):
    """Raised when the GitHub REST API answers with a non-2xx status."""

    def __init__(self, status_code: int, body: str) -> None:
        super().__init__(f"GitHub API returned {status_code}: {body}", detail=body)
        self.status_code = status_code
        self.body = body


# Ordered: the first matching substring decides the class. Upstream git
# wording changes only need an edit here.
_ERROR_PATTERNS: tuple[tuple[str, type[GitServiceError], str], ...] = (
    (
        "Could not read from remote repository",
        AuthenticationError,
        "Authentication failed or repository not accessible. Ensure SSH key is properly configured.",
    ),
    (
        "Repository not found",
        RepositoryNotFoundError,
        "Repository not found. Check the repository URL and access permissions.",
    ),
    (
        "timed out",
        NetworkTimeoutError,
        "Git {operation} operation timed out. Repository may be too large or network is slow.",
    ),
    (
        "Permission denied",
        PermissionDeniedError,
        "SSH key authentication failed. Check SSH key permissions and GitHub access.",
    ),
    (
        "Host key verification failed",
        HostKeyVerificationError,
        "SSH host key verification failed.",
    ),
)

PUSH_REJECTION_MARKERS = ("rejected", "non-fast-forward", "Updates were rejected")


def classify_git_error(operation: str, raw: str) -> GitServiceError:
    """Map raw git output onto the error taxonomy.

    Returns (does not raise) an exception whose message reads
    ``Failed to <operation>: <friendly text>``; unmatched output falls back to
    the raw message.
    """

    text = raw.strip()
    for needle, error_cls, friendly in _ERROR_PATTERNS:
        if needle in text:
            return error_cls(
                f"Failed to {operation}: {friendly.format(operation=operation)}",
                detail=raw,
            )
    return GitServiceError(f"Failed to {operation}: {text}", detail=raw)


def is_push_rejection(raw: str) -> bool:
    """Return True when push output says the remote diverged."""

    return any(marker in raw for marker in PUSH_REJECTION_MARKERS)


__all__ = [
    "AuthenticationError",
    "DirectoryConflictError",
    "GitCommandError",
    "GitServiceError",
    "HostKeyVerificationError",
    "InvalidUrlFormatError",
    "NetworkTimeoutError",
    "NothingToCommitError",
    "PermissionDeniedError",
    "PushRejectedError",
    "RemoteApiError",
    "RepositoryNotFoundError",
    "SubmoduleError",
    "classify_git_error",
    "is_push_rejection",
]
