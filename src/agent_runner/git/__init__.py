"""Git transport, push recovery and submodule synchronization."""

from .errors import (
    AuthenticationError,
    DirectoryConflictError,
    GitCommandError,
    GitServiceError,
    HostKeyVerificationError,
    InvalidUrlFormatError,
    NetworkTimeoutError,
    NothingToCommitError,
    PermissionDeniedError,
    PushRejectedError,
    RemoteApiError,
    RepositoryNotFoundError,
    SubmoduleError,
    classify_git_error,
)
from .github import GitHubClient, PullRequest, build_token_url, parse_github_url
from .models import CommitResult, GitCommandResult, GitOperationResult, RebaseResult, RecoveryInfo
from .push import commit_and_push, push_with_recovery
from .submodule import SubmoduleManager, SubmoduleOptions
from .transport import FakeGitTransport, GitTransport

__all__ = [
    "AuthenticationError",
    "CommitResult",
    "DirectoryConflictError",
    "FakeGitTransport",
    "GitCommandError",
    "GitCommandResult",
    "GitHubClient",
    "GitOperationResult",
    "GitServiceError",
    "GitTransport",
    "HostKeyVerificationError",
    "InvalidUrlFormatError",
    "NetworkTimeoutError",
    "NothingToCommitError",
    "PermissionDeniedError",
    "PullRequest",
    "PushRejectedError",
    "RebaseResult",
    "RecoveryInfo",
    "RemoteApiError",
    "RepositoryNotFoundError",
    "SubmoduleError",
    "SubmoduleManager",
    "SubmoduleOptions",
    "build_token_url",
    "classify_git_error",
    "commit_and_push",
    "parse_github_url",
    "push_with_recovery",
]
