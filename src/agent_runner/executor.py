"""Task execution: prepare the workspace, run the agent, sync git afterwards."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterator

from .config import RunnerSettings
from .git import (
    GitHubClient,
    GitOperationResult,
    GitServiceError,
    GitTransport,
    PullRequest,
    SubmoduleManager,
    SubmoduleOptions,
    build_token_url,
    commit_and_push,
    parse_github_url,
    push_with_recovery,
)
from .requests import RunRequest
from .runner import AgentRunner, AgentRunnerError, RunOutcome
from .runner.supervisor import LineSink
from .runner.utils import sanitize_environment

logger = logging.getLogger(__name__)

PR_BODY_LIMIT = 4000


class PreExecutionError(RuntimeError):
    """Raised when a pre-execution command exits non-zero."""


@dataclass(slots=True)
class ExecutionReport:
    """Everything one task execution produced."""

    outcome: RunOutcome | None = None
    git: GitOperationResult | None = None
    git_error: str | None = None
    submodule_branch: str | None = None
    submodule_commit: str | None = None
    submodule_error: str | None = None
    pull_request: PullRequest | None = None
    skipped: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "outcome": self.outcome.to_dict() if self.outcome else None,
            "git": self.git.to_dict() if self.git else None,
            "git_error": self.git_error,
            "skipped": list(self.skipped),
        }
        if self.submodule_branch:
            payload["submodule"] = {
                "branch": self.submodule_branch,
                "commit": self.submodule_commit,
                "error": self.submodule_error,
                "pull_request": (
                    {"number": self.pull_request.number, "url": self.pull_request.url}
                    if self.pull_request
                    else None
                ),
            }
        elif self.submodule_error:
            payload["submodule"] = {"error": self.submodule_error}
        return payload


@contextlib.contextmanager
def ssh_key_file(key: str | None) -> Iterator[Path | None]:
    """Write ``key`` to a private temporary file for the duration of the block."""

    if not key:
        yield None
        return
    fd, name = tempfile.mkstemp(prefix="agent-runner-key-")
    path = Path(name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(key if key.endswith("\n") else key + "\n")
        path.chmod(0o600)
        yield path
    finally:
        path.unlink(missing_ok=True)


RunnerFactory = Callable[[Path], AgentRunner]


class TaskExecutor:
    """Run one :class:`RunRequest` end to end.

    Git failures after the agent ran are recorded on the report instead of
    raised, so a push problem never hides the agent's own outcome. Failures
    while preparing the workspace abort before the agent is started.
    """

    def __init__(
        self,
        settings: RunnerSettings,
        *,
        transport: GitTransport | None = None,
        runner_factory: RunnerFactory | None = None,
        github: GitHubClient | None = None,
    ) -> None:
        self._settings = settings
        self._transport = transport or GitTransport(
            network_timeout=settings.git_timeout_seconds,
            default_identity=(settings.git_user_name, settings.git_user_email),
        )
        self._submodules = SubmoduleManager(self._transport)
        self._github = github or GitHubClient(settings.github_api_url)
        self._runner_factory = runner_factory or self._default_runner

    def _default_runner(self, workspace: Path) -> AgentRunner:
        settings = self._settings
        return AgentRunner(
            workspace,
            executable=Path(settings.claude_path) if settings.claude_path else None,
            shutdown_grace_period=settings.shutdown_grace_seconds,
            kill_escalation=settings.kill_escalation_seconds,
        )

    async def execute(
        self,
        request: RunRequest,
        workspace: Path | str | None = None,
        on_stdout: LineSink | None = None,
        on_stderr: LineSink | None = None,
    ) -> ExecutionReport:
        workspace = Path(workspace or self._settings.workspace)
        workspace.mkdir(parents=True, exist_ok=True)
        report = ExecutionReport()

        with ssh_key_file(request.ssh_key) as ssh_key_path:
            await self._prepare_workspace(request, workspace, ssh_key_path)
            await self._run_pre_execution(request, workspace)

            runner = self._runner_factory(workspace)
            options = request.run_options(self._settings.default_timeout_minutes)
            report.outcome = await runner.run(request.prompt, options, on_stdout, on_stderr)

            try:
                report.outcome.raise_for_status()
            except AgentRunnerError as exc:
                # Work left by an interrupted agent is never pushed.
                report.skipped.append(f"git: {exc}")
                logger.warning("Skipping post-execution git actions: %s", exc)
            else:
                await self._sync_submodule(request, workspace, report)
                await self._sync_git(request, workspace, ssh_key_path, report)

        actions = request.post_execution_actions
        if actions and actions.upload_files and actions.upload_files.glob_patterns:
            report.skipped.append("upload_files: storage upload is not supported")
        return report

    async def _prepare_workspace(
        self,
        request: RunRequest,
        workspace: Path,
        ssh_key_path: Path | None,
    ) -> None:
        if request.git_repo and not (workspace / ".git").exists():
            url = request.git_repo
            if ssh_key_path is not None:
                # A deploy key only authenticates over SSH.
                url = self._transport.convert_https_to_ssh(url)
            await self._transport.clone(
                url,
                workspace,
                branch=request.git_branch,
                depth=request.git_depth,
                ssh_key_path=ssh_key_path,
            )

        repo = request.external_test_repo
        if repo is not None:
            await self._submodules.init_submodule(
                workspace,
                self._settings.submodule_path,
                repo.url,
                build_token_url(repo.url, repo.installation_access_token),
                branch=repo.branch,
                depth=request.git_depth,
                options=SubmoduleOptions(
                    existing_pr_branch=repo.existing_pr_branch,
                    update_to_latest=repo.update_submodule_to_latest,
                ),
            )

    async def _run_pre_execution(self, request: RunRequest, workspace: Path) -> None:
        env = sanitize_environment(request.environment_secrets)
        for command in request.pre_execution_commands:
            logger.info("Running pre-execution command: %s", command)
            process = await asyncio.create_subprocess_shell(
                command,
                cwd=str(workspace),
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
            stdout, _ = await process.communicate()
            if process.returncode != 0:
                output = stdout.decode("utf-8", errors="replace") if stdout else ""
                raise PreExecutionError(
                    f"Pre-execution command failed (exit {process.returncode}): {command}: {output[-500:]}"
                )

    def _commit_message(self, request: RunRequest) -> str:
        actions = request.post_execution_actions
        if actions and actions.git and actions.git.commit_message:
            return actions.git.commit_message
        stamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")
        return f"Agent changes ({stamp})"

    async def _sync_git(
        self,
        request: RunRequest,
        workspace: Path,
        ssh_key_path: Path | None,
        report: ExecutionReport,
    ) -> None:
        actions = request.post_execution_actions
        git = actions.git if actions else None
        if git is None or not (git.commit or git.push):
            return

        transport = self._transport
        rebase_strategy = self._settings.rebase_strategy
        try:
            if git.commit:
                changed = await transport.changed_files(workspace)
                if not changed:
                    report.skipped.append("git: no changes to commit")
                    return
                logger.info(
                    "Committing agent changes",
                    extra={"changed_files": changed, "branch": git.branch},
                )
                if git.push:
                    report.git = await commit_and_push(
                        transport,
                        workspace,
                        self._commit_message(request),
                        files=git.files,
                        branch=git.branch,
                        ssh_key_path=ssh_key_path,
                        conflict_strategy=git.conflict_strategy,
                        rebase_strategy=rebase_strategy,
                    )
                else:
                    commit = await transport.commit(
                        workspace, self._commit_message(request), git.files, ssh_key_path
                    )
                    report.git = GitOperationResult(success=True, sha=commit.sha)
            else:
                report.git = await push_with_recovery(
                    transport,
                    workspace,
                    git.branch,
                    ssh_key_path=ssh_key_path,
                    conflict_strategy=git.conflict_strategy,
                    rebase_strategy=rebase_strategy,
                )
        except GitServiceError as exc:
            logger.error("Post-execution git actions failed: %s", exc)
            report.git_error = str(exc)

    async def _sync_submodule(self, request: RunRequest, workspace: Path, report: ExecutionReport) -> None:
        repo = request.external_test_repo
        if repo is None:
            return
        path = self._settings.submodule_path
        try:
            if not await self._submodules.has_submodule_changes(workspace, path):
                report.skipped.append("submodule: no changes")
                return

            branch = repo.existing_pr_branch or (
                f"agent/{datetime.now(timezone.utc).strftime('%Y%m%d%H%M%S')}"
            )
            commit = await self._submodules.commit_and_push_submodule(
                workspace,
                path,
                branch,
                self._commit_message(request),
                build_token_url(repo.url, repo.installation_access_token),
                is_existing_branch=repo.existing_pr_branch is not None,
            )
            report.submodule_branch = branch
            report.submodule_commit = commit.sha

            if repo.existing_pr_branch is None:
                owner, name = parse_github_url(repo.url)
                report.pull_request = await self._github.create_pull_request(
                    owner,
                    name,
                    head=branch,
                    base=repo.branch,
                    title=f"Test updates from agent run ({branch})",
                    body=self._pull_request_body(report.outcome),
                    token=repo.installation_access_token,
                )
        except GitServiceError as exc:
            logger.error("Submodule synchronization failed: %s", exc)
            report.submodule_error = str(exc)

    @staticmethod
    def _pull_request_body(outcome: RunOutcome | None) -> str:
        result = (outcome.result_event or {}).get("result") if outcome else None
        if isinstance(result, str) and result.strip():
            return result[:PR_BODY_LIMIT]
        return "Automated test changes produced by an agent run."


__all__ = ["ExecutionReport", "PreExecutionError", "TaskExecutor", "ssh_key_file"]
