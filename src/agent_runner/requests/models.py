"""Run request models."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from ..runner import RunOptions


class _RequestModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class GitActions(_RequestModel):
    """Post-execution commit and push instructions."""

    commit: bool = Field(default=False, description="Whether to create a git commit.")
    commit_message: str | None = Field(default=None, description="Custom commit message.")
    push: bool = Field(default=False, description="Whether to push to the remote.")
    branch: str = Field(default="main", description="Branch to push to.")
    files: list[str] = Field(
        default_factory=list,
        description="Specific files to commit; all changes when empty.",
    )
    conflict_strategy: Literal["auto", "fail"] = Field(
        default="auto",
        description="'auto' recovers from a diverged remote, 'fail' raises instead.",
    )


class UploadFiles(_RequestModel):
    glob_patterns: list[str] = Field(default_factory=list)
    gcs_prefix: str | None = None


class PostExecutionActions(_RequestModel):
    git: GitActions | None = None
    upload_files: UploadFiles | None = None


class ExternalTestRepo(_RequestModel):
    """Customer test repository mounted as a submodule."""

    url: str = Field(..., description="HTTPS URL of the test repository.")
    branch: str = Field(default="main", description="Base branch of the test repository.")
    installation_access_token: str = Field(
        ..., description="Short-lived GitHub App installation token."
    )
    existing_pr_branch: str | None = Field(
        default=None,
        description="Check out this branch to iterate on an open pull request.",
    )
    update_submodule_to_latest: bool = False

    @field_validator("url")
    @classmethod
    def _require_https(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized.startswith(("https://", "http://")):
            raise ValueError("External test repo URL must be an HTTPS URL")
        return normalized


class RunRequest(_RequestModel):
    """One agent task: the prompt, agent options and git instructions."""

    prompt: str
    anthropic_api_key: str | None = None
    anthropic_oauth_token: str | None = Field(default=None, alias="anthropicOAuthToken")
    system_prompt: str | None = None
    append_system_prompt: str | None = None
    allowed_tools: list[str] = Field(default_factory=list)
    disallowed_tools: list[str] = Field(default_factory=list)
    permission_mode: str | None = None
    max_turns: int | None = Field(default=None, ge=1)
    model: str | None = None
    fallback_model: str | None = None
    cwd_relative: str | None = None
    git_repo: str | None = None
    git_branch: str = "main"
    git_depth: int = Field(default=1, ge=1)
    timeout_minutes: float | None = Field(default=None, gt=0)
    pre_execution_commands: list[str] = Field(default_factory=list)
    post_execution_actions: PostExecutionActions | None = None
    environment_secrets: dict[str, str] = Field(default_factory=dict)
    ssh_key: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    external_test_repo: ExternalTestRepo | None = None

    @field_validator("prompt")
    @classmethod
    def _require_prompt(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Prompt must not be empty")
        return value

    @field_validator("cwd_relative")
    @classmethod
    def _reject_escaping_cwd(cls, value: str | None) -> str | None:
        if value is None:
            return None
        if value.startswith("/") or ".." in value.split("/"):
            raise ValueError("cwdRelative must stay inside the workspace")
        return value

    def run_options(self, default_timeout_minutes: float = 60.0) -> RunOptions:
        return RunOptions(
            timeout_minutes=self.timeout_minutes or default_timeout_minutes,
            model=self.model,
            fallback_model=self.fallback_model,
            allowed_tools=list(self.allowed_tools),
            disallowed_tools=list(self.disallowed_tools),
            permission_mode=self.permission_mode,
            max_turns=self.max_turns,
            system_prompt=self.system_prompt,
            append_system_prompt=self.append_system_prompt,
            cwd_relative=self.cwd_relative,
            api_key=self.anthropic_api_key,
            oauth_token=self.anthropic_oauth_token,
            environment=dict(self.environment_secrets),
        )


__all__ = [
    "ExternalTestRepo",
    "GitActions",
    "PostExecutionActions",
    "RunRequest",
    "UploadFiles",
]
