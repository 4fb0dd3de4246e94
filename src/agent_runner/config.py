"""Configuration management for the agent runner."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class RunnerSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    claude_path: str | None = Field(default=None, validation_alias="CLAUDE_PATH")
    log_level: str = Field(default="INFO", validation_alias="AGENT_RUNNER_LOG_LEVEL")
    workspace: Path = Field(default=Path("/workspace"), validation_alias="AGENT_RUNNER_WORKSPACE")
    shutdown_grace_seconds: float = Field(
        default=10.0, validation_alias="AGENT_RUNNER_SHUTDOWN_GRACE_SECONDS"
    )
    kill_escalation_seconds: float = Field(
        default=5.0, validation_alias="AGENT_RUNNER_KILL_ESCALATION_SECONDS"
    )
    default_timeout_minutes: float = Field(
        default=60.0, validation_alias="AGENT_RUNNER_DEFAULT_TIMEOUT_MINUTES"
    )
    git_timeout_seconds: float = Field(default=30.0, validation_alias="AGENT_RUNNER_GIT_TIMEOUT_SECONDS")
    rebase_strategy: str = Field(default="ours", validation_alias="AGENT_RUNNER_REBASE_STRATEGY")
    submodule_path: str = Field(default="tests", validation_alias="AGENT_RUNNER_SUBMODULE_PATH")
    github_api_url: str = Field(default="https://api.github.com", validation_alias="GITHUB_API_URL")
    git_user_name: str = Field(default="Claude Code", validation_alias="AGENT_RUNNER_GIT_USER_NAME")
    git_user_email: str = Field(
        default="noreply@anthropic.com", validation_alias="AGENT_RUNNER_GIT_USER_EMAIL"
    )

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "AGENT_RUNNER_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("rebase_strategy")
    @classmethod
    def _validate_rebase_strategy(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in {"ours", "theirs"}:
            raise ValueError("AGENT_RUNNER_REBASE_STRATEGY must be 'ours' or 'theirs'")
        return normalized

    @field_validator(
        "shutdown_grace_seconds",
        "kill_escalation_seconds",
        "default_timeout_minutes",
        "git_timeout_seconds",
    )
    @classmethod
    def _validate_positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("Timeouts and grace periods must be > 0")
        return value

    @field_validator("submodule_path")
    @classmethod
    def _normalize_submodule_path(cls, value: str) -> str:
        normalized = value.strip().strip("/")
        if not normalized:
            raise ValueError("AGENT_RUNNER_SUBMODULE_PATH must not be empty")
        return normalized


@lru_cache(maxsize=1)
def get_settings() -> RunnerSettings:
    """Return cached settings instance."""

    settings = RunnerSettings()
    settings.workspace = settings.workspace.expanduser()
    return settings


__all__ = ["RunnerSettings", "get_settings"]
