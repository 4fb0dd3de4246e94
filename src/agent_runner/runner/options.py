"""Per-invocation options for the agent CLI."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(slots=True)
class RunOptions:
    timeout_minutes: float = 60.0
    model: str | None = None
    fallback_model: str | None = None
    allowed_tools: list[str] = field(default_factory=list)
    disallowed_tools: list[str] = field(default_factory=list)
    permission_mode: str | None = None
    max_turns: int | None = None
    system_prompt: str | None = None
    append_system_prompt: str | None = None
    cwd_relative: str | None = None
    api_key: str | None = None
    oauth_token: str | None = None
    environment: dict[str, str] = field(default_factory=dict)

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_minutes * 60


__all__ = ["RunOptions"]
