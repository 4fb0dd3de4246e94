"""Utility helpers for the agent runner."""

from __future__ import annotations

import os
from typing import Mapping

from .options import RunOptions

_SANITIZED_VARS = {
    "PYTHONHOME",
    "PYTHONPATH",
    "VIRTUAL_ENV",
    "PIP_RESPECT_VIRTUALENV",
}


def sanitize_environment(additional: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return a sanitized environment suitable for subprocess execution."""

    env = dict(os.environ)
    for key in _SANITIZED_VARS:
        env.pop(key, None)
    if additional:
        env.update(additional)
    return env


def build_agent_args(executable: str, prompt: str, options: RunOptions) -> list[str]:
    """Build the CLI argument vector for one streaming agent invocation."""

    args = [executable, "--print", prompt, "--output-format", "stream-json", "--verbose"]
    if options.model:
        args.extend(["--model", options.model])
    if options.fallback_model:
        args.extend(["--fallback-model", options.fallback_model])
    if options.allowed_tools:
        args.extend(["--allowedTools", ",".join(options.allowed_tools)])
    if options.disallowed_tools:
        args.extend(["--disallowedTools", ",".join(options.disallowed_tools)])
    if options.permission_mode:
        args.extend(["--permission-mode", options.permission_mode])
    if options.max_turns is not None:
        args.extend(["--max-turns", str(options.max_turns)])
    if options.system_prompt:
        args.extend(["--system-prompt", options.system_prompt])
    if options.append_system_prompt:
        args.extend(["--append-system-prompt", options.append_system_prompt])
    return args


def agent_environment(options: RunOptions) -> dict[str, str]:
    """Environment for the agent: sanitized, plus credentials and secrets."""

    extra: dict[str, str] = dict(options.environment)
    if options.api_key:
        extra["ANTHROPIC_API_KEY"] = options.api_key
    if options.oauth_token:
        extra["CLAUDE_CODE_OAUTH_TOKEN"] = options.oauth_token
    return sanitize_environment(extra)


__all__ = ["agent_environment", "build_agent_args", "sanitize_environment"]
