"""Lookup of MCP server error logs written by the agent CLI."""

from __future__ import annotations

import json
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any

RAW_CONTENT_LIMIT = 2000


@dataclass(slots=True)
class McpLogReadResult:
    found: bool
    entries: list[dict[str, Any]] | None = None
    log_file: str | None = None
    reason: str | None = None
    raw_content: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {key: value for key, value in (
            ("found", self.found),
            ("entries", self.entries),
            ("log_file", self.log_file),
            ("reason", self.reason),
            ("raw_content", self.raw_content),
        ) if value is not None}


def cache_base(home: Path, platform: str) -> Path:
    if platform == "darwin":
        return home / "Library" / "Caches"
    return home / ".cache"


def sanitize_workspace(workspace_root: str) -> str:
    return workspace_root.replace("/", "-")


def read_mcp_error_log(
    server_name: str,
    workspace_root: str | None = None,
    *,
    home: Path | None = None,
    platform: str | None = None,
) -> McpLogReadResult:
    """Return the newest MCP log for ``server_name``.

    The CLI keeps one directory per workspace under ``claude*`` cache
    folders; the newest ``.txt`` file (ISO timestamp names sort
    chronologically) holds a JSON array of entries. Unparseable content is
    returned raw, truncated.
    """

    home = home or Path(os.environ.get("HOME") or Path.home())
    base = cache_base(home, platform or sys.platform)
    if not base.is_dir():
        return McpLogReadResult(found=False, reason=f"Cache directory not found: {base}")

    try:
        cache_dirs = sorted(entry.name for entry in base.iterdir() if entry.name.startswith("claude"))
    except OSError as exc:
        return McpLogReadResult(found=False, reason=f"Could not read cache directory: {exc}")
    if not cache_dirs:
        return McpLogReadResult(found=False, reason="Could not find MCP cache directory for error logs")

    sanitized = sanitize_workspace(workspace_root or "/workspace")
    for cache_dir in cache_dirs:
        log_dir = base / cache_dir / sanitized / f"mcp-logs-{server_name}"
        if not log_dir.is_dir():
            continue

        try:
            log_files = sorted((p.name for p in log_dir.iterdir() if p.name.endswith(".txt")), reverse=True)
        except OSError as exc:
            return McpLogReadResult(
                found=False,
                reason=f"Could not read MCP log directory for '{server_name}': {exc}",
            )
        if not log_files:
            return McpLogReadResult(found=False, reason=f"No MCP log files found for server: {server_name}")

        latest = log_dir / log_files[0]
        try:
            raw = latest.read_text(encoding="utf-8")
        except OSError as exc:
            return McpLogReadResult(
                found=False,
                reason=f"Could not read MCP log file for '{server_name}': {exc}",
            )

        try:
            entries = json.loads(raw)
        except ValueError:
            return McpLogReadResult(found=True, raw_content=raw[:RAW_CONTENT_LIMIT], log_file=str(latest))
        if not isinstance(entries, list):
            return McpLogReadResult(
                found=False,
                reason=f"MCP log file for '{server_name}' is not a JSON array",
                log_file=str(latest),
            )
        return McpLogReadResult(found=True, entries=entries, log_file=str(latest))

    return McpLogReadResult(found=False, reason=f"No MCP log directory found for server: {server_name}")


__all__ = ["McpLogReadResult", "read_mcp_error_log"]
