"""Command-line entry point for running one agent task."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from . import __version__
from .config import get_settings
from .executor import PreExecutionError, TaskExecutor
from .git import GitServiceError
from .requests import RequestLoadError, load_run_request
from .runner import AgentRunnerError


def configure_logging(level: str) -> None:
    """Configure root logging for the agent runner."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _echo(line: str) -> None:
    print(line, flush=True)


def _echo_stderr(line: str) -> None:
    print(line, file=sys.stderr, flush=True)


def cmd_run(args: argparse.Namespace) -> int:
    settings = get_settings()
    try:
        request = load_run_request(args.request)
    except RequestLoadError as exc:
        print(f"Invalid run request: {exc}", file=sys.stderr)
        return 2

    workspace = Path(args.workspace) if args.workspace else settings.workspace
    executor = TaskExecutor(settings)
    logging.getLogger(__name__).info(
        "Starting agent task",
        extra={"version": __version__, "workspace": str(workspace)},
    )
    try:
        report = asyncio.run(executor.execute(request, workspace, _echo, _echo_stderr))
    except (AgentRunnerError, GitServiceError, PreExecutionError) as exc:
        print(f"Task failed: {exc}", file=sys.stderr)
        return 1

    summary = json.dumps(report.to_dict(), indent=2)
    if args.report:
        Path(args.report).write_text(summary + "\n", encoding="utf-8")
    else:
        print(summary, file=sys.stderr)
    return report.outcome.exit_code if report.outcome else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="agent-runner", description="Run a coding agent task")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="cmd")

    p_run = sub.add_parser("run", help="Run the agent for a request file (YAML or JSON)")
    p_run.add_argument("request", help="Path to the run request")
    p_run.add_argument("--workspace", help="Workspace directory (defaults to AGENT_RUNNER_WORKSPACE)")
    p_run.add_argument("--report", help="Write the execution report JSON to this file")
    p_run.set_defaults(func=cmd_run)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    configure_logging(get_settings().log_level)
    raise SystemExit(args.func(args))


if __name__ == "__main__":
    main()
