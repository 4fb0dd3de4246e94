"""Agent runner diagnostics CLI."""

from __future__ import annotations

import argparse
import json

from agent_runner.config import RunnerSettings
from agent_runner.git.github import parse_github_url
from agent_runner.mcp_logs import read_mcp_error_log


def cmd_mcp_log(args: argparse.Namespace) -> None:
    settings = RunnerSettings()
    workspace = args.workspace or str(settings.workspace)
    result = read_mcp_error_log(args.server, workspace)
    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
        if not result.found:
            raise SystemExit(1)
        return

    if not result.found:
        print(f"MCP log unavailable: {result.reason}")
        raise SystemExit(1)
    print(f"Log file: {result.log_file}")
    if result.entries is not None:
        for entry in result.entries:
            if "error" in entry:
                print(f"[error] {entry['error']}")
            elif "debug" in entry:
                print(f"[debug] {entry['debug']}")
            else:
                print(json.dumps(entry))
    else:
        print(result.raw_content)


def cmd_settings(args: argparse.Namespace) -> None:
    settings = RunnerSettings()
    payload = settings.model_dump(mode="json")
    print(json.dumps(payload, indent=2, sort_keys=True))


def cmd_repo(args: argparse.Namespace) -> None:
    try:
        owner, repo = parse_github_url(args.url)
    except ValueError as exc:
        print(str(exc))
        raise SystemExit(1)
    print(json.dumps({"owner": owner, "repo": repo}))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Agent runner diagnostics")
    sub = parser.add_subparsers(dest="cmd")

    p_log = sub.add_parser("mcp-log", help="Show the newest MCP error log for a server")
    p_log.add_argument("server", help="MCP server name")
    p_log.add_argument("--workspace", help="Workspace root the agent ran in")
    p_log.add_argument("--json", action="store_true", help="Output JSON")
    p_log.set_defaults(func=cmd_mcp_log)

    p_settings = sub.add_parser("settings", help="Print the effective settings")
    p_settings.set_defaults(func=cmd_settings)

    p_repo = sub.add_parser("repo", help="Parse owner/repo from a GitHub URL")
    p_repo.add_argument("url")
    p_repo.set_defaults(func=cmd_repo)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
