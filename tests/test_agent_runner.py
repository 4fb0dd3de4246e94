from __future__ import annotations

import asyncio
import json
import os
import time
from pathlib import Path

import pytest

from agent_runner.runner import (
    AgentNotFoundError,
    AgentRunner,
    ProcessForceKilledError,
    ProcessTimeoutError,
    RunOptions,
    RunOutcome,
)
from agent_runner.runner.supervisor import parse_event, read_lines
from agent_runner.runner.utils import agent_environment, build_agent_args, sanitize_environment

RESULT_LINE = json.dumps({"type": "result", "subtype": "success", "result": "done"})
ASSISTANT_LINE = json.dumps({"type": "assistant", "message": "hello"})


def write_agent(tmp_path: Path, body: str) -> Path:
    script = tmp_path / "claude"
    script.write_text("#!/bin/sh\n" + body + "\n", encoding="utf-8")
    script.chmod(0o755)
    return script


def test_result_then_clean_exit_does_not_kill(tmp_path: Path) -> None:
    script = write_agent(tmp_path, f"echo '{ASSISTANT_LINE}'\necho '{RESULT_LINE}'\nexit 0")
    runner = AgentRunner(tmp_path, executable=script, shutdown_grace_period=0.5)
    lines: list[str] = []

    async def scenario() -> RunOutcome:
        outcome = await runner.run("prompt", RunOptions(timeout_minutes=1), lines.append)
        # Only this coroutine may still be alive: both timers were cancelled.
        assert asyncio.all_tasks() == {asyncio.current_task()}
        await asyncio.sleep(0.7)
        return outcome

    outcome = asyncio.run(scenario())

    assert outcome.exit_code == 0
    assert outcome.killed is False
    assert outcome.timed_out is False
    assert outcome.result_event == {"type": "result", "subtype": "success", "result": "done"}
    assert lines == [ASSISTANT_LINE, RESULT_LINE]
    assert outcome.stdout_lines == lines


def test_process_hanging_after_result_is_killed_after_grace_period(tmp_path: Path) -> None:
    grace = 0.5
    script = write_agent(tmp_path, f"echo '{ASSISTANT_LINE}'\necho '{RESULT_LINE}'\nexec sleep 30")
    runner = AgentRunner(tmp_path, executable=script, shutdown_grace_period=grace)
    seen_at: dict[str, float] = {}

    def sink(line: str) -> None:
        if '"type": "result"' in line:
            seen_at["result"] = time.monotonic()

    outcome = asyncio.run(runner.run("prompt", RunOptions(timeout_minutes=1), sink))
    finished = time.monotonic()

    assert outcome.killed is True
    assert outcome.exit_code == 0
    assert outcome.error is None
    assert outcome.result_event is not None
    elapsed = finished - seen_at["result"]
    assert grace - 0.1 <= elapsed < grace + 1.5
    outcome.raise_for_status()


def test_main_timeout_without_result_reports_exit_124(tmp_path: Path) -> None:
    script = write_agent(tmp_path, f"echo '{ASSISTANT_LINE}'\nexec sleep 30")
    runner = AgentRunner(tmp_path, executable=script, shutdown_grace_period=60)

    started = time.monotonic()
    outcome = asyncio.run(runner.run("prompt", RunOptions(timeout_minutes=0.01)))

    assert time.monotonic() - started < 5
    assert outcome.exit_code == 124
    assert outcome.error == "Process timed out"
    assert outcome.timed_out is True
    assert outcome.killed is True
    assert outcome.stdout_lines == [ASSISTANT_LINE]
    with pytest.raises(ProcessTimeoutError):
        outcome.raise_for_status()


def test_sigterm_ignoring_agent_is_escalated_to_sigkill(tmp_path: Path) -> None:
    script = write_agent(
        tmp_path,
        f"trap '' TERM\necho '{RESULT_LINE}'\nwhile :; do sleep 0.1; done",
    )
    runner = AgentRunner(tmp_path, executable=script, shutdown_grace_period=0.2, kill_escalation=0.3)

    started = time.monotonic()
    outcome = asyncio.run(runner.run("prompt", RunOptions(timeout_minutes=1)))

    assert time.monotonic() - started < 5
    assert outcome.killed is True
    assert outcome.exit_code == 0
    assert outcome.result_event is not None


def test_malformed_lines_pass_through_to_sink(tmp_path: Path) -> None:
    script = write_agent(tmp_path, f"echo 'not json at all'\necho '{RESULT_LINE}'")
    runner = AgentRunner(tmp_path, executable=script, shutdown_grace_period=1)
    lines: list[str] = []

    outcome = asyncio.run(runner.run("prompt", RunOptions(timeout_minutes=1), lines.append))

    assert lines[0] == "not json at all"
    assert outcome.exit_code == 0
    assert outcome.result_event is not None


def test_nonzero_exit_without_result_keeps_code_and_stderr(tmp_path: Path) -> None:
    script = write_agent(tmp_path, "echo 'boom' >&2\nexit 3")
    runner = AgentRunner(tmp_path, executable=script)
    errors: list[str] = []

    outcome = asyncio.run(runner.run("prompt", RunOptions(timeout_minutes=1), None, errors.append))

    assert outcome.exit_code == 3
    assert outcome.result_event is None
    assert errors == ["boom"]
    assert outcome.error == "Process exited with code 3: boom"
    outcome.raise_for_status()


def test_runner_passes_prompt_flags_and_secrets(tmp_path: Path) -> None:
    script = write_agent(
        tmp_path,
        'printf \'{"type":"system","args":"%s","secret":"%s"}\\n\' "$*" "$MY_SECRET"\n'
        f"echo '{RESULT_LINE}'",
    )
    runner = AgentRunner(tmp_path, executable=script)
    options = RunOptions(timeout_minutes=1, model="sonnet", max_turns=3, environment={"MY_SECRET": "s3"})

    outcome = asyncio.run(runner.run("fix the bug", options))

    first = json.loads(outcome.stdout_lines[0])
    assert "--print fix the bug --output-format stream-json --verbose" in first["args"]
    assert "--model sonnet" in first["args"]
    assert "--max-turns 3" in first["args"]
    assert first["secret"] == "s3"


def test_runner_uses_cwd_relative(tmp_path: Path) -> None:
    (tmp_path / "app").mkdir()
    script = write_agent(tmp_path, 'printf \'{"type":"system","cwd":"%s"}\\n\' "$(pwd)"')
    runner = AgentRunner(tmp_path, executable=script)

    outcome = asyncio.run(runner.run("prompt", RunOptions(timeout_minutes=1, cwd_relative="app")))

    assert json.loads(outcome.stdout_lines[0])["cwd"].endswith("/app")


def test_agent_not_found(tmp_path: Path) -> None:
    with pytest.raises(AgentNotFoundError):
        AgentRunner(tmp_path, executable=tmp_path / "missing")


def test_build_agent_args_includes_optional_flags() -> None:
    options = RunOptions(
        allowed_tools=["Read", "Edit"],
        disallowed_tools=["Bash"],
        permission_mode="acceptEdits",
        fallback_model="haiku",
        system_prompt="be careful",
        append_system_prompt="also terse",
    )

    args = build_agent_args("/bin/claude", "go", options)

    assert args[:6] == ["/bin/claude", "--print", "go", "--output-format", "stream-json", "--verbose"]
    assert args[args.index("--allowedTools") + 1] == "Read,Edit"
    assert args[args.index("--disallowedTools") + 1] == "Bash"
    assert args[args.index("--permission-mode") + 1] == "acceptEdits"
    assert args[args.index("--fallback-model") + 1] == "haiku"
    assert args[args.index("--system-prompt") + 1] == "be careful"
    assert args[args.index("--append-system-prompt") + 1] == "also terse"
    assert "--model" not in args


def test_agent_environment_injects_credentials(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("VIRTUAL_ENV", "/venv")
    env = agent_environment(RunOptions(api_key="sk-1", oauth_token="oat-2"))

    assert env["ANTHROPIC_API_KEY"] == "sk-1"
    assert env["CLAUDE_CODE_OAUTH_TOKEN"] == "oat-2"
    assert "VIRTUAL_ENV" not in env


def test_sanitize_environment_strips_virtualenv(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PYTHONPATH", "value")
    env = sanitize_environment({"EXTRA": "1"})
    assert "PYTHONPATH" not in env
    assert env["EXTRA"] == "1"


def test_parse_event_rejects_non_objects() -> None:
    assert parse_event('{"type": "result"}') == {"type": "result"}
    assert parse_event("[1, 2]") is None
    assert parse_event("plain text") is None


def test_raise_for_status_on_signal_without_result() -> None:
    outcome = RunOutcome(exit_code=137, killed=True, error="Process terminated by signal 9")

    with pytest.raises(ProcessForceKilledError, match="signal 9"):
        outcome.raise_for_status()


def test_oversized_output_line_is_dropped_and_result_still_seen(tmp_path: Path) -> None:
    script = write_agent(
        tmp_path,
        "head -c 300000 /dev/zero | tr '\\0' x\necho\n"
        "head -c 300000 /dev/zero | tr '\\0' y >&2\necho >&2\n"
        f"echo '{ASSISTANT_LINE}'\necho '{RESULT_LINE}'",
    )
    runner = AgentRunner(tmp_path, executable=script, shutdown_grace_period=1, max_line_bytes=64 * 1024)
    lines: list[str] = []
    errors: list[str] = []

    outcome = asyncio.run(runner.run("prompt", RunOptions(timeout_minutes=1), lines.append, errors.append))

    assert outcome.exit_code == 0
    assert outcome.result_event == {"type": "result", "subtype": "success", "result": "done"}
    assert lines == [ASSISTANT_LINE, RESULT_LINE]
    assert errors == []


def test_read_lines_keeps_the_line_after_an_oversized_one() -> None:
    async def scenario() -> list[str]:
        stream = asyncio.StreamReader()
        stream.feed_data(b"short\r\n" + b"z" * 200_000 + b"\nafter\nlast")
        stream.feed_eof()
        return [line async for line in read_lines(stream, max_line=1024)]

    assert asyncio.run(scenario()) == ["short", "after", "last"]


def test_cancelled_run_kills_and_reaps_agent(tmp_path: Path) -> None:
    script = write_agent(tmp_path, "echo $$\nexec sleep 30")
    runner = AgentRunner(tmp_path, executable=script, kill_escalation=2)
    pids: list[str] = []

    async def scenario() -> None:
        task = asyncio.create_task(runner.run("prompt", RunOptions(timeout_minutes=1), pids.append))
        while not pids:
            await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(scenario())

    # A reaped child no longer exists, not even as a zombie.
    with pytest.raises(ProcessLookupError):
        os.kill(int(pids[0]), 0)


def test_agent_killed_by_signal_without_result_is_force_killed(tmp_path: Path) -> None:
    script = write_agent(tmp_path, f"echo '{ASSISTANT_LINE}'\nkill -9 $$")
    runner = AgentRunner(tmp_path, executable=script)

    outcome = asyncio.run(runner.run("prompt", RunOptions(timeout_minutes=1)))

    assert outcome.signal == 9
    assert outcome.exit_code == 137
    assert outcome.killed is False
    with pytest.raises(ProcessForceKilledError, match="signal 9"):
        outcome.raise_for_status()
