"""Async supervisor for the streaming agent CLI."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import shutil
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Mapping, Sequence

from .options import RunOptions
from .utils import agent_environment, build_agent_args

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
TIMEOUT_ERROR = "Process timed out"
# stream-json events carry whole tool outputs on one line.
STREAM_LIMIT = 16 * 1024 * 1024
READ_CHUNK = 64 * 1024

LineSink = Callable[[str], None]


class AgentRunnerError(RuntimeError):
    """Base class for agent runner errors."""


class AgentNotFoundError(AgentRunnerError):
    """Raised when the agent CLI executable cannot be located."""


class ProcessTimeoutError(AgentRunnerError):
    """Raised for a run that hit the main timeout before producing a result."""


class ProcessForceKilledError(AgentRunnerError):
    """Raised for a run terminated by a signal without producing a result."""


@dataclass(slots=True)
class RunOutcome:
    """Terminal record of one agent invocation."""

    exit_code: int
    stdout_lines: list[str] = field(default_factory=list)
    result_event: dict[str, Any] | None = None
    error: str | None = None
    timed_out: bool = False
    killed: bool = False
    signal: int | None = None
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    def raise_for_status(self) -> None:
        if self.timed_out:
            raise ProcessTimeoutError(self.error or TIMEOUT_ERROR)
        if self.result_event is None and (self.killed or self.signal is not None):
            raise ProcessForceKilledError(self.error or "Process was force-killed")

    def to_dict(self) -> dict[str, Any]:
        return {
            "exit_code": self.exit_code,
            "result": self.result_event,
            "error": self.error,
            "timed_out": self.timed_out,
            "killed": self.killed,
            "signal": self.signal,
            "duration_seconds": round(self.duration_seconds, 3),
            "line_count": len(self.stdout_lines),
        }


def parse_event(line: str) -> dict[str, Any] | None:
    """Parse one stdout line as a JSON event, or None when it is not one."""

    try:
        event = json.loads(line)
    except ValueError:
        return None
    return event if isinstance(event, dict) else None


async def read_lines(stream: asyncio.StreamReader, max_line: int = STREAM_LIMIT) -> AsyncIterator[str]:
    """Yield decoded lines from ``stream`` without the trailing newline.

    A line that grows past ``max_line`` bytes is dropped whole with a
    warning and reading continues with the next line.
    """

    buffer = bytearray()
    discarding = False
    while True:
        chunk = await stream.read(READ_CHUNK)
        if not chunk:
            break
        buffer.extend(chunk)
        while True:
            newline = buffer.find(b"\n")
            if newline < 0:
                break
            raw = bytes(buffer[:newline])
            del buffer[: newline + 1]
            if discarding:
                discarding = False
                continue
            yield raw.decode("utf-8", errors="replace").rstrip("\r")
        if len(buffer) > max_line:
            if not discarding:
                logger.warning("Dropping output line longer than %d bytes", max_line)
            buffer.clear()
            discarding = True
    if buffer and not discarding:
        yield bytes(buffer).decode("utf-8", errors="replace").rstrip("\r")


class AgentProcessHandle:
    """Owns one spawned agent process, its pipes and its shutdown flags."""

    def __init__(self, process: asyncio.subprocess.Process) -> None:
        self.process = process
        self.killed = False
        self.result_received: bool | None = None
        self.result_event: dict[str, Any] | None = None
        self.stdout_lines: list[str] = []
        self.stderr_tail: deque[str] = deque(maxlen=20)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def exited(self) -> bool:
        return self.process.returncode is not None

    def close_stdin(self) -> None:
        stdin = self.process.stdin
        if stdin is not None and not stdin.is_closing():
            stdin.close()

    def terminate(self) -> None:
        if self.exited:
            return
        self.killed = True
        with contextlib.suppress(ProcessLookupError):
            self.process.terminate()

    def kill(self) -> None:
        if self.exited:
            return
        self.killed = True
        with contextlib.suppress(ProcessLookupError):
            self.process.kill()


class AgentRunner:
    """Run the agent CLI, stream its events and enforce the shutdown policy.

    Two independent timers guard every invocation. The main timer runs from
    spawn; when it fires before any ``result`` event the process is
    terminated and the run reports exit code 124. The grace timer starts on
    the first ``result`` event; when the process has not exited by then it
    is terminated and the run still counts as successful. A process that
    ignores SIGTERM for ``kill_escalation`` seconds receives SIGKILL.
    """

    def __init__(
        self,
        workspace: Path | str,
        *,
        executable: Path | None = None,
        shutdown_grace_period: float = 10.0,
        kill_escalation: float = 5.0,
        max_line_bytes: int = STREAM_LIMIT,
    ) -> None:
        self._workspace = Path(workspace)
        self._executable_path = self._resolve_executable(executable)
        self._grace_period = shutdown_grace_period
        self._kill_escalation = kill_escalation
        self._max_line_bytes = max_line_bytes

    @staticmethod
    def _resolve_executable(explicit: Path | None) -> Path:
        if explicit is not None:
            candidate = Path(explicit)
            if candidate.exists() and candidate.is_file():
                return candidate
            raise AgentNotFoundError(f"Agent executable not found at {candidate}")

        binary = shutil.which("claude")
        if binary is None:
            raise AgentNotFoundError("Agent CLI executable 'claude' not found on PATH")
        return Path(binary)

    @property
    def executable(self) -> Path:
        return self._executable_path

    @property
    def shutdown_grace_period(self) -> float:
        return self._grace_period

    async def run(
        self,
        prompt: str,
        options: RunOptions | None = None,
        on_stdout: LineSink | None = None,
        on_stderr: LineSink | None = None,
    ) -> RunOutcome:
        options = options or RunOptions()
        cwd = self._workspace / options.cwd_relative if options.cwd_relative else self._workspace
        args = build_agent_args(str(self._executable_path), prompt, options)

        started = time.monotonic()
        process = await self._spawn(args, cwd=cwd, env=agent_environment(options))
        handle = AgentProcessHandle(process)
        handle.close_stdin()
        logger.info(
            "Agent process started",
            extra={"pid": handle.pid, "cwd": str(cwd), "timeout_minutes": options.timeout_minutes},
        )

        outcome = await self._supervise(handle, options.timeout_seconds, on_stdout, on_stderr)
        outcome.duration_seconds = time.monotonic() - started
        logger.info(
            "Agent process finished",
            extra={
                "pid": handle.pid,
                "exit_code": outcome.exit_code,
                "timed_out": outcome.timed_out,
                "killed": outcome.killed,
                "duration_seconds": round(outcome.duration_seconds, 3),
            },
        )
        return outcome

    async def _spawn(
        self,
        args: Sequence[str],
        *,
        cwd: Path,
        env: Mapping[str, str],
    ) -> asyncio.subprocess.Process:
        return await asyncio.create_subprocess_exec(
            *args,
            cwd=str(cwd),
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=dict(env),
        )

    async def _supervise(
        self,
        handle: AgentProcessHandle,
        timeout_seconds: float,
        on_stdout: LineSink | None,
        on_stderr: LineSink | None,
    ) -> RunOutcome:
        result_seen = asyncio.Event()
        stdout_task = asyncio.create_task(self._pump_stdout(handle, on_stdout, result_seen))
        stderr_task = asyncio.create_task(self._pump_stderr(handle, on_stderr))
        exit_task = asyncio.create_task(self._wait_for_close(handle, stdout_task, stderr_task))
        result_waiter = asyncio.create_task(result_seen.wait())
        main_timer = asyncio.create_task(asyncio.sleep(timeout_seconds))
        grace_timer: asyncio.Task | None = None
        escalation_timer: asyncio.Task | None = None
        timed_out = False

        watched: set[asyncio.Task] = {exit_task, result_waiter, main_timer}
        try:
            while True:
                done, _ = await asyncio.wait(watched, return_when=asyncio.FIRST_COMPLETED)
                if exit_task in done:
                    break
                watched -= done

                if result_waiter in done:
                    logger.info(
                        "Result event received; allowing %.1fs for the agent to exit",
                        self._grace_period,
                        extra={"pid": handle.pid},
                    )
                    grace_timer = asyncio.create_task(asyncio.sleep(self._grace_period))
                    watched.add(grace_timer)

                if grace_timer is not None and grace_timer in done:
                    logger.warning(
                        "Agent still running %.1fs after result event; terminating",
                        self._grace_period,
                        extra={"pid": handle.pid},
                    )
                    escalation_timer = self._begin_termination(handle, escalation_timer, watched)

                if main_timer in done:
                    if handle.result_received:
                        logger.warning("Main timeout reached after result event; terminating")
                    else:
                        timed_out = True
                        logger.error(
                            "Agent timed out after %.1fs without a result event",
                            timeout_seconds,
                            extra={"pid": handle.pid},
                        )
                    escalation_timer = self._begin_termination(handle, escalation_timer, watched)

                if escalation_timer is not None and escalation_timer in done:
                    logger.error("Agent ignored SIGTERM; sending SIGKILL", extra={"pid": handle.pid})
                    handle.kill()
        finally:
            timers = [task for task in (result_waiter, main_timer, grace_timer, escalation_timer) if task]
            if not exit_task.done():
                handle.kill()
                try:
                    await asyncio.wait_for(handle.process.wait(), timeout=self._kill_escalation)
                except asyncio.TimeoutError:
                    logger.error("Agent did not exit after SIGKILL", extra={"pid": handle.pid})
                timers.extend([exit_task, stdout_task, stderr_task])
            for task in timers:
                task.cancel()
            await asyncio.gather(*timers, return_exceptions=True)

        return self._build_outcome(handle, exit_task.result(), timed_out)

    def _begin_termination(
        self,
        handle: AgentProcessHandle,
        escalation_timer: asyncio.Task | None,
        watched: set[asyncio.Task],
    ) -> asyncio.Task | None:
        if escalation_timer is not None:
            return escalation_timer
        handle.terminate()
        timer = asyncio.create_task(asyncio.sleep(self._kill_escalation))
        watched.add(timer)
        return timer

    async def _wait_for_close(self, handle: AgentProcessHandle, *pumps: asyncio.Task) -> int:
        returncode = await handle.process.wait()
        try:
            await asyncio.wait_for(asyncio.gather(*pumps), timeout=self._kill_escalation)
        except asyncio.TimeoutError:
            logger.warning("Output streams still open after exit; dropping the remainder")
        return returncode

    async def _pump_stdout(
        self,
        handle: AgentProcessHandle,
        sink: LineSink | None,
        result_seen: asyncio.Event,
    ) -> None:
        stream = handle.process.stdout
        if stream is None:
            return
        async for line in read_lines(stream, self._max_line_bytes):
            if not line.strip():
                continue
            handle.stdout_lines.append(line)

            event = parse_event(line)
            if event is not None and event.get("type") == "result":
                if not result_seen.is_set():
                    handle.result_received = True
                    handle.result_event = event
                    result_seen.set()
            elif handle.result_received is None:
                handle.result_received = False
            _emit(sink, line)

    async def _pump_stderr(self, handle: AgentProcessHandle, sink: LineSink | None) -> None:
        stream = handle.process.stderr
        if stream is None:
            return
        async for line in read_lines(stream, self._max_line_bytes):
            handle.stderr_tail.append(line)
            _emit(sink, line)

    @staticmethod
    def _build_outcome(handle: AgentProcessHandle, returncode: int, timed_out: bool) -> RunOutcome:
        outcome = RunOutcome(
            exit_code=returncode,
            stdout_lines=list(handle.stdout_lines),
            result_event=handle.result_event,
            timed_out=timed_out,
            killed=handle.killed,
        )
        if timed_out:
            outcome.exit_code = TIMEOUT_EXIT_CODE
            outcome.error = TIMEOUT_ERROR
        elif returncode < 0:
            outcome.signal = -returncode
            if handle.result_received:
                outcome.exit_code = 0
            else:
                outcome.exit_code = 128 - returncode
                outcome.error = f"Process terminated by signal {-returncode}"
        elif returncode != 0:
            detail = next((line for line in reversed(handle.stderr_tail) if line.strip()), "")
            outcome.error = f"Process exited with code {returncode}" + (f": {detail}" if detail else "")
        return outcome


def _emit(sink: LineSink | None, line: str) -> None:
    if sink is None:
        return
    try:
        sink(line)
    except Exception:  # pragma: no cover - sink errors are logged, never propagated
        logger.exception("Output sink raised; continuing")


__all__ = [
    "AgentNotFoundError",
    "AgentProcessHandle",
    "AgentRunner",
    "AgentRunnerError",
    "LineSink",
    "ProcessForceKilledError",
    "ProcessTimeoutError",
    "RunOutcome",
    "TIMEOUT_ERROR",
    "TIMEOUT_EXIT_CODE",
    "parse_event",
    "read_lines",
]
