"""Agent CLI supervision utilities."""

from .options import RunOptions
from .supervisor import (
    AgentNotFoundError,
    AgentProcessHandle,
    AgentRunner,
    AgentRunnerError,
    ProcessForceKilledError,
    ProcessTimeoutError,
    RunOutcome,
    TIMEOUT_EXIT_CODE,
)

__all__ = [
    "AgentNotFoundError",
    "AgentProcessHandle",
    "AgentRunner",
    "AgentRunnerError",
    "ProcessForceKilledError",
    "ProcessTimeoutError",
    "RunOptions",
    "RunOutcome",
    "TIMEOUT_EXIT_CODE",
]
