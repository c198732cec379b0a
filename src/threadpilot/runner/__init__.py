"""Claude CLI subprocess execution."""

from .runner import (
    ClaudeRunner,
    DevcontainerRunner,
    ExecutionResult,
    FakeExecution,
    FakeRunner,
)

__all__ = [
    "ClaudeRunner",
    "DevcontainerRunner",
    "ExecutionResult",
    "FakeExecution",
    "FakeRunner",
]
