"""Error taxonomy shared by every executor."""

from __future__ import annotations

__all__ = [
    "ExecutionCancelled",
    "ExecutorError",
    "LaunchError",
    "PatternMatchError",
    "StreamReadError",
    "ToolExitError",
]


class ExecutorError(RuntimeError):
    """Base error reported by an executor run."""


class LaunchError(ExecutorError):
    """Raised when the tool process or its pipes cannot be created."""


class ToolExitError(ExecutorError):
    """The tool exited unsuccessfully without producing usable output."""


class StreamReadError(ExecutorError):
    """Reading or decoding the tool's output stream failed."""


class ExecutionCancelled(ExecutorError):
    """The run was cancelled through the shared cancel token."""


class PatternMatchError(ExecutorError):
    """A configured error pattern (e.g. a rate-limit message) appeared in the output."""

    def __init__(self, pattern: str, help_command: str) -> None:
        self.pattern = pattern
        self.help_command = help_command
        super().__init__(
            f"detected error pattern {pattern!r} in tool output; run '{help_command}' for details"
        )
