"""Convenience exports for the coding-agent executors."""

from .base import ExecutionResult, Executor, JsonStreamDecoder, Sink
from .claude import ClaudeExecutor
from .codex import CodexExecutor
from .errors import (
    ExecutionCancelled,
    ExecutorError,
    LaunchError,
    PatternMatchError,
    StreamReadError,
    ToolExitError,
)
from .procgroup import ProcessExitError, ProcessHandle, ProcessState, launch
from .qwen import QwenExecutor

__all__ = [
    "ClaudeExecutor",
    "CodexExecutor",
    "ExecutionCancelled",
    "ExecutionResult",
    "Executor",
    "ExecutorError",
    "JsonStreamDecoder",
    "LaunchError",
    "PatternMatchError",
    "ProcessExitError",
    "ProcessHandle",
    "ProcessState",
    "QwenExecutor",
    "Sink",
    "StreamReadError",
    "ToolExitError",
    "launch",
]
