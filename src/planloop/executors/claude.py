"""Primary coding agent: the ``claude`` CLI in stream-json mode."""

from __future__ import annotations

import logging
from typing import Sequence

from ..cancel import CancelToken
from .base import (
    ExecutionResult,
    JsonStreamDecoder,
    Launcher,
    Sink,
    filter_env,
    reconcile,
    run_process,
    split_args,
)
from .procgroup import GRACEFUL_SHUTDOWN_DELAY, launch

__all__ = ["ClaudeExecutor", "StreamJsonExecutor"]

LOGGER = logging.getLogger(__name__)

# Stripped from the child environment so the CLI uses its own login.
_SCRUBBED_ENV = ("ANTHROPIC_API_KEY",)


class StreamJsonExecutor:
    """Runs a CLI that prints one JSON event per line on stdout.

    Subclasses only provide the defaults: command name, default arguments, the
    flag that introduces the prompt and whether completion markers are hidden
    from the transcript.
    """

    tool = "agent"
    default_command = ""
    default_args: tuple[str, ...] = ()
    prompt_flag = "-p"
    strip_markers = False

    def __init__(
        self,
        command: str = "",
        args: str | Sequence[str] | None = None,
        error_patterns: Sequence[str] = (),
        *,
        launcher: Launcher | None = None,
        grace_period: float = GRACEFUL_SHUTDOWN_DELAY,
    ) -> None:
        self.command = command or self.default_command
        self.args = split_args(args) or list(self.default_args)
        self.error_patterns = tuple(error_patterns)
        self._launcher = launcher or launch
        self._grace_period = grace_period
        self._decoder = JsonStreamDecoder(strip_markers=self.strip_markers)

    @property
    def help_command(self) -> str:
        return f"{self.command} --help"

    def build_args(self, prompt: str) -> list[str]:
        return [*self.args, self.prompt_flag, prompt]

    def run(self, cancel: CancelToken, prompt: str, sink: Sink | None = None) -> ExecutionResult:
        launched = run_process(
            self._launcher,
            cancel,
            self.command,
            self.build_args(prompt),
            merge_stderr=True,
            env=filter_env(_SCRUBBED_ENV),
            grace_period=self._grace_period,
        )
        if isinstance(launched, ExecutionResult):
            return launched

        try:
            decoded = self._decoder.decode(launched.stdout, cancel, sink)
        except BaseException:
            launched.terminate()
            launched.wait()
            raise
        if decoded.error is not None and not cancel.cancelled:
            # Output is no longer drained; the child would block on a full pipe.
            launched.terminate()
        exit_error = launched.wait()
        if exit_error is not None:
            LOGGER.debug("%s finished with %s", self.tool, exit_error)
        return reconcile(
            decoded,
            exit_error,
            cancel,
            tool=self.tool,
            error_patterns=self.error_patterns,
            help_command=self.help_command,
        )


class ClaudeExecutor(StreamJsonExecutor):
    """Executor for the primary coding agent."""

    tool = "claude"
    default_command = "claude"
    default_args = (
        "--dangerously-skip-permissions",
        "--output-format",
        "stream-json",
        "--verbose",
    )
    prompt_flag = "-p"
