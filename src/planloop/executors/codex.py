"""External reviewer: ``codex exec`` with a separate, filtered progress stream."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Sequence

from ..cancel import CancelToken
from ..signals import detect_signal
from .base import (
    DecodedStream,
    ExecutionResult,
    Launcher,
    Sink,
    reconcile,
    run_process,
)
from .errors import ExecutionCancelled, StreamReadError
from .procgroup import GRACEFUL_SHUTDOWN_DELAY, ProcessHandle, launch

__all__ = ["CodexExecutor", "ProgressFilter"]

LOGGER = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-5.2-codex"
DEFAULT_REASONING_EFFORT = "xhigh"
DEFAULT_TIMEOUT_MS = 3_600_000
DEFAULT_SANDBOX = "read-only"

_SEPARATOR = "--------"


def strip_bold(text: str) -> str:
    """Remove paired ``**`` markers, leaving an unmatched trailing one alone."""
    result = text
    while True:
        start = result.find("**")
        if start == -1:
            return result
        end = result.find("**", start + 2)
        if end == -1:
            return result
        result = result[:start] + result[start + 2 : end] + result[end + 2 :]


class ProgressFilter:
    """Decides which codex stderr lines are worth showing.

    The header block between the first two separator lines is shown as is,
    later lines only when they start with a bold marker. Shown lines are never
    repeated within one invocation, separators excepted.
    """

    def __init__(self) -> None:
        self._separators = 0
        self._seen: set[str] = set()

    def feed(self, line: str) -> str | None:
        stripped = line.strip()
        if not stripped:
            return None
        if stripped.startswith(_SEPARATOR):
            self._separators += 1
            return line if self._separators <= 2 else None
        if self._separators == 1:
            shown = line
        elif stripped.startswith("**"):
            shown = strip_bold(stripped)
        else:
            return None
        if shown in self._seen:
            return None
        self._seen.add(shown)
        return shown


class CodexExecutor:
    """Executor for the external reviewer.

    stdout is collected whole as the review text; stderr is filtered and
    forwarded to the sink while the process runs.
    """

    tool = "codex"

    def __init__(
        self,
        command: str = "",
        model: str = "",
        reasoning_effort: str = "",
        timeout_ms: int = 0,
        sandbox: str = "",
        error_patterns: Sequence[str] = (),
        *,
        project_doc: str | None = None,
        launcher: Launcher | None = None,
        grace_period: float = GRACEFUL_SHUTDOWN_DELAY,
    ) -> None:
        self.command = command or "codex"
        self.model = model or DEFAULT_MODEL
        self.reasoning_effort = reasoning_effort or DEFAULT_REASONING_EFFORT
        self.timeout_ms = timeout_ms if timeout_ms > 0 else DEFAULT_TIMEOUT_MS
        self.sandbox = sandbox or DEFAULT_SANDBOX
        self.error_patterns = tuple(error_patterns)
        self.project_doc = project_doc
        self._launcher = launcher or launch
        self._grace_period = grace_period

    @property
    def help_command(self) -> str:
        return f"{self.command} --help"

    def build_args(self, prompt: str) -> list[str]:
        args = [
            "exec",
            "--sandbox",
            self.sandbox,
            "-c",
            f'model="{self.model}"',
            "-c",
            f"model_reasoning_effort={self.reasoning_effort}",
            "-c",
            f"stream_idle_timeout_ms={self.timeout_ms}",
        ]
        if self.project_doc:
            args.extend(["-c", f'project_doc="{self.project_doc}"'])
        args.append(prompt)
        return args

    def run(self, cancel: CancelToken, prompt: str, sink: Sink | None = None) -> ExecutionResult:
        launched = run_process(
            self._launcher,
            cancel,
            self.command,
            self.build_args(prompt),
            merge_stderr=False,
            grace_period=self._grace_period,
        )
        if isinstance(launched, ExecutionResult):
            return launched

        with ThreadPoolExecutor(max_workers=1, thread_name_prefix="codex-stderr") as pool:
            progress = pool.submit(self._forward_progress, launched, cancel, sink)
            stdout_error: Exception | None = None
            try:
                output = launched.stdout.read() if launched.stdout is not None else ""
            except (OSError, ValueError) as error:
                output = ""
                stdout_error = StreamReadError(f"read stdout: {error}")
                stdout_error.__cause__ = error
                if not cancel.cancelled:
                    launched.terminate()
            try:
                stderr_error = progress.result()
            except BaseException:
                launched.wait()
                raise

        exit_error = launched.wait()
        if exit_error is not None:
            LOGGER.debug("codex finished with %s", exit_error)

        read_error = stderr_error if stderr_error is not None else stdout_error
        decoded = DecodedStream(output, detect_signal(output), read_error)
        return reconcile(
            decoded,
            exit_error,
            cancel,
            tool=self.tool,
            error_patterns=self.error_patterns,
            help_command=self.help_command,
        )

    @staticmethod
    def _forward_progress(
        handle: ProcessHandle, cancel: CancelToken, sink: Sink | None
    ) -> Exception | None:
        """Filter stderr into ``sink`` until EOF.

        Whenever this stops reading early for a reason other than
        cancellation, the process group is terminated so the stdout reader
        is not left waiting on a child blocked on a full stderr pipe.
        """
        stream = handle.stderr
        if stream is None:
            return None
        progress = ProgressFilter()
        try:
            while True:
                try:
                    raw = stream.readline()
                except (OSError, ValueError) as error:
                    if cancel.cancelled:
                        return ExecutionCancelled("read stderr: cancelled")
                    handle.terminate()
                    failure = StreamReadError(f"read stderr: {error}")
                    failure.__cause__ = error
                    return failure
                if not raw:
                    return None
                if cancel.cancelled:
                    return ExecutionCancelled("read stderr: cancelled")
                shown = progress.feed(raw.rstrip("\r\n"))
                if shown is not None and sink is not None:
                    sink(shown + "\n")
        except BaseException:
            handle.terminate()
            raise
