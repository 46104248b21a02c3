"""Shared pieces of the executor layer: results, stream decoding and reconciliation."""

from __future__ import annotations

import json
import logging
import os
import shlex
from dataclasses import dataclass
from typing import IO, Any, Callable, Iterable, Mapping, Optional, Protocol, Sequence

from ..cancel import CancelToken
from ..signals import Signal, detect_signal, strip_signals
from .errors import (
    ExecutionCancelled,
    ExecutorError,
    LaunchError,
    PatternMatchError,
    StreamReadError,
    ToolExitError,
)
from .procgroup import ProcessExitError, ProcessHandle

__all__ = [
    "DecodedStream",
    "ExecutionCancelled",
    "ExecutionResult",
    "Executor",
    "ExecutorError",
    "JsonStreamDecoder",
    "LaunchError",
    "Launcher",
    "PatternMatchError",
    "Sink",
    "StreamReadError",
    "ToolExitError",
    "check_error_patterns",
    "extract_event_text",
    "filter_env",
    "reconcile",
    "run_process",
    "split_args",
]

LOGGER = logging.getLogger(__name__)

Sink = Callable[[str], None]
Launcher = Callable[..., ProcessHandle]


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    """Outcome of a single executor invocation."""

    output: str = ""
    signal: Signal | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class Executor(Protocol):
    """Anything that can run one prompt through a coding-agent CLI."""

    def run(self, cancel: CancelToken, prompt: str, sink: Sink | None = None) -> ExecutionResult:
        ...


def split_args(value: str | Sequence[str] | None) -> list[str]:
    """Split a configured argument string, honouring single and double quotes."""
    if value is None:
        return []
    if isinstance(value, str):
        return shlex.split(value)
    return [str(item) for item in value]


def filter_env(drop: Iterable[str], base: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return a copy of ``base`` (default: the current environment) without ``drop`` keys."""
    removed = set(drop)
    source = os.environ if base is None else base
    return {key: value for key, value in source.items() if key not in removed}


def check_error_patterns(
    output: str, patterns: Sequence[str], help_command: str
) -> PatternMatchError | None:
    """Return a :class:`PatternMatchError` for the first pattern found in ``output``."""
    for pattern in patterns:
        if pattern and pattern in output:
            LOGGER.debug("error pattern %r matched", pattern)
            return PatternMatchError(pattern, help_command)
    return None


def _output_field(payload: Any) -> Optional[str]:
    if isinstance(payload, dict):
        value = payload.get("output")
        if isinstance(value, str):
            return value
    return None


def _result_text(payload: Any) -> str:
    direct = _output_field(payload)
    if direct is not None:
        return direct
    if isinstance(payload, str):
        # Double-encoded result; a plain string is only the session summary.
        try:
            nested = json.loads(payload)
        except json.JSONDecodeError:
            return ""
        return _output_field(nested) or ""
    return ""


def _text_blocks(message: Any) -> list[str]:
    if not isinstance(message, dict):
        return []
    content = message.get("content")
    if not isinstance(content, list):
        return []
    texts: list[str] = []
    for block in content:
        if isinstance(block, dict) and block.get("type") == "text":
            text = block.get("text")
            if isinstance(text, str):
                texts.append(text)
    return texts


def extract_event_text(event: Mapping[str, Any]) -> str:
    """Return the human-readable text carried by one stream-json event."""
    kind = event.get("type")
    if kind == "assistant":
        return "".join(_text_blocks(event.get("message")))
    if kind == "content_block_delta":
        delta = event.get("delta")
        if isinstance(delta, dict) and delta.get("type") == "text_delta":
            text = delta.get("text")
            return text if isinstance(text, str) else ""
        return ""
    if kind == "message_stop":
        blocks = _text_blocks(event.get("message"))
        return blocks[0] if blocks else ""
    if kind == "result":
        return _result_text(event.get("result"))
    return ""


@dataclass(frozen=True, slots=True)
class DecodedStream:
    """Text accumulated from one stream, with a read error when decoding stopped early."""

    output: str
    signal: Signal | None
    error: Exception | None = None


class JsonStreamDecoder:
    """Line-oriented decoder for the ``stream-json`` output format.

    Each line is parsed as one JSON event; lines that are not JSON objects are
    passed through verbatim with their newline restored. With ``strip_markers``
    completion tokens are removed from the text before it is accumulated or
    forwarded, and a chunk consisting only of a marker is not forwarded at all.
    The signal is still recorded in both modes.
    """

    def __init__(self, *, strip_markers: bool = False) -> None:
        self.strip_markers = strip_markers

    def decode(
        self,
        stream: IO[str],
        cancel: CancelToken,
        sink: Sink | None = None,
    ) -> DecodedStream:
        """Accumulate the text of ``stream`` until EOF, cancellation or a read error.

        Only reading is guarded; an exception raised by ``sink`` propagates
        to the caller unchanged.
        """
        parts: list[str] = []
        signal: Signal | None = None
        while True:
            try:
                raw = stream.readline()
            except (OSError, ValueError) as error:
                # ValueError covers reads from a pipe closed underneath us.
                failure: Exception
                if cancel.cancelled:
                    failure = ExecutionCancelled("stream read: cancelled")
                else:
                    failure = StreamReadError(f"stream read: {error}")
                failure.__cause__ = error
                return DecodedStream("".join(parts), signal, failure)
            if not raw:
                break
            if cancel.cancelled:
                return DecodedStream("".join(parts), signal, ExecutionCancelled("stream read: cancelled"))
            line = raw.rstrip("\r\n")
            if not line:
                continue
            chunk = self._chunk_for(line)
            if not chunk:
                continue
            found = detect_signal(chunk)
            if found is not None:
                signal = found
                if self.strip_markers:
                    chunk = strip_signals(chunk)
                    if not chunk:
                        continue
            parts.append(chunk)
            if sink is not None:
                sink(chunk)
        return DecodedStream("".join(parts), signal)

    @staticmethod
    def _chunk_for(line: str) -> str:
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            event = None
        if not isinstance(event, dict):
            LOGGER.debug("non-JSON line: %s", line)
            return line + "\n"
        return extract_event_text(event)


def reconcile(
    decoded: DecodedStream,
    exit_error: ProcessExitError | None,
    cancel: CancelToken,
    *,
    tool: str,
    error_patterns: Sequence[str],
    help_command: str,
) -> ExecutionResult:
    """Combine the decoded stream with the process outcome into one result.

    Cancellation wins over everything; a configured error pattern found in the
    output wins over exit status. A non-zero exit is fatal only when no output
    was produced.
    """
    output, signal = decoded.output, decoded.signal
    if cancel.cancelled:
        return ExecutionResult(output, signal, ExecutionCancelled(f"{tool}: {cancel.reason}"))

    error: Exception | None = decoded.error
    if error is None and exit_error is not None and not output:
        error = ToolExitError(f"{tool} exited with error: {exit_error}")
        error.__cause__ = exit_error

    matched = check_error_patterns(output, error_patterns, help_command)
    if matched is not None:
        error = matched
    return ExecutionResult(output, signal, error)


def run_process(
    launcher: Launcher,
    cancel: CancelToken,
    command: str,
    args: Sequence[str],
    **launch_options: Any,
) -> ProcessHandle | ExecutionResult:
    """Launch through ``launcher``, turning launch failures into a result."""
    try:
        return launcher(cancel, command, args, **launch_options)
    except ExecutorError as error:
        return ExecutionResult(error=error)
