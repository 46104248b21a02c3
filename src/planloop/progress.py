"""Timestamped progress log written to a file and echoed to the terminal."""

from __future__ import annotations

import shutil
import textwrap
import threading
from datetime import datetime
from pathlib import Path
from typing import IO, Callable, Optional, Sequence

import typer

from .signals import NAMESPACE
from .status import Phase, PhaseHolder, Section

__all__ = ["PHASE_COLORS", "ProgressLogger", "progress_path"]

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"

PHASE_COLORS = {
    Phase.TASK: typer.colors.GREEN,
    Phase.REVIEW: typer.colors.CYAN,
    Phase.EXTERNAL_REVIEW: typer.colors.MAGENTA,
    Phase.SECONDARY_EVAL: typer.colors.BRIGHT_BLUE,
    Phase.PLAN: typer.colors.YELLOW,
    Phase.FINALIZE: typer.colors.BRIGHT_GREEN,
}
WARN_COLOR = typer.colors.YELLOW
ERROR_COLOR = typer.colors.RED
INFO_COLOR = typer.colors.BRIGHT_WHITE
SIGNAL_COLOR = typer.colors.BRIGHT_MAGENTA

_SIGNAL_PREFIX = f"<<<{NAMESPACE}:"


def progress_path(plan_file: Path | None, mode: str, directory: Path | None = None) -> Path:
    """Return the progress file location for a run."""
    base = directory or Path.cwd()
    if mode == "plan":
        return base / "progress-plan.txt"
    if plan_file is None:
        return base / f"progress-{mode}.txt"
    return base / f"progress-{plan_file.stem}.txt"


def _signal_name(line: str) -> Optional[str]:
    start = line.find(_SIGNAL_PREFIX)
    if start == -1:
        return None
    end = line.find(">>>", start)
    if end == -1:
        return None
    return line[start + len(_SIGNAL_PREFIX) : end]


def _indent_list_item(line: str) -> str:
    if line != line.lstrip(" \t"):
        return line
    if line.startswith(("- ", "* ")):
        return "  " + line
    digits = len(line) - len(line.lstrip("0123456789"))
    if digits and line[digits : digits + 2] == ". ":
        return "  " + line
    return line


class ProgressLogger:
    """Writes the run transcript to ``path`` and mirrors it on the terminal.

    Terminal output is coloured by the current phase, which the logger learns
    by subscribing to a :class:`PhaseHolder`.
    """

    def __init__(
        self,
        path: Path,
        phases: PhaseHolder,
        *,
        plan: str = "",
        mode: str = "",
        branch: str = "",
        no_color: bool = False,
        echo: Callable[..., None] = typer.echo,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.path = path
        self._phase = phases.current
        self._unsubscribe = phases.subscribe(self._on_phase)
        self._color = not no_color
        self._echo = echo
        self._clock = clock
        self._lock = threading.Lock()
        path.parent.mkdir(parents=True, exist_ok=True)
        self._file: IO[str] = path.open("w", encoding="utf-8")
        self._write_file("# planloop progress log\n")
        self._write_file(f"Plan: {plan or '(no plan - review only)'}\n")
        self._write_file(f"Branch: {branch}\n")
        self._write_file(f"Mode: {mode}\n")
        self._write_file(f"Started: {self._timestamp()}\n")
        self._write_file("-" * 60 + "\n\n")

    def __enter__(self) -> "ProgressLogger":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        self._unsubscribe()
        with self._lock:
            if not self._file.closed:
                self._file.close()

    # ---------------------------------------------------------------- output
    def _on_phase(self, phase: Phase) -> None:
        self._phase = phase

    def _timestamp(self) -> str:
        return self._clock().strftime(TIMESTAMP_FORMAT)

    def _write_file(self, text: str) -> None:
        with self._lock:
            if not self._file.closed:
                self._file.write(text)
                self._file.flush()

    def _write_terminal(self, text: str, fg: str | None = None, *, newline: bool = True) -> None:
        styled = typer.style(text, fg=fg) if fg and self._color else text
        self._echo(styled, nl=newline, color=None if self._color else False)

    def _stamped(self, message: str, fg: str | None) -> None:
        timestamp = self._timestamp()
        self._write_file(f"[{timestamp}] {message}\n")
        self._write_terminal(f"[{timestamp}] {message}", fg)

    def print(self, message: str) -> None:
        self._stamped(message, PHASE_COLORS.get(self._phase))

    def print_raw(self, text: str) -> None:
        self._write_file(text)
        self._write_terminal(text, newline=False)

    def print_section(self, section: Section) -> None:
        header = f"\n--- {section.title} ---\n"
        self._write_file(header)
        self._write_terminal(header, WARN_COLOR, newline=False)

    def print_aligned(self, text: str) -> None:
        """Print streamed agent output one timestamped line at a time."""
        text = text.rstrip("\n")
        if not text:
            return
        width = max(40, shutil.get_terminal_size((120, 24)).columns - 22)
        lines: list[str] = []
        for line in text.split("\n"):
            lines.extend(textwrap.wrap(line, width) if len(line) > width else [line])
        phase_color = PHASE_COLORS.get(self._phase)
        for line in lines:
            if not line:
                continue
            display = _indent_list_item(line)
            timestamp = self._timestamp()
            self._write_file(f"[{timestamp}] {display}\n")
            signal = _signal_name(line)
            if signal is not None:
                self._write_terminal(f"[{timestamp}] {signal}", SIGNAL_COLOR)
            else:
                self._write_terminal(f"[{timestamp}] {display}", phase_color)

    def warn(self, message: str) -> None:
        self._stamped(f"WARN: {message}", WARN_COLOR)

    def error(self, message: str) -> None:
        self._stamped(f"ERROR: {message}", ERROR_COLOR)

    # ------------------------------------------------------------ interaction
    def log_question(self, question: str, options: Sequence[str]) -> None:
        self._stamped(f"QUESTION: {question}", INFO_COLOR)
        self._stamped(f"OPTIONS: {', '.join(options)}", INFO_COLOR)

    def log_answer(self, answer: str) -> None:
        self._stamped(f"ANSWER: {answer}", INFO_COLOR)

    def log_draft_review(self, action: str, feedback: str) -> None:
        self._stamped(f"DRAFT REVIEW: {action}", INFO_COLOR)
        if feedback:
            self._stamped(f"FEEDBACK: {feedback}", INFO_COLOR)
