"""Completion markers and structured signal blocks embedded in agent output.

Agents report progress with literal ``<<<PLANLOOP:NAME>>>`` tokens inside their
free-text answers. Completion signals are bare tokens; QUESTION and PLAN_DRAFT
are blocks that carry a payload and end with ``<<<PLANLOOP:END>>>``.
"""

from __future__ import annotations

import json
from enum import Enum
from typing import List

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

__all__ = [
    "COMPLETION_SIGNALS",
    "END_MARKER",
    "MalformedSignalError",
    "NoSignalError",
    "QuestionPayload",
    "Signal",
    "detect_signal",
    "marker",
    "parse_plan_draft",
    "parse_question",
    "strip_signals",
]

NAMESPACE = "PLANLOOP"


def marker(name: str) -> str:
    """Return the literal token for ``name``."""
    return f"<<<{NAMESPACE}:{name}>>>"


END_MARKER = marker("END")


class Signal(str, Enum):
    """Closed vocabulary of signals an agent may emit."""

    TASK_DONE = marker("ALL_TASKS_DONE")
    TASK_FAILED = marker("TASK_FAILED")
    REVIEW_DONE = marker("REVIEW_DONE")
    EXTERNAL_REVIEW_DONE = marker("CODEX_REVIEW_DONE")
    PLAN_READY = marker("PLAN_READY")
    QUESTION = marker("QUESTION")
    PLAN_DRAFT = marker("PLAN_DRAFT")


# Bare tokens detected while streaming; block signals are parsed afterwards.
COMPLETION_SIGNALS: tuple[Signal, ...] = (
    Signal.TASK_DONE,
    Signal.TASK_FAILED,
    Signal.REVIEW_DONE,
    Signal.EXTERNAL_REVIEW_DONE,
    Signal.PLAN_READY,
)


class NoSignalError(LookupError):
    """Raised when the requested signal block is absent from the output."""


class MalformedSignalError(ValueError):
    """Raised when a signal block is present but cannot be parsed."""


class QuestionPayload(BaseModel):
    """Clarifying question emitted during plan drafting."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    question: str
    options: List[str] = Field(default_factory=list)

    @field_validator("question")
    @classmethod
    def _question_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("question must not be empty")
        return value.strip()

    @field_validator("options")
    @classmethod
    def _options_present(cls, value: List[str]) -> List[str]:
        cleaned = [option.strip() for option in value if option.strip()]
        if not cleaned:
            raise ValueError("at least one option is required")
        return cleaned


def detect_signal(text: str) -> Signal | None:
    """Return the completion signal found in ``text``.

    When several distinct tokens occur, the one that starts last wins so the
    most recent statement of the agent is the one acted upon.
    """
    found: Signal | None = None
    found_at = -1
    for signal in COMPLETION_SIGNALS:
        position = text.rfind(signal.value)
        if position > found_at:
            found, found_at = signal, position
    return found


def strip_signals(text: str) -> str:
    """Remove every completion token from ``text``, keeping surrounding content."""
    for signal in COMPLETION_SIGNALS:
        if signal.value in text:
            text = text.replace(signal.value, "")
    return text


def _extract_block(output: str, signal: Signal) -> str:
    start = output.rfind(signal.value)
    if start == -1:
        raise NoSignalError(f"no {signal.name} signal")
    body_start = start + len(signal.value)
    end = output.find(END_MARKER, body_start)
    if end == -1:
        raise MalformedSignalError(f"{signal.name} signal is missing the {END_MARKER} terminator")
    return output[body_start:end].strip()


def parse_question(output: str) -> QuestionPayload:
    """Parse the last QUESTION block in ``output``."""
    body = _extract_block(output, Signal.QUESTION)
    if not body:
        raise MalformedSignalError("QUESTION signal has an empty payload")
    try:
        return QuestionPayload.model_validate_json(body)
    except ValidationError as error:
        try:
            json.loads(body)
        except json.JSONDecodeError:
            raise MalformedSignalError(f"QUESTION payload is not valid JSON: {body[:120]}") from error
        details = "; ".join(item["msg"] for item in error.errors())
        raise MalformedSignalError(f"QUESTION payload is invalid: {details}") from error


def parse_plan_draft(output: str) -> str:
    """Return the plan text of the last PLAN_DRAFT block in ``output``."""
    body = _extract_block(output, Signal.PLAN_DRAFT)
    if not body:
        raise MalformedSignalError("PLAN_DRAFT signal has an empty payload")
    return body
