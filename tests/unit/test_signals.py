from __future__ import annotations

import json

import pytest

from planloop.signals import (
    END_MARKER,
    MalformedSignalError,
    NoSignalError,
    Signal,
    detect_signal,
    marker,
    parse_plan_draft,
    parse_question,
    strip_signals,
)


def _question_block(payload: object) -> str:
    body = payload if isinstance(payload, str) else json.dumps(payload)
    return f"Need input.\n{Signal.QUESTION.value}\n{body}\n{END_MARKER}\n"


def test_marker_uses_planloop_namespace() -> None:
    assert marker("ALL_TASKS_DONE") == "<<<PLANLOOP:ALL_TASKS_DONE>>>"
    assert Signal.EXTERNAL_REVIEW_DONE.value == "<<<PLANLOOP:CODEX_REVIEW_DONE>>>"


def test_detect_signal_returns_none_without_markers() -> None:
    assert detect_signal("all good, nothing to report") is None


def test_detect_signal_prefers_last_occurrence() -> None:
    text = (
        f"first attempt {Signal.TASK_FAILED.value}\n"
        f"retried and fixed {Signal.TASK_DONE.value}\n"
    )
    assert detect_signal(text) is Signal.TASK_DONE

    reversed_text = f"{Signal.TASK_DONE.value} then {Signal.TASK_FAILED.value}"
    assert detect_signal(reversed_text) is Signal.TASK_FAILED


def test_strip_signals_keeps_surrounding_text() -> None:
    text = f"Review finished.{Signal.REVIEW_DONE.value} Bye"
    assert strip_signals(text) == "Review finished. Bye"
    assert strip_signals(Signal.REVIEW_DONE.value) == ""


def test_parse_question_reads_last_block() -> None:
    output = _question_block({"question": "Old?", "options": ["a"]}) + _question_block(
        {"question": " Which database? ", "options": ["sqlite", " ", "postgres"]}
    )

    payload = parse_question(output)

    assert payload.question == "Which database?"
    assert payload.options == ["sqlite", "postgres"]


def test_parse_question_absent_raises_no_signal() -> None:
    with pytest.raises(NoSignalError):
        parse_question("just some text")


@pytest.mark.parametrize(
    "body",
    [
        "{not json",
        {"question": "Which?", "options": []},
        {"question": "   ", "options": ["a"]},
        "",
    ],
)
def test_parse_question_rejects_bad_payloads(body: object) -> None:
    with pytest.raises(MalformedSignalError):
        parse_question(_question_block(body))


def test_parse_question_without_terminator_is_malformed() -> None:
    output = f'{Signal.QUESTION.value}\n{{"question": "Which?", "options": ["a"]}}'
    with pytest.raises(MalformedSignalError, match="terminator"):
        parse_question(output)


def test_parse_plan_draft_returns_trimmed_body() -> None:
    output = f"Here you go\n{Signal.PLAN_DRAFT.value}\n# Plan\n- [ ] step\n{END_MARKER}\ntrailing"
    assert parse_plan_draft(output) == "# Plan\n- [ ] step"


def test_parse_plan_draft_empty_body_is_malformed() -> None:
    with pytest.raises(MalformedSignalError):
        parse_plan_draft(f"{Signal.PLAN_DRAFT.value}\n   \n{END_MARKER}")
