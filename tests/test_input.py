from __future__ import annotations

from typing import Iterable, List

import pytest

from planloop.input import OTHER_OPTION, InputError, TerminalCollector
from planloop.orchestrator import DraftAction


class ScriptedPrompt:
    def __init__(self, replies: Iterable[str]) -> None:
        self._replies = list(replies)
        self.labels: List[str] = []

    def __call__(self, label: str, **kwargs) -> str:
        self.labels.append(label)
        return self._replies.pop(0)


def _collector(replies: Iterable[str]) -> tuple[TerminalCollector, ScriptedPrompt, List[str]]:
    prompt = ScriptedPrompt(replies)
    echoed: List[str] = []
    collector = TerminalCollector(prompt=prompt, echo=lambda message="", **kwargs: echoed.append(message))
    return collector, prompt, echoed


def test_question_reprompts_on_invalid_selection() -> None:
    collector, prompt, echoed = _collector(["9", "abc", "2"])

    answer = collector.ask_question("Which database?", ["sqlite", "postgres"])

    assert answer == "postgres"
    assert prompt.labels == ["Enter number (1-3)"] * 3
    assert f"  3) {OTHER_OPTION}" in echoed
    assert "invalid selection: '9'" in echoed


def test_other_option_reads_free_text() -> None:
    collector, _, echoed = _collector(["3", "  ", "duckdb"])

    assert collector.ask_question("Which database?", ["sqlite", "postgres"]) == "duckdb"
    assert "a non-empty answer is required" in echoed


def test_question_without_options_fails() -> None:
    collector, _, _ = _collector([])

    with pytest.raises(InputError):
        collector.ask_question("Anything?", [])


@pytest.mark.parametrize(
    "replies, expected",
    [
        (["1"], (DraftAction.ACCEPT, "")),
        (["2", "", "split section 2"], (DraftAction.REVISE, "split section 2")),
        (["3"], (DraftAction.REJECT, "")),
    ],
)
def test_draft_review_choices(replies: List[str], expected: tuple) -> None:
    collector, _, echoed = _collector(replies)

    assert collector.ask_draft_review("# Plan\n- [ ] step\n") == expected
    assert "# Plan\n- [ ] step" in echoed
