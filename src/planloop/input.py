"""Interactive terminal input used by plan-creation mode."""

from __future__ import annotations

from typing import Any, Callable, List, Sequence, Tuple

import typer

from .orchestrator import DraftAction

__all__ = ["OTHER_OPTION", "InputError", "TerminalCollector"]

OTHER_OPTION = "Other (type your own answer)"

_DRAFT_CHOICES = (
    ("Accept", DraftAction.ACCEPT),
    ("Revise", DraftAction.REVISE),
    ("Reject", DraftAction.REJECT),
)


class InputError(RuntimeError):
    """Raised when a question cannot be presented or answered."""


class TerminalCollector:
    """Numbered-menu prompts on the controlling terminal."""

    def __init__(
        self,
        *,
        prompt: Callable[..., Any] = typer.prompt,
        echo: Callable[..., None] = typer.echo,
    ) -> None:
        self._prompt = prompt
        self._echo = echo

    def _choose(self, question: str, options: Sequence[str]) -> int:
        self._echo("")
        self._echo(question)
        for index, option in enumerate(options, start=1):
            self._echo(f"  {index}) {option}")
        while True:
            raw = str(self._prompt(f"Enter number (1-{len(options)})")).strip()
            if raw.isdigit() and 1 <= int(raw) <= len(options):
                return int(raw) - 1
            self._echo(f"invalid selection: {raw!r}")

    def _read_text(self, label: str) -> str:
        while True:
            value = str(self._prompt(label)).strip()
            if value:
                return value
            self._echo("a non-empty answer is required")

    def ask_question(self, question: str, options: Sequence[str]) -> str:
        if not options:
            raise InputError("no options provided")
        choices: List[str] = [option for option in options if option != OTHER_OPTION]
        choices.append(OTHER_OPTION)
        selected = choices[self._choose(question, choices)]
        if selected == OTHER_OPTION:
            return self._read_text("Your answer")
        return selected

    def ask_draft_review(self, plan: str) -> Tuple[DraftAction, str]:
        self._echo("")
        self._echo("=" * 60)
        self._echo(plan.rstrip())
        self._echo("=" * 60)
        index = self._choose("Review the plan draft:", [label for label, _ in _DRAFT_CHOICES])
        action = _DRAFT_CHOICES[index][1]
        if action is DraftAction.REVISE:
            return action, self._read_text("What should change")
        return action, ""
