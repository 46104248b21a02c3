"""Execution phases, the observable current-phase holder and section headers."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List

__all__ = ["Phase", "PhaseHolder", "PhaseListener", "Section"]


class Phase(str, Enum):
    """Display label for the kind of work currently running."""

    TASK = "task"
    REVIEW = "review"
    EXTERNAL_REVIEW = "external-review"
    SECONDARY_EVAL = "secondary-eval"
    PLAN = "plan"
    FINALIZE = "finalize"


PhaseListener = Callable[[Phase], None]


class PhaseHolder:
    """Single-writer holder of the current :class:`Phase`.

    The orchestrator is the only writer; readers either call :attr:`current`
    or subscribe to be told about every change. Listeners are invoked outside
    the lock, in registration order.
    """

    def __init__(self, initial: Phase = Phase.TASK) -> None:
        self._phase = initial
        self._lock = threading.Lock()
        self._listeners: List[PhaseListener] = []

    @property
    def current(self) -> Phase:
        with self._lock:
            return self._phase

    def subscribe(self, listener: PhaseListener) -> Callable[[], None]:
        """Register ``listener`` and return a function that removes it."""
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def set(self, phase: Phase) -> None:
        with self._lock:
            changed = phase is not self._phase
            self._phase = phase
            listeners = list(self._listeners) if changed else []
        for listener in listeners:
            listener(phase)


@dataclass(frozen=True, slots=True)
class Section:
    """A titled header printed before each loop iteration."""

    title: str

    @classmethod
    def generic(cls, title: str) -> "Section":
        return cls(title)

    @classmethod
    def task_iteration(cls, iteration: int) -> "Section":
        return cls(f"task iteration {iteration}")

    @classmethod
    def review_iteration(cls, iteration: int, suffix: str = "") -> "Section":
        return cls(f"review {iteration}{suffix}")

    @classmethod
    def external_iteration(cls, iteration: int) -> "Section":
        return cls(f"external review iteration {iteration}")

    @classmethod
    def evaluation(cls) -> "Section":
        return cls("evaluating external review findings")

    @classmethod
    def plan_iteration(cls, iteration: int) -> "Section":
        return cls(f"plan iteration {iteration}")

    @classmethod
    def finalize(cls) -> "Section":
        return cls("finalize")
