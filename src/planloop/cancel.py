"""Cooperative cancellation shared by the orchestrator and every subprocess it starts."""

from __future__ import annotations

import threading
from typing import Callable, List

__all__ = ["CancelToken"]


class CancelToken:
    """Thread-safe, one-shot cancellation flag with change callbacks.

    A single token is created per run and threaded through every loop and
    executor call. Callbacks registered with :meth:`add_callback` fire exactly
    once, on the thread that calls :meth:`cancel`, which lets a process watcher
    wait on "cancelled or finished" without polling.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        # RLock: cancel() is invoked from signal handlers that may interrupt
        # the main thread while it holds the lock inside add_callback().
        self._lock = threading.RLock()
        self._callbacks: List[Callable[[], None]] = []
        self._reason = ""

    @property
    def cancelled(self) -> bool:
        """Return ``True`` once :meth:`cancel` has been called."""
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        """Trigger cancellation and notify registered callbacks."""
        with self._lock:
            if self._event.is_set():
                return
            self._reason = reason
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()
        for callback in callbacks:
            callback()

    def add_callback(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register ``callback`` and return a function that unregisters it.

        When the token is already cancelled the callback runs immediately.
        """
        run_now = False
        with self._lock:
            if self._event.is_set():
                run_now = True
            else:
                self._callbacks.append(callback)
                # A signal handler may have run cancel() re-entrantly before
                # the append; that cancel() already drained the list.
                if self._event.is_set() and callback in self._callbacks:
                    self._callbacks.remove(callback)
                    run_now = True
        if run_now:
            callback()
            return lambda: None

        def _remove() -> None:
            with self._lock:
                try:
                    self._callbacks.remove(callback)
                except ValueError:
                    pass

        return _remove

    def wait(self, timeout: float | None = None) -> bool:
        """Block until cancelled or ``timeout`` elapses; return the cancelled state."""
        return self._event.wait(timeout)

    def sleep(self, seconds: float) -> bool:
        """Sleep for ``seconds`` unless cancelled first.

        Returns ``True`` when the sleep was interrupted by cancellation.
        """
        if seconds <= 0:
            return self._event.is_set()
        return self._event.wait(seconds)
