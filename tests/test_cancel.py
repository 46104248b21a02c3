from __future__ import annotations

import threading
import time
from typing import List

from planloop.cancel import CancelToken


def test_sleep_returns_promptly_when_cancelled() -> None:
    cancel = CancelToken()
    timer = threading.Timer(0.05, cancel.cancel, args=("stop",))
    timer.start()

    started = time.monotonic()
    interrupted = cancel.sleep(5)
    elapsed = time.monotonic() - started
    timer.join()

    assert interrupted is True
    assert elapsed < 1.0
    assert cancel.reason == "stop"


def test_sleep_runs_full_duration_without_cancel() -> None:
    cancel = CancelToken()
    assert cancel.sleep(0.01) is False
    assert cancel.sleep(0) is False


def test_callbacks_fire_once_and_can_be_removed() -> None:
    cancel = CancelToken()
    calls: List[str] = []
    cancel.add_callback(lambda: calls.append("kept"))
    remove = cancel.add_callback(lambda: calls.append("removed"))
    remove()

    cancel.cancel("first")
    cancel.cancel("second")

    assert calls == ["kept"]
    assert cancel.cancelled
    assert cancel.reason == "first"


def test_callback_added_after_cancel_runs_immediately() -> None:
    cancel = CancelToken()
    cancel.cancel()
    calls: List[int] = []

    remove = cancel.add_callback(lambda: calls.append(1))
    remove()

    assert calls == [1]
    assert cancel.sleep(10) is True


def test_cancel_interrupting_registration_still_runs_callback() -> None:
    cancel = CancelToken()

    class InterruptedList(list):
        # Simulates a signal handler calling cancel() just before the append lands.
        def append(self, item) -> None:
            cancel.cancel("signal")
            super().append(item)

    cancel._callbacks = InterruptedList()
    calls: List[int] = []

    cancel.add_callback(lambda: calls.append(1))

    assert calls == [1]
    assert list(cancel._callbacks) == []
