"""Subprocess launching with whole-tree cleanup on cancellation.

Each child runs in its own process group (a new session on POSIX). When the
shared :class:`~planloop.cancel.CancelToken` fires, a watcher thread sends
``SIGTERM`` to the *group*, waits a short grace period, then sends ``SIGKILL``
to the group, so tools the agent CLI shelled out to are reclaimed as well.

Windows has no process groups in this sense; there only the direct child is
killed and its descendants may outlive cancellation.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
import time
from enum import Enum
from typing import IO, Mapping, Sequence

from ..cancel import CancelToken
from .errors import ExecutionCancelled, LaunchError

__all__ = [
    "GRACEFUL_SHUTDOWN_DELAY",
    "ProcessExitError",
    "ProcessHandle",
    "ProcessState",
    "launch",
]

LOGGER = logging.getLogger(__name__)

GRACEFUL_SHUTDOWN_DELAY = 0.1

_POSIX = os.name == "posix"


class ProcessExitError(RuntimeError):
    """Non-zero exit reported by :meth:`ProcessHandle.wait`."""

    def __init__(self, returncode: int) -> None:
        self.returncode = returncode
        if returncode < 0:
            detail = f"terminated by signal {-returncode}"
        else:
            detail = f"exit status {returncode}"
        super().__init__(f"command wait: {detail}")


class ProcessState(str, Enum):
    """Lifecycle of a launched process as seen by its watcher."""

    RUNNING = "running"
    TERMINATING = "terminating"
    KILLED = "killed"
    EXITED = "exited"


class ProcessHandle:
    """Owns one started subprocess and its process group.

    ``wait`` must eventually be called; it reaps the child, stops the watcher
    and closes the pipes. Repeated calls return the cached outcome.
    """

    def __init__(
        self,
        process: subprocess.Popen[str],
        cancel: CancelToken,
        *,
        grace_period: float = GRACEFUL_SHUTDOWN_DELAY,
    ) -> None:
        self._process = process
        self._cancel = cancel
        self._grace_period = grace_period
        self._state = ProcessState.RUNNING
        self._state_lock = threading.Lock()
        self._wait_lock = threading.Lock()
        self._waited = False
        self._error: ProcessExitError | None = None
        self._done = threading.Event()
        self._wake = threading.Event()
        self._unsubscribe = cancel.add_callback(self._wake.set)
        self._watcher = threading.Thread(
            target=self._watch,
            name=f"procgroup-{process.pid}",
            daemon=True,
        )
        self._watcher.start()

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def stdout(self) -> IO[str] | None:
        return self._process.stdout

    @property
    def stderr(self) -> IO[str] | None:
        return self._process.stderr

    @property
    def state(self) -> ProcessState:
        with self._state_lock:
            return self._state

    def _transition(self, state: ProcessState) -> None:
        with self._state_lock:
            self._state = state

    def _watch(self) -> None:
        self._wake.wait()
        if self._done.is_set() or not self._cancel.cancelled:
            return
        self._terminate()

    def _begin_termination(self) -> bool:
        with self._state_lock:
            if self._state is not ProcessState.RUNNING:
                return False
            self._state = ProcessState.TERMINATING
            return True

    def terminate(self) -> None:
        """Kill the process group without cancelling the shared token.

        Used when the reader gives up on the output early; a child blocked
        on a full pipe would otherwise never exit. No-op once termination
        has started or the process has been reaped.
        """
        if self._done.is_set():
            return
        self._terminate()

    def _terminate(self) -> None:
        if not self._begin_termination():
            return
        pid = self._process.pid
        if pid <= 0:
            LOGGER.warning("invalid PID %d, skipping process group kill", pid)
            return

        if not _POSIX:
            try:
                self._process.kill()
            except OSError as error:
                LOGGER.warning("kill failed for pid %d: %s", pid, error)
            self._transition(ProcessState.KILLED)
            return

        self._signal_group(pid, signal.SIGTERM)
        # Not interruptible: the group must still receive SIGKILL.
        time.sleep(self._grace_period)
        self._signal_group(pid, signal.SIGKILL)
        self._transition(ProcessState.KILLED)

    @staticmethod
    def _signal_group(pgid: int, signum: signal.Signals) -> None:
        try:
            os.killpg(pgid, signum)
        except ProcessLookupError:
            pass
        except OSError as error:
            LOGGER.warning("%s failed for pgid %d: %s", signum.name, pgid, error)

    def wait(self) -> ProcessExitError | None:
        """Wait for the process to finish and release its resources.

        Returns ``None`` on a zero exit status, otherwise a
        :class:`ProcessExitError`. The same object is returned on every call.
        """
        with self._wait_lock:
            if self._waited:
                return self._error
            returncode = self._process.wait()
            self._waited = True
            self._done.set()
            self._wake.set()
            self._unsubscribe()
            # Let an in-flight termination deliver SIGKILL to the group first.
            self._watcher.join()
            if self.state is ProcessState.RUNNING:
                self._transition(ProcessState.EXITED)
            for stream in (self._process.stdout, self._process.stderr):
                if stream is not None:
                    stream.close()
            if returncode != 0:
                self._error = ProcessExitError(returncode)
            return self._error


def launch(
    cancel: CancelToken,
    command: str,
    args: Sequence[str],
    *,
    merge_stderr: bool = True,
    env: Mapping[str, str] | None = None,
    cwd: str | os.PathLike[str] | None = None,
    grace_period: float = GRACEFUL_SHUTDOWN_DELAY,
) -> ProcessHandle:
    """Start ``command`` in its own process group and return its handle.

    With ``merge_stderr`` the child's stderr is folded into stdout; otherwise
    both pipes are exposed separately. Raises
    :class:`~planloop.executors.errors.ExecutionCancelled` without spawning when
    the token is already cancelled, and :class:`~planloop.executors.errors.LaunchError`
    when the process cannot be started.
    """
    if cancel.cancelled:
        raise ExecutionCancelled("cancelled before launch")

    argv = [command, *args]
    LOGGER.debug("launching %s (%d args)", command, len(args))
    try:
        process = subprocess.Popen(  # noqa: S603 - argv assembled from configuration
            argv,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT if merge_stderr else subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
            bufsize=1,
            env=dict(env) if env is not None else None,
            cwd=cwd,
            start_new_session=_POSIX,
        )
    except OSError as error:
        raise LaunchError(f"start command {command}: {error}") from error

    return ProcessHandle(process, cancel, grace_period=grace_period)
