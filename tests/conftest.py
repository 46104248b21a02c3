from __future__ import annotations

import io
import os
import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Sequence, Tuple

import pytest

# Keep Typer/Rich error panels from wrapping messages at the default 80 columns.
os.environ.setdefault("TERMINAL_WIDTH", "200")

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from planloop.executors.procgroup import ProcessExitError  # noqa: E402


class FakeHandle:
    """Stand-in for a launched process whose output is already known."""

    def __init__(self, stdout: str = "", stderr: str = "", returncode: int = 0) -> None:
        self.stdout = io.StringIO(stdout)
        self.stderr = io.StringIO(stderr)
        self.returncode = returncode
        self.wait_calls = 0
        self.terminated = False

    def terminate(self) -> None:
        self.terminated = True

    def wait(self) -> ProcessExitError | None:
        self.wait_calls += 1
        return ProcessExitError(self.returncode) if self.returncode else None


@dataclass
class RecordingLauncher:
    """Launcher double that records calls and returns a prepared handle."""

    handle: FakeHandle
    calls: List[Tuple[str, Tuple[str, ...], dict]] = field(default_factory=list)

    def __call__(self, cancel, command: str, args: Sequence[str], **options) -> FakeHandle:
        self.calls.append((command, tuple(args), options))
        return self.handle


@pytest.fixture()
def launcher_for() -> Callable[..., RecordingLauncher]:
    """Build a launcher whose process prints ``stdout``/``stderr`` and exits."""

    def _build(stdout: str = "", stderr: str = "", returncode: int = 0) -> RecordingLauncher:
        return RecordingLauncher(FakeHandle(stdout, stderr, returncode))

    return _build


@pytest.fixture()
def git_repo(tmp_path: Path) -> Path:
    """Create a git repository with one commit on ``main``."""

    repo_root = tmp_path / "repo"
    repo_root.mkdir()

    def run_git(*cmd: str) -> None:
        subprocess.run(
            ["git", *cmd],
            cwd=repo_root,
            check=True,
            capture_output=True,
            text=True,
        )

    run_git("init", "-b", "main")
    run_git("config", "user.email", "agent@example.com")
    run_git("config", "user.name", "Planloop Tests")
    (repo_root / "README.md").write_text("fixture\n", encoding="utf-8")
    run_git("add", ".")
    run_git("commit", "-m", "Initial commit")
    return repo_root
