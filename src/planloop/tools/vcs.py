"""Minimal git helpers.

Only read-only queries are needed here: the current ``HEAD`` commit (used to
notice that a review iteration changed nothing) and the repository's default
branch name (substituted into review prompts).
"""

from __future__ import annotations

from pathlib import Path
from typing import Sequence

import logging
import subprocess

LOGGER = logging.getLogger(__name__)

FALLBACK_BRANCH = "master"
_COMMON_BRANCHES = ("main", "master", "trunk", "develop")


class GitError(RuntimeError):
    """Raised when a git command fails or the repository cannot be used."""


class GitRepository:
    """Lightweight wrapper around ``git`` commands."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).resolve()
        if not (self.root / ".git").exists():
            raise GitError(f"Not a git repository: {self.root}")

    @classmethod
    def discover(cls, start: Path | str | None = None) -> "GitRepository":
        """Locate the nearest git repository starting from ``start``."""

        path = Path(start or Path.cwd()).resolve()
        for candidate in (path, *path.parents):
            if (candidate / ".git").exists():
                return cls(candidate)
        raise GitError(f"Unable to locate a git repository from {path}")

    # ------------------------------------------------------------------ git IO
    def _run_git(self, args: Sequence[str], *, check: bool = True) -> subprocess.CompletedProcess[str]:
        command = ["git", *args]
        try:
            process = subprocess.run(
                command,
                cwd=self.root,
                capture_output=True,
                text=False,
                check=False,
            )
        except OSError as exc:
            raise GitError(f"git {' '.join(args)} failed: {exc}") from exc
        stdout = process.stdout.decode("utf-8", errors="replace") if process.stdout else ""
        stderr = process.stderr.decode("utf-8", errors="replace") if process.stderr else ""
        result = subprocess.CompletedProcess(process.args, process.returncode, stdout, stderr)
        if check and result.returncode != 0:
            message = result.stderr.strip() or result.stdout.strip() or "unknown git error"
            raise GitError(f"git {' '.join(args)} failed: {message}")
        return result

    def git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        """Execute ``git`` with ``args`` relative to the repository root."""

        return self._run_git(list(args), check=check)

    # ----------------------------------------------------------------- queries
    def head_hash(self) -> str:
        """Return the full hash of ``HEAD``.

        Raises :class:`GitError` when the repository has no commits yet.
        """

        result = self._run_git(["rev-parse", "--verify", "HEAD"])
        value = result.stdout.strip()
        if not value:
            raise GitError("git rev-parse HEAD returned no hash")
        return value

    def _branch_exists(self, name: str) -> bool:
        probe = self._run_git(["show-ref", "--verify", "--quiet", f"refs/heads/{name}"], check=False)
        return probe.returncode == 0

    def _origin_head(self) -> str | None:
        probe = self._run_git(["symbolic-ref", "--quiet", "--short", "refs/remotes/origin/HEAD"], check=False)
        if probe.returncode != 0:
            return None
        target = probe.stdout.strip()
        if not target:
            return None
        if not target.startswith("origin/"):
            return target
        name = target[len("origin/") :]
        # Without a local branch the remote-tracking name is what git understands.
        return name if self._branch_exists(name) else target

    def default_branch(self) -> str:
        """Return the repository's default branch name.

        ``origin/HEAD`` is preferred; otherwise the first existing branch out
        of main, master, trunk and develop; otherwise ``master``.
        """

        try:
            origin = self._origin_head()
            if origin:
                return origin
            for name in _COMMON_BRANCHES:
                if self._branch_exists(name):
                    return name
        except GitError as exc:
            LOGGER.debug("default branch detection failed: %s", exc)
        return FALLBACK_BRANCH

    def current_branch(self) -> str:
        """Return the checked-out branch name (``HEAD`` when detached)."""

        return self._run_git(["rev-parse", "--abbrev-ref", "HEAD"]).stdout.strip()
