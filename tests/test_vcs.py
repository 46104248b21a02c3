from __future__ import annotations

import subprocess
from pathlib import Path

import pytest

from planloop.tools.vcs import FALLBACK_BRANCH, GitError, GitRepository


def _git(repo: Path, *args: str) -> str:
    return subprocess.run(
        ["git", *args], cwd=repo, check=True, capture_output=True, text=True
    ).stdout.strip()


def test_head_hash_tracks_commits(git_repo: Path) -> None:
    repo = GitRepository(git_repo)
    before = repo.head_hash()

    (git_repo / "new.txt").write_text("x\n", encoding="utf-8")
    _git(git_repo, "add", ".")
    _git(git_repo, "commit", "-m", "Add file")

    after = repo.head_hash()
    assert len(before) == 40
    assert after != before
    assert after == _git(git_repo, "rev-parse", "HEAD")


def test_head_hash_without_commits_raises(tmp_path: Path) -> None:
    _git(tmp_path, "init", "-b", "main")

    with pytest.raises(GitError):
        GitRepository(tmp_path).head_hash()


def test_default_and_current_branch(git_repo: Path) -> None:
    repo = GitRepository(git_repo)
    _git(git_repo, "checkout", "-b", "feature/csv")

    assert repo.default_branch() == "main"
    assert repo.current_branch() == "feature/csv"


def test_default_branch_falls_back(git_repo: Path) -> None:
    repo = GitRepository(git_repo)
    _git(git_repo, "branch", "-m", "main", "work")
    assert repo.default_branch() == FALLBACK_BRANCH

    _git(git_repo, "branch", "trunk")
    assert repo.default_branch() == "trunk"


def test_default_branch_prefers_origin_head(git_repo: Path, tmp_path: Path) -> None:
    clone = tmp_path / "clone"
    _git(tmp_path, "clone", str(git_repo), str(clone))
    _git(clone, "branch", "-m", "main", "local-only")

    assert GitRepository(clone).default_branch() == "origin/main"


def test_discover_walks_up_and_rejects_non_repos(git_repo: Path, tmp_path: Path) -> None:
    nested = git_repo / "a" / "b"
    nested.mkdir(parents=True)
    assert GitRepository.discover(nested).root == git_repo.resolve()

    outside = tmp_path / "plain"
    outside.mkdir()
    with pytest.raises(GitError):
        GitRepository(outside)
