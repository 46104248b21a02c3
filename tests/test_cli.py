from __future__ import annotations

import json
import os
import stat
import sys
from pathlib import Path

import pytest
import yaml
from typer.testing import CliRunner

from planloop.cli import app

runner = CliRunner()


@pytest.fixture()
def workspace(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Run the CLI from an empty directory with no user configuration."""

    work = tmp_path / "work"
    work.mkdir()
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    monkeypatch.chdir(work)
    return work


def _fake_agent(directory: Path, text: str) -> Path:
    event = json.dumps({"type": "assistant", "message": {"content": [{"type": "text", "text": text}]}})
    script = directory / "fake-claude"
    script.write_text(f"#!{sys.executable}\nprint({event!r})\n", encoding="utf-8")
    script.chmod(script.stat().st_mode | stat.S_IXUSR)
    return script


def test_missing_plan_file_exits_with_error(workspace: Path) -> None:
    result = runner.invoke(app, ["run", "missing.md"])

    assert result.exit_code == 1
    assert "plan file not found: missing.md" in result.output


def test_tasks_only_requires_plan(workspace: Path) -> None:
    result = runner.invoke(app, ["run", "--tasks-only"])

    assert result.exit_code == 1
    assert "plan file required for tasks-only mode" in result.output


def test_conflicting_mode_flags_are_rejected(workspace: Path) -> None:
    result = runner.invoke(app, ["run", "--review", "--tasks-only"])

    assert result.exit_code == 2
    assert "mutually exclusive" in result.output


def test_empty_plan_description_is_rejected(workspace: Path) -> None:
    result = runner.invoke(app, ["plan", "   "])

    assert result.exit_code == 1
    assert "plan description must not be empty" in result.output


def test_invalid_config_exits_with_error(workspace: Path) -> None:
    (workspace / "plan.md").write_text("- [x] done\n", encoding="utf-8")
    bad = workspace / "bad.yaml"
    bad.write_text(yaml.safe_dump({"iteration": {"delay_ms": -1}}), encoding="utf-8")

    result = runner.invoke(app, ["run", "plan.md", "--tasks-only", "--config", str(bad)])

    assert result.exit_code == 1
    assert "Invalid configuration at iteration.delay_ms" in result.output


@pytest.mark.skipif(os.name != "posix", reason="uses an executable script as the agent")
def test_tasks_only_run_with_fake_agent(workspace: Path) -> None:
    (workspace / "plan.md").write_text("# Plan\n- [x] only step\n", encoding="utf-8")
    agent = _fake_agent(workspace, "All done <<<PLANLOOP:ALL_TASKS_DONE>>>")
    config = workspace / "planloop.yaml"
    config.write_text(
        yaml.safe_dump({"claude": {"command": str(agent)}, "iteration": {"delay_ms": 0}}),
        encoding="utf-8",
    )

    result = runner.invoke(app, ["run", "plan.md", "--tasks-only", "--no-color", "--config", str(config)])

    assert result.exit_code == 0, result.output
    progress = (workspace / "progress-plan.txt").read_text(encoding="utf-8")
    assert "Mode: tasks-only" in progress
    assert "All done <<<PLANLOOP:ALL_TASKS_DONE>>>" in progress
    assert "task phase completed successfully" in progress


@pytest.mark.skipif(os.name != "posix", reason="uses an executable script as the agent")
def test_agent_failure_exits_with_error(workspace: Path) -> None:
    (workspace / "plan.md").write_text("# Plan\n- [ ] step\n", encoding="utf-8")
    agent = _fake_agent(workspace, "cannot continue <<<PLANLOOP:TASK_FAILED>>>")
    config = workspace / "planloop.yaml"
    config.write_text(
        yaml.safe_dump(
            {"claude": {"command": str(agent)}, "iteration": {"delay_ms": 0, "task_retry_count": 0}}
        ),
        encoding="utf-8",
    )

    result = runner.invoke(app, ["run", "plan.md", "--tasks-only", "--config", str(config)])

    assert result.exit_code == 1
    assert "task execution failed after 0 retries" in result.output
