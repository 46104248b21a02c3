"""CLI entry point for running plans and drafting new ones."""

from __future__ import annotations

import logging
import signal
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

import typer

from .cancel import CancelToken
from .config import Settings, SettingsError, load_settings
from .input import TerminalCollector
from .orchestrator import (
    Mode,
    Orchestrator,
    OrchestratorConfig,
    OrchestratorError,
    RunCancelled,
)
from .progress import ProgressLogger, progress_path
from .status import Phase, PhaseHolder
from .tools.vcs import FALLBACK_BRANCH, GitError, GitRepository

APP_HELP = "Drive coding-agent CLIs through plan execution, review and external review loops."

EXIT_ERROR = 1
EXIT_CANCELLED = 130

LOGGER = logging.getLogger(__name__)

app = typer.Typer(help=APP_HELP, no_args_is_help=True)

_PLAN_REQUIRED = (Mode.FULL, Mode.TASKS_ONLY)


def _fail(message: str) -> typer.Exit:
    typer.secho(f"error: {message}", err=True, fg=typer.colors.RED)
    return typer.Exit(code=EXIT_ERROR)


def _configure_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _select_mode(review: bool, external_only: bool, tasks_only: bool) -> Mode:
    chosen = [
        mode
        for flag, mode in (
            (review, Mode.REVIEW),
            (external_only, Mode.EXTERNAL_ONLY),
            (tasks_only, Mode.TASKS_ONLY),
        )
        if flag
    ]
    if len(chosen) > 1:
        raise typer.BadParameter("--review, --external-only and --tasks-only are mutually exclusive")
    return chosen[0] if chosen else Mode.FULL


def _load(config_path: Optional[Path], max_iterations: Optional[int]) -> Settings:
    overrides: List[Dict[str, Any]] = []
    if max_iterations is not None:
        overrides.append({"iteration": {"max_iterations": max_iterations}})
    try:
        return load_settings(config_path, overrides=overrides)
    except SettingsError as error:
        raise _fail(str(error)) from error


def _discover_repo() -> Optional[GitRepository]:
    try:
        return GitRepository.discover()
    except GitError as error:
        LOGGER.debug("no git repository: %s", error)
        return None


def _branch_name(repo: Optional[GitRepository]) -> str:
    if repo is None:
        return ""
    try:
        return repo.current_branch()
    except GitError as error:
        LOGGER.debug("unable to read current branch: %s", error)
        return ""


@contextmanager
def _cancel_on_signals(cancel: CancelToken) -> Iterator[None]:
    """Cancel ``cancel`` on SIGINT/SIGTERM for the duration of the block."""

    def _handler(signum: int, _frame: Any) -> None:
        cancel.cancel(f"interrupted by {signal.Signals(signum).name}")

    previous = {}
    for signum in (signal.SIGINT, signal.SIGTERM):
        previous[signum] = signal.signal(signum, _handler)
    try:
        yield
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)


def _execute(
    mode: Mode,
    *,
    plan_file: Optional[Path],
    description: str,
    max_iterations: Optional[int],
    config_path: Optional[Path],
    debug: bool,
    no_color: bool,
) -> None:
    _configure_logging(debug)
    if plan_file is not None and not plan_file.is_file():
        raise _fail(f"plan file not found: {plan_file}")
    if mode in _PLAN_REQUIRED and plan_file is None:
        raise _fail(f"plan file required for {mode.value} mode")

    settings = _load(config_path, max_iterations)
    repo = _discover_repo()
    default_branch = repo.default_branch() if repo is not None else FALLBACK_BRANCH

    external_review = settings.external_review_enabled or mode is Mode.EXTERNAL_ONLY
    progress_file = progress_path(plan_file, mode.value)
    config = OrchestratorConfig(
        mode=mode,
        plan_file=plan_file,
        plan_description=description,
        progress_file=progress_file,
        max_iterations=settings.iteration.max_iterations,
        iteration_delay=settings.iteration.delay_ms / 1000,
        task_retry_count=settings.iteration.task_retry_count,
        external_review_enabled=external_review,
        finalize_enabled=settings.finalize_enabled,
        default_branch=default_branch,
    )

    cancel = CancelToken()
    phases = PhaseHolder(Phase.PLAN if mode is Mode.PLAN else Phase.TASK)
    try:
        logger = ProgressLogger(
            progress_file,
            phases,
            plan=str(plan_file) if plan_file else "",
            mode=mode.value,
            branch=_branch_name(repo),
            no_color=no_color,
        )
    except OSError as error:
        raise _fail(f"create progress file: {error}") from error

    with logger, _cancel_on_signals(cancel):
        orchestrator = Orchestrator.from_settings(
            settings,
            config,
            logger=logger,
            cancel=cancel,
            phases=phases,
            input_collector=TerminalCollector() if mode is Mode.PLAN else None,
            git_head=repo.head_hash if repo is not None else None,
        )
        try:
            orchestrator.run()
        except RunCancelled as error:
            logger.error(f"cancelled: {error}")
            raise typer.Exit(code=EXIT_CANCELLED) from error
        except OrchestratorError as error:
            logger.error(str(error))
            raise _fail(str(error)) from error


@app.command()
def run(
    plan_file: Optional[Path] = typer.Argument(None, help="Markdown plan with '- [ ]' checklist items."),
    review: bool = typer.Option(False, "--review", help="Skip tasks and run the review pipeline."),
    external_only: bool = typer.Option(
        False, "--external-only", help="Run only the external review loop and the review after it."
    ),
    tasks_only: bool = typer.Option(False, "--tasks-only", help="Run only the task loop."),
    max_iterations: Optional[int] = typer.Option(None, "--max-iterations", min=1, help="Task iteration budget."),
    config: Optional[Path] = typer.Option(None, "--config", help="Extra configuration file (highest precedence)."),
    debug: bool = typer.Option(False, "--debug", help="Enable debug logging."),
    no_color: bool = typer.Option(False, "--no-color", help="Disable coloured output."),
) -> None:
    """Execute a plan, then review the result."""
    mode = _select_mode(review, external_only, tasks_only)
    _execute(
        mode,
        plan_file=plan_file,
        description="",
        max_iterations=max_iterations,
        config_path=config,
        debug=debug,
        no_color=no_color,
    )


@app.command()
def plan(
    description: str = typer.Argument(..., help="What the new plan should achieve."),
    max_iterations: Optional[int] = typer.Option(None, "--max-iterations", min=1, help="Iteration budget."),
    config: Optional[Path] = typer.Option(None, "--config", help="Extra configuration file (highest precedence)."),
    debug: bool = typer.Option(False, "--debug", help="Enable debug logging."),
    no_color: bool = typer.Option(False, "--no-color", help="Disable coloured output."),
) -> None:
    """Draft a new plan interactively."""
    if not description.strip():
        raise _fail("plan description must not be empty")
    _execute(
        Mode.PLAN,
        plan_file=None,
        description=description,
        max_iterations=max_iterations,
        config_path=config,
        debug=debug,
        no_color=no_color,
    )


if __name__ == "__main__":
    app()
