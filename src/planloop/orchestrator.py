"""Phase and iteration state machine driving the coding agents."""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Protocol, Sequence, Tuple

from .cancel import CancelToken
from .config import Settings
from .executors import (
    ClaudeExecutor,
    CodexExecutor,
    ExecutionCancelled,
    ExecutionResult,
    Executor,
    QwenExecutor,
)
from .prompts import PromptBuilder, PromptTemplates, load_templates, summarize_review
from .signals import MalformedSignalError, NoSignalError, Signal, parse_plan_draft, parse_question
from .status import Phase, PhaseHolder, Section

__all__ = [
    "ConfigurationError",
    "DraftAction",
    "GitHeadAccessor",
    "InputCollector",
    "IterationLimitError",
    "Mode",
    "Orchestrator",
    "OrchestratorConfig",
    "OrchestratorError",
    "PhaseError",
    "RetriesExhaustedError",
    "RunCancelled",
    "RunLogger",
    "UserRejectedPlanError",
    "has_unchecked_items",
]

LOGGER = logging.getLogger(__name__)

UNCHECKED_ITEM = "- [ ]"


class Mode(str, Enum):
    """Top-level pipeline selection."""

    FULL = "full"
    REVIEW = "review"
    EXTERNAL_ONLY = "external-only"
    TASKS_ONLY = "tasks-only"
    PLAN = "plan"


_REVIEW_MODES = (Mode.FULL, Mode.REVIEW, Mode.EXTERNAL_ONLY)


class DraftAction(str, Enum):
    ACCEPT = "accept"
    REVISE = "revise"
    REJECT = "reject"


# --------------------------------------------------------------------- errors
class OrchestratorError(RuntimeError):
    """Base class for errors that end an orchestration run."""


class ConfigurationError(OrchestratorError):
    """The run cannot start with the given configuration."""


class PhaseError(OrchestratorError):
    """A phase failed; the underlying error is chained as ``__cause__``."""

    def __init__(self, phase: str, message: str) -> None:
        self.phase = phase
        super().__init__(f"{phase}: {message}")


class RetriesExhaustedError(OrchestratorError):
    """The task kept reporting failure after every allowed retry."""


class IterationLimitError(OrchestratorError):
    """A loop used up its iteration budget without a completion signal."""

    def __init__(self, phase: str, limit: int) -> None:
        self.phase = phase
        self.limit = limit
        super().__init__(f"{phase}: max iterations ({limit}) reached without completion")


class UserRejectedPlanError(OrchestratorError):
    """The user rejected the drafted plan."""


class RunCancelled(OrchestratorError):
    """The run was stopped through the cancel token."""


# ------------------------------------------------------------- collaborators
class RunLogger(Protocol):
    def print(self, message: str) -> None: ...

    def print_raw(self, text: str) -> None: ...

    def print_section(self, section: Section) -> None: ...

    def print_aligned(self, text: str) -> None: ...

    def warn(self, message: str) -> None: ...

    def log_question(self, question: str, options: Sequence[str]) -> None: ...

    def log_answer(self, answer: str) -> None: ...

    def log_draft_review(self, action: str, feedback: str) -> None: ...


class InputCollector(Protocol):
    def ask_question(self, question: str, options: Sequence[str]) -> str: ...

    def ask_draft_review(self, plan: str) -> Tuple[DraftAction, str]: ...


GitHeadAccessor = Callable[[], str]


@dataclass(frozen=True, slots=True)
class OrchestratorConfig:
    """Read-only parameters of one orchestration run."""

    mode: Mode = Mode.FULL
    plan_file: Optional[Path] = None
    plan_description: str = ""
    progress_file: Optional[Path] = None
    max_iterations: int = 50
    iteration_delay: float = 2.0
    task_retry_count: int = 1
    external_review_enabled: bool = True
    finalize_enabled: bool = False
    default_branch: str = "master"

    @property
    def review_iterations(self) -> int:
        return max(3, self.max_iterations // 10)

    @property
    def external_iterations(self) -> int:
        return max(3, self.max_iterations // 5)

    @property
    def plan_iterations(self) -> int:
        return max(5, self.max_iterations // 5)


def has_unchecked_items(plan_file: Path) -> bool:
    """Return ``True`` while the plan still lists an unchecked checklist item.

    Falls back to ``<plan dir>/completed/<plan name>``; a plan that cannot be
    read from either place counts as unfinished.
    """
    for candidate in (plan_file, plan_file.parent / "completed" / plan_file.name):
        try:
            content = candidate.read_text(encoding="utf-8")
        except OSError:
            continue
        return any(line.strip().startswith(UNCHECKED_ITEM) for line in content.splitlines())
    return True


class Orchestrator:
    """Runs the selected mode's loops against the configured executors.

    Executor calls are strictly sequential. Every iteration boundary checks
    the cancel token and the delay between iterations is a cancellable sleep,
    so a cancelled run stops with :class:`RunCancelled` promptly.
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        *,
        agent: Executor,
        logger: RunLogger,
        cancel: CancelToken,
        reviewer: Executor | None = None,
        phases: PhaseHolder | None = None,
        prompts: PromptBuilder | None = None,
        input_collector: InputCollector | None = None,
        git_head: GitHeadAccessor | None = None,
    ) -> None:
        self.config = config
        self._agent = agent
        self._reviewer = reviewer
        self._logger = logger
        self._cancel = cancel
        self.phases = phases or PhaseHolder()
        self._prompts = prompts or PromptBuilder(
            plan_file=str(config.plan_file) if config.plan_file else None,
            progress_file=str(config.progress_file) if config.progress_file else None,
            default_branch=config.default_branch,
            plan_description=config.plan_description,
            warn=logger.warn,
        )
        self._input = input_collector
        self._git_head = git_head

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        config: OrchestratorConfig,
        *,
        logger: RunLogger,
        cancel: CancelToken,
        phases: PhaseHolder | None = None,
        input_collector: InputCollector | None = None,
        git_head: GitHeadAccessor | None = None,
        templates: PromptTemplates | None = None,
    ) -> "Orchestrator":
        """Build executors and prompts from merged settings.

        The external reviewer is disabled with a warning when its command is
        not on ``PATH``.
        """
        agent: Executor
        if settings.qwen.enabled:
            agent = QwenExecutor(
                settings.qwen.command,
                settings.qwen.args,
                settings.qwen.error_patterns,
            )
        else:
            agent = ClaudeExecutor(
                settings.claude.command,
                settings.claude.args,
                settings.claude.error_patterns,
            )

        reviewer: Executor | None = None
        if config.external_review_enabled and config.mode in _REVIEW_MODES:
            codex = settings.codex
            command = codex.command or "codex"
            if shutil.which(command) is None:
                logger.warn(f"{command} not found in PATH, disabling external review phase")
                config = replace(config, external_review_enabled=False)
            else:
                reviewer = CodexExecutor(
                    command,
                    codex.model,
                    codex.reasoning_effort,
                    codex.timeout_ms,
                    codex.sandbox,
                    codex.error_patterns,
                    project_doc=codex.project_doc,
                )

        prompts = PromptBuilder(
            templates or load_templates(settings.prompts_dir),
            plan_file=str(config.plan_file) if config.plan_file else None,
            progress_file=str(config.progress_file) if config.progress_file else None,
            default_branch=config.default_branch,
            plan_description=config.plan_description,
            custom_agents=settings.custom_agents,
            warn=logger.warn,
        )
        return cls(
            config,
            agent=agent,
            reviewer=reviewer,
            logger=logger,
            cancel=cancel,
            phases=phases,
            prompts=prompts,
            input_collector=input_collector,
            git_head=git_head,
        )

    # ------------------------------------------------------------------ entry
    def run(self) -> None:
        """Run the configured mode to completion or raise an :class:`OrchestratorError`."""
        self._validate()
        mode = self.config.mode
        if mode is Mode.FULL:
            self._run_full()
        elif mode is Mode.REVIEW:
            self._run_review_only()
        elif mode is Mode.EXTERNAL_ONLY:
            self._run_external_only()
        elif mode is Mode.TASKS_ONLY:
            self._run_tasks_only()
        else:
            self._run_plan()

    def _validate(self) -> None:
        config = self.config
        if not isinstance(config.mode, Mode):
            raise ConfigurationError(f"unknown mode: {config.mode}")
        if config.mode in (Mode.FULL, Mode.TASKS_ONLY) and config.plan_file is None:
            raise ConfigurationError(f"plan file required for {config.mode.value} mode")
        if config.mode is Mode.PLAN:
            if not config.plan_description.strip():
                raise ConfigurationError("plan description required for plan mode")
            if self._input is None:
                raise ConfigurationError("input collector required for plan mode")

    # ------------------------------------------------------------------ modes
    def _run_full(self) -> None:
        self.phases.set(Phase.TASK)
        self._logger.print_raw("starting task execution phase\n")
        self._task_phase()
        self._review_pipeline()
        self._finalize()
        self._logger.print("all phases completed successfully")

    def _run_review_only(self) -> None:
        self._review_pipeline()
        self._finalize()
        self._logger.print("review phases completed successfully")

    def _run_external_only(self) -> None:
        self._external_and_post_review()
        self._finalize()
        self._logger.print("external review phases completed successfully")

    def _run_tasks_only(self) -> None:
        self.phases.set(Phase.TASK)
        self._logger.print_raw("starting task execution phase\n")
        self._task_phase()
        self._logger.print("task phase completed successfully")

    def _review_pipeline(self) -> None:
        self.phases.set(Phase.REVIEW)
        self._logger.print_section(Section.generic("review 0: all findings"))
        self._first_review()
        self._review_loop("pre-review loop")
        self._external_and_post_review()

    def _external_and_post_review(self) -> None:
        self.phases.set(Phase.EXTERNAL_REVIEW)
        self._logger.print_section(Section.generic("external review"))
        self._external_review_loop()
        self.phases.set(Phase.REVIEW)
        self._review_loop("post-review loop")

    # ---------------------------------------------------------------- helpers
    def _checkpoint(self, stage: str) -> None:
        if self._cancel.cancelled:
            raise RunCancelled(f"{stage}: {self._cancel.reason}")

    def _pause(self, stage: str) -> None:
        if self._cancel.sleep(self.config.iteration_delay):
            raise RunCancelled(f"{stage}: {self._cancel.reason}")

    def _execute(self, executor: Executor, prompt: str, stage: str) -> ExecutionResult:
        result = executor.run(self._cancel, prompt, self._logger.print_aligned)
        error = result.error
        if error is None:
            return result
        if isinstance(error, ExecutionCancelled) or self._cancel.cancelled:
            raise RunCancelled(f"{stage}: {self._cancel.reason or error}") from error
        name = getattr(executor, "tool", type(executor).__name__)
        raise PhaseError(stage, f"{name} execution: {error}") from error

    def _head(self) -> str | None:
        if self._git_head is None:
            return None
        try:
            return self._git_head()
        except Exception as exc:
            LOGGER.debug("unable to read HEAD hash: %s", exc)
            return None

    # ------------------------------------------------------------------ loops
    def _task_phase(self) -> None:
        stage = "task phase"
        config = self.config
        assert config.plan_file is not None
        prompt = self._prompts.task()
        retries = 0

        for iteration in range(1, config.max_iterations + 1):
            self._checkpoint(stage)
            self._logger.print_section(Section.task_iteration(iteration))

            result = self._execute(self._agent, prompt, stage)

            if result.signal is Signal.TASK_DONE:
                if has_unchecked_items(config.plan_file):
                    self._logger.warn("completion signal received but plan still has [ ] items, continuing...")
                    continue
                self._logger.print_raw("\nall tasks completed, starting code review...\n")
                return

            if result.signal is Signal.TASK_FAILED:
                if retries < config.task_retry_count:
                    retries += 1
                    self._logger.print(f"task failed, retrying ({retries}/{config.task_retry_count})...")
                    self._pause(stage)
                    continue
                raise RetriesExhaustedError(
                    f"{stage}: task execution failed after {config.task_retry_count} "
                    "retries (FAILED signal received)"
                )

            retries = 0
            self._pause(stage)

        raise IterationLimitError(stage, config.max_iterations)

    def _first_review(self) -> None:
        stage = "first review"
        self._checkpoint(stage)
        result = self._execute(self._agent, self._prompts.review_first(), stage)
        if result.signal is Signal.TASK_FAILED:
            raise PhaseError(stage, "review failed (FAILED signal received)")
        if result.signal is not Signal.REVIEW_DONE:
            self._logger.warn("first review pass did not complete cleanly, continuing...")

    def _review_loop(self, stage: str) -> None:
        limit = self.config.review_iterations
        for iteration in range(1, limit + 1):
            self._checkpoint(stage)
            self._logger.print_section(Section.review_iteration(iteration, ": critical/major"))

            before = self._head()
            result = self._execute(self._agent, self._prompts.review_second(), stage)

            if result.signal is Signal.TASK_FAILED:
                raise PhaseError(stage, "review failed (FAILED signal received)")
            if result.signal is Signal.REVIEW_DONE:
                self._logger.print("review complete - no more findings")
                return

            after = self._head()
            if before is not None and after is not None and before == after:
                self._logger.print("no changes detected, review loop finished")
                return

            self._logger.print("issues fixed, running another review iteration...")
            self._pause(stage)

        self._logger.print("max review iterations reached, continuing...")

    def _external_review_loop(self) -> None:
        stage = "external review loop"
        if not self.config.external_review_enabled or self._reviewer is None:
            self._logger.print("external review disabled, skipping...")
            return

        previous_response = ""
        limit = self.config.external_iterations
        for iteration in range(1, limit + 1):
            self._checkpoint(stage)
            self.phases.set(Phase.EXTERNAL_REVIEW)
            self._logger.print_section(Section.external_iteration(iteration))

            review = self._execute(
                self._reviewer,
                self._prompts.external_review(first=iteration == 1, previous_response=previous_response),
                stage,
            )
            if not review.output.strip():
                self._logger.print("external review returned no output, skipping...")
                return

            self._show_review_summary(review.output)

            self.phases.set(Phase.SECONDARY_EVAL)
            self._logger.print_section(Section.evaluation())
            evaluation = self._execute(self._agent, self._prompts.external_evaluation(review.output), stage)
            self.phases.set(Phase.EXTERNAL_REVIEW)

            previous_response = evaluation.output
            if evaluation.signal is Signal.EXTERNAL_REVIEW_DONE:
                self._logger.print("external review complete - no more findings")
                return

            self._pause(stage)

        self._logger.print("max external review iterations reached, continuing to next phase...")

    def _show_review_summary(self, output: str) -> None:
        summary = summarize_review(output)
        if not summary:
            return
        self._logger.print("external review findings:")
        for line in summary.splitlines():
            if line.strip():
                self._logger.print_aligned(f"  {line}\n")

    def _finalize(self) -> None:
        if not self.config.finalize_enabled:
            return
        stage = "finalize"
        self._checkpoint(stage)
        self.phases.set(Phase.FINALIZE)
        self._logger.print_section(Section.finalize())
        result = self._agent.run(self._cancel, self._prompts.finalize(), self._logger.print_aligned)
        if result.error is not None:
            if isinstance(result.error, ExecutionCancelled) or self._cancel.cancelled:
                raise RunCancelled(f"{stage}: {self._cancel.reason or result.error}") from result.error
            self._logger.warn(f"finalize step failed: {result.error}")
            return
        if result.signal is Signal.TASK_FAILED:
            self._logger.warn("finalize step reported failure")
            return
        self._logger.print("finalize step completed")

    # ------------------------------------------------------------------- plan
    def _run_plan(self) -> None:
        stage = "plan creation"
        assert self._input is not None
        self.phases.set(Phase.PLAN)
        self._logger.print_raw("starting interactive plan creation\n")
        self._logger.print(f"plan request: {self.config.plan_description}")

        answers: List[Tuple[str, str]] = []
        feedback: List[str] = []
        draft_accepted = False
        limit = self.config.plan_iterations

        for iteration in range(1, limit + 1):
            self._checkpoint(stage)
            self._logger.print_section(Section.plan_iteration(iteration))

            prompt = self._prompts.plan(answers, feedback, draft_accepted=draft_accepted)
            result = self._execute(self._agent, prompt, stage)

            if result.signal is Signal.TASK_FAILED:
                raise PhaseError(stage, "plan creation failed (FAILED signal received)")
            if result.signal is Signal.PLAN_READY:
                self._logger.print("plan creation completed")
                return

            if self._handle_question(result.output, answers, stage):
                self._pause(stage)
                continue

            action = self._handle_draft(result.output, feedback, stage)
            if action is DraftAction.ACCEPT:
                draft_accepted = True
            elif action is DraftAction.REVISE:
                draft_accepted = False

            self._pause(stage)

        raise IterationLimitError(stage, limit)

    def _handle_question(self, output: str, answers: List[Tuple[str, str]], stage: str) -> bool:
        try:
            payload = parse_question(output)
        except NoSignalError:
            return False
        except MalformedSignalError as exc:
            self._logger.warn(str(exc))
            return False

        assert self._input is not None
        self._logger.log_question(payload.question, payload.options)
        try:
            answer = self._input.ask_question(payload.question, payload.options)
        except Exception as exc:
            raise PhaseError(stage, f"collect answer: {exc}") from exc
        self._logger.log_answer(answer)
        answers.append((payload.question, answer))
        return True

    def _handle_draft(self, output: str, feedback: List[str], stage: str) -> DraftAction | None:
        try:
            draft = parse_plan_draft(output)
        except NoSignalError:
            return None
        except MalformedSignalError as exc:
            self._logger.warn(str(exc))
            return None

        assert self._input is not None
        try:
            action, notes = self._input.ask_draft_review(draft)
        except Exception as exc:
            raise PhaseError(stage, f"collect draft review: {exc}") from exc
        self._logger.log_draft_review(action.value, notes)

        if action is DraftAction.REJECT:
            raise UserRejectedPlanError(f"{stage}: plan draft rejected by user")
        if action is DraftAction.REVISE:
            feedback.append(notes)
        return action

