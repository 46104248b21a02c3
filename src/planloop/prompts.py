"""Prompt templates and the builder that fills them in for each loop."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Callable, Mapping, Sequence

__all__ = [
    "DEFAULT_TEMPLATES",
    "PromptBuilder",
    "PromptTemplates",
    "load_templates",
    "summarize_review",
]

LOGGER = logging.getLogger(__name__)

TASK_PROMPT = """\
You are implementing the plan at {{PLAN_FILE}}. Progress so far is logged in {{PROGRESS_FILE}}.

Read the plan from disk and pick the FIRST section that still has unchecked items (`- [ ]`).
Implement only that section:
- make the code changes it describes and add or update tests;
- run the project's tests and linters and fix what they report;
- mark the finished items as `- [x]` in the plan file;
- commit the work with a short descriptive message.

When every item in the plan is checked, output <<<PLANLOOP:ALL_TASKS_DONE>>>.
If the section cannot be completed, explain why and output <<<PLANLOOP:TASK_FAILED>>>.
Otherwise stop after the one section; you will be called again for the next one.
"""

REVIEW_FIRST_PROMPT = """\
Review the {{GOAL}}. Compare against {{DEFAULT_BRANCH}} with `git diff {{DEFAULT_BRANCH}}...HEAD`.

Look at everything: correctness, error handling, tests, naming, dead code and documentation.

Fix every real finding, run the tests, and commit the fixes.
When nothing is left to fix, output <<<PLANLOOP:REVIEW_DONE>>>.
If the review cannot be carried out, output <<<PLANLOOP:TASK_FAILED>>>.
"""

REVIEW_SECOND_PROMPT = """\
Review the {{GOAL}} again, focusing only on critical and major problems:
bugs, data loss, security issues, race conditions and broken error handling.
Use `git diff {{DEFAULT_BRANCH}}...HEAD` to see the changes.

Fix what you find, run the tests and commit.
If there are no critical or major problems left, output <<<PLANLOOP:REVIEW_DONE>>>.
If the review cannot be carried out, output <<<PLANLOOP:TASK_FAILED>>>.
"""

EXTERNAL_EVAL_PROMPT = """\
An external reviewer looked at the {{GOAL}} and reported the findings below.

Evaluate each finding critically. Fix the ones that are valid, run the tests and commit.
For findings you reject, explain briefly why they do not apply.

If the reviewer reported no issues, or every remaining finding is invalid, output
<<<PLANLOOP:CODEX_REVIEW_DONE>>>.

--- REVIEWER OUTPUT ---
{{EXTERNAL_OUTPUT}}
--- END REVIEWER OUTPUT ---
"""

MAKE_PLAN_PROMPT = """\
Create an implementation plan for the following request:

{{PLAN_DESCRIPTION}}

Explore the repository first. If something essential is unclear, ask ONE question:

<<<PLANLOOP:QUESTION>>>
{"question": "...", "options": ["...", "..."]}
<<<PLANLOOP:END>>>

When you have enough information, present the full draft plan for review:

<<<PLANLOOP:PLAN_DRAFT>>>
# Plan title
## Section 1
- [ ] item
<<<PLANLOOP:END>>>

Plans use markdown sections with `- [ ]` checklist items, one reviewable change per section.
After the draft has been accepted, write the plan to a file under docs/plans/ and output
<<<PLANLOOP:PLAN_READY>>>.
Progress and earlier answers are logged in {{PROGRESS_FILE}}.
"""

FINALIZE_PROMPT = """\
All work on the {{GOAL}} is implemented and reviewed.

Finish up: make sure the tests pass, squash fixup noise if the history needs it, and check that
the plan at {{PLAN_FILE}} has every item checked. Do not start new features.
If something prevents finishing, output <<<PLANLOOP:TASK_FAILED>>>.
"""

AGENT_EXPANSION = """\
Use the Task tool to launch a general-purpose agent with this prompt:
"{prompt}"

Report findings only - no positive observations."""

_AGENT_REF = re.compile(r"\{\{agent:([A-Za-z0-9_-]+)\}\}")

REVIEW_SUMMARY_LIMIT = 5000


@dataclass(frozen=True, slots=True)
class PromptTemplates:
    """The full set of templates, one per prompt kind."""

    task: str = TASK_PROMPT
    review_first: str = REVIEW_FIRST_PROMPT
    review_second: str = REVIEW_SECOND_PROMPT
    external_eval: str = EXTERNAL_EVAL_PROMPT
    make_plan: str = MAKE_PLAN_PROMPT
    finalize: str = FINALIZE_PROMPT


DEFAULT_TEMPLATES = PromptTemplates()


def load_templates(prompts_dir: Path | str | None) -> PromptTemplates:
    """Override default templates with ``<name>.txt`` files found in ``prompts_dir``.

    Missing, unreadable or whitespace-only files keep the embedded default.
    """
    if not prompts_dir:
        return DEFAULT_TEMPLATES
    directory = Path(prompts_dir).expanduser()
    if not directory.is_dir():
        return DEFAULT_TEMPLATES
    overrides: dict[str, str] = {}
    for item in fields(PromptTemplates):
        path = directory / f"{item.name}.txt"
        try:
            content = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            continue
        except OSError as exc:
            LOGGER.warning("unable to read prompt %s: %s", path, exc)
            continue
        if content.strip():
            overrides[item.name] = content
    return replace(DEFAULT_TEMPLATES, **overrides) if overrides else DEFAULT_TEMPLATES


def summarize_review(output: str, limit: int = REVIEW_SUMMARY_LIMIT) -> str:
    """Condense reviewer output to the text before its first code fence."""
    summary = output
    fence = summary.find("```")
    if fence > 0:
        summary = summary[:fence]
    if len(summary) > limit:
        summary = summary[:limit] + "..."
    return summary.strip()


class PromptBuilder:
    """Fills template variables for one orchestration run.

    Every template understands ``{{PLAN_FILE}}``, ``{{PROGRESS_FILE}}``,
    ``{{GOAL}}`` and ``{{DEFAULT_BRANCH}}`` plus ``{{agent:name}}`` references
    to configured custom agents. Unknown agents are reported through ``warn``
    and left in place.
    """

    def __init__(
        self,
        templates: PromptTemplates = DEFAULT_TEMPLATES,
        *,
        plan_file: str | None = None,
        progress_file: str | None = None,
        default_branch: str | None = None,
        plan_description: str = "",
        custom_agents: Mapping[str, str] | None = None,
        warn: Callable[[str], None] | None = None,
    ) -> None:
        self.templates = templates
        self.plan_file = plan_file or ""
        self.progress_file = progress_file or ""
        self.default_branch = default_branch or "master"
        self.plan_description = plan_description
        self.custom_agents = dict(custom_agents or {})
        self._warn = warn or (lambda message: LOGGER.warning("%s", message))

    # -------------------------------------------------------------- variables
    @property
    def goal(self) -> str:
        if not self.plan_file:
            return f"current branch vs {self.default_branch}"
        return f"implementation of plan at {self.plan_file}"

    def _base(self, text: str) -> str:
        plan_ref = self.plan_file or "(no plan file - reviewing current branch)"
        progress_ref = self.progress_file or "(no progress file available)"
        return (
            text.replace("{{PLAN_FILE}}", plan_ref)
            .replace("{{PROGRESS_FILE}}", progress_ref)
            .replace("{{GOAL}}", self.goal)
            .replace("{{DEFAULT_BRANCH}}", self.default_branch)
        )

    def _expand_agents(self, text: str) -> str:
        if not self.custom_agents:
            return text

        def _substitute(match: re.Match[str]) -> str:
            name = match.group(1)
            body = self.custom_agents.get(name)
            if body is None:
                self._warn(f"agent {name!r} not found, leaving reference unexpanded")
                return match.group(0)
            # Agent bodies get base variables only, never nested agent references.
            return AGENT_EXPANSION.format(prompt=self._base(body).strip())

        return _AGENT_REF.sub(_substitute, text)

    def render(self, template: str) -> str:
        return self._expand_agents(self._base(template))

    # ---------------------------------------------------------------- prompts
    def task(self) -> str:
        return self.render(self.templates.task)

    def review_first(self) -> str:
        return self.render(self.templates.review_first)

    def review_second(self) -> str:
        return self.render(self.templates.review_second)

    def finalize(self) -> str:
        return self.render(self.templates.finalize)

    def external_evaluation(self, reviewer_output: str) -> str:
        return self.render(self.templates.external_eval).replace("{{EXTERNAL_OUTPUT}}", reviewer_output)

    def external_review(self, *, first: bool, previous_response: str = "") -> str:
        """Prompt for the external reviewer itself.

        The first iteration reviews the branch against the default branch;
        later ones look at the uncommitted fixes made in response.
        """
        plan_context = ""
        if self.plan_file:
            plan_context = (
                "## Plan Context\n"
                f"The code implements the plan at: {self.plan_file}\n\n---\n"
            )
        if first:
            instruction = f"Run: git diff {self.default_branch}...HEAD"
            description = f"code changes between {self.default_branch} and HEAD branch"
        else:
            instruction = "Run: git diff"
            description = "uncommitted changes (fixes from the previous iteration)"
        prompt = (
            f"{plan_context}Review the {description}.\n\n"
            f"{instruction}\n\n"
            "Analyze for:\n"
            "- Bugs and logic errors\n"
            "- Security vulnerabilities\n"
            "- Race conditions\n"
            "- Error handling gaps\n"
            "- Code quality issues\n\n"
            'Report findings with file:line references. If no issues found, say "NO ISSUES FOUND".'
        )
        if not previous_response:
            return prompt
        return (
            f"{prompt}\n\n---\n"
            "PREVIOUS REVIEW CONTEXT:\n"
            "The previous reviewer responded to your findings:\n\n"
            f"{previous_response}\n\n"
            "Re-evaluate considering these arguments. If the fixes are correct, acknowledge them.\n"
            "If the arguments are invalid, explain why the issues still exist."
        )

    def plan(
        self,
        answers: Sequence[tuple[str, str]] = (),
        feedback: Sequence[str] = (),
        *,
        draft_accepted: bool = False,
    ) -> str:
        """Plan-drafting prompt carrying earlier answers and draft feedback."""
        prompt = self._base(self.templates.make_plan.replace("{{PLAN_DESCRIPTION}}", self.plan_description))
        blocks = [prompt.rstrip()]
        if answers:
            lines = [f"Q: {question}\nA: {answer}" for question, answer in answers]
            blocks.append("PREVIOUS ANSWERS:\n" + "\n\n".join(lines))
        if feedback:
            blocks.append("PREVIOUS DRAFT FEEDBACK:\n" + "\n".join(f"- {item}" for item in feedback))
        if draft_accepted:
            blocks.append(
                "The last draft was ACCEPTED. Write it to the plan file now and output <<<PLANLOOP:PLAN_READY>>>."
            )
        return "\n\n".join(blocks) + "\n"
