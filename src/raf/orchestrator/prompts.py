"""Prompt factories handed to the agent runners.

Prompt wording is owned by whoever embeds the engine. The defaults here are
short and only carry what the completion protocol needs.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from raf.orchestrator.protocol import COMPLETE_MARKER, FAILED_MARKER

_MAX_DEPENDENCY_OUTCOME_CHARS = 4_000


@dataclass(slots=True)
class ExecutionPromptContext:
    """Everything a prompt factory may use for one task attempt."""

    project_path: Path
    plan_path: Path
    outcome_path: Path
    task_id: str
    task_number: int
    total_tasks: int
    project_id: str
    attempt: int = 1
    auto_commit: bool = True
    previous_outcome_path: Path | None = None
    dependency_ids: list[str] = field(default_factory=list)
    dependency_outcomes: dict[str, str] = field(default_factory=dict)
    previous_outcome_files: list[Path] = field(default_factory=list)


class PromptFactory(Protocol):
    def build(self, context: ExecutionPromptContext) -> str:
        """Render the system prompt for one attempt."""


class DefaultPromptFactory:
    """Plain execution prompt built from plan and outcome paths."""

    def build(self, context: ExecutionPromptContext) -> str:
        sections = [
            "You are executing one planned task of a RAF project.",
            "",
            f"- Task {context.task_number} of {context.total_tasks} (ID {context.task_id})",
            f"- Project folder: {context.project_path}",
            f"- Plan file: {context.plan_path}",
            "",
            "Read the plan, implement it, and verify its acceptance criteria.",
        ]
        if context.attempt > 1 and context.previous_outcome_path is not None:
            sections += [
                "",
                f"This is attempt {context.attempt}. Read the previous outcome at "
                f"{context.previous_outcome_path} and avoid repeating its failure.",
            ]
        if context.previous_outcome_files:
            sections += ["", "Outcomes of earlier tasks, read them for context when useful:"]
            sections += [f"- {path}" for path in context.previous_outcome_files]
        if context.dependency_outcomes:
            sections += ["", f"Dependencies: {', '.join(context.dependency_ids)}"]
            for task_id, content in sorted(context.dependency_outcomes.items()):
                sections += ["", f"### Task {task_id}", summarize_outcome(content)]
        if context.auto_commit:
            sections += [
                "",
                "On success commit your changes together with the outcome file using the "
                f"message prefix RAF[{context.project_id}:{context.task_id}]. "
                "On failure do not commit.",
            ]
        sections += [
            "",
            f"Write a short report to {context.outcome_path}. Its last line must be",
            f"{COMPLETE_MARKER} when the task is done, or {FAILED_MARKER} followed by",
            "a line 'Reason: <why>' when it cannot be done.",
        ]
        return "\n".join(sections)


def build_planning_prompt(project_path: Path, input_text: str) -> str:
    """Prompt for an interactive session that turns ``input.md`` into plan files."""

    return "\n".join(
        [
            "Help the user split the request below into numbered task plans.",
            f"Write each plan to {project_path / 'plans'}/NN-short-name.md.",
            "When a plan needs earlier tasks, add a '## Dependencies' section",
            "listing their IDs separated by commas, for example '01, 02'.",
            "",
            "Request:",
            input_text.strip(),
        ],
    )


def summarize_outcome(content: str) -> str:
    if len(content) <= _MAX_DEPENDENCY_OUTCOME_CHARS:
        return content
    truncated = content[:_MAX_DEPENDENCY_OUTCOME_CHARS]
    cut = truncated.rfind("\n")
    if cut > _MAX_DEPENDENCY_OUTCOME_CHARS // 2:
        truncated = truncated[: cut + 1]
    return f"{truncated}\n\n*[Outcome truncated for context size]*"
