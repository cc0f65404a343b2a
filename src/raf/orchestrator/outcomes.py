"""Outcome documents and retry-history rendering."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from raf.orchestrator.models import DerivedTaskStatus
from raf.orchestrator.protocol import (
    COMPLETE_MARKER,
    FAILED_MARKER,
    MARKER_PATTERN,
    UNKNOWN_FAILURE_REASON,
    parse_outcome_status,
)


@dataclass(slots=True)
class AttemptFailure:
    attempt: int
    reason: str


@dataclass(slots=True)
class TaskRetryHistory:
    """Failed attempts of one task and how it finally ended."""

    task_id: str
    task_name: str
    failures: list[AttemptFailure] = field(default_factory=list)
    final_attempt: int = 0
    success: bool = False


def format_elapsed(seconds: float) -> str:
    total = int(seconds)
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def complete_outcome(task_id: str) -> str:
    return (
        f"# Task {task_id} - Completed\n"
        "\n"
        "Task completed. No detailed report provided.\n"
        "\n"
        f"{COMPLETE_MARKER}\n"
    )


def success_outcome_content(outcome_file: Path, task_id: str) -> str:
    """Keep the agent's own report when it already declares completion."""

    if outcome_file.is_file():
        existing = outcome_file.read_text("utf-8")
        if parse_outcome_status(existing) is DerivedTaskStatus.COMPLETED:
            return existing
    return complete_outcome(task_id)


def failed_outcome(  # noqa: PLR0913
    *,
    task_id: str,
    reason: str,
    attempts: int,
    elapsed_seconds: float,
    failed_at: str,
    stash_name: str | None,
    history: TaskRetryHistory | None = None,
    output_summary: str | None = None,
) -> str:
    clean_reason = _strip_markers(reason) or UNKNOWN_FAILURE_REASON
    lines = [
        f"# Task {task_id} - Failed",
        "",
        "## Failure Reason",
        "",
        clean_reason,
        "",
    ]
    if history is not None and len(history.failures) > 1:
        lines += ["## Attempts", ""]
        lines += [
            f"- Attempt {failure.attempt}: {_strip_markers(failure.reason)}"
            for failure in history.failures
        ]
        lines.append("")
    if output_summary:
        lines += ["## Agent Output Summary", "", _strip_markers(output_summary), ""]
    lines += [
        "## Details",
        f"- Attempts: {attempts}",
        f"- Elapsed time: {format_elapsed(elapsed_seconds)}",
        f"- Failed at: {failed_at}",
    ]
    if stash_name:
        lines.append(f"- Stash: {stash_name}")
    lines += ["", FAILED_MARKER, f"Reason: {clean_reason.splitlines()[0]}"]
    return "\n".join(lines) + "\n"


def format_retry_history(history: TaskRetryHistory) -> list[str]:
    """Console lines for a task that needed more than one attempt."""

    if not history.failures:
        return []
    label = (
        f"{history.task_id} ({history.task_name})"
        if history.task_name != history.task_id
        else history.task_id
    )
    lines = [f"  Task {label}:"]
    lines += [
        f"    Attempt {failure.attempt}: Failed - {failure.reason}" for failure in history.failures
    ]
    if history.success:
        lines.append(f"    Attempt {history.final_attempt}: Succeeded")
    return lines


def _strip_markers(text: str) -> str:
    return MARKER_PATTERN.sub("", text).strip()
