"""Project state derived purely from plan and outcome files.

Nothing here writes to disk or caches results: every call rescans the
project folder, so the derived view always agrees with what a human sees in
``plans/`` and ``outcomes/``.
"""

from __future__ import annotations

import re
from pathlib import Path

from raf.orchestrator.models import (
    DerivedProjectState,
    DerivedStats,
    DerivedTask,
    DerivedTaskStatus,
    ProjectStatus,
)
from raf.orchestrator.paths import (
    SUMMARY_FILE_NAME,
    outcomes_dir,
    parse_dependencies,
    parse_plan_filename,
    plans_dir,
)
from raf.orchestrator.protocol import parse_outcome_status

_OUTCOME_TASK_ID = re.compile(r"^(\d{2,3})-")


def derive_project_state(project_path: Path) -> DerivedProjectState:
    """Scan ``plans/`` and ``outcomes/`` and pair them by task ID."""

    plan_root = plans_dir(project_path)
    if not plan_root.is_dir():
        return DerivedProjectState(tasks=[], status=ProjectStatus.PLANNING)

    statuses = _outcome_statuses(outcomes_dir(project_path))
    tasks: list[DerivedTask] = []
    for plan_file in sorted(plan_root.glob("*.md"), key=lambda path: path.name):
        parsed = parse_plan_filename(plan_file.name)
        if parsed is None:
            continue
        task_id = parsed[0]
        tasks.append(
            DerivedTask(
                id=task_id,
                plan_file=plan_file,
                status=statuses.get(task_id, DerivedTaskStatus.PENDING),
                dependencies=parse_dependencies(
                    plan_file.read_text("utf-8"),
                    task_id=task_id,
                ),
            ),
        )
    return DerivedProjectState(tasks=tasks, status=derive_project_status(tasks))


def _outcome_statuses(outcome_root: Path) -> dict[str, DerivedTaskStatus]:
    statuses: dict[str, DerivedTaskStatus] = {}
    if not outcome_root.is_dir():
        return statuses
    for outcome_file in sorted(outcome_root.glob("*.md"), key=lambda path: path.name):
        if outcome_file.name == SUMMARY_FILE_NAME:
            continue
        match = _OUTCOME_TASK_ID.match(outcome_file.name)
        if match is None:
            continue
        status = parse_outcome_status(outcome_file.read_text("utf-8"))
        if status is not None:
            statuses[match.group(1)] = status
    return statuses


def derive_project_status(tasks: list[DerivedTask]) -> ProjectStatus:
    """Aggregate task statuses: failed beats completed beats ready."""

    if not tasks:
        return ProjectStatus.PLANNING
    if any(task.status is DerivedTaskStatus.FAILED for task in tasks):
        return ProjectStatus.FAILED
    if all(task.status is DerivedTaskStatus.COMPLETED for task in tasks):
        return ProjectStatus.COMPLETED
    if all(task.status is DerivedTaskStatus.PENDING for task in tasks):
        return ProjectStatus.READY
    return ProjectStatus.EXECUTING


def get_derived_stats(state: DerivedProjectState) -> DerivedStats:
    stats = DerivedStats(total=len(state.tasks))
    for task in state.tasks:
        if task.status is DerivedTaskStatus.PENDING:
            stats.pending += 1
        elif task.status is DerivedTaskStatus.COMPLETED:
            stats.completed += 1
        else:
            stats.failed += 1
    return stats


def get_next_pending_task(state: DerivedProjectState) -> DerivedTask | None:
    return next(
        (task for task in state.tasks if task.status is DerivedTaskStatus.PENDING),
        None,
    )


def get_next_executable_task(
    state: DerivedProjectState,
    *,
    exclude: set[str] | frozenset[str] = frozenset(),
) -> DerivedTask | None:
    """Pick the next task to run: earlier failures first, then new work.

    Tasks whose dependencies failed (directly or through another blocked
    task) are never returned, and neither are tasks with a dependency that
    has not completed yet.
    """

    statuses = {task.id: task.status for task in state.tasks}
    for wanted in (DerivedTaskStatus.FAILED, DerivedTaskStatus.PENDING):
        for task in state.tasks:
            if task.id in exclude or task.status is not wanted:
                continue
            if is_task_blocked(state, task):
                continue
            if any(
                statuses.get(dependency_id, DerivedTaskStatus.COMPLETED)
                is not DerivedTaskStatus.COMPLETED
                for dependency_id in task.dependencies
            ):
                continue
            return task
    return None


def is_task_blocked(
    state: DerivedProjectState,
    task: DerivedTask,
    *,
    extra_failed: set[str] | frozenset[str] = frozenset(),
) -> bool:
    """True when any dependency failed or is itself blocked."""

    by_id = {item.id: item for item in state.tasks}
    seen: set[str] = set()

    def _blocked(current: DerivedTask) -> bool:
        for dependency_id in current.dependencies:
            if dependency_id in seen:
                continue
            seen.add(dependency_id)
            if dependency_id in extra_failed:
                return True
            dependency = by_id.get(dependency_id)
            if dependency is None:
                continue
            if dependency.status is DerivedTaskStatus.FAILED or _blocked(dependency):
                return True
        return False

    return _blocked(task)


def is_project_complete(state: DerivedProjectState) -> bool:
    return bool(state.tasks) and all(
        task.status is DerivedTaskStatus.COMPLETED for task in state.tasks
    )


def has_project_failed(state: DerivedProjectState) -> bool:
    return any(task.status is DerivedTaskStatus.FAILED for task in state.tasks)
