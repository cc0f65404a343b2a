from __future__ import annotations

import itertools
from collections.abc import Callable
from pathlib import Path

import allure
import pytest

from raf.orchestrator.derivation import (
    derive_project_state,
    derive_project_status,
    get_derived_stats,
    get_next_executable_task,
    get_next_pending_task,
    has_project_failed,
    is_project_complete,
    is_task_blocked,
)
from raf.orchestrator.models import (
    DerivedProjectState,
    DerivedTask,
    DerivedTaskStatus,
    ProjectStatus,
)

pytestmark = [
    allure.epic("Project State"),
    allure.feature("Derived State Reader"),
]

COMPLETE = "Done.\n\n<promise>COMPLETE</promise>\n"
FAILED = "Broke.\n\n<promise>FAILED</promise>\nReason: tests are red\n"


def _task(task_id: str, status: DerivedTaskStatus, deps: list[str] | None = None) -> DerivedTask:
    return DerivedTask(
        id=task_id,
        plan_file=Path(f"plans/{task_id}-task.md"),
        status=status,
        dependencies=deps or [],
    )


def test_missing_plans_dir_means_planning(tmp_path: Path) -> None:
    state = derive_project_state(tmp_path / "001-empty")

    assert state.tasks == []
    assert state.status is ProjectStatus.PLANNING


def test_mixed_outcomes_derive_failed_project(make_project: Callable[..., Path]) -> None:
    project = make_project(
        {"01-a.md": "# A\n", "02-b.md": "# B\n", "03-c.md": "# C\n"},
        outcomes={"01-a.md": COMPLETE, "02-b.md": FAILED},
    )

    state = derive_project_state(project)

    assert [(task.id, task.status) for task in state.tasks] == [
        ("01", DerivedTaskStatus.COMPLETED),
        ("02", DerivedTaskStatus.FAILED),
        ("03", DerivedTaskStatus.PENDING),
    ]
    assert state.status is ProjectStatus.FAILED


def test_all_pending_is_ready_and_next_task_is_first(make_project: Callable[..., Path]) -> None:
    project = make_project({"02-b.md": "# B\n", "01-a.md": "# A\n"})

    state = derive_project_state(project)

    assert state.status is ProjectStatus.READY
    next_task = get_next_pending_task(state)
    assert next_task is not None
    assert next_task.id == "01"
    assert next_task.name == "a"


def test_last_marker_in_outcome_wins(make_project: Callable[..., Path]) -> None:
    project = make_project(
        {"01-a.md": "# A\n", "02-b.md": "# B\n"},
        outcomes={
            "01-a.md": "<promise>FAILED</promise>\nretried\n<promise>complete</promise>\n",
            "02-b.md": "<promise>COMPLETE</promise>\nlater\n<promise>FAILED</promise>\n",
        },
    )

    state = derive_project_state(project)

    assert state.tasks[0].status is DerivedTaskStatus.COMPLETED
    assert state.tasks[1].status is DerivedTaskStatus.FAILED


def test_outcome_without_marker_and_summary_file_are_ignored(
    make_project: Callable[..., Path],
) -> None:
    project = make_project(
        {"01-a.md": "# A\n"},
        outcomes={"01-a.md": "still working\n", "SUMMARY.md": COMPLETE},
    )

    state = derive_project_state(project)

    assert state.tasks[0].status is DerivedTaskStatus.PENDING
    assert state.status is ProjectStatus.READY


def test_derivation_is_pure(make_project: Callable[..., Path]) -> None:
    project = make_project({"01-a.md": "# A\n"}, outcomes={"01-a.md": COMPLETE})
    before = sorted(path.relative_to(project) for path in project.rglob("*"))

    first = derive_project_state(project)
    second = derive_project_state(project)

    assert first == second
    assert sorted(path.relative_to(project) for path in project.rglob("*")) == before


def test_dependencies_are_parsed_from_plans(make_project: Callable[..., Path]) -> None:
    project = make_project(
        {
            "01-a.md": "# A\n",
            "02-b.md": "# B\n\n## Dependencies\n01\n",
            "03-c.md": "# C\n\n## Dependencies\n01, 02, 04\n",
        },
    )

    state = derive_project_state(project)

    assert [task.dependencies for task in state.tasks] == [[], ["01"], ["01", "02"]]


def _expected_status(statuses: set[DerivedTaskStatus]) -> ProjectStatus:
    if DerivedTaskStatus.FAILED in statuses:
        return ProjectStatus.FAILED
    if statuses == {DerivedTaskStatus.COMPLETED}:
        return ProjectStatus.COMPLETED
    if statuses == {DerivedTaskStatus.PENDING}:
        return ProjectStatus.READY
    return ProjectStatus.EXECUTING


_STATUS_SUBSETS = [
    combo
    for size in range(1, len(DerivedTaskStatus) + 1)
    for combo in itertools.combinations(DerivedTaskStatus, size)
]


@pytest.mark.parametrize(
    "statuses",
    _STATUS_SUBSETS,
    ids=["+".join(status.value for status in combo) for combo in _STATUS_SUBSETS],
)
def test_project_status_precedence(statuses: tuple[DerivedTaskStatus, ...]) -> None:
    tasks = [_task(f"{index:02d}", status) for index, status in enumerate(statuses, start=1)]

    assert derive_project_status(tasks) is _expected_status(set(statuses))
    assert derive_project_status(list(reversed(tasks))) is _expected_status(set(statuses))


def test_project_without_tasks_is_planning() -> None:
    assert derive_project_status([]) is ProjectStatus.PLANNING


@pytest.mark.parametrize(
    "completed",
    [set(), {"001"}, {"002", "004"}, {"001", "002", "003", "004"}],
)
def test_completed_outcomes_round_trip(
    make_project: Callable[..., Path],
    completed: set[str],
) -> None:
    ids = [f"{number:03d}" for number in range(1, 5)]
    project = make_project({f"{task_id}-step.md": f"# Step {task_id}\n" for task_id in ids})
    assert {task.status for task in derive_project_state(project).tasks} == {
        DerivedTaskStatus.PENDING,
    }

    (project / "outcomes").mkdir()
    for task_id in completed:
        (project / "outcomes" / f"{task_id}-step.md").write_text(COMPLETE, "utf-8")
    state = derive_project_state(project)

    assert {task.id for task in state.tasks if task.status is DerivedTaskStatus.COMPLETED} == (
        completed
    )
    assert {task.id for task in state.tasks if task.status is DerivedTaskStatus.PENDING} == (
        set(ids) - completed
    )


def test_completed_dependency_leaves_dependent_pending(make_project: Callable[..., Path]) -> None:
    project = make_project(
        {"01-setup.md": "# Setup\n", "02-build.md": "# Build\n\n## Dependencies\n01\n"},
        outcomes={"01-setup.md": "<promise>COMPLETE</promise>"},
    )

    state = derive_project_state(project)

    assert [(task.id, task.status) for task in state.tasks] == [
        ("01", DerivedTaskStatus.COMPLETED),
        ("02", DerivedTaskStatus.PENDING),
    ]
    assert state.status is ProjectStatus.EXECUTING


def test_stats_and_completion_helpers(make_project: Callable[..., Path]) -> None:
    project = make_project(
        {"01-a.md": "# A\n", "02-b.md": "# B\n", "03-c.md": "# C\n"},
        outcomes={"01-a.md": COMPLETE, "02-b.md": FAILED},
    )
    state = derive_project_state(project)

    stats = get_derived_stats(state)

    assert (stats.completed, stats.failed, stats.pending, stats.total) == (1, 1, 1, 3)
    assert has_project_failed(state)
    assert not is_project_complete(state)


def test_next_executable_prefers_failed_then_pending() -> None:
    state = DerivedProjectState(
        tasks=[
            _task("01", DerivedTaskStatus.COMPLETED),
            _task("02", DerivedTaskStatus.PENDING),
            _task("03", DerivedTaskStatus.FAILED),
        ],
        status=ProjectStatus.FAILED,
    )

    first = get_next_executable_task(state)
    second = get_next_executable_task(state, exclude={"03"})

    assert first is not None and first.id == "03"
    assert second is not None and second.id == "02"
    assert get_next_executable_task(state, exclude={"02", "03"}) is None


def test_blocked_tasks_are_never_selected() -> None:
    state = DerivedProjectState(
        tasks=[
            _task("01", DerivedTaskStatus.FAILED),
            _task("02", DerivedTaskStatus.PENDING, ["01"]),
            _task("03", DerivedTaskStatus.PENDING, ["02"]),
            _task("04", DerivedTaskStatus.PENDING),
        ],
        status=ProjectStatus.FAILED,
    )

    assert is_task_blocked(state, state.tasks[1])
    assert is_task_blocked(state, state.tasks[2])
    assert not is_task_blocked(state, state.tasks[3])
    selected = get_next_executable_task(state, exclude={"01"})
    assert selected is not None and selected.id == "04"


def test_extra_failed_ids_block_dependents() -> None:
    state = DerivedProjectState(
        tasks=[
            _task("01", DerivedTaskStatus.PENDING),
            _task("02", DerivedTaskStatus.PENDING, ["01"]),
        ],
        status=ProjectStatus.READY,
    )

    assert not is_task_blocked(state, state.tasks[1])
    assert is_task_blocked(state, state.tasks[1], extra_failed={"01"})


def test_task_waiting_on_pending_dependency_is_not_picked_before_it() -> None:
    state = DerivedProjectState(
        tasks=[
            _task("01", DerivedTaskStatus.PENDING),
            _task("02", DerivedTaskStatus.FAILED, ["01"]),
        ],
        status=ProjectStatus.FAILED,
    )

    selected = get_next_executable_task(state)

    assert selected is not None and selected.id == "01"
