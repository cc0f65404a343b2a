from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path

import allure
import pytest

from raf.orchestrator.models import ProjectConfig, ProjectStatus, TaskStatus
from raf.orchestrator.state_store import StateFileError, StateStore, TaskNotFoundError

pytestmark = [
    allure.epic("Project State"),
    allure.feature("Authoritative State Store"),
]


def _store(make_project: Callable[..., Path]) -> StateStore:
    project = make_project({"01-a.md": "# A\n", "02-b.md": "# B\n", "notes.md": "ignored\n"})
    store = StateStore.initialize(project, project_name="merge-guardian")
    store.sync_tasks_from_plans()
    return store


def test_initialize_writes_fresh_document(tmp_path: Path) -> None:
    project = tmp_path / "001-demo"

    store = StateStore.initialize(
        project,
        project_name="demo",
        config=ProjectConfig(timeout=30, max_retries=2, auto_commit=False),
    )

    payload = json.loads((project / "state.json").read_text("utf-8"))
    assert payload["version"] == 1
    assert payload["projectName"] == "demo"
    assert payload["status"] == "planning"
    assert payload["tasks"] == []
    assert payload["currentTaskIndex"] == 0
    assert payload["config"] == {"timeout": 30, "maxRetries": 2, "autoCommit": False}
    assert payload["inputFile"] == "input.md"
    assert payload["createdAt"].endswith("Z")
    assert store.state.project_name == "demo"


def test_load_missing_state_raises(tmp_path: Path) -> None:
    with pytest.raises(StateFileError, match="not found"):
        StateStore.load(tmp_path)


@pytest.mark.parametrize(
    "content",
    [
        "{not json",
        "[]",
        json.dumps({"version": 2, "projectName": "x"}),
        json.dumps({"version": 1, "projectName": "x"}),
        json.dumps(
            {
                "version": 1,
                "projectName": "x",
                "createdAt": "a",
                "updatedAt": "b",
                "status": "bogus",
                "tasks": [],
            },
        ),
    ],
)
def test_load_refuses_corrupt_documents(tmp_path: Path, content: str) -> None:
    (tmp_path / "state.json").write_text(content, "utf-8")

    with pytest.raises(StateFileError):
        StateStore.load(tmp_path)
    assert (tmp_path / "state.json").read_text("utf-8") == content


def test_sync_tasks_from_plans_and_reload_roundtrip(make_project: Callable[..., Path]) -> None:
    store = _store(make_project)

    reloaded = StateStore.load(store.project_path)

    assert [(task.id, task.plan_file) for task in reloaded.state.tasks] == [
        ("01", "plans/01-a.md"),
        ("02", "plans/02-b.md"),
    ]
    assert all(task.status is TaskStatus.PENDING for task in reloaded.state.tasks)


def test_task_lifecycle_timestamps(make_project: Callable[..., Path]) -> None:
    store = _store(make_project)

    assert store.increment_attempts("01") == 1
    store.update_task_status("01", TaskStatus.IN_PROGRESS)
    started = store.get_task("01").started_at
    store.update_task_status("01", TaskStatus.FAILED, failure_reason="tests are red")
    failed = StateStore.load(store.project_path).get_task("01")

    assert started is not None
    assert failed.completed_at is not None
    assert failed.failure_reason == "tests are red"

    assert store.increment_attempts("01") == 2
    store.update_task_status("01", TaskStatus.IN_PROGRESS)
    retrying = StateStore.load(store.project_path).get_task("01")

    assert retrying.started_at == started
    assert retrying.completed_at is None
    assert retrying.failure_reason is None
    assert retrying.attempts == 2

    store.update_task_status("01", TaskStatus.COMPLETED, commit_hash="abc123")
    done = StateStore.load(store.project_path).get_task("01")
    assert done.status is TaskStatus.COMPLETED
    assert done.commit_hash == "abc123"
    assert done.completed_at is not None


def test_payload_uses_camel_case_and_omits_unset_fields(
    make_project: Callable[..., Path],
) -> None:
    store = _store(make_project)
    store.set_task_baseline("01", ["src/app.py"])

    payload = json.loads(store.path.read_text("utf-8"))

    assert payload["tasks"][0] == {
        "id": "01",
        "planFile": "plans/01-a.md",
        "status": "pending",
        "attempts": 0,
        "baseline": ["src/app.py"],
    }
    assert store.get_task_baseline("01") == ["src/app.py"]
    assert store.get_task_baseline("02") is None


def test_unknown_task_raises_key_error(make_project: Callable[..., Path]) -> None:
    store = _store(make_project)

    with pytest.raises(TaskNotFoundError):
        store.update_task_status("99", TaskStatus.COMPLETED)
    with pytest.raises(KeyError):
        store.increment_attempts("99")


def test_save_leaves_no_temp_files(make_project: Callable[..., Path]) -> None:
    store = _store(make_project)
    store.set_status(ProjectStatus.EXECUTING)
    store.add_task("03", "plans/03-c.md")

    leftovers = [path.name for path in store.project_path.iterdir() if path.name.endswith(".tmp")]

    assert leftovers == []
    assert StateStore.load(store.project_path).state.status is ProjectStatus.EXECUTING
    assert StateStore.load(store.project_path).has_task("03")


def test_next_pending_task_advances_cursor(make_project: Callable[..., Path]) -> None:
    store = _store(make_project)
    store.update_task_status("01", TaskStatus.COMPLETED)

    task = store.get_next_pending_task()

    assert task is not None and task.id == "02"
    assert StateStore.load(store.project_path).state.current_task_index == 1
    store.update_task_status("02", TaskStatus.COMPLETED)
    assert store.get_next_pending_task() is None


def test_stats_and_flags(make_project: Callable[..., Path]) -> None:
    store = _store(make_project)
    store.update_task_status("01", TaskStatus.COMPLETED)

    assert not store.is_complete()
    assert not store.has_failed()

    store.update_task_status("02", TaskStatus.FAILED, failure_reason="boom")
    stats = store.get_stats()

    assert (stats.completed, stats.failed, stats.pending, stats.total) == (1, 1, 0, 2)
    assert store.has_failed()

    store.update_task_status("02", TaskStatus.COMPLETED)
    assert store.is_complete()


def test_sync_discards_progress(make_project: Callable[..., Path]) -> None:
    store = _store(make_project)
    store.update_task_status("01", TaskStatus.COMPLETED)

    store.sync_tasks_from_plans()

    assert store.get_task("01").status is TaskStatus.PENDING
    assert store.state.current_task_index == 0
