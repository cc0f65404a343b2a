"""Authoritative per-project state document (``state.json``)."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from raf.orchestrator.models import (
    DerivedStats,
    ProjectConfig,
    ProjectState,
    ProjectStatus,
    TaskState,
    TaskStatus,
)
from raf.orchestrator.paths import parse_plan_filename, plans_dir, state_path

logger = logging.getLogger(__name__)

STATE_VERSION = 1


class StateFileError(RuntimeError):
    """State document is missing or cannot be trusted."""


class TaskNotFoundError(KeyError):
    """Task id is not present in the state document."""


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


def _timestamp() -> str:
    return utc_now().isoformat().replace("+00:00", "Z")


class StateStore:
    """Load, mutate and atomically persist one project's state document.

    Every mutating call rewrites the whole document; there are no partial
    updates and no background reconciliation with the filesystem view.
    """

    def __init__(self, project_path: Path, state: ProjectState) -> None:
        self.project_path = project_path
        self.state = state

    @property
    def path(self) -> Path:
        return state_path(self.project_path)

    @classmethod
    def exists(cls, project_path: Path) -> bool:
        return state_path(project_path).is_file()

    @classmethod
    def load(cls, project_path: Path) -> StateStore:
        """Read ``state.json``; refuse to guess when it is missing or malformed."""

        path = state_path(project_path)
        if not path.is_file():
            raise StateFileError(f"State file not found: {path}")
        try:
            payload = json.loads(path.read_text("utf-8"))
        except (OSError, json.JSONDecodeError) as error:
            raise StateFileError(f"State file is unreadable: {path}: {error}") from error
        return cls(project_path, _state_from_payload(payload, path=path))

    @classmethod
    def initialize(
        cls,
        project_path: Path,
        *,
        project_name: str,
        input_file: str = "input.md",
        config: ProjectConfig | None = None,
    ) -> StateStore:
        """Create a fresh document in ``planning`` status and persist it."""

        now = _timestamp()
        store = cls(
            project_path,
            ProjectState(
                project_name=project_name,
                created_at=now,
                updated_at=now,
                input_file=input_file,
                config=config or ProjectConfig(),
            ),
        )
        store.save()
        return store

    def save(self) -> None:
        """Write the document to a temp file and swap it into place."""

        self.state.updated_at = _timestamp()
        payload = _state_to_payload(self.state)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        descriptor, temp_name = tempfile.mkstemp(
            prefix=".state-",
            suffix=".json.tmp",
            dir=self.path.parent,
        )
        try:
            with os.fdopen(descriptor, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, ensure_ascii=False, indent=2)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(temp_name, self.path)
        except BaseException:
            Path(temp_name).unlink(missing_ok=True)
            raise

    def get_task(self, task_id: str) -> TaskState:
        for task in self.state.tasks:
            if task.id == task_id:
                return task
        raise TaskNotFoundError(task_id)

    def has_task(self, task_id: str) -> bool:
        return any(task.id == task_id for task in self.state.tasks)

    def add_task(self, task_id: str, plan_file: str) -> TaskState:
        task = TaskState(id=task_id, plan_file=plan_file)
        self.state.tasks.append(task)
        self.save()
        return task

    def set_status(self, status: ProjectStatus) -> None:
        self.state.status = status
        self.save()

    def update_task_status(
        self,
        task_id: str,
        status: TaskStatus,
        *,
        failure_reason: str | None = None,
        commit_hash: str | None = None,
    ) -> TaskState:
        """Move a task to ``status`` and stamp lifecycle timestamps."""

        task = self.get_task(task_id)
        if status is TaskStatus.IN_PROGRESS:
            if task.started_at is None:
                task.started_at = _timestamp()
            task.completed_at = None
            task.failure_reason = None
        if status in {TaskStatus.COMPLETED, TaskStatus.FAILED}:
            task.completed_at = _timestamp()
        task.status = status
        if failure_reason is not None:
            task.failure_reason = failure_reason
        if commit_hash is not None:
            task.commit_hash = commit_hash
        self.save()
        return task

    def increment_attempts(self, task_id: str) -> int:
        task = self.get_task(task_id)
        task.attempts += 1
        self.save()
        return task.attempts

    def set_task_baseline(self, task_id: str, paths: list[str]) -> None:
        self.get_task(task_id).baseline = list(paths)
        self.save()

    def get_task_baseline(self, task_id: str) -> list[str] | None:
        baseline = self.get_task(task_id).baseline
        return list(baseline) if baseline is not None else None

    def get_next_pending_task(self) -> TaskState | None:
        """Scan forward from the cursor for pending or in-progress work."""

        tasks = self.state.tasks
        for index in range(self.state.current_task_index, len(tasks)):
            if tasks[index].status in {TaskStatus.PENDING, TaskStatus.IN_PROGRESS}:
                self.state.current_task_index = index
                self.save()
                return tasks[index]
        return None

    def sync_tasks_from_plans(self) -> list[TaskState]:
        """Rebuild the task list from ``plans/``, discarding prior progress."""

        plan_root = plans_dir(self.project_path)
        tasks: list[TaskState] = []
        if plan_root.is_dir():
            for plan_file in sorted(plan_root.glob("*.md"), key=lambda path: path.name):
                parsed = parse_plan_filename(plan_file.name)
                if parsed is None:
                    continue
                tasks.append(TaskState(id=parsed[0], plan_file=f"plans/{plan_file.name}"))
        logger.info(
            "Resynced %s tasks from plans for %s",
            len(tasks),
            self.project_path.name,
        )
        self.state.tasks = tasks
        self.state.current_task_index = 0
        self.save()
        return tasks

    def get_stats(self) -> DerivedStats:
        stats = DerivedStats(total=len(self.state.tasks))
        for task in self.state.tasks:
            if task.status is TaskStatus.COMPLETED:
                stats.completed += 1
            elif task.status is TaskStatus.FAILED:
                stats.failed += 1
            elif task.status is not TaskStatus.SKIPPED:
                stats.pending += 1
        return stats

    def is_complete(self) -> bool:
        return bool(self.state.tasks) and all(
            task.status is TaskStatus.COMPLETED for task in self.state.tasks
        )

    def has_failed(self) -> bool:
        return any(task.status is TaskStatus.FAILED for task in self.state.tasks)


def _state_to_payload(state: ProjectState) -> dict[str, Any]:
    return {
        "version": state.version,
        "projectName": state.project_name,
        "createdAt": state.created_at,
        "updatedAt": state.updated_at,
        "inputFile": state.input_file,
        "status": state.status.value,
        "tasks": [task.to_payload() for task in state.tasks],
        "currentTaskIndex": state.current_task_index,
        "config": state.config.to_payload(),
    }


def _state_from_payload(payload: object, *, path: Path) -> ProjectState:
    if not isinstance(payload, dict):
        raise StateFileError(f"Expected JSON object in {path}")
    if payload.get("version") != STATE_VERSION:
        raise StateFileError(
            f"Unsupported state version {payload.get('version')!r} in {path}",
        )
    try:
        config = payload.get("config") or {}
        return ProjectState(
            version=STATE_VERSION,
            project_name=str(payload["projectName"]),
            created_at=str(payload["createdAt"]),
            updated_at=str(payload["updatedAt"]),
            input_file=str(payload.get("inputFile", "input.md")),
            status=ProjectStatus(payload["status"]),
            tasks=[TaskState.from_payload(item) for item in payload["tasks"]],
            current_task_index=int(payload.get("currentTaskIndex", 0)),
            config=ProjectConfig(
                timeout=int(config.get("timeout", 60)),
                max_retries=int(config.get("maxRetries", 3)),
                auto_commit=bool(config.get("autoCommit", True)),
            ),
        )
    except (KeyError, TypeError, ValueError, AttributeError) as error:
        raise StateFileError(f"Malformed state document {path}: {error}") from error
