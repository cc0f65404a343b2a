"""Domain models for project state, task execution and usage accounting."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class DerivedTaskStatus(str, Enum):
    """Task status as seen from plan and outcome files."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class ProjectStatus(str, Enum):
    """Aggregated project status derived from its tasks."""

    PLANNING = "planning"
    READY = "ready"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskStatus(str, Enum):
    """Durable task lifecycle states kept in the state document."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class OutputResult(str, Enum):
    """Result declared by the agent through its completion marker."""

    COMPLETE = "complete"
    FAILED = "failed"
    UNKNOWN = "unknown"


class FailureClass(str, Enum):
    """Normalized failure classes used by retry policy."""

    NONE = "none"
    TRANSIENT = "transient"
    DECLARED = "declared"
    TIMEOUT = "timeout"
    CONTEXT_OVERFLOW = "context_overflow"
    TERMINAL = "terminal"


@dataclass(slots=True)
class DerivedTask:
    """One plan file with the status implied by its outcome file."""

    id: str
    plan_file: Path
    status: DerivedTaskStatus
    dependencies: list[str] = field(default_factory=list)

    @property
    def name(self) -> str:
        stem = self.plan_file.stem
        return stem.split("-", 1)[1] if "-" in stem else stem


@dataclass(slots=True)
class DerivedProjectState:
    """Filesystem view of a project."""

    tasks: list[DerivedTask]
    status: ProjectStatus


@dataclass(slots=True)
class DerivedStats:
    pending: int = 0
    completed: int = 0
    failed: int = 0
    total: int = 0


@dataclass(slots=True)
class TaskState:
    """Authoritative record of a single task."""

    id: str
    plan_file: str
    status: TaskStatus = TaskStatus.PENDING
    attempts: int = 0
    started_at: str | None = None
    completed_at: str | None = None
    failure_reason: str | None = None
    commit_hash: str | None = None
    baseline: list[str] | None = None

    def to_payload(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "id": self.id,
            "planFile": self.plan_file,
            "status": self.status.value,
            "attempts": self.attempts,
        }
        optional = {
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
            "failureReason": self.failure_reason,
            "commitHash": self.commit_hash,
            "baseline": self.baseline,
        }
        payload.update({key: value for key, value in optional.items() if value is not None})
        return payload

    @classmethod
    def from_payload(cls, payload: dict[str, object]) -> TaskState:
        baseline = payload.get("baseline")
        return cls(
            id=str(payload["id"]),
            plan_file=str(payload["planFile"]),
            status=TaskStatus(payload["status"]),
            attempts=int(payload.get("attempts", 0)),  # type: ignore[arg-type]
            started_at=_optional_str(payload.get("startedAt")),
            completed_at=_optional_str(payload.get("completedAt")),
            failure_reason=_optional_str(payload.get("failureReason")),
            commit_hash=_optional_str(payload.get("commitHash")),
            baseline=[str(item) for item in baseline] if isinstance(baseline, list) else None,
        )


@dataclass(slots=True)
class ProjectConfig:
    """Per-project execution settings persisted next to the task list."""

    timeout: int = 60
    max_retries: int = 3
    auto_commit: bool = True

    def to_payload(self) -> dict[str, object]:
        return {
            "timeout": self.timeout,
            "maxRetries": self.max_retries,
            "autoCommit": self.auto_commit,
        }


@dataclass(slots=True)
class ProjectState:
    """In-memory form of the authoritative state document."""

    project_name: str
    created_at: str
    updated_at: str
    input_file: str
    status: ProjectStatus = ProjectStatus.PLANNING
    tasks: list[TaskState] = field(default_factory=list)
    current_task_index: int = 0
    config: ProjectConfig = field(default_factory=ProjectConfig)
    version: int = 1


@dataclass(slots=True)
class ParsedOutput:
    """Declared outcome extracted from agent output."""

    result: OutputResult
    failure_reason: str | None = None
    context_overflow: bool = False


@dataclass(slots=True)
class ModelTokenUsage:
    """Token usage for one model within an attempt."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_input_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cost_usd: float = 0.0


@dataclass(slots=True)
class UsageData:
    """Raw token counts reported by the agent."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_input_tokens: int = 0
    cache_creation_input_tokens: int = 0
    total_cost_usd: float = 0.0
    model_usage: dict[str, ModelTokenUsage] = field(default_factory=dict)

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


def _optional_str(value: object) -> str | None:
    return None if value is None else str(value)
