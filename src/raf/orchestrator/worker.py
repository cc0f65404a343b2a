"""Project worker that executes plan files through the headless agent backend."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from raf.orchestrator.backend import AgentRunError, AgentRunRequest, HeadlessBackend
from raf.orchestrator.derivation import (
    derive_project_state,
    get_next_executable_task,
    is_task_blocked,
)
from raf.orchestrator.failure_classifier import AttemptClassification, classify_attempt
from raf.orchestrator.git import (
    GitCli,
    GitCommandError,
    changed_files,
    commit_task_changes,
    head_commit_hash,
    repo_root,
    stash_changes,
)
from raf.orchestrator.models import (
    DerivedProjectState,
    DerivedTask,
    DerivedTaskStatus,
    FailureClass,
    OutputResult,
    ParsedOutput,
    ProjectConfig,
    ProjectStatus,
    TaskStatus,
    UsageData,
)
from raf.orchestrator.outcomes import (
    AttemptFailure,
    TaskRetryHistory,
    failed_outcome,
    format_elapsed,
    success_outcome_content,
)
from raf.orchestrator.paths import (
    log_file_path,
    outcome_file_path,
    plans_dir,
    project_id_for,
    project_name_for,
)
from raf.orchestrator.prompts import ExecutionPromptContext, PromptFactory
from raf.orchestrator.protocol import extract_summary, parse_output
from raf.orchestrator.retry import with_retry
from raf.orchestrator.state_store import StateFileError, StateStore, utc_now
from raf.orchestrator.usage import TokenTracker

logger = logging.getLogger(__name__)

_HALTING_CLASSES = frozenset({FailureClass.TERMINAL, FailureClass.CONTEXT_OVERFLOW})


@dataclass(slots=True)
class TaskRunRecord:
    """Result of one task within a batch."""

    task_id: str
    task_name: str
    status: TaskStatus
    attempts: int = 0
    elapsed_seconds: float = 0.0
    failure_class: FailureClass = FailureClass.NONE
    failure_reason: str | None = None
    commit_hash: str | None = None
    stash_name: str | None = None
    changed_files: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ProjectRunSummary:
    """Aggregate batch counters for CLI reporting."""

    project_path: Path
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    retried: int = 0
    halted: bool = False
    halt_reason: str | None = None
    error: str | None = None
    tasks: list[TaskRunRecord] = field(default_factory=list)
    retry_histories: list[TaskRetryHistory] = field(default_factory=list)
    usage: TokenTracker = field(default_factory=TokenTracker)

    @property
    def succeeded(self) -> bool:
        return self.error is None and not self.halted and self.failed == 0 and self.skipped == 0


class _AttemptFailedError(Exception):
    """One attempt ended without a COMPLETE result."""

    def __init__(self, classification: AttemptClassification) -> None:
        super().__init__(classification.reason or classification.failure_class.value)
        self.classification = classification


@dataclass(slots=True)
class _TaskRun:
    task: DerivedTask
    project_path: Path
    task_number: int
    total_tasks: int
    outcome_path: Path
    history: TaskRetryHistory
    usage: list[UsageData] = field(default_factory=list)
    attempt: int = 0
    last_output: str = ""


class ProjectWorker:
    """Runs a project's tasks one at a time until done, failed or halted."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        backend: HeadlessBackend,
        prompt_factory: PromptFactory,
        command_template: str,
        model: str,
        git: GitCli | None = None,
        config: ProjectConfig | None = None,
        stream_json: bool = False,
        force: bool = False,
        save_logs: bool = False,
        on_progress: Callable[[str], None] | None = None,
        on_display: Callable[[str], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.backend = backend
        self.prompt_factory = prompt_factory
        self.command_template = command_template
        self.model = model
        self.git = git
        self.config = config or ProjectConfig()
        self.stream_json = stream_json
        self.force = force
        self.save_logs = save_logs
        self.on_progress = on_progress
        self.on_display = on_display
        self.clock = clock

    def run(self, project_path: Path, *, cwd: Path | None = None) -> ProjectRunSummary:
        """Execute every runnable task of ``project_path`` in plan order.

        ``cwd`` is where the agent and git commands run; it defaults to the
        current directory.
        """

        summary = ProjectRunSummary(project_path=project_path)
        derived = derive_project_state(project_path)
        if not derived.tasks:
            summary.error = f"No plan files found in {plans_dir(project_path)}"
            return summary

        workdir = cwd or Path.cwd()
        store = self._open_store(project_path, derived)
        store.set_status(ProjectStatus.EXECUTING)
        attempted: set[str] = set()
        failed_this_run: set[str] = set()

        while True:
            derived = derive_project_state(project_path)
            task = self._next_task(derived, attempted, failed_this_run)
            if task is None:
                break
            attempted.add(task.id)
            try:
                record = self._run_task(
                    store,
                    _TaskRun(
                        task=task,
                        project_path=project_path,
                        task_number=derived.tasks.index(task) + 1,
                        total_tasks=len(derived.tasks),
                        outcome_path=outcome_file_path(project_path, task.id, task.name),
                        history=TaskRetryHistory(task_id=task.id, task_name=task.name),
                    ),
                    derived=derived,
                    workdir=workdir,
                    summary=summary,
                )
            except (AgentRunError, GitCommandError, StateFileError) as error:
                _mark_aborted(store, task.id, error)
                raise
            summary.tasks.append(record)
            if record.status is TaskStatus.COMPLETED:
                summary.completed += 1
                continue
            summary.failed += 1
            failed_this_run.add(task.id)
            if record.failure_class in _HALTING_CLASSES:
                summary.halted = True
                summary.halt_reason = record.failure_reason
                logger.warning("Halting batch after task %s: %s", task.id, record.failure_reason)
                break

        if not summary.halted:
            self._skip_blocked(store, project_path, attempted, failed_this_run, summary)
        store.set_status(derive_project_state(project_path).status)
        return summary

    def _open_store(self, project_path: Path, derived: DerivedProjectState) -> StateStore:
        if StateStore.exists(project_path):
            store = StateStore.load(project_path)
        else:
            store = StateStore.initialize(
                project_path,
                project_name=project_name_for(project_path),
                config=self.config,
            )
            store.sync_tasks_from_plans()
        for task in derived.tasks:
            if not store.has_task(task.id):
                logger.info("Adding task %s created after project start", task.id)
                store.add_task(task.id, f"plans/{task.plan_file.name}")
        return store

    def _next_task(
        self,
        derived: DerivedProjectState,
        attempted: set[str],
        failed_this_run: set[str],
    ) -> DerivedTask | None:
        if not self.force:
            return get_next_executable_task(derived, exclude=attempted)
        for task in derived.tasks:
            if task.id in attempted:
                continue
            if is_task_blocked(derived, task, extra_failed=failed_this_run):
                continue
            return task
        return None

    def _skip_blocked(
        self,
        store: StateStore,
        project_path: Path,
        attempted: set[str],
        failed_this_run: set[str],
        summary: ProjectRunSummary,
    ) -> None:
        derived = derive_project_state(project_path)
        for task in derived.tasks:
            if task.id in attempted or task.status is DerivedTaskStatus.COMPLETED:
                continue
            if not is_task_blocked(derived, task, extra_failed=failed_this_run):
                continue
            store.update_task_status(task.id, TaskStatus.SKIPPED)
            summary.skipped += 1
            summary.tasks.append(
                TaskRunRecord(
                    task_id=task.id,
                    task_name=task.name,
                    status=TaskStatus.SKIPPED,
                    failure_reason="Blocked by a failed dependency",
                ),
            )
            self._progress(f"Task {task.id} ({task.name}) skipped: blocked by a failed dependency")

    def _run_task(
        self,
        store: StateStore,
        run: _TaskRun,
        *,
        derived: DerivedProjectState,
        workdir: Path,
        summary: ProjectRunSummary,
    ) -> TaskRunRecord:
        task = run.task
        project_path = summary.project_path
        project_id = project_id_for(project_path)
        stash_name = f"raf-{project_id}-task-{task.id}-failed"
        self._progress(
            f"[{run.task_number}/{run.total_tasks}] Running task {task.id} ({task.name})",
        )

        store.set_task_baseline(task.id, changed_files(self.git, workdir) if self.git else [])
        head_before = head_commit_hash(self.git, workdir) if self.git else None
        started = self.clock()

        outcome = with_retry(
            lambda: self._attempt(store, run, derived=derived, workdir=workdir),
            max_retries=self.config.max_retries,
            on_retry=lambda attempt, error: self._before_retry(
                run,
                attempt,
                error,
                workdir=workdir,
                stash_name=stash_name,
            ),
            should_retry=lambda error: (
                isinstance(error, _AttemptFailedError) and error.classification.retryable
            ),
        )
        failure = outcome.last_error
        if failure is not None and not isinstance(failure, _AttemptFailedError):
            raise failure

        elapsed = self.clock() - started
        summary.retried += outcome.attempts - 1
        if run.usage:
            summary.usage.add_task(task.id, run.usage)
        if run.history.failures:
            run.history.final_attempt = run.attempt
            run.history.success = outcome.success
            summary.retry_histories.append(run.history)
        if self.save_logs or not outcome.success:
            self._write_log(project_path, task, run.last_output)

        record = TaskRunRecord(
            task_id=task.id,
            task_name=task.name,
            status=TaskStatus.COMPLETED,
            attempts=run.attempt,
            elapsed_seconds=elapsed,
        )
        if outcome.success:
            self._finish_success(store, run, record, workdir=workdir, head_before=head_before)
        elif isinstance(failure, _AttemptFailedError):
            self._finish_failure(store, run, record, failure.classification, workdir, stash_name)
        return record

    def _attempt(
        self,
        store: StateStore,
        run: _TaskRun,
        *,
        derived: DerivedProjectState,
        workdir: Path,
    ) -> AttemptClassification:
        task = run.task
        run.attempt += 1
        store.increment_attempts(task.id)
        store.update_task_status(task.id, TaskStatus.IN_PROGRESS)
        outcome_mtime = _mtime(run.outcome_path)

        prompt = self.prompt_factory.build(self._prompt_context(run, derived))
        try:
            result = self.backend.run(
                AgentRunRequest(
                    prompt=prompt,
                    model=self.model,
                    command_template=self.command_template,
                    timeout_minutes=self.config.timeout,
                    cwd=workdir,
                    outcome_file=run.outcome_path,
                    stream_json=self.stream_json,
                    on_display=self.on_display,
                ),
            )
        except AgentRunError as error:
            if not error.transient:
                raise
            run.last_output = ""
            classification = AttemptClassification(
                failure_class=FailureClass.TRANSIENT,
                retryable=True,
                reason=str(error),
            )
            self._record_failure(run, classification)
            raise _AttemptFailedError(classification) from error

        run.last_output = result.output
        if result.usage is not None:
            run.usage.append(result.usage)
        parsed = parse_output(result.output)
        if parsed.result is OutputResult.UNKNOWN and not parsed.context_overflow:
            parsed = _parsed_from_outcome_file(run.outcome_path, since=outcome_mtime) or parsed
        classification = classify_attempt(parsed, result)
        if not classification.succeeded:
            self._record_failure(run, classification)
            raise _AttemptFailedError(classification)
        return classification

    def _prompt_context(
        self,
        run: _TaskRun,
        derived: DerivedProjectState,
    ) -> ExecutionPromptContext:
        task = run.task
        project_path = run.project_path
        by_id = {item.id: item for item in derived.tasks}
        dependency_outcomes: dict[str, str] = {}
        for dependency_id in task.dependencies:
            dependency = by_id.get(dependency_id)
            if dependency is None or dependency.status is not DerivedTaskStatus.COMPLETED:
                continue
            path = outcome_file_path(project_path, dependency.id, dependency.name)
            if path.is_file():
                dependency_outcomes[dependency.id] = path.read_text("utf-8")
        previous = [
            outcome_file_path(project_path, item.id, item.name)
            for item in derived.tasks
            if item.status is DerivedTaskStatus.COMPLETED and item.id != task.id
        ]
        return ExecutionPromptContext(
            project_path=project_path,
            plan_path=task.plan_file,
            outcome_path=run.outcome_path,
            task_id=task.id,
            task_number=run.task_number,
            total_tasks=run.total_tasks,
            project_id=project_id_for(project_path),
            attempt=run.attempt,
            auto_commit=self.config.auto_commit and self.git is not None,
            previous_outcome_path=(
                run.outcome_path if run.attempt > 1 and run.outcome_path.is_file() else None
            ),
            dependency_ids=list(task.dependencies),
            dependency_outcomes=dependency_outcomes,
            previous_outcome_files=previous,
        )

    def _record_failure(self, run: _TaskRun, classification: AttemptClassification) -> None:
        reason = classification.reason or classification.failure_class.value
        run.history.failures.append(AttemptFailure(attempt=run.attempt, reason=reason))
        logger.info(
            "Task %s attempt %s failed (%s): %s",
            run.task.id,
            run.attempt,
            classification.failure_class.value,
            reason,
        )
        logger.debug("Attempt classification: %s", classification.to_details())

    def _before_retry(
        self,
        run: _TaskRun,
        attempt: int,
        error: Exception,
        *,
        workdir: Path,
        stash_name: str,
    ) -> None:
        if self.git is not None:
            stash_changes(
                self.git,
                stash_name,
                workdir,
                exclude=_project_exclude(run.project_path, workdir),
            )
        self._progress(
            f"  Attempt {attempt}/{self.config.max_retries} of task {run.task.id} failed: "
            f"{error}. Retrying...",
        )

    def _finish_success(
        self,
        store: StateStore,
        run: _TaskRun,
        record: TaskRunRecord,
        *,
        workdir: Path,
        head_before: str | None,
    ) -> None:
        task = run.task
        content = success_outcome_content(run.outcome_path, task.id)
        run.outcome_path.parent.mkdir(parents=True, exist_ok=True)
        run.outcome_path.write_text(content, "utf-8")

        project_changes: list[str] = []
        if self.git is not None:
            project = _project_exclude(run.project_path, repo_root(self.git, workdir))
            prefixes = tuple(f"{item}/" for item in project)
            # Paths dirty before the task started belong to the user.
            baseline = set(store.get_task_baseline(task.id) or ())
            for path in changed_files(self.git, workdir):
                if path.startswith(prefixes):
                    project_changes.append(path)
                elif path not in baseline:
                    record.changed_files.append(path)
            if record.changed_files:
                self._progress(f"  Files changed: {', '.join(record.changed_files)}")
        if self.git is not None and self.config.auto_commit:
            record.commit_hash = commit_task_changes(
                self.git,
                project_id=project_id_for(run.project_path),
                task_id=task.id,
                task_name=task.name,
                paths=[*record.changed_files, *project_changes],
                cwd=workdir,
            )
            if record.commit_hash is None:
                head_after = head_commit_hash(self.git, workdir)
                if head_after != head_before:
                    record.commit_hash = head_after
        store.update_task_status(task.id, TaskStatus.COMPLETED, commit_hash=record.commit_hash)
        self._progress(
            f"[{run.task_number}/{run.total_tasks}] Task {task.id} ({task.name}) completed "
            f"({format_elapsed(record.elapsed_seconds)})",
        )

    def _finish_failure(  # noqa: PLR0913
        self,
        store: StateStore,
        run: _TaskRun,
        record: TaskRunRecord,
        classification: AttemptClassification,
        workdir: Path,
        stash_name: str,
    ) -> None:
        task = run.task
        reason = classification.reason or classification.failure_class.value
        stashed = False
        if self.git is not None:
            stashed = stash_changes(
                self.git,
                stash_name,
                workdir,
                exclude=_project_exclude(run.project_path, workdir),
            )
        record.status = TaskStatus.FAILED
        record.failure_class = classification.failure_class
        record.failure_reason = reason
        record.stash_name = stash_name if stashed else None

        run.outcome_path.parent.mkdir(parents=True, exist_ok=True)
        run.outcome_path.write_text(
            failed_outcome(
                task_id=task.id,
                reason=reason,
                attempts=run.attempt,
                elapsed_seconds=record.elapsed_seconds,
                failed_at=utc_now().isoformat().replace("+00:00", "Z"),
                stash_name=record.stash_name,
                history=run.history,
                output_summary=extract_summary(run.last_output) if run.last_output else None,
            ),
            "utf-8",
        )
        store.update_task_status(task.id, TaskStatus.FAILED, failure_reason=reason)
        self._progress(
            f"[{run.task_number}/{run.total_tasks}] Task {task.id} ({task.name}) failed: "
            f"{reason} ({format_elapsed(record.elapsed_seconds)})",
        )
        if record.stash_name:
            self._progress(f"  Changes stashed as: {record.stash_name}")

    def _write_log(self, project_path: Path, task: DerivedTask, output: str) -> None:
        path = log_file_path(project_path, task.id, task.name)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(output, "utf-8")
        logger.debug("Saved agent output for task %s to %s", task.id, path)

    def _progress(self, line: str) -> None:
        logger.debug(line)
        if self.on_progress is not None:
            self.on_progress(line)


def _mark_aborted(store: StateStore, task_id: str, error: Exception) -> None:
    """Record an infrastructure failure before it propagates."""

    logger.error("Task %s aborted: %s", task_id, error)
    try:
        store.update_task_status(task_id, TaskStatus.FAILED, failure_reason=str(error))
        store.set_status(ProjectStatus.FAILED)
    except OSError:
        logger.exception("Could not record the failure of task %s", task_id)


def _parsed_from_outcome_file(path: Path, *, since: float | None) -> ParsedOutput | None:
    modified = _mtime(path)
    if modified is None or (since is not None and modified <= since):
        return None
    parsed = parse_output(path.read_text("utf-8"))
    if parsed.result is OutputResult.UNKNOWN:
        return None
    return parsed


def _project_exclude(project_path: Path, workdir: Path) -> tuple[str, ...]:
    project = project_path.resolve()
    try:
        return (project.relative_to(workdir.resolve()).as_posix(),)
    except ValueError:
        return ()


def _mtime(path: Path) -> float | None:
    try:
        return path.stat().st_mtime
    except FileNotFoundError:
        return None
