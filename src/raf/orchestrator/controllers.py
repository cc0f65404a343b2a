"""Controllers for RAF CLI commands."""

from __future__ import annotations

import logging
import shutil
from collections.abc import Callable
from dataclasses import dataclass
from functools import partial
from pathlib import Path

from raf.config import Settings
from raf.orchestrator.backend import (
    AgentRunError,
    AgentRunRequest,
    HeadlessAgentBackend,
    InteractiveAgentBackend,
    InteractiveBackend,
)
from raf.orchestrator.derivation import derive_project_state, get_derived_stats
from raf.orchestrator.disposition import (
    DispositionExecutor,
    PostExecutionAction,
    choose_post_execution_action,
)
from raf.orchestrator.git import (
    GitCli,
    GitCommandError,
    commit_paths,
    current_branch,
    is_git_repo,
    repo_root,
)
from raf.orchestrator.models import DerivedTaskStatus, TaskStatus
from raf.orchestrator.outcomes import format_elapsed, format_retry_history
from raf.orchestrator.paths import (
    decisions_path,
    discover_projects,
    input_path,
    plans_dir,
    project_id_for,
    project_name_for,
    resolve_project,
)
from raf.orchestrator.prompts import DefaultPromptFactory, PromptFactory, build_planning_prompt
from raf.orchestrator.pull_request import PullRequestCreator
from raf.orchestrator.shutdown import ShutdownCoordinator
from raf.orchestrator.state_store import StateFileError, StateStore
from raf.orchestrator.usage import format_model_lines, format_usage_line
from raf.orchestrator.worker import ProjectRunSummary, ProjectWorker
from raf.orchestrator.worktree import Worktree, WorktreeManager

logger = logging.getLogger(__name__)

_STATUS_SYMBOLS = {
    DerivedTaskStatus.PENDING: "○",
    DerivedTaskStatus.COMPLETED: "✓",
    DerivedTaskStatus.FAILED: "✗",
}


@dataclass(slots=True)
class StatusCommand:
    """CLI input for project status."""

    raf_dir: Path | None
    project: str | None


@dataclass(slots=True)
class DoCommand:
    """CLI input for project execution."""

    raf_dir: Path | None
    project: str
    timeout_minutes: int | None = None
    force: bool = False
    worktree: bool | None = None
    post_action: str | None = None
    model: str | None = None
    stream_json: bool | None = None
    debug: bool = False


@dataclass(slots=True)
class PlanCommand:
    """CLI input for an interactive planning session."""

    raf_dir: Path | None
    project: str
    model: str | None = None


@dataclass(slots=True)
class CommandResult:
    """Lines to render plus overall success."""

    lines: list[str]
    success: bool


class RafCliController:
    """Coordinates status, execution and planning CLI operations."""

    def __init__(
        self,
        *,
        echo: Callable[[str], None] | None = None,
        display: Callable[[str], None] | None = None,
        ask_post_action: Callable[[], str] | None = None,
        prompt_factory: PromptFactory | None = None,
        git: GitCli | None = None,
        interactive: InteractiveBackend | None = None,
    ) -> None:
        self.echo = echo
        self.display = display
        self.ask_post_action = ask_post_action or (lambda: PostExecutionAction.LEAVE.value)
        self.prompt_factory = prompt_factory or DefaultPromptFactory()
        self.git = git or GitCli()
        self.interactive = interactive

    def status(self, command: StatusCommand) -> list[str]:
        """Derived status for every project, or the task list of one."""

        settings = Settings.from_env(raf_dir=command.raf_dir)
        if command.project is None:
            projects = discover_projects(settings.raf_dir)
            if not projects:
                return [f"No projects found in {settings.raf_dir}"]
            lines: list[str] = []
            for project in projects:
                state = derive_project_state(project.path)
                stats = get_derived_stats(state)
                lines.append(
                    f"{project.project_id} {project.name}: {state.status.value} "
                    f"({stats.completed}/{stats.total} completed, {stats.failed} failed)",
                )
            return lines

        project_path = resolve_project(settings.raf_dir, command.project)
        if project_path is None:
            raise ValueError(f"Project not found: {command.project!r}")
        state = derive_project_state(project_path)
        stats = get_derived_stats(state)
        lines = [
            f"Project: {project_path.name}",
            f"Status: {state.status.value}",
            f"Tasks: {stats.completed} completed, {stats.failed} failed, "
            f"{stats.pending} pending ({stats.total} total)",
        ]
        for task in state.tasks:
            line = f"  {_STATUS_SYMBOLS[task.status]} {task.id} {task.name}"
            if task.dependencies:
                line += f" (depends on {', '.join(task.dependencies)})"
            lines.append(line)
        if StateStore.exists(project_path):
            try:
                store = StateStore.load(project_path)
            except StateFileError as error:
                lines.append(f"State file: {error}")
            else:
                skipped = [
                    task.id for task in store.state.tasks if task.status is TaskStatus.SKIPPED
                ]
                if skipped:
                    lines.append(f"Skipped (blocked): {', '.join(skipped)}")
        return lines

    def run_project(self, command: DoCommand) -> CommandResult:
        """Execute a project's tasks and apply the post-run worktree action."""

        try:
            settings = _settings_for(command)
            settings.validate()
        except ValueError as error:
            return CommandResult(lines=[f"Configuration error: {error}"], success=False)

        project_path = resolve_project(settings.raf_dir, command.project)
        if project_path is None:
            return CommandResult(lines=[f"Project not found: {command.project!r}"], success=False)

        shutdown = ShutdownCoordinator()
        try:
            with shutdown.installed():
                return self._execute(command, settings, project_path.resolve(), shutdown)
        except (StateFileError, GitCommandError, AgentRunError) as error:
            logger.debug("Project run aborted", exc_info=True)
            return CommandResult(lines=[f"Error: {error}"], success=False)

    def plan(self, command: PlanCommand) -> CommandResult:
        """Run the agent interactively to turn ``input.md`` into plan files."""

        settings = Settings.from_env(raf_dir=command.raf_dir)
        if command.model:
            settings.agent.model = command.model
        settings.validate()
        project_path = resolve_project(settings.raf_dir, command.project)
        if project_path is None:
            project_path = settings.raf_dir / command.project
        request_file = input_path(project_path)
        if not request_file.is_file():
            return CommandResult(lines=[f"Missing {request_file}"], success=False)

        shutdown = ShutdownCoordinator()
        backend = self.interactive or InteractiveAgentBackend(
            shutdown=shutdown,
            kill_grace_seconds=settings.execution.kill_grace_seconds,
        )
        with shutdown.installed():
            exit_code = backend.run_interactive(
                AgentRunRequest(
                    prompt=build_planning_prompt(project_path, request_file.read_text("utf-8")),
                    model=settings.agent.model,
                    command_template=settings.agent.interactive_command_template,
                    cwd=project_path,
                    user_message="Plan the project described in the system prompt.",
                ),
            )

        state = derive_project_state(project_path)
        if StateStore.exists(project_path):
            store = StateStore.load(project_path)
            for task in state.tasks:
                if not store.has_task(task.id):
                    store.add_task(task.id, f"plans/{task.plan_file.name}")
        else:
            store = StateStore.initialize(
                project_path,
                project_name=project_name_for(project_path),
                config=settings.execution.project_config(),
            )
            store.sync_tasks_from_plans()
        store.set_status(state.status)
        lines = [
            f"Planning session exited with code {exit_code}",
            f"Plans in {project_path.name}: {len(state.tasks)}",
        ]
        if state.tasks and settings.execution.auto_commit:
            commit = self._commit_project_files(
                project_path,
                [input_path(project_path), decisions_path(project_path), plans_dir(project_path)],
                f"RAF[{project_id_for(project_path)}] Plan: {project_name_for(project_path)}",
            )
            if commit is not None:
                lines.append(f"Committed planning artifacts: {commit[:12]}")
        return CommandResult(lines=lines, success=exit_code == 0 and bool(state.tasks))

    def _execute(
        self,
        command: DoCommand,
        settings: Settings,
        project_path: Path,
        shutdown: ShutdownCoordinator,
    ) -> CommandResult:
        in_repo = shutil.which(self.git.executable) is not None and is_git_repo(
            self.git,
            project_path,
        )
        cwd = repo_root(self.git, project_path) if in_repo else project_path.parent
        run_path = project_path
        worktree: Worktree | None = None
        manager: WorktreeManager | None = None
        pr_creator = PullRequestCreator(git=self.git)
        original_branch: str | None = None
        action: PostExecutionAction | None = None
        cleanup: Callable[[], None] | None = None

        if settings.worktree.enabled:
            if not in_repo:
                return CommandResult(
                    lines=["Worktree mode requires the project to be inside a git repository."],
                    success=False,
                )
            manager = WorktreeManager(
                git=self.git,
                repo_root=cwd,
                worktree_root=settings.worktree.root,
            )
            original_branch = current_branch(self.git, cwd)
            worktree = manager.ensure(project_path)
            self._echo(f"Worktree: {worktree.path} (branch {worktree.branch})")
            action = choose_post_execution_action(
                configured=settings.worktree.post_execution_action,
                ask=self.ask_post_action,
                branch=worktree.branch,
                worktree_path=worktree.path,
                pr_creator=pr_creator,
            )
            run_path, cwd = worktree.project_path, worktree.path
            cleanup = partial(self._echo, f"Interrupted; worktree kept at {worktree.path}")
            shutdown.add_cleanup(cleanup)

        worker = ProjectWorker(
            backend=HeadlessAgentBackend(
                shutdown=shutdown,
                completion_grace_seconds=settings.execution.completion_grace_seconds,
                outcome_poll_seconds=settings.execution.outcome_poll_seconds,
                kill_grace_seconds=settings.execution.kill_grace_seconds,
            ),
            prompt_factory=self.prompt_factory,
            command_template=settings.agent.headless_template(),
            model=settings.agent.model,
            git=self.git if in_repo else None,
            config=settings.execution.project_config(),
            stream_json=settings.agent.stream_json,
            force=command.force,
            save_logs=command.debug,
            on_progress=self.echo,
            on_display=(
                self.display if settings.agent.stream_json or command.debug else None
            ),
        )
        try:
            summary = worker.run(run_path, cwd=cwd)
        finally:
            if cleanup is not None:
                shutdown.remove_cleanup(cleanup)
        lines = render_summary(summary)

        if worktree is not None and manager is not None and action is not None:
            if settings.execution.auto_commit and summary.error is None:
                # The state document changes after each task commit.
                self._commit_project_files(
                    run_path,
                    [run_path],
                    f"RAF[{project_id_for(run_path)}] Project state: "
                    f"{derive_project_state(run_path).status.value}",
                )
            disposition = DispositionExecutor(worktrees=manager, pr_creator=pr_creator).apply(
                action,
                worktree=worktree,
                original_branch=original_branch,
                batch_succeeded=summary.succeeded,
            )
            lines += disposition.messages
        return CommandResult(lines=lines, success=summary.succeeded)

    def _commit_project_files(
        self,
        project_path: Path,
        paths: list[Path],
        message: str,
    ) -> str | None:
        """Commit existing ``paths`` of a project; None outside git or when unchanged."""

        if shutil.which(self.git.executable) is None or not is_git_repo(self.git, project_path):
            return None
        root = repo_root(self.git, project_path).resolve()
        relative = [
            path.resolve().relative_to(root).as_posix() for path in paths if path.exists()
        ]
        return commit_paths(self.git, relative, message, cwd=root)

    def _echo(self, line: str) -> None:
        if self.echo is not None:
            self.echo(line)


def render_summary(summary: ProjectRunSummary) -> list[str]:
    """Console lines for a finished batch."""

    if summary.error is not None:
        return [f"Error: {summary.error}"]
    lines = [
        f"Project {summary.project_path.name}: completed={summary.completed} "
        f"failed={summary.failed} skipped={summary.skipped} retried={summary.retried}",
    ]
    if summary.halted:
        lines.append(f"Stopped early: {summary.halt_reason}")
    if summary.retry_histories:
        lines.append("Retry history:")
        for history in summary.retry_histories:
            lines.extend(format_retry_history(history))
    for record in summary.tasks:
        if record.status is TaskStatus.SKIPPED:
            lines.append(
                f"  {record.task_id} {record.task_name}: skipped ({record.failure_reason})",
            )
        elif record.attempts:
            lines.append(
                f"  {record.task_id} {record.task_name}: {record.status.value} "
                f"in {format_elapsed(record.elapsed_seconds)}",
            )
    for entry in summary.usage.entries:
        lines.append(f"  {entry.task_id} {format_usage_line(entry.usage)}")
    if len(summary.usage.entries) > 1:
        lines.append(f"  total {format_usage_line(summary.usage.totals())}")
    lines.extend(f"  {line}" for line in format_model_lines(summary.usage.totals()))
    return lines


def _settings_for(command: DoCommand) -> Settings:
    settings = Settings.from_env(raf_dir=command.raf_dir)
    if command.timeout_minutes is not None:
        settings.execution.timeout_minutes = command.timeout_minutes
    if command.model:
        settings.agent.model = command.model
    if command.stream_json is not None:
        settings.agent.stream_json = command.stream_json
    if command.worktree is not None:
        settings.worktree.enabled = command.worktree
    if command.post_action is not None:
        settings.worktree.post_execution_action = PostExecutionAction(command.post_action.lower())
    return settings
