from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import allure
import pytest

from raf.orchestrator.disposition import DispositionExecutor, PostExecutionAction
from raf.orchestrator.git import GitCli, GitCommandError
from raf.orchestrator.pull_request import PullRequestCreator
from raf.orchestrator.worktree import WorktreeManager

pytestmark = [
    allure.epic("Version Control"),
    allure.feature("Worktrees & Disposition"),
]

FOLDER = "00abc0-merge-guardian"


def _manager(git_repo: Path, tmp_path: Path) -> WorktreeManager:
    return WorktreeManager(git=GitCli(), repo_root=git_repo, worktree_root=tmp_path / "worktrees")


def _committed_project(git_repo: Path, git_cmd: Callable[..., str]) -> Path:
    project = git_repo / "RAF" / FOLDER
    (project / "plans").mkdir(parents=True)
    (project / "plans" / "01-task.md").write_text("# Task\n", "utf-8")
    git_cmd(git_repo, "add", "-A")
    git_cmd(git_repo, "commit", "-m", "plan project")
    return project


def _work_on_branch(worktree_path: Path, git_cmd: Callable[..., str]) -> None:
    (worktree_path / "feature.py").write_text("VALUE = 1\n", "utf-8")
    git_cmd(worktree_path, "add", "-A")
    git_cmd(worktree_path, "commit", "-m", "RAF[00abc0:01] task")


def test_ensure_creates_worktree_and_copies_uncommitted_project(
    git_repo: Path,
    tmp_path: Path,
) -> None:
    project = git_repo / "RAF" / FOLDER
    (project / "plans").mkdir(parents=True)
    (project / "plans" / "01-task.md").write_text("# Task\n", "utf-8")
    manager = _manager(git_repo, tmp_path)

    worktree = manager.ensure(project)

    assert worktree.branch == FOLDER
    assert worktree.path == tmp_path / "worktrees" / "repo" / FOLDER
    assert worktree.project_path == worktree.path / "RAF" / FOLDER
    assert (worktree.project_path / "plans" / "01-task.md").is_file()
    assert manager.branch_exists(FOLDER)

    validation = manager.validate(worktree.path, Path("RAF") / FOLDER)
    assert validation.usable
    assert manager.ensure(project).path == worktree.path


def test_ensure_refuses_directory_that_is_not_a_worktree(git_repo: Path, tmp_path: Path) -> None:
    project = git_repo / "RAF" / FOLDER
    (project / "plans").mkdir(parents=True)
    manager = _manager(git_repo, tmp_path)
    manager.path_for(FOLDER).mkdir(parents=True)

    with pytest.raises(GitCommandError, match="not a usable worktree"):
        manager.ensure(project)


def test_merge_removes_worktree_then_fast_forwards(
    git_repo: Path,
    tmp_path: Path,
    git_cmd: Callable[..., str],
) -> None:
    manager = _manager(git_repo, tmp_path)
    worktree = manager.ensure(_committed_project(git_repo, git_cmd))
    _work_on_branch(worktree.path, git_cmd)
    executor = DispositionExecutor(worktrees=manager, pr_creator=PullRequestCreator(git=GitCli()))

    result = executor.apply(
        PostExecutionAction.MERGE,
        worktree=worktree,
        original_branch="main",
        batch_succeeded=True,
    )

    assert result.applied
    assert result.worktree_removed
    assert result.merged
    assert not worktree.path.exists()
    assert (git_repo / "feature.py").is_file()
    assert git_cmd(git_repo, "rev-list", "--merges", "--count", "HEAD").strip() == "0"
    assert manager.branch_exists(FOLDER)


def test_merge_that_cannot_fast_forward_reports_manual_step(
    git_repo: Path,
    tmp_path: Path,
    git_cmd: Callable[..., str],
) -> None:
    manager = _manager(git_repo, tmp_path)
    worktree = manager.ensure(_committed_project(git_repo, git_cmd))
    _work_on_branch(worktree.path, git_cmd)
    (git_repo / "other.py").write_text("OTHER = 1\n", "utf-8")
    git_cmd(git_repo, "add", "-A")
    git_cmd(git_repo, "commit", "-m", "diverge")
    executor = DispositionExecutor(worktrees=manager, pr_creator=PullRequestCreator(git=GitCli()))

    result = executor.apply(
        PostExecutionAction.MERGE,
        worktree=worktree,
        original_branch="main",
        batch_succeeded=True,
    )

    assert not result.merged
    assert any(f"git merge {FOLDER}" in message for message in result.messages)
    assert not (git_repo / "feature.py").exists()


def test_failed_batch_keeps_worktree(
    git_repo: Path,
    tmp_path: Path,
    git_cmd: Callable[..., str],
) -> None:
    manager = _manager(git_repo, tmp_path)
    worktree = manager.ensure(_committed_project(git_repo, git_cmd))
    executor = DispositionExecutor(worktrees=manager, pr_creator=PullRequestCreator(git=GitCli()))

    result = executor.apply(
        PostExecutionAction.MERGE,
        worktree=worktree,
        original_branch="main",
        batch_succeeded=False,
    )

    assert not result.applied
    assert worktree.path.is_dir()
    assert "skipping merge" in result.messages[0]


def test_leave_removes_worktree_but_keeps_branch(
    git_repo: Path,
    tmp_path: Path,
    git_cmd: Callable[..., str],
) -> None:
    manager = _manager(git_repo, tmp_path)
    worktree = manager.ensure(_committed_project(git_repo, git_cmd))
    executor = DispositionExecutor(worktrees=manager, pr_creator=PullRequestCreator(git=GitCli()))

    result = executor.apply(
        PostExecutionAction.LEAVE,
        worktree=worktree,
        original_branch="main",
        batch_succeeded=False,
    )

    assert result.applied
    assert result.worktree_removed
    assert not worktree.path.exists()
    assert manager.branch_exists(FOLDER)
    assert result.messages[-1] == f"Branch {FOLDER} left as-is"
