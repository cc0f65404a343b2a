"""Isolated git worktrees for project execution."""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path

from raf.orchestrator.git import GitCli, GitCommandError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Worktree:
    """A project checkout living outside the main working copy."""

    path: Path
    branch: str
    project_path: Path


@dataclass(slots=True)
class WorktreeValidation:
    exists: bool = False
    is_valid_worktree: bool = False
    has_project_folder: bool = False
    has_plans: bool = False
    project_path: Path | None = None

    @property
    def usable(self) -> bool:
        return self.exists and self.is_valid_worktree and self.has_plans


class WorktreeManager:
    """Creates, validates, merges and removes per-project worktrees.

    A project's worktree lives at ``<root>/<repo-basename>/<project-folder>``
    on a branch named after the project folder. All commands run against the
    main repository.
    """

    def __init__(self, *, git: GitCli, repo_root: Path, worktree_root: Path) -> None:
        self.git = git
        self.repo_root = repo_root
        self.worktree_root = worktree_root.expanduser()

    def path_for(self, project_folder: str) -> Path:
        return self.worktree_root / self.repo_root.name / project_folder

    def branch_exists(self, branch: str) -> bool:
        result = self.git.run(["branch", "--list", branch], cwd=self.repo_root, check=False)
        return result.returncode == 0 and bool(result.stdout.strip())

    def listed_paths(self) -> list[Path]:
        output = self.git.run(["worktree", "list", "--porcelain"], cwd=self.repo_root).stdout
        return [
            Path(line[len("worktree ") :].strip()).resolve()
            for line in output.splitlines()
            if line.startswith("worktree ")
        ]

    def validate(self, worktree_path: Path, project_relative_path: Path) -> WorktreeValidation:
        validation = WorktreeValidation()
        if not worktree_path.is_dir():
            return validation
        validation.exists = True
        try:
            validation.is_valid_worktree = worktree_path.resolve() in self.listed_paths()
        except GitCommandError:
            return validation

        project_path = worktree_path / project_relative_path
        if project_path.is_dir():
            validation.has_project_folder = True
            validation.project_path = project_path
            validation.has_plans = (project_path / "plans").is_dir()
        return validation

    def ensure(self, project_path: Path) -> Worktree:
        """Return a usable worktree for ``project_path``, creating it if needed.

        Project files that are not committed yet are copied into a freshly
        created worktree so the run sees the same plans as the main checkout.
        """

        relative = project_path.resolve().relative_to(self.repo_root.resolve())
        branch = project_path.name
        worktree_path = self.path_for(branch)
        validation = self.validate(worktree_path, relative)
        if validation.usable and validation.project_path is not None:
            return Worktree(path=worktree_path, branch=branch, project_path=validation.project_path)
        if validation.exists:
            raise GitCommandError(
                ["worktree", "list"],
                1,
                f"{worktree_path} exists but is not a usable worktree for {branch}",
            )

        worktree_path.parent.mkdir(parents=True, exist_ok=True)
        if self.branch_exists(branch):
            self.git.run(["worktree", "add", str(worktree_path), branch], cwd=self.repo_root)
        else:
            self.git.run(
                ["worktree", "add", str(worktree_path), "-b", branch],
                cwd=self.repo_root,
            )
        logger.info("Created worktree %s on branch %s", worktree_path, branch)

        target = worktree_path / relative
        if not (target / "plans").is_dir():
            shutil.copytree(project_path, target, dirs_exist_ok=True)
        return Worktree(path=worktree_path, branch=branch, project_path=target)

    def remove(self, worktree_path: Path) -> None:
        self.git.run(["worktree", "remove", str(worktree_path)], cwd=self.repo_root)
        logger.info("Removed worktree %s", worktree_path)

    def merge_fast_forward(self, *, branch: str, original_branch: str) -> None:
        """Fast-forward ``original_branch`` to ``branch``; never creates a merge commit."""

        self.git.run(["checkout", original_branch], cwd=self.repo_root)
        self.git.run(["merge", "--ff-only", branch], cwd=self.repo_root)
        logger.info("Fast-forwarded %s to %s", original_branch, branch)
