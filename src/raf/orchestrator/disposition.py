"""What happens to a worktree branch after a batch run."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from raf.orchestrator.git import GitCommandError
from raf.orchestrator.pull_request import PullRequestCreator, PullRequestError
from raf.orchestrator.worktree import Worktree, WorktreeManager

logger = logging.getLogger(__name__)


class PostExecutionAction(str, Enum):
    """Disposition of the worktree branch once tasks are done."""

    MERGE = "merge"
    PR = "pr"
    LEAVE = "leave"


@dataclass(slots=True)
class DispositionResult:
    action: PostExecutionAction
    applied: bool
    worktree_removed: bool = False
    merged: bool = False
    pr_url: str | None = None
    messages: list[str] = field(default_factory=list)


def choose_post_execution_action(
    *,
    configured: PostExecutionAction | None,
    ask: Callable[[], str],
    branch: str,
    worktree_path: Path,
    pr_creator: PullRequestCreator,
) -> PostExecutionAction:
    """Resolve the action up front; a PR choice that fails preflight becomes ``leave``."""

    action = configured or PostExecutionAction(ask())
    if action is PostExecutionAction.PR:
        preflight = pr_creator.preflight(branch, cwd=worktree_path)
        if not preflight.ready:
            logger.warning(
                "PR preflight failed: %s. Falling back to leaving the branch as-is.",
                preflight.error,
            )
            return PostExecutionAction.LEAVE
    return action


class DispositionExecutor:
    """Applies merge / pr / leave after the batch."""

    def __init__(self, *, worktrees: WorktreeManager, pr_creator: PullRequestCreator) -> None:
        self.worktrees = worktrees
        self.pr_creator = pr_creator

    def apply(
        self,
        action: PostExecutionAction,
        *,
        worktree: Worktree,
        original_branch: str | None,
        batch_succeeded: bool,
    ) -> DispositionResult:
        result = DispositionResult(action=action, applied=False)
        if not batch_succeeded and action is not PostExecutionAction.LEAVE:
            result.messages.append(
                f"Tasks did not all succeed; skipping {action.value}. "
                f"Worktree kept at {worktree.path}",
            )
            return result

        result.applied = True
        if action is PostExecutionAction.MERGE:
            self._merge(worktree, original_branch, result)
        elif action is PostExecutionAction.PR:
            self._open_pr(worktree, result)
        else:
            self._remove_worktree(worktree, result)
            result.messages.append(f"Branch {worktree.branch} left as-is")
        return result

    def _merge(
        self,
        worktree: Worktree,
        original_branch: str | None,
        result: DispositionResult,
    ) -> None:
        # The merge works on the branch, so the checkout can go first.
        self._remove_worktree(worktree, result)
        if original_branch is None:
            result.messages.append("Could not determine original branch for merge.")
            return
        try:
            self.worktrees.merge_fast_forward(
                branch=worktree.branch,
                original_branch=original_branch,
            )
        except GitCommandError as error:
            logger.warning("Fast-forward merge failed: %s", error)
            result.messages.append(
                f"Could not fast-forward {original_branch} to {worktree.branch}: "
                f"{error.stderr.strip() or error}. Merge manually: git merge {worktree.branch}",
            )
            return
        result.merged = True
        result.messages.append(f"Merged {worktree.branch} into {original_branch} (fast-forward)")

    def _open_pr(self, worktree: Worktree, result: DispositionResult) -> None:
        try:
            result.pr_url = self.pr_creator.create(
                branch=worktree.branch,
                project_path=worktree.project_path,
                cwd=worktree.path,
            )
        except PullRequestError as error:
            logger.warning("Pull request creation failed: %s", error)
            result.messages.append(f"Could not create PR: {error}")
        else:
            result.messages.append(f"PR created: {result.pr_url}")
        result.messages.append(f"Worktree kept for follow-up commits: {worktree.path}")

    def _remove_worktree(self, worktree: Worktree, result: DispositionResult) -> None:
        try:
            self.worktrees.remove(worktree.path)
        except GitCommandError as error:
            logger.warning("Could not remove worktree %s: %s", worktree.path, error)
            result.messages.append(f"Could not clean up worktree: {error}")
            return
        result.worktree_removed = True
        result.messages.append(f"Cleaned up worktree: {worktree.path}")
