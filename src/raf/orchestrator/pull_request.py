"""Open a GitHub pull request for a worktree branch via ``gh``."""

from __future__ import annotations

import logging
import re
import tempfile
from dataclasses import dataclass
from pathlib import Path

from raf.orchestrator.failure_classifier import is_retryable_error
from raf.orchestrator.git import GitCli, GitCommandError
from raf.orchestrator.paths import (
    decisions_path,
    input_path,
    outcomes_dir,
    project_name_for,
)
from raf.orchestrator.retry import with_retry

logger = logging.getLogger(__name__)

_PUSH_ATTEMPTS = 3
_OUTCOME_TASK_ID = re.compile(r"^(\d{2,3})-")


class PullRequestError(RuntimeError):
    """Branch push or PR creation failed."""


@dataclass(slots=True)
class PrPreflight:
    """Prerequisites for ``gh pr create``."""

    gh_installed: bool = False
    gh_authenticated: bool = False
    github_remote: bool = False
    branch_pushed: bool = False
    error: str | None = None

    @property
    def ready(self) -> bool:
        return self.error is None and self.github_remote


class PullRequestCreator:
    def __init__(self, *, git: GitCli, gh: GitCli | None = None) -> None:
        self.git = git
        self.gh = gh or GitCli(executable="gh")

    def preflight(self, branch: str, *, cwd: Path) -> PrPreflight:
        result = PrPreflight()
        result.gh_installed = self._gh_ok(["--version"], cwd=cwd)
        if not result.gh_installed:
            result.error = (
                "GitHub CLI (gh) is not installed. Install it from https://cli.github.com/"
            )
            return result
        result.gh_authenticated = self._gh_ok(["auth", "status"], cwd=cwd)
        if not result.gh_authenticated:
            result.error = "GitHub CLI is not authenticated. Run `gh auth login` to authenticate."
            return result

        remote = self.git.run(["remote", "get-url", "origin"], cwd=cwd, check=False)
        result.github_remote = remote.returncode == 0 and "github.com" in remote.stdout
        if not result.github_remote:
            result.error = "The git remote is not a GitHub repository."
            return result

        heads = self.git.run(["ls-remote", "--heads", "origin", branch], cwd=cwd, check=False)
        result.branch_pushed = heads.returncode == 0 and bool(heads.stdout.strip())
        return result

    def detect_base_branch(self, *, cwd: Path) -> str | None:
        symbolic = self.git.run(
            ["symbolic-ref", "refs/remotes/origin/HEAD"],
            cwd=cwd,
            check=False,
        )
        if symbolic.returncode == 0 and symbolic.stdout.strip():
            return symbolic.stdout.strip().rsplit("/", 1)[-1]
        for candidate in ("main", "master"):
            verify = self.git.run(
                ["rev-parse", "--verify", f"refs/heads/{candidate}"],
                cwd=cwd,
                check=False,
            )
            if verify.returncode == 0:
                return candidate
        return None

    def push_branch(self, branch: str, *, cwd: Path) -> None:
        outcome = with_retry(
            lambda: self.git.run(["push", "-u", "origin", branch], cwd=cwd),
            max_retries=_PUSH_ATTEMPTS,
            on_retry=lambda attempt, error: logger.warning(
                "Push attempt %s failed, retrying: %s",
                attempt,
                error,
            ),
            should_retry=is_retryable_error,
        )
        if not outcome.success:
            raise PullRequestError(f"Failed to push branch {branch!r}: {outcome.last_error}")

    def create(
        self,
        *,
        branch: str,
        project_path: Path,
        cwd: Path,
        base_branch: str | None = None,
        preflight: PrPreflight | None = None,
    ) -> str:
        """Push ``branch`` if needed and open the PR; returns the PR URL."""

        checks = preflight or self.preflight(branch, cwd=cwd)
        if not checks.ready:
            raise PullRequestError(checks.error or "PR preflight failed")
        base = base_branch or self.detect_base_branch(cwd=cwd)
        if base is None:
            raise PullRequestError("Could not detect base branch. Specify it explicitly.")
        if not checks.branch_pushed:
            logger.info("Pushing branch %s to origin", branch)
            self.push_branch(branch, cwd=cwd)

        with tempfile.NamedTemporaryFile(
            "w",
            encoding="utf-8",
            prefix="raf-pr-body-",
            suffix=".md",
        ) as body_file:
            body_file.write(build_pr_body(project_path))
            body_file.flush()
            try:
                created = self.gh.run(
                    [
                        "pr",
                        "create",
                        "--title",
                        pr_title(project_path),
                        "--base",
                        base,
                        "--head",
                        branch,
                        "--body-file",
                        body_file.name,
                    ],
                    cwd=cwd,
                )
            except GitCommandError as error:
                raise PullRequestError(f"Failed to create PR: {error}") from error
        return created.stdout.strip()

    def _gh_ok(self, args: list[str], *, cwd: Path) -> bool:
        try:
            return self.gh.run(args, cwd=cwd, check=False).returncode == 0
        except FileNotFoundError:
            return False


def pr_title(project_path: Path) -> str:
    """``00abc0-merge-guardian`` becomes ``Merge guardian``."""

    name = project_name_for(project_path)
    if not name:
        return "Feature branch"
    words = name.split("-")
    words[0] = words[0][:1].upper() + words[0][1:]
    return " ".join(words)


def build_pr_body(project_path: Path) -> str:
    """Deterministic PR description from the project's input, decisions and outcomes."""

    lines = ["## Summary"]
    summary = _first_prose_line(input_path(project_path))
    if summary:
        lines.append(summary)

    lines += ["", "## Key Decisions"]
    decision = _first_prose_line(decisions_path(project_path))
    lines.append(f"- {decision}" if decision else "- No decisions recorded")

    lines += ["", "## What Was Done"]
    outcome_root = outcomes_dir(project_path)
    outcome_ids = (
        sorted(
            match.group(1)
            for match in (_OUTCOME_TASK_ID.match(path.name) for path in outcome_root.glob("*.md"))
            if match is not None
        )
        if outcome_root.is_dir()
        else []
    )
    if outcome_ids:
        lines.append(f"- {len(outcome_ids)} task(s) completed: {', '.join(outcome_ids)}")
    else:
        lines.append("- No tasks completed yet")

    lines += ["", "## Test Plan", "- Review the changes and verify correctness"]
    return "\n".join(lines)


def _first_prose_line(path: Path) -> str | None:
    if not path.is_file():
        return None
    for line in path.read_text("utf-8").splitlines():
        if line.strip() and not line.startswith("#"):
            return line.strip()
    return None
