"""Thin wrapper around the ``git`` command line."""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


class GitCommandError(RuntimeError):
    """``git`` exited with a non-zero status."""

    def __init__(
        self,
        args: list[str],
        returncode: int,
        stderr: str,
        *,
        executable: str = "git",
    ) -> None:
        super().__init__(f"{executable} {' '.join(args)} failed ({returncode}): {stderr.strip()}")
        self.args_list = args
        self.returncode = returncode
        self.stderr = stderr


@dataclass(slots=True)
class CommandResult:
    returncode: int
    stdout: str
    stderr: str


class GitCli:
    """Runs git (or gh) subprocesses; tests substitute a recording fake."""

    def __init__(self, executable: str = "git") -> None:
        self.executable = executable

    def run(self, args: list[str], *, cwd: Path | None = None, check: bool = True) -> CommandResult:
        logger.debug("%s %s (cwd=%s)", self.executable, " ".join(args), cwd)
        completed = subprocess.run(  # noqa: S603
            [self.executable, *args],
            cwd=cwd,
            capture_output=True,
            text=True,
            check=False,
        )
        result = CommandResult(
            returncode=completed.returncode,
            stdout=completed.stdout,
            stderr=completed.stderr,
        )
        if check and result.returncode != 0:
            raise GitCommandError(
                args,
                result.returncode,
                result.stderr,
                executable=self.executable,
            )
        return result


def parse_git_status(output: str) -> list[str]:
    """Extract paths from ``git status --porcelain`` output.

    Renames and copies report their destination path; quoted paths are
    unquoted.
    """

    files: list[str] = []
    for line in output.split("\n"):
        if len(line) < 3:
            continue
        path = line[3:]
        if "R" in line[:2] or "C" in line[:2]:
            arrow = path.find(" -> ")
            if arrow != -1:
                path = path[arrow + 4 :]
        if len(path) >= 2 and path.startswith('"') and path.endswith('"'):
            path = path[1:-1]
        files.append(path)
    return files


def is_git_repo(git: GitCli, cwd: Path | None = None) -> bool:
    result = git.run(["rev-parse", "--is-inside-work-tree"], cwd=cwd, check=False)
    return result.returncode == 0 and result.stdout.strip() == "true"


def repo_root(git: GitCli, cwd: Path | None = None) -> Path:
    return Path(git.run(["rev-parse", "--show-toplevel"], cwd=cwd).stdout.strip())


def current_branch(git: GitCli, cwd: Path | None = None) -> str | None:
    branch = git.run(["branch", "--show-current"], cwd=cwd, check=False).stdout.strip()
    return branch or None


def changed_files(git: GitCli, cwd: Path | None = None) -> list[str]:
    """Paths reported by ``git status``; empty outside a repository."""

    result = git.run(["status", "--porcelain", "--untracked-files=all"], cwd=cwd, check=False)
    if result.returncode != 0:
        return []
    return parse_git_status(result.stdout)


def stash_changes(
    git: GitCli,
    name: str,
    cwd: Path | None = None,
    *,
    exclude: tuple[str, ...] = (),
) -> bool:
    """Stash tracked and untracked changes under ``name``.

    Paths under ``exclude`` (repository-relative) stay in the working tree.
    Returns False when there was nothing to stash.
    """

    prefixes = tuple(item.rstrip("/") + "/" for item in exclude)
    candidates = [path for path in changed_files(git, cwd) if not path.startswith(prefixes)]
    if not candidates:
        return False
    args = ["stash", "push", "--include-untracked", "-m", name]
    if exclude:
        args += ["--", ".", *(f":(exclude){item}" for item in exclude)]
    git.run(args, cwd=cwd)
    logger.info("Stashed uncommitted changes as %s", name)
    return True


def head_commit_hash(git: GitCli, cwd: Path | None = None) -> str | None:
    result = git.run(["rev-parse", "HEAD"], cwd=cwd, check=False)
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


def commit_message(project_id: str, task_id: str, task_name: str) -> str:
    return f"RAF[{project_id}:{task_id}] {task_name}"


def commit_task_changes(  # noqa: PLR0913
    git: GitCli,
    *,
    project_id: str,
    task_id: str,
    task_name: str,
    paths: list[str],
    cwd: Path | None = None,
) -> str | None:
    """Commit ``paths`` for a finished task.

    Returns the new HEAD hash, or None when none of them changed.
    """

    return commit_paths(git, paths, commit_message(project_id, task_id, task_name), cwd=cwd)


def commit_paths(
    git: GitCli,
    paths: list[str],
    message: str,
    cwd: Path | None = None,
) -> str | None:
    """Stage and commit only ``paths``; other staged or dirty files stay out.

    ``paths`` are repository-relative. Returns None when nothing under them
    changed.
    """

    if not paths:
        return None
    root = repo_root(git, cwd)
    git.run(["add", "--", *paths], cwd=root)
    diff = git.run(["diff", "--cached", "--name-only", "--", *paths], cwd=root)
    staged = [line for line in diff.stdout.splitlines() if line]
    if not staged:
        logger.debug("Nothing staged under %s", ", ".join(paths))
        return None
    git.run(["commit", "-m", message, "--only", "--", *staged], cwd=root)
    return head_commit_hash(git, root)
