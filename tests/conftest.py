"""Shared test fixtures."""

from __future__ import annotations

import os
import shlex
import shutil
import subprocess
import sys
from collections.abc import Callable
from pathlib import Path

import pytest


def _echo_agent_command(*extra: str) -> str:
    parts = [shlex.quote(sys.executable), "-m", "raf.orchestrator.backend.echo_agent"]
    parts += [shlex.quote(item) for item in extra]
    parts += ["--prompt", "{prompt}", "{user_message}"]
    return " ".join(parts)


@pytest.fixture()
def echo_command() -> Callable[..., str]:
    """Command template that runs the bundled echo agent with extra flags."""

    return _echo_agent_command


@pytest.fixture(autouse=True)
def _clean_raf_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in list(os.environ):
        if name.startswith("RAF_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def make_project(tmp_path: Path) -> Callable[..., Path]:
    """Create ``RAF/<folder>/plans`` with the given plan files."""

    def _make(
        plans: dict[str, str],
        *,
        folder: str = "00abc0-merge-guardian",
        root: Path | None = None,
        outcomes: dict[str, str] | None = None,
    ) -> Path:
        project = (root or tmp_path / "RAF") / folder
        (project / "plans").mkdir(parents=True)
        for name, text in plans.items():
            (project / "plans" / name).write_text(text, "utf-8")
        if outcomes:
            (project / "outcomes").mkdir()
            for name, text in outcomes.items():
                (project / "outcomes" / name).write_text(text, "utf-8")
        return project

    return _make


@pytest.fixture()
def git_repo(tmp_path: Path) -> Path:
    """Empty git repository with one commit on ``main``."""

    if shutil.which("git") is None:
        pytest.skip("git is not installed")
    repo = tmp_path / "repo"
    repo.mkdir()
    _git(repo, "init", "-b", "main")
    _git(repo, "config", "user.email", "raf@example.com")
    _git(repo, "config", "user.name", "RAF Tests")
    _git(repo, "config", "commit.gpgsign", "false")
    (repo / "README.md").write_text("# repo\n", "utf-8")
    _git(repo, "add", "-A")
    _git(repo, "commit", "-m", "initial")
    return repo


@pytest.fixture()
def git_cmd() -> Callable[..., str]:
    return _git


def _git(repo: Path, *args: str) -> str:
    return subprocess.run(
        ["git", *args],
        cwd=repo,
        check=True,
        capture_output=True,
        text=True,
    ).stdout
