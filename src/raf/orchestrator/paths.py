"""Filesystem layout of a RAF project folder."""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

STATE_FILE_NAME = "state.json"
SUMMARY_FILE_NAME = "SUMMARY.md"

_PROJECT_FOLDER = re.compile(r"^([0-9a-z]{3,6})-(.+)$", re.IGNORECASE)
_PLAN_FILE = re.compile(r"^(\d{2,3})-(.+)\.md$")
_TASK_ID = re.compile(r"^\d{2,3}$")
_DEPENDENCIES_HEADING = re.compile(r"^##\s+Dependencies\s*$", re.IGNORECASE | re.MULTILINE)
_NEXT_HEADING = re.compile(r"^#{1,6}\s", re.MULTILINE)


@dataclass(slots=True)
class ProjectRef:
    """Project folder discovered under the RAF root."""

    project_id: str
    name: str
    path: Path

    @property
    def folder_name(self) -> str:
        return self.path.name


def plans_dir(project_path: Path) -> Path:
    return project_path / "plans"


def outcomes_dir(project_path: Path) -> Path:
    return project_path / "outcomes"


def logs_dir(project_path: Path) -> Path:
    return project_path / "logs"


def input_path(project_path: Path) -> Path:
    return project_path / "input.md"


def decisions_path(project_path: Path) -> Path:
    return project_path / "decisions.md"


def state_path(project_path: Path) -> Path:
    return project_path / STATE_FILE_NAME


def outcome_file_path(project_path: Path, task_id: str, task_name: str) -> Path:
    return outcomes_dir(project_path) / f"{task_id}-{task_name}.md"


def log_file_path(project_path: Path, task_id: str, task_name: str) -> Path:
    return logs_dir(project_path) / f"{task_id}-{task_name}.log"


def parse_plan_filename(filename: str) -> tuple[str, str] | None:
    """Split ``NN-slug.md`` into ``(task_id, slug)``."""

    match = _PLAN_FILE.match(filename)
    if match is None:
        return None
    return match.group(1), match.group(2)


def parse_project_folder(folder_name: str) -> tuple[str, str] | None:
    """Split ``<id>-<label>`` into ``(project_id, label)``."""

    match = _PROJECT_FOLDER.match(folder_name)
    if match is None:
        return None
    return match.group(1).lower(), match.group(2)


def project_id_for(project_path: Path) -> str:
    parsed = parse_project_folder(project_path.name)
    return parsed[0] if parsed is not None else "000"


def project_name_for(project_path: Path) -> str:
    parsed = parse_project_folder(project_path.name)
    return parsed[1] if parsed is not None else project_path.name


def discover_projects(raf_dir: Path) -> list[ProjectRef]:
    """List project folders sorted by identifier."""

    if not raf_dir.is_dir():
        return []
    projects: list[ProjectRef] = []
    for entry in raf_dir.iterdir():
        if not entry.is_dir():
            continue
        parsed = parse_project_folder(entry.name)
        if parsed is None:
            continue
        projects.append(ProjectRef(project_id=parsed[0], name=parsed[1], path=entry))
    return sorted(projects, key=lambda project: (len(project.project_id), project.project_id))


def resolve_project(raf_dir: Path, identifier: str) -> Path | None:
    """Resolve a project by folder name, id prefix or label."""

    candidate = Path(identifier)
    if candidate.is_dir() and (candidate / "plans").exists():
        return candidate

    normalized = identifier.strip().lower()
    for project in discover_projects(raf_dir):
        if normalized in {project.folder_name.lower(), project.project_id, project.name.lower()}:
            return project.path
    return None


def parse_dependencies(plan_text: str, *, task_id: str | None = None) -> list[str]:
    """Read task IDs from the ``## Dependencies`` section of a plan.

    IDs that are not lower than ``task_id`` are dropped; a task may only depend
    on work scheduled before it.
    """

    heading = _DEPENDENCIES_HEADING.search(plan_text)
    if heading is None:
        return []
    body = plan_text[heading.end() :]
    next_heading = _NEXT_HEADING.search(body)
    if next_heading is not None:
        body = body[: next_heading.start()]

    dependencies: list[str] = []
    for token in re.split(r"[,\s]+", body):
        candidate = token.strip().strip("`*-")
        if not _TASK_ID.match(candidate):
            continue
        if task_id is not None and int(candidate) >= int(task_id):
            continue
        if candidate not in dependencies:
            dependencies.append(candidate)
    return dependencies
