"""Runtime configuration for task execution."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from raf.orchestrator.disposition import PostExecutionAction
from raf.orchestrator.models import ProjectConfig

DEFAULT_AGENT_COMMAND = (
    "claude --dangerously-skip-permissions --model {model} "
    "--append-system-prompt {prompt} -p {user_message}"
)
DEFAULT_STREAM_AGENT_COMMAND = f"{DEFAULT_AGENT_COMMAND} --output-format stream-json --verbose"
DEFAULT_INTERACTIVE_AGENT_COMMAND = (
    "claude --model {model} --append-system-prompt {prompt} {user_message}"
)


@dataclass(slots=True)
class ExecutionSettings:
    """Per-task execution limits."""

    timeout_minutes: int = 60
    max_retries: int = 3
    auto_commit: bool = True
    completion_grace_seconds: float = 60.0
    outcome_poll_seconds: float = 5.0
    kill_grace_seconds: float = 5.0

    def project_config(self) -> ProjectConfig:
        return ProjectConfig(
            timeout=self.timeout_minutes,
            max_retries=self.max_retries,
            auto_commit=self.auto_commit,
        )


@dataclass(slots=True)
class AgentSettings:
    """How the agent CLI is launched."""

    model: str = "opus"
    command_template: str | None = None
    interactive_command_template: str = DEFAULT_INTERACTIVE_AGENT_COMMAND
    stream_json: bool = False

    def headless_template(self, *, stream_json: bool | None = None) -> str:
        """Explicit template wins; otherwise pick the default for the output mode."""

        if self.command_template:
            return self.command_template
        use_stream = self.stream_json if stream_json is None else stream_json
        return DEFAULT_STREAM_AGENT_COMMAND if use_stream else DEFAULT_AGENT_COMMAND


@dataclass(slots=True)
class WorktreeSettings:
    """Worktree isolation and post-run disposition."""

    enabled: bool = False
    root: Path = Path("~/.raf/worktrees")
    post_execution_action: PostExecutionAction | None = None


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    raf_dir: Path = Path("RAF")
    execution: ExecutionSettings = field(default_factory=ExecutionSettings)
    agent: AgentSettings = field(default_factory=AgentSettings)
    worktree: WorktreeSettings = field(default_factory=WorktreeSettings)

    @classmethod
    def from_env(cls, raf_dir: Path | None = None) -> Settings:
        """Load settings from ``RAF_*`` environment variables."""

        return cls(
            raf_dir=raf_dir or Path(os.getenv("RAF_DIR", "RAF")),
            execution=ExecutionSettings(
                timeout_minutes=int(os.getenv("RAF_TIMEOUT_MINUTES", "60")),
                max_retries=int(os.getenv("RAF_MAX_RETRIES", "3")),
                auto_commit=_env_bool("RAF_AUTO_COMMIT", default=True),
                completion_grace_seconds=float(
                    os.getenv("RAF_COMPLETION_GRACE_SECONDS", "60"),
                ),
                outcome_poll_seconds=float(os.getenv("RAF_OUTCOME_POLL_SECONDS", "5")),
                kill_grace_seconds=float(os.getenv("RAF_KILL_GRACE_SECONDS", "5")),
            ),
            agent=AgentSettings(
                model=os.getenv("RAF_MODEL", "opus"),
                command_template=os.getenv("RAF_AGENT_COMMAND") or None,
                interactive_command_template=os.getenv(
                    "RAF_AGENT_INTERACTIVE_COMMAND",
                    DEFAULT_INTERACTIVE_AGENT_COMMAND,
                ),
                stream_json=_env_bool("RAF_STREAM_JSON", default=False),
            ),
            worktree=WorktreeSettings(
                enabled=_env_bool("RAF_WORKTREE", default=False),
                root=Path(os.getenv("RAF_WORKTREE_ROOT", "~/.raf/worktrees")),
                post_execution_action=_env_action("RAF_POST_EXECUTION_ACTION"),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the engine cannot run with."""

        if self.execution.timeout_minutes <= 0:
            raise ValueError("RAF_TIMEOUT_MINUTES must be > 0.")
        if self.execution.max_retries <= 0:
            raise ValueError("RAF_MAX_RETRIES must be > 0.")
        if self.execution.completion_grace_seconds < 0:
            raise ValueError("RAF_COMPLETION_GRACE_SECONDS must be >= 0.")
        if self.execution.outcome_poll_seconds <= 0:
            raise ValueError("RAF_OUTCOME_POLL_SECONDS must be > 0.")
        if self.execution.kill_grace_seconds < 0:
            raise ValueError("RAF_KILL_GRACE_SECONDS must be >= 0.")
        if not self.agent.model.strip():
            raise ValueError("RAF_MODEL must not be empty.")
        for name, template in (
            ("RAF_AGENT_COMMAND", self.agent.command_template),
            ("RAF_AGENT_INTERACTIVE_COMMAND", self.agent.interactive_command_template),
        ):
            if template is not None and "{prompt}" not in template:
                raise ValueError(f"{name} must contain the {{prompt}} placeholder.")


def _env_action(name: str) -> PostExecutionAction | None:
    value = os.getenv(name, "").strip().lower()
    if not value:
        return None
    try:
        return PostExecutionAction(value)
    except ValueError as error:
        allowed = ", ".join(action.value for action in PostExecutionAction)
        raise ValueError(f"Invalid value for {name}: {value!r} (expected {allowed})") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
