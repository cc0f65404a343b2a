"""Agent runner interfaces used by the orchestrator."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from raf.orchestrator.models import UsageData


class AgentRunError(RuntimeError):
    """Agent process could not be started; carries a retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


@dataclass(slots=True)
class AgentRunRequest:
    """Inputs required to run one agent attempt."""

    prompt: str
    model: str
    command_template: str
    timeout_minutes: float = 60
    cwd: Path | None = None
    outcome_file: Path | None = None
    stream_json: bool = False
    on_display: Callable[[str], None] | None = None
    user_message: str = ""


@dataclass(slots=True)
class AgentRunResult:
    """Captured output and termination details of one attempt."""

    output: str
    exit_code: int
    timed_out: bool = False
    context_overflow: bool = False
    completion_detected: bool = False
    usage: UsageData | None = None


class HeadlessBackend(Protocol):
    """Runs the agent with captured output."""

    def run(self, request: AgentRunRequest) -> AgentRunResult:
        """Run one attempt and return the captured transcript."""


class InteractiveBackend(Protocol):
    """Runs the agent attached to the user's terminal."""

    def run_interactive(self, request: AgentRunRequest) -> int:
        """Run until the agent exits and return its exit code."""
