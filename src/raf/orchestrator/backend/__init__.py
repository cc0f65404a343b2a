"""Agent process runners."""

from raf.orchestrator.backend.base import (
    AgentRunError,
    AgentRunRequest,
    AgentRunResult,
    HeadlessBackend,
    InteractiveBackend,
)
from raf.orchestrator.backend.headless import HeadlessAgentBackend
from raf.orchestrator.backend.interactive import InteractiveAgentBackend

__all__ = [
    "AgentRunError",
    "AgentRunRequest",
    "AgentRunResult",
    "HeadlessAgentBackend",
    "HeadlessBackend",
    "InteractiveAgentBackend",
    "InteractiveBackend",
]
