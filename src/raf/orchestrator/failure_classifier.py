"""Deterministic attempt failure classification for the retry policy."""

from __future__ import annotations

from dataclasses import dataclass

from raf.orchestrator.backend.base import AgentRunResult
from raf.orchestrator.models import FailureClass, OutputResult, ParsedOutput
from raf.orchestrator.protocol import UNKNOWN_FAILURE_REASON

FAILURE_CLASSIFIER_VERSION = 1

_NON_RETRYABLE_PATTERNS: tuple[str, ...] = (
    "context overflow",
    "token limit",
    "rate limit exceeded",
    "authentication failed",
    "permission denied",
)


@dataclass(slots=True)
class AttemptClassification:
    """Normalized classification of a single attempt."""

    failure_class: FailureClass
    retryable: bool
    reason: str | None
    matched_pattern: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.failure_class is FailureClass.NONE

    def to_details(self) -> dict[str, object]:
        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "failure_class": self.failure_class.value,
            "retryable": self.retryable,
            "reason": self.reason,
            "matched_pattern": self.matched_pattern,
        }


def is_retryable_error(error: BaseException | str) -> bool:
    """False when the message names a condition that retrying cannot fix."""

    message = str(error).lower()
    return _first_match(message, _NON_RETRYABLE_PATTERNS) is None


def classify_attempt(parsed: ParsedOutput, run_result: AgentRunResult) -> AttemptClassification:
    """Classify one attempt from its parsed output and process result."""

    if parsed.result is OutputResult.COMPLETE:
        return AttemptClassification(
            failure_class=FailureClass.NONE,
            retryable=False,
            reason=None,
        )

    if run_result.context_overflow or parsed.context_overflow:
        return AttemptClassification(
            failure_class=FailureClass.CONTEXT_OVERFLOW,
            retryable=False,
            reason="Context overflow - task too large",
            matched_pattern="context overflow",
        )

    if run_result.timed_out:
        return AttemptClassification(
            failure_class=FailureClass.TIMEOUT,
            retryable=True,
            reason="Task timed out",
        )

    if parsed.result is OutputResult.FAILED:
        reason = parsed.failure_reason or UNKNOWN_FAILURE_REASON
        pattern = _first_match(reason.lower(), _NON_RETRYABLE_PATTERNS)
        if pattern is not None:
            return AttemptClassification(
                failure_class=FailureClass.TERMINAL,
                retryable=False,
                reason=reason,
                matched_pattern=pattern,
            )
        return AttemptClassification(
            failure_class=FailureClass.DECLARED,
            retryable=True,
            reason=reason,
        )

    return AttemptClassification(
        failure_class=FailureClass.TRANSIENT,
        retryable=True,
        reason=f"No completion marker found (exit code {run_result.exit_code})",
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
