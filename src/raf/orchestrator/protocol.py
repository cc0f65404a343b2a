"""Completion-marker protocol spoken by the agent.

Grammar (version 1)::

    output   := text* marker reason?
    marker   := "<promise>" ("COMPLETE" | "FAILED") "</promise>"
    reason   := newline "Reason:" text

Markers are matched case-insensitively. When the output carries several
markers the one that appears last wins, so an agent that reports a failure,
fixes the problem and then reports completion is read as complete.
"""

from __future__ import annotations

import re

from raf.orchestrator.models import DerivedTaskStatus, OutputResult, ParsedOutput

PROTOCOL_VERSION = 1
UNKNOWN_FAILURE_REASON = "Unknown failure (no reason provided)"
COMPLETE_MARKER = "<promise>COMPLETE</promise>"
FAILED_MARKER = "<promise>FAILED</promise>"

MARKER_PATTERN = re.compile(r"<promise>(COMPLETE|FAILED)</promise>", re.IGNORECASE)
_REASON_LINE = re.compile(r"^\s*Reason:\s*(.+?)\s*$", re.IGNORECASE)
_ANY_REASON = re.compile(r"Reason:\s*(.+?)(?:\n|$)", re.IGNORECASE)
_ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;]*m")

_MAX_REASON_CHARS = 500
_MAX_REASON_LINES = 3
_MAX_SUMMARY_LINES = 50

# Patterns checked against live output chunks by the process runner.
CONTEXT_OVERFLOW_PATTERNS: tuple[str, ...] = (
    "context length exceeded",
    "token limit",
    "maximum context",
    "context window",
)
# The parser reads the full transcript and also accepts the wording some
# agent versions print in their final error.
_PARSER_OVERFLOW_PATTERNS: tuple[str, ...] = (*CONTEXT_OVERFLOW_PATTERNS, "too many tokens")


def find_last_marker(text: str) -> re.Match[str] | None:
    """Return the marker occurrence with the largest offset."""

    last: re.Match[str] | None = None
    for match in MARKER_PATTERN.finditer(text):
        last = match
    return last


def has_completion_marker(text: str) -> bool:
    return MARKER_PATTERN.search(text) is not None


def parse_outcome_status(content: str) -> DerivedTaskStatus | None:
    """Map the last marker of an outcome file to a derived task status."""

    marker = find_last_marker(content)
    if marker is None:
        return None
    if marker.group(1).upper() == "COMPLETE":
        return DerivedTaskStatus.COMPLETED
    return DerivedTaskStatus.FAILED


def detect_context_overflow(
    text: str,
    *,
    patterns: tuple[str, ...] = CONTEXT_OVERFLOW_PATTERNS,
) -> str | None:
    """Return the first overflow pattern found in ``text``."""

    haystack = text.lower()
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None


def parse_output(text: str) -> ParsedOutput:
    """Read the declared result out of an agent transcript."""

    context_overflow = detect_context_overflow(text, patterns=_PARSER_OVERFLOW_PATTERNS) is not None
    markers = list(MARKER_PATTERN.finditer(text))
    if not markers:
        return ParsedOutput(result=OutputResult.UNKNOWN, context_overflow=context_overflow)
    marker = markers[-1]
    if marker.group(1).upper() == "COMPLETE":
        return ParsedOutput(result=OutputResult.COMPLETE, context_overflow=context_overflow)
    return ParsedOutput(
        result=OutputResult.FAILED,
        failure_reason=_extract_failure_reason(
            text,
            block_start=markers[-2].end() if len(markers) > 1 else 0,
            marker=marker,
        ),
        context_overflow=context_overflow,
    )


def _extract_failure_reason(text: str, *, block_start: int, marker: re.Match[str]) -> str:
    lines = [line.strip() for line in text[marker.end() :].splitlines() if line.strip()]
    if lines:
        reason_match = _REASON_LINE.match(lines[0])
        if reason_match is not None:
            return reason_match.group(1)
        return " ".join(lines[:_MAX_REASON_LINES])[:_MAX_REASON_CHARS]

    # A reason printed before the marker counts only within the same block.
    earlier = _ANY_REASON.search(text, block_start, marker.start())
    if earlier is not None and earlier.group(1).strip():
        return earlier.group(1).strip()[:_MAX_REASON_CHARS]
    return UNKNOWN_FAILURE_REASON


def extract_summary(text: str) -> str:
    """Condense a transcript into prose lines for human-facing reports."""

    summary: list[str] = []
    in_code_block = False
    for line in _ANSI_ESCAPE.sub("", text).splitlines():
        stripped = line.strip()
        if stripped.startswith("```"):
            in_code_block = not in_code_block
            continue
        if in_code_block or len(stripped) < 5:
            continue
        if stripped.startswith(("/", "$")):
            continue
        summary.append(line)
        if len(summary) >= _MAX_SUMMARY_LINES:
            break
    return "\n".join(summary).strip() or "No summary available."
