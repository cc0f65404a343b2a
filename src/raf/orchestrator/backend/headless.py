"""Batch-mode agent runner: capture the transcript from a PTY."""

from __future__ import annotations

import codecs
import logging
import os
import time
from collections.abc import Callable
from pathlib import Path

from raf.orchestrator.backend.base import AgentRunRequest, AgentRunResult
from raf.orchestrator.backend.command import build_run_args
from raf.orchestrator.backend.pty_process import PtyProcess
from raf.orchestrator.models import UsageData
from raf.orchestrator.protocol import detect_context_overflow, has_completion_marker
from raf.orchestrator.shutdown import ShutdownCoordinator
from raf.orchestrator.stream_renderer import render_stream_event

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MINUTES = 60
_TICK_SECONDS = 0.1
# Enough overlap to catch a marker or overflow phrase split across reads.
_OVERLAP_CHARS = 64


class CompletionDetector:
    """Starts a grace timer once the agent has declared a result.

    Some agent versions keep the session open after printing the marker.
    The marker is looked for in the live transcript and in the outcome file;
    the file only counts when it was modified after the run started.
    """

    def __init__(
        self,
        *,
        outcome_file: Path | None,
        grace_seconds: float,
        poll_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.outcome_file = outcome_file
        self.grace_seconds = grace_seconds
        self.poll_seconds = poll_seconds
        self._clock = clock
        self._initial_mtime = _mtime(outcome_file)
        self._next_poll = clock() + poll_seconds
        self.deadline: float | None = None

    @property
    def triggered(self) -> bool:
        return self.deadline is not None

    def observe_output(self, text: str) -> None:
        if self.deadline is None and has_completion_marker(text):
            self._start("output")

    def poll_outcome_file(self) -> None:
        now = self._clock()
        if self.deadline is not None or self.outcome_file is None or now < self._next_poll:
            return
        self._next_poll = now + self.poll_seconds
        mtime = _mtime(self.outcome_file)
        if mtime is None or (self._initial_mtime is not None and mtime <= self._initial_mtime):
            return
        try:
            content = self.outcome_file.read_text("utf-8")
        except OSError:
            return
        if has_completion_marker(content):
            self._start("outcome file")

    def expired(self) -> bool:
        return self.deadline is not None and self._clock() >= self.deadline

    def _start(self, source: str) -> None:
        logger.debug(
            "Completion marker found in %s; stopping agent in %ss",
            source,
            self.grace_seconds,
        )
        self.deadline = self._clock() + self.grace_seconds


class _Transcript:
    """Decodes PTY bytes into transcript text, optionally via the NDJSON renderer."""

    def __init__(self, *, stream_json: bool, on_display: Callable[[str], None] | None) -> None:
        self.stream_json = stream_json
        self.on_display = on_display
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._parts: list[str] = []
        self._pending_line = ""
        self.usage: UsageData | None = None

    @property
    def output(self) -> str:
        return "".join(self._parts)

    def feed(self, data: bytes, *, final: bool = False) -> str:
        text = self._decoder.decode(data, final=final)
        if not self.stream_json:
            self._parts.append(text)
            if text and self.on_display is not None:
                self.on_display(text)
            return text

        self._pending_line += text
        *lines, self._pending_line = self._pending_line.split("\n")
        if final and self._pending_line:
            lines.append(self._pending_line)
            self._pending_line = ""
        for line in lines:
            self._render_line(line.rstrip("\r"))
        return text

    def _render_line(self, line: str) -> None:
        rendered = render_stream_event(line)
        if rendered.text_content:
            self._parts.append(f"{rendered.text_content}\n")
        if rendered.usage is not None:
            self.usage = rendered.usage
        if rendered.display and self.on_display is not None:
            self.on_display(rendered.display)


class HeadlessAgentBackend:
    """Run the agent non-interactively and return its captured transcript."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        shutdown: ShutdownCoordinator | None = None,
        completion_grace_seconds: float = 60,
        outcome_poll_seconds: float = 5,
        kill_grace_seconds: float = 5,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.shutdown = shutdown
        self.completion_grace_seconds = completion_grace_seconds
        self.outcome_poll_seconds = outcome_poll_seconds
        self.kill_grace_seconds = kill_grace_seconds
        self._clock = clock

    def run(self, request: AgentRunRequest) -> AgentRunResult:
        run_args, _ = build_run_args(
            command_template=request.command_template,
            model=request.model,
            prompt=request.prompt,
            user_message=request.user_message,
        )
        env = os.environ.copy()
        env["RAF_MODEL"] = request.model
        if request.outcome_file is not None:
            env["RAF_OUTCOME_FILE"] = str(request.outcome_file)

        process = PtyProcess.spawn(
            run_args,
            cwd=request.cwd,
            env=env,
            kill_grace_seconds=self.kill_grace_seconds,
        )
        if self.shutdown is not None:
            self.shutdown.register_process(process)
        try:
            return self._capture(process, request)
        finally:
            if self.shutdown is not None:
                self.shutdown.clear_process(process)
            process.close()

    def _capture(self, process: PtyProcess, request: AgentRunRequest) -> AgentRunResult:
        timeout_minutes = (
            request.timeout_minutes if request.timeout_minutes > 0 else DEFAULT_TIMEOUT_MINUTES
        )
        deadline = self._clock() + timeout_minutes * 60
        detector = CompletionDetector(
            outcome_file=request.outcome_file,
            grace_seconds=self.completion_grace_seconds,
            poll_seconds=self.outcome_poll_seconds,
            clock=self._clock,
        )
        transcript = _Transcript(stream_json=request.stream_json, on_display=request.on_display)
        timed_out = False
        context_overflow = False
        tail = ""

        while True:
            chunk = process.read(_TICK_SECONDS)
            if chunk == b"":
                break
            if chunk:
                text = transcript.feed(chunk)
                window = tail + text
                tail = window[-_OVERLAP_CHARS:]
                if not context_overflow:
                    pattern = detect_context_overflow(window)
                    if pattern is not None:
                        context_overflow = True
                        logger.warning("Context overflow detected (%s); stopping agent", pattern)
                        process.kill()
                detector.observe_output(window)
            elif not process.is_alive():
                break

            if not timed_out and self._clock() >= deadline:
                timed_out = True
                logger.warning("Agent exceeded %s minute timeout; stopping it", timeout_minutes)
                process.kill()
            detector.poll_outcome_file()
            if detector.expired():
                process.kill()

        transcript.feed(b"", final=True)
        exit_code = process.wait()
        logger.debug(
            "Agent exited code=%s timed_out=%s overflow=%s",
            exit_code,
            timed_out,
            context_overflow,
        )
        return AgentRunResult(
            output=transcript.output,
            exit_code=exit_code,
            timed_out=timed_out,
            context_overflow=context_overflow,
            completion_detected=detector.triggered,
            usage=transcript.usage,
        )


def _mtime(path: Path | None) -> float | None:
    if path is None:
        return None
    try:
        return path.stat().st_mtime
    except OSError:
        return None
