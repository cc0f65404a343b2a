"""Interactive agent runner: pass the user's terminal through to the agent."""

from __future__ import annotations

import logging
import os
import select
import signal
import sys
import termios
import tty
from collections.abc import Iterator
from contextlib import contextmanager
from typing import TextIO

from raf.orchestrator.backend.base import AgentRunRequest
from raf.orchestrator.backend.command import build_run_args
from raf.orchestrator.backend.pty_process import PtyProcess, get_window_size
from raf.orchestrator.shutdown import ShutdownCoordinator

logger = logging.getLogger(__name__)

_TICK_SECONDS = 0.1
_READ_CHUNK = 4096


@contextmanager
def raw_terminal(stream: TextIO, *, shutdown: ShutdownCoordinator | None = None) -> Iterator[None]:
    """Put ``stream`` into raw mode and restore it on every exit path."""

    if not stream.isatty():
        yield
        return

    fd = stream.fileno()
    saved = termios.tcgetattr(fd)

    def _restore() -> None:
        termios.tcsetattr(fd, termios.TCSADRAIN, saved)

    if shutdown is not None:
        shutdown.set_terminal_restore(_restore)
    tty.setraw(fd)
    try:
        yield
    finally:
        _restore()
        if shutdown is not None:
            shutdown.set_terminal_restore(None)


class InteractiveAgentBackend:
    """Run the agent on a PTY wired to the user's terminal."""

    def __init__(
        self,
        *,
        shutdown: ShutdownCoordinator | None = None,
        kill_grace_seconds: float = 5,
        stdin: TextIO | None = None,
        stdout: TextIO | None = None,
    ) -> None:
        self.shutdown = shutdown
        self.kill_grace_seconds = kill_grace_seconds
        self.stdin = stdin or sys.stdin
        self.stdout = stdout or sys.stdout

    def run_interactive(self, request: AgentRunRequest) -> int:
        run_args, _ = build_run_args(
            command_template=request.command_template,
            model=request.model,
            prompt=request.prompt,
            user_message=request.user_message,
        )
        columns, rows = _terminal_size(self.stdout)
        process = PtyProcess.spawn(
            run_args,
            cwd=request.cwd,
            env=os.environ.copy(),
            columns=columns,
            rows=rows,
            kill_grace_seconds=self.kill_grace_seconds,
        )
        if self.shutdown is not None:
            self.shutdown.register_process(process)
        try:
            with raw_terminal(self.stdin, shutdown=self.shutdown), _mirror_resize(
                process,
                self.stdout,
            ):
                self._pump(process)
            return process.wait()
        finally:
            if self.shutdown is not None:
                self.shutdown.clear_process(process)
            process.close()

    def _pump(self, process: PtyProcess) -> None:
        stdin_fd = self.stdin.fileno()
        stdout_fd = self.stdout.fileno()
        stdin_open = True
        while True:
            watched = [process.master_fd, stdin_fd] if stdin_open else [process.master_fd]
            ready, _, _ = select.select(watched, [], [], _TICK_SECONDS)
            if process.master_fd in ready:
                chunk = process.read(0)
                if chunk == b"":
                    return
                if chunk:
                    os.write(stdout_fd, chunk)
            if stdin_open and stdin_fd in ready:
                data = os.read(stdin_fd, _READ_CHUNK)
                if data:
                    process.write(data)
                else:
                    stdin_open = False
            if not ready and not process.is_alive():
                return


@contextmanager
def _mirror_resize(process: PtyProcess, stream: TextIO) -> Iterator[None]:
    if not hasattr(signal, "SIGWINCH") or not stream.isatty():
        yield
        return

    def _handler(_signum: int, _frame: object | None) -> None:
        size = get_window_size(stream.fileno())
        if size is not None:
            process.resize(columns=size[0], rows=size[1])

    try:
        original = signal.signal(signal.SIGWINCH, _handler)
    except ValueError:
        # Signal handlers can only be installed in main thread.
        yield
        return
    try:
        yield
    finally:
        signal.signal(signal.SIGWINCH, original)


def _terminal_size(stream: TextIO) -> tuple[int, int]:
    try:
        size = get_window_size(stream.fileno()) if stream.isatty() else None
    except (OSError, ValueError):
        size = None
    return size or (80, 24)
