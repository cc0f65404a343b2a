"""Signal-driven shutdown for a single CLI invocation."""

from __future__ import annotations

import logging
import os
import signal
import sys
import weakref
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Protocol

logger = logging.getLogger(__name__)

SHUTDOWN_EXIT_CODE = 130


class KillableProcess(Protocol):
    def kill_and_wait(self) -> int: ...


class ShutdownCoordinator:
    """Kills the active agent and runs cleanup when SIGINT/SIGTERM arrives.

    One coordinator is created per CLI invocation and handed to the runners
    and the worker. It keeps only a weak reference to the running process so
    a finished attempt is never kept alive by it.
    """

    def __init__(
        self,
        *,
        exit_fn: Callable[[int], object] = sys.exit,
        hard_exit_fn: Callable[[int], object] = os._exit,
    ) -> None:
        self._exit_fn = exit_fn
        self._hard_exit_fn = hard_exit_fn
        self._active: weakref.ReferenceType[KillableProcess] | None = None
        self._cleanups: list[Callable[[], None]] = []
        self._terminal_restore: Callable[[], None] | None = None
        self.shutting_down = False

    def register_process(self, process: KillableProcess) -> None:
        self._active = weakref.ref(process)

    def clear_process(self, process: KillableProcess | None = None) -> None:
        if process is None or (self._active is not None and self._active() is process):
            self._active = None

    @property
    def active_process(self) -> KillableProcess | None:
        return self._active() if self._active is not None else None

    def add_cleanup(self, callback: Callable[[], None]) -> None:
        self._cleanups.append(callback)

    def remove_cleanup(self, callback: Callable[[], None]) -> None:
        if callback in self._cleanups:
            self._cleanups.remove(callback)

    def set_terminal_restore(self, restore: Callable[[], None] | None) -> None:
        self._terminal_restore = restore

    def handle_signal(self, signum: int, _frame: object | None = None) -> None:
        if self.shutting_down:
            logger.warning("Second signal received; exiting immediately")
            self._hard_exit_fn(SHUTDOWN_EXIT_CODE)
            return
        self.shutting_down = True
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        logger.warning("Received %s, shutting down", name)

        process = self.active_process
        if process is not None:
            try:
                process.kill_and_wait()
            except OSError:
                logger.exception("Failed to stop agent process")
        self._run_cleanups()
        self._restore_terminal()
        self._exit_fn(SHUTDOWN_EXIT_CODE)

    @contextmanager
    def installed(self) -> Iterator[ShutdownCoordinator]:
        """Route SIGINT/SIGTERM to :meth:`handle_signal` for the block."""

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)
        try:
            signal.signal(signal.SIGINT, self.handle_signal)
            signal.signal(signal.SIGTERM, self.handle_signal)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield self
            return
        try:
            yield self
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)

    def _run_cleanups(self) -> None:
        for callback in list(self._cleanups):
            try:
                callback()
            except Exception:
                logger.exception("Cleanup callback failed")

    def _restore_terminal(self) -> None:
        if self._terminal_restore is None:
            return
        try:
            self._terminal_restore()
        except Exception:
            logger.exception("Failed to restore terminal mode")
