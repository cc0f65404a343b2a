"""Child process attached to a pseudo-terminal.

The agent CLI changes behaviour when it is not talking to a TTY, so both the
headless and interactive runners start it on the slave end of a PTY and talk
to it through the master descriptor.
"""

from __future__ import annotations

import errno
import fcntl
import logging
import os
import pty
import select
import signal
import struct
import subprocess
import termios
import threading
from pathlib import Path

from raf.orchestrator.backend.base import AgentRunError

logger = logging.getLogger(__name__)

INTERRUPTED_EXIT_CODE = 130
CTRL_C = b"\x03"
_READ_CHUNK = 4096


class PtyProcess:
    """Handle to a PTY-backed child with a two-phase kill."""

    def __init__(
        self,
        process: subprocess.Popen[bytes],
        master_fd: int,
        *,
        kill_grace_seconds: float = 5.0,
    ) -> None:
        self.process = process
        self.master_fd = master_fd
        self.kill_grace_seconds = kill_grace_seconds
        self.killed = False
        self._force_kill_timer: threading.Timer | None = None
        self._closed = False

    @classmethod
    def spawn(  # noqa: PLR0913
        cls,
        argv: list[str],
        *,
        cwd: Path | None = None,
        env: dict[str, str] | None = None,
        columns: int = 80,
        rows: int = 24,
        kill_grace_seconds: float = 5.0,
    ) -> PtyProcess:
        master_fd, slave_fd = pty.openpty()
        set_window_size(master_fd, columns=columns, rows=rows)
        try:
            process = subprocess.Popen(  # noqa: S603
                argv,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                cwd=cwd,
                env=env,
                close_fds=True,
                start_new_session=True,
            )
        except FileNotFoundError as error:
            os.close(master_fd)
            raise AgentRunError(f"Agent command not found: {argv[0]}", transient=False) from error
        except OSError as error:
            os.close(master_fd)
            raise AgentRunError(f"Agent failed to start: {error}", transient=True) from error
        finally:
            os.close(slave_fd)
        logger.debug("Spawned agent pid=%s argv0=%s", process.pid, argv[0])
        return cls(process, master_fd, kill_grace_seconds=kill_grace_seconds)

    @property
    def pid(self) -> int:
        return self.process.pid

    def poll(self) -> int | None:
        return self.process.poll()

    def is_alive(self) -> bool:
        return self.process.poll() is None

    def read(self, timeout: float) -> bytes | None:
        """Read available output.

        Returns ``None`` when nothing arrived within ``timeout`` and ``b""``
        once the child closed its side of the terminal.
        """

        if self._closed:
            return b""
        ready, _, _ = select.select([self.master_fd], [], [], timeout)
        if not ready:
            return None
        try:
            return os.read(self.master_fd, _READ_CHUNK)
        except OSError as error:
            # Linux reports EIO on the master once every slave fd is closed.
            if error.errno == errno.EIO:
                return b""
            raise

    def write(self, data: bytes) -> None:
        if not self._closed:
            os.write(self.master_fd, data)

    def resize(self, *, columns: int, rows: int) -> None:
        if not self._closed:
            set_window_size(self.master_fd, columns=columns, rows=rows)

    def kill(self) -> None:
        """Interrupt the agent, then force-kill it after the grace window."""

        if self.killed or not self.is_alive():
            return
        self.killed = True
        logger.debug("Interrupting agent pid=%s", self.pid)
        try:
            self.write(CTRL_C)
        except OSError:
            logger.debug("Could not write interrupt to agent terminal", exc_info=True)
        self._signal_group(signal.SIGINT)

        self._force_kill_timer = threading.Timer(self.kill_grace_seconds, self._force_kill)
        self._force_kill_timer.daemon = True
        self._force_kill_timer.start()

    def kill_and_wait(self) -> int:
        """Blocking variant of :meth:`kill` used when the engine is exiting."""

        self.kill()
        try:
            self.process.wait(timeout=self.kill_grace_seconds)
        except subprocess.TimeoutExpired:
            self._force_kill()
            self.process.wait(timeout=2)
        return self.exit_code

    def wait(self, timeout: float | None = None) -> int:
        self.process.wait(timeout=timeout)
        return self.exit_code

    @property
    def exit_code(self) -> int:
        """Exit status with engine-initiated kills normalized to 130."""

        returncode = self.process.poll()
        if self.killed:
            return INTERRUPTED_EXIT_CODE
        if returncode is None:
            return -1
        if returncode < 0:
            return 128 - returncode
        return returncode

    def close(self) -> None:
        if self._force_kill_timer is not None and not self.is_alive():
            self._force_kill_timer.cancel()
        if not self._closed:
            self._closed = True
            os.close(self.master_fd)

    def _force_kill(self) -> None:
        if self.is_alive():
            logger.warning("Agent pid=%s ignored interrupt; sending SIGKILL", self.pid)
            self._signal_group(signal.SIGKILL)

    def _signal_group(self, signum: signal.Signals) -> None:
        try:
            os.killpg(self.process.pid, signum)
        except ProcessLookupError:
            return
        except PermissionError:
            self.process.send_signal(signum)


def set_window_size(fd: int, *, columns: int, rows: int) -> None:
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, columns, 0, 0))


def get_window_size(fd: int) -> tuple[int, int] | None:
    """Return ``(columns, rows)`` of the terminal behind ``fd``."""

    try:
        packed = fcntl.ioctl(fd, termios.TIOCGWINSZ, b"\0" * 8)
    except OSError:
        return None
    rows, columns, _, _ = struct.unpack("HHHH", packed)
    if not rows or not columns:
        return None
    return columns, rows
