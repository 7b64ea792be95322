"""
PTY adapter: a shell process attached to a pseudo-terminal.

The master side of the PTY is exposed as a single bidirectional byte
stream (``recv`` / ``sendall``) so it can sit in a Relay next to a
paramiko Channel. POSIX only.
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
from dataclasses import dataclass
from typing import Mapping, Optional, Sequence

logger = logging.getLogger(__name__)

_WINSIZE = struct.Struct("HHHH")  # rows, cols, xpixel, ypixel
_MAX_CELLS = 0xFFFF
_POLL_INTERVAL = 0.2


@dataclass(frozen=True)
class Terminal:
    """Terminal geometry in character cells."""

    width: int
    height: int

    def __post_init__(self):
        if self.width < 0 or self.height < 0:
            raise ValueError(f"terminal size must be non-negative, got {self.width}x{self.height}")

    def __str__(self) -> str:
        return f"{self.width}x{self.height}"


def set_winsize(fd: int, width: int, height: int) -> None:
    """Apply a geometry to a tty fd. Values above 16 bits are truncated."""
    ws = _WINSIZE.pack(height & _MAX_CELLS, width & _MAX_CELLS, 0, 0)
    fcntl.ioctl(fd, termios.TIOCSWINSZ, ws)


def get_winsize(fd: int) -> Terminal:
    rows, cols, _, _ = _WINSIZE.unpack(fcntl.ioctl(fd, termios.TIOCGWINSZ, b"\x00" * _WINSIZE.size))
    return Terminal(width=cols, height=rows)


def _acquire_controlling_tty() -> None:
    # Runs in the child after setsid(): make the PTY slave (fd 0) our ctty
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)


class PtyProcess:
    """A child process whose stdio is the slave side of a fresh PTY.

    Not thread-safe for concurrent readers; one reader and one writer
    thread may run side by side. The master descriptor is non-blocking and
    only used under the close lock, so close() never races a pending read.

    Args:
        argv: Program and arguments
        env: Environment for the child (default: inherit, TERM=xterm)
        terminal: Initial geometry
    """

    def __init__(
        self,
        argv: Sequence[str],
        *,
        env: Optional[Mapping[str, str]] = None,
        terminal: Optional[Terminal] = None,
    ):
        self.argv = list(argv)
        child_env = dict(os.environ if env is None else env)
        child_env.setdefault("TERM", "xterm")

        master_fd, slave_fd = pty.openpty()
        try:
            if terminal is not None:
                set_winsize(slave_fd, terminal.width, terminal.height)
            self._proc = subprocess.Popen(
                self.argv,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                env=child_env,
                start_new_session=True,
                preexec_fn=_acquire_controlling_tty,
                close_fds=True,
            )
        except BaseException:
            os.close(master_fd)
            raise
        finally:
            os.close(slave_fd)

        os.set_blocking(master_fd, False)
        self._fd = master_fd
        self._closed = False
        self._close_lock = threading.Lock()
        logger.debug("Spawned %s (pid %d) on pty fd %d", self.argv[0], self._proc.pid, master_fd)

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def fd(self) -> int:
        return self._fd

    @property
    def closed(self) -> bool:
        return self._closed

    def recv(self, size: int) -> bytes:
        """Read shell output. Returns b"" once the shell side has hung up or the PTY is closed."""
        while True:
            with self._close_lock:
                if self._closed:
                    return b""
                try:
                    return os.read(self._fd, size)
                except BlockingIOError:
                    pass
                except OSError as e:
                    # Linux reports EIO when the slave side has no more openers
                    if e.errno == errno.EIO:
                        return b""
                    raise
            self._wait_ready([self._fd], [])

    def sendall(self, data: bytes) -> None:
        view = memoryview(data)
        while view:
            with self._close_lock:
                if self._closed:
                    raise OSError(errno.EBADF, "pty is closed")
                try:
                    n = os.write(self._fd, view)
                except BlockingIOError:
                    n = 0
            view = view[n:]
            if view and not n:
                self._wait_ready([], [self._fd])

    def _wait_ready(self, rlist, wlist) -> None:
        # outside the lock; callers re-check _closed before touching the fd again
        try:
            select.select(rlist, wlist, [], _POLL_INTERVAL)
        except OSError:
            if not self._closed:
                raise

    def resize(self, width: int, height: int) -> None:
        with self._close_lock:
            if self._closed:
                raise OSError(errno.EBADF, "pty is closed")
            set_winsize(self._fd, width, height)

    @property
    def terminal(self) -> Terminal:
        return get_winsize(self._fd)

    def hangup(self) -> None:
        """Send SIGHUP to the shell's process group, as a dropped terminal would."""
        self._signal_group(signal.SIGHUP)

    def _signal_group(self, sig: int) -> None:
        if self._proc.poll() is not None:
            return
        try:
            # start_new_session makes the child its own process group leader
            os.killpg(self._proc.pid, sig)
        except ProcessLookupError:
            pass

    def close(self) -> None:
        """Close the master side. Idempotent."""
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
            os.close(self._fd)

    def poll(self) -> Optional[int]:
        return self._proc.poll()

    def wait(self, timeout: Optional[float] = None) -> int:
        """Wait for the child to exit.

        Raises:
            subprocess.TimeoutExpired: If the child is still running after timeout
        """
        return self._proc.wait(timeout)

    def kill(self) -> None:
        self._signal_group(signal.SIGKILL)

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"PtyProcess({self.argv[0]!r}, pid={self._proc.pid}, {state})"


__all__ = ["Terminal", "PtyProcess", "set_winsize", "get_winsize"]
