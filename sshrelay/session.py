"""
Session openers for the forwarding tunnel.

An opener takes the shared transport and a destination and returns a
started session: a paramiko Channel whose ``recv`` is the remote output,
``recv_stderr`` the remote error stream and ``sendall`` / ``shutdown_write``
the remote input. Swapping the opener swaps the remote relay mechanism
without touching the tunnel.
"""

from __future__ import annotations

import logging
import shlex
import socket
import time
from typing import Callable, Optional

import paramiko

from sshrelay.errors import SessionOpenError, SSHTimeoutError

logger = logging.getLogger(__name__)

SessionOpener = Callable[[paramiko.Transport, str, int], paramiko.Channel]


def _close_quietly(chan: paramiko.Channel) -> None:
    try:
        chan.close()
    except Exception as e:
        logger.debug("Closing half-opened channel failed: %s", e)


def command_session(transport: paramiko.Transport, command: str) -> paramiko.Channel:
    """Open a session and start ``command`` in it, stdin left open."""
    if not transport.is_active():
        raise SessionOpenError("Transport is no longer active")
    try:
        chan = transport.open_session()
    except (paramiko.SSHException, OSError) as e:
        raise SessionOpenError(f"Cannot open session: {e}") from e
    try:
        chan.exec_command(command)
    except (paramiko.SSHException, OSError) as e:
        _close_quietly(chan)
        raise SessionOpenError(f"Cannot start {command!r}: {e}") from e
    return chan


def drain_channel(
    chan: paramiko.Channel, command: str, timeout: Optional[float] = None
) -> tuple[bytes, bytes, int]:
    """Read a started command's stdout and stderr until it exits.

    Returns:
        (stdout, stderr, exit_code)

    Raises:
        SSHTimeoutError: If the command is still running after timeout
    """
    deadline = time.monotonic() + timeout if timeout is not None else None
    stdout_chunks: list[bytes] = []
    stderr_chunks: list[bytes] = []

    while True:
        if deadline is not None and time.monotonic() >= deadline:
            raise SSHTimeoutError(f"Command timed out after {timeout}s: {command!r}")
        try:
            if chan.recv_ready():
                data = chan.recv(65536)
                if data:
                    stdout_chunks.append(data)
            if chan.recv_stderr_ready():
                data = chan.recv_stderr(65536)
                if data:
                    stderr_chunks.append(data)
            if chan.exit_status_ready() and not chan.recv_ready() and not chan.recv_stderr_ready():
                break
            if not chan.recv_ready() and not chan.recv_stderr_ready() and not chan.exit_status_ready():
                chan.status_event.wait(0.1)
        except socket.timeout as e:
            raise SSHTimeoutError(str(e)) from e

    return b"".join(stdout_chunks), b"".join(stderr_chunks), chan.recv_exit_status()


def netcat_command(host: str, port: int) -> str:
    return f"nc {shlex.quote(host)} {int(port)}"


def netcat_session(transport: paramiko.Transport, host: str, port: int) -> paramiko.Channel:
    """Reach host:port by running ``nc`` on the remote side."""
    try:
        return command_session(transport, netcat_command(host, port))
    except SessionOpenError as e:
        raise SessionOpenError(str(e), host, port) from e


def direct_tcpip_session(transport: paramiko.Transport, host: str, port: int) -> paramiko.Channel:
    """Reach host:port through an SSH direct-tcpip channel (no remote process).

    The channel has no stderr stream; ``recv_stderr`` returns b"" once the
    channel closes.
    """
    if not transport.is_active():
        raise SessionOpenError("Transport is no longer active", host, port)
    try:
        return transport.open_channel("direct-tcpip", (host, port), ("127.0.0.1", 0))
    except (paramiko.SSHException, OSError) as e:
        raise SessionOpenError(f"Cannot open direct-tcpip channel: {e}", host, port) from e


OPENERS: dict[str, SessionOpener] = {
    "netcat": netcat_session,
    "direct-tcpip": direct_tcpip_session,
}

__all__ = [
    "SessionOpener",
    "command_session",
    "drain_channel",
    "netcat_command",
    "netcat_session",
    "direct_tcpip_session",
    "OPENERS",
]
