"""
Single-file remote copy using the scp sink protocol.

The remote side runs ``scp -t <destination>`` and reads one copy header,
the file bytes and a 0x00 terminator from its stdin. Acknowledgement bytes
written back by the sink are collected but not interpreted; the remote
exit status decides success.

Example:
    from sshrelay.client import SSHClient

    with SSHClient("host.example.com") as ssh:
        ssh.copy_bytes(b"hello", "hello.txt", "/tmp/")
"""

from __future__ import annotations

import io
import logging
import os
import shlex
import socket
from typing import BinaryIO, Optional

import paramiko

from sshrelay.errors import CopyError, SSHTimeoutError
from sshrelay.relay import CHUNK_SIZE
from sshrelay.session import command_session, drain_channel
from sshrelay.wire import COPY_TERMINATOR, CopyHeader

logger = logging.getLogger(__name__)

DEFAULT_MODE = 0o664


def sink_command(destination: str) -> str:
    return f"scp -t {shlex.quote(destination)}"


def _sink_message(stdout: bytes) -> str:
    # Sink errors arrive on stdout as 0x01/0x02 followed by a text line
    text = stdout.lstrip(b"\x00")
    if text[:1] in (b"\x01", b"\x02"):
        text = text[1:]
    return text.decode(errors="replace").strip()


def send_file_stream(
    transport: paramiko.Transport,
    source: BinaryIO,
    length: int,
    mode: int,
    filename: str,
    destination: str,
    *,
    timeout: Optional[float] = 30.0,
) -> None:
    """Copy ``length`` bytes read from ``source`` to ``destination`` on the remote host.

    Args:
        transport: Authenticated transport
        source: Readable binary stream; must supply at least ``length`` bytes
        length: Number of bytes announced in the header and sent
        mode: Permission bits for the remote file
        filename: Name announced in the header (basename is used)
        destination: Remote file or directory path
        timeout: Seconds to wait for each write and for the remote exit

    Raises:
        SessionOpenError: If the scp session cannot be started
        CopyError: If the source runs short or the remote scp fails
        SSHTimeoutError: If the remote side stops responding
    """
    header = CopyHeader.for_path(mode, length, filename)
    command = sink_command(destination)
    chan = command_session(transport, command)
    try:
        if timeout is not None:
            chan.settimeout(timeout)
        try:
            chan.sendall(header.encode())
            remaining = length
            while remaining > 0:
                chunk = source.read(min(CHUNK_SIZE, remaining))
                if not chunk:
                    raise CopyError(
                        f"Source for {header.name!r} ended after {length - remaining} of {length} bytes"
                    )
                chan.sendall(chunk)
                remaining -= len(chunk)
            chan.sendall(COPY_TERMINATOR)
            chan.shutdown_write()
        except socket.timeout as e:
            raise SSHTimeoutError(f"Copy of {header.name!r} stalled: {e}") from e

        stdout, stderr, exit_code = drain_channel(chan, command, timeout)
        if exit_code != 0:
            detail = stderr.decode(errors="replace").strip() or _sink_message(stdout)
            raise CopyError(f"scp to {destination!r} failed (exit={exit_code}): {detail}")
        logger.info("Copied %s (%d bytes, mode %04o) to %s", header.name, length, header.mode & 0o7777, destination)
    finally:
        chan.close()


def copy_bytes(
    transport: paramiko.Transport,
    data: bytes,
    filename: str,
    destination: str,
    mode: int = DEFAULT_MODE,
    *,
    timeout: Optional[float] = 30.0,
) -> None:
    """Copy an in-memory buffer to the remote host."""
    send_file_stream(transport, io.BytesIO(data), len(data), mode, filename, destination, timeout=timeout)


def copy_file(
    transport: paramiko.Transport,
    path: str,
    destination: str,
    *,
    timeout: Optional[float] = 30.0,
) -> None:
    """Copy a local file, keeping its permission bits and basename."""
    with open(path, "rb") as f:
        st = os.fstat(f.fileno())
        send_file_stream(
            transport,
            f,
            st.st_size,
            st.st_mode & 0o777,
            os.path.basename(path),
            destination,
            timeout=timeout,
        )


__all__ = ["DEFAULT_MODE", "sink_command", "send_file_stream", "copy_bytes", "copy_file"]
