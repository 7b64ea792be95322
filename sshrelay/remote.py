"""
Structured file operations on the remote host, plus curl from inside its network.

File operations go over SFTP. Failures are judged by the SFTP status the
server returns (surfaced by paramiko as ``IOError`` errno values), never by
matching message text.

Example:
    from sshrelay.client import SSHClient

    with SSHClient("host.example.com") as ssh:
        with ssh.sftp() as fs:
            if not fs.exists("/tmp/work"):
                fs.mkdir("/tmp/work")
"""

from __future__ import annotations

import errno
import logging
import posixpath
import shlex
from typing import TYPE_CHECKING, Optional

import paramiko

from sshrelay.errors import RemoteFileError, RemoteFileExistsError, RemoteFileNotFoundError, SSHCommandError

if TYPE_CHECKING:
    from sshrelay.client import SSHClient

logger = logging.getLogger(__name__)


def _translate(e: IOError, path: str) -> RemoteFileError:
    if e.errno == errno.ENOENT:
        return RemoteFileNotFoundError(path)
    if e.errno == errno.EEXIST:
        return RemoteFileExistsError(path)
    return RemoteFileError(e.strerror or str(e) or "Remote file operation failed", path)


# ---------------------------------------------------------------------------
# RemoteFS
# ---------------------------------------------------------------------------


class RemoteFS:
    """File operations over a paramiko.SFTPClient, with context manager support.

    Usually obtained from ``SSHClient.sftp()``.
    """

    def __init__(self, sftp_client: paramiko.SFTPClient):
        self._sftp = sftp_client

    def exists(self, path: str) -> bool:
        """True if ``path`` exists (dangling symlinks count)."""
        try:
            self._sftp.lstat(path)
        except IOError as e:
            if e.errno == errno.ENOENT:
                return False
            raise _translate(e, path) from e
        return True

    def stat(self, path: str) -> paramiko.SFTPAttributes:
        """Attributes of ``path``, following symlinks.

        Raises:
            RemoteFileNotFoundError: If the path does not exist
        """
        try:
            return self._sftp.stat(path)
        except IOError as e:
            raise _translate(e, path) from e

    def mkdir(self, path: str, mode: int = 0o755) -> None:
        """Create one directory.

        SFTP v3 servers report an existing path as a generic failure, so the
        path is checked first.

        Raises:
            RemoteFileExistsError: If something already exists at ``path``
        """
        if self.exists(path):
            raise RemoteFileExistsError(path)
        try:
            self._sftp.mkdir(path, mode)
        except IOError as e:
            raise _translate(e, path) from e
        logger.debug("Created remote directory %s", path)

    def rmdir(self, path: str) -> None:
        """Remove an empty directory.

        Raises:
            RemoteFileNotFoundError: If the directory does not exist
        """
        try:
            self._sftp.rmdir(path)
        except IOError as e:
            raise _translate(e, path) from e
        logger.debug("Removed remote directory %s", path)

    def remove(self, path: str) -> None:
        """Remove a file.

        Raises:
            RemoteFileNotFoundError: If the file does not exist
        """
        try:
            self._sftp.remove(path)
        except IOError as e:
            raise _translate(e, path) from e
        logger.debug("Removed remote file %s", path)

    def read(self, path: str) -> tuple[bytes, str]:
        """Fetch a remote file. Returns (contents, basename).

        Raises:
            RemoteFileNotFoundError: If the file does not exist
        """
        try:
            with self._sftp.open(path, "rb") as f:
                data = f.read()
        except IOError as e:
            raise _translate(e, path) from e
        return data, posixpath.basename(path.rstrip("/"))

    def close(self) -> None:
        self._sftp.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def __repr__(self) -> str:
        return f"RemoteFS({self._sftp!r})"


# ---------------------------------------------------------------------------
# curl
# ---------------------------------------------------------------------------


def curl_command(url: str, *args: str) -> str:
    return " ".join(["curl", *(shlex.quote(a) for a in args), shlex.quote(url)])


def curl_from_remote(ssh: SSHClient, url: str, *args: str, timeout: Optional[float] = None) -> bytes:
    """Run curl on the remote host and return the response body.

    Useful when ``url`` is only reachable from inside the remote network.

    Raises:
        SSHCommandError: If curl exits with non-zero status
    """
    command = curl_command(url, *args)
    stdout, stderr, exit_code = ssh.exec_bytes(command, timeout=timeout)
    if exit_code != 0:
        raise SSHCommandError(command, exit_code, stderr.decode(errors="replace"))
    return stdout


__all__ = ["RemoteFS", "curl_command", "curl_from_remote"]
