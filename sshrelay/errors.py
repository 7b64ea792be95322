"""
Exceptions for sshrelay.

Setup failures (bind, host key, authentication) are raised to the caller.
Per-connection failures inside the relay engine are logged and isolated;
they only surface as exceptions from the call that caused them.
"""

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from sshrelay.client import SSHHop


class SSHError(Exception):
    """Base exception for sshrelay."""


class SSHConnectionError(SSHError):
    """Connection or authentication failure."""

    def __init__(self, message: str, hop: Optional["SSHHop"] = None):
        self.hop = hop
        hop_info = f" (hop: {hop.hostname}:{hop.port})" if hop else ""
        super().__init__(f"{message}{hop_info}")


class SSHCommandError(SSHError):
    """Command exited with non-zero status."""

    def __init__(self, command: str, exit_code: int, stderr: str):
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr
        super().__init__(f"Command {command!r} failed (exit={exit_code}): {stderr.strip()}")


class SSHTimeoutError(SSHError):
    """Operation timed out."""


class SessionOpenError(SSHError):
    """A remote session could not be opened or its command not started.

    Attributes:
        host: Destination host the session was meant to reach
        port: Destination port
    """

    def __init__(self, message: str, host: Optional[str] = None, port: Optional[int] = None):
        self.host = host
        self.port = port
        target = f" (target: {host}:{port})" if host is not None else ""
        super().__init__(f"{message}{target}")


class ProtocolError(SSHError):
    """Malformed in-band payload (pty-req, window-change, copy header)."""


class TunnelError(SSHError):
    """Forwarding tunnel failure."""


class TunnelBindError(TunnelError):
    """The tunnel's local listener could not be bound."""

    def __init__(self, address: str, cause: BaseException):
        self.address = address
        super().__init__(f"Cannot listen on {address}: {cause}")


class ServerError(SSHError):
    """SSH server setup failure (bind, host key)."""


class CopyError(SSHError):
    """Remote copy failed.

    A partially written remote file may be left behind.
    """


class RemoteFileError(SSHError):
    """Remote file operation failed."""

    def __init__(self, message: str, path: str):
        self.path = path
        super().__init__(f"{message}: {path}")


class RemoteFileNotFoundError(RemoteFileError):
    """No such file or directory on the remote host."""

    def __init__(self, path: str):
        super().__init__("No such file or directory", path)


class RemoteFileExistsError(RemoteFileError):
    """File or directory already exists on the remote host."""

    def __init__(self, path: str):
        super().__init__("File or directory already exists", path)


__all__ = [
    "SSHError",
    "SSHConnectionError",
    "SSHCommandError",
    "SSHTimeoutError",
    "SessionOpenError",
    "ProtocolError",
    "TunnelError",
    "TunnelBindError",
    "ServerError",
    "CopyError",
    "RemoteFileError",
    "RemoteFileNotFoundError",
    "RemoteFileExistsError",
]
