"""
SSH client for command execution, forwarding tunnels and file copy over multi-hop SSH chains.

Uses paramiko with key, password or GSSAPI (Kerberos) authentication per hop.

Example:
    from sshrelay.client import SSHClient

    with SSHClient("jump.example.com") as ssh:
        result = ssh.exec("hostname")
        print(result.stdout)

        with ssh.forward("127.0.0.1:8080", "web.internal", 80) as tunnel:
            tunnel.wait()

    # Multi-hop
    with SSHClient(["jump.example.com", "target.internal:2200"]) as ssh:
        ssh.copy_bytes(b"hello", "hello.txt", "/tmp/")
"""

from __future__ import annotations

import getpass
import logging
import socket
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

import paramiko

from sshrelay import scp
from sshrelay.config import DEFAULT_SSH_PORT, parse_host
from sshrelay.errors import SSHConnectionError
from sshrelay.remote import RemoteFS
from sshrelay.session import SessionOpener, drain_channel, netcat_session
from sshrelay.tunnel import ForwardingTunnel

logger = logging.getLogger(__name__)

DEFAULT_KEY_FILENAME = "~/.ssh/id_rsa"
AUTH_METHODS = ("key", "password", "gssapi")


# ---------------------------------------------------------------------------
# SSHHop
# ---------------------------------------------------------------------------


def _gssapi_username() -> str:
    """Extract username from Kerberos principal"""
    import gssapi

    creds = gssapi.Credentials(usage="initiate")
    principal = str(creds.name)
    return principal.split("@")[0]


@dataclass(frozen=True)
class SSHHop:
    """Configuration for a single SSH hop.

    Args:
        hostname: SSH server hostname (required, non-empty)
        port: SSH port (default 22)
        username: SSH username (default: current OS user)
        auth_method: "key", "password" or "gssapi"
        key_filename: Path to private key (default ~/.ssh/id_rsa for "key")
        password: Password (required when auth_method="password", excluded from repr)
    """

    hostname: str
    port: int = DEFAULT_SSH_PORT
    username: Optional[str] = None
    auth_method: str = "key"
    key_filename: Optional[str] = None
    password: Optional[str] = field(default=None, repr=False)

    def __post_init__(self):
        if not self.hostname or not self.hostname.strip():
            raise ValueError("hostname must be a non-empty string")
        if not isinstance(self.port, int) or self.port < 1 or self.port > 65535:
            raise ValueError(f"port must be 1-65535, got {self.port}")
        if self.auth_method not in AUTH_METHODS:
            raise ValueError(f"auth_method must be 'key', 'password', or 'gssapi', got {self.auth_method!r}")
        if self.auth_method == "key" and not self.key_filename:
            object.__setattr__(self, "key_filename", DEFAULT_KEY_FILENAME)
        if self.auth_method == "password" and not self.password:
            raise ValueError("password required when auth_method='password'")

    @classmethod
    def parse(cls, spec: str, **kwargs) -> "SSHHop":
        """Build a hop from "host", "host:port" or "host/path" (path ignored)."""
        hostname, port = parse_host(spec)
        return cls(hostname=hostname, port=port, **kwargs)

    @property
    def effective_username(self) -> str:
        if self.username:
            return self.username
        if self.auth_method == "gssapi":
            return _gssapi_username()
        return getpass.getuser()


# ---------------------------------------------------------------------------
# CommandResult
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CommandResult:
    """Result of a remote command execution."""

    command: str
    exit_code: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


# ---------------------------------------------------------------------------
# SSHClient
# ---------------------------------------------------------------------------


HopSpec = Union[str, SSHHop]


def _normalize_hops(hops: Union[HopSpec, list[HopSpec]]) -> list[SSHHop]:
    """Normalize hop specifications into a list of SSHHop objects."""
    if isinstance(hops, (str, SSHHop)):
        hops = [hops]
    result = []
    for h in hops:
        if isinstance(h, str):
            result.append(SSHHop.parse(h))
        elif isinstance(h, SSHHop):
            result.append(h)
        else:
            raise TypeError(f"Expected str or SSHHop, got {type(h).__name__}")
    if not result:
        raise ValueError("At least one hop is required")
    return result


class SSHClient:
    """SSH client supporting multi-hop connections, command execution, tunnels and copy.

    Connection is lazy - established on first operation. Uses a paramiko
    Transport per hop; later hops ride on direct-tcpip channels of the
    previous one.

    Args:
        hops: Target host(s). Accepts a host string ("host", "host:port"),
              SSHHop, or list of either. Multiple hops create a chain
              (jump hosts).
        connect_timeout: TCP connection timeout in seconds (default 10.0).

    Example:
        with SSHClient("jump.example.com") as ssh:
            result = ssh.exec("hostname")
            print(result.stdout)
    """

    def __init__(
        self,
        hops: Union[HopSpec, list[HopSpec]],
        connect_timeout: float = 10.0,
    ):
        self._hops = _normalize_hops(hops)
        self._connect_timeout = connect_timeout

        # Validate GSSAPI availability if any hop needs it (fail fast)
        if any(h.auth_method == "gssapi" for h in self._hops):
            try:
                import gssapi  # noqa: F401
            except (ImportError, OSError) as exc:
                raise ImportError(
                    "gssapi library required for GSSAPI SSH auth. Install with: pip install sshrelay[gssapi]"
                ) from exc

        # Lazy connection state (protected by lock)
        self._lock = threading.Lock()
        self._transports: list[paramiko.Transport] = []
        self._channels: list[paramiko.Channel] = []  # intermediate channels for multi-hop
        self._connected = False
        self._tunnels: list[ForwardingTunnel] = []

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def hops(self) -> list[SSHHop]:
        return list(self._hops)

    def _ensure_connected(self):
        """Lazy connect with double-check locking."""
        if self._connected:
            return
        with self._lock:
            if self._connected:
                return
            self._connect()

    def _connect(self):
        """Build the transport chain through all hops."""
        current_transport = None
        try:
            for i, hop in enumerate(self._hops):
                if i == 0:
                    sock = socket.create_connection(
                        (hop.hostname, hop.port),
                        timeout=self._connect_timeout,
                    )
                    current_transport = paramiko.Transport(sock)
                else:
                    prev_transport = self._transports[-1]
                    chan = prev_transport.open_channel(
                        "direct-tcpip",
                        (hop.hostname, hop.port),
                        ("127.0.0.1", 0),
                    )
                    self._channels.append(chan)
                    current_transport = paramiko.Transport(chan)

                current_transport.start_client()
                self._authenticate(current_transport, hop)
                current_transport.set_keepalive(30)
                self._transports.append(current_transport)
                current_transport = None  # now owned by _transports

            self._connected = True
            logger.info(
                "SSH connected through %d hop(s): %s",
                len(self._hops),
                " -> ".join(h.hostname for h in self._hops),
            )

        except SSHConnectionError:
            self._abort_connect(current_transport)
            raise
        except paramiko.AuthenticationException as e:
            hop = self._hops[min(len(self._transports), len(self._hops) - 1)]
            self._abort_connect(current_transport)
            raise SSHConnectionError(f"Authentication failed: {e}", hop=hop) from e
        except (paramiko.SSHException, OSError) as e:
            hop = self._hops[min(len(self._transports), len(self._hops) - 1)]
            self._abort_connect(current_transport)
            raise SSHConnectionError(f"Connection failed: {e}", hop=hop) from e

    def _abort_connect(self, pending: Optional[paramiko.Transport]) -> None:
        if pending is not None:
            try:
                pending.close()
            except Exception as e:
                logger.debug("Closing unfinished transport failed: %s", e)
        self._cleanup_transports()

    def _authenticate(self, transport: paramiko.Transport, hop: SSHHop):
        """Authenticate a transport using the hop's auth method."""
        username = hop.effective_username

        if hop.auth_method == "gssapi":
            transport.auth_gssapi_with_mic(username, hop.hostname, gss_deleg_creds=True)

        elif hop.auth_method == "key":
            assert hop.key_filename is not None  # defaulted in __post_init__
            key_path = Path(hop.key_filename).expanduser()
            if not key_path.exists():
                raise SSHConnectionError(f"Key file not found: {key_path}", hop=hop)
            pkey = paramiko.PKey.from_path(key_path)
            transport.auth_publickey(username, pkey)

        elif hop.auth_method == "password":
            transport.auth_password(username, hop.password)

    def _cleanup_transports(self):
        """Close all transports and channels in reverse order."""
        for t in reversed(self._transports):
            try:
                t.close()
            except Exception as e:
                logger.debug("Closing transport failed: %s", e)
        for c in reversed(self._channels):
            try:
                c.close()
            except Exception as e:
                logger.debug("Closing hop channel failed: %s", e)
        self._transports.clear()
        self._channels.clear()
        self._connected = False

    @property
    def transport(self) -> paramiko.Transport:
        """The authenticated transport of the final (target) hop. Connects if needed."""
        self._ensure_connected()
        transport = self._transports[-1]
        if not transport.is_active():
            raise SSHConnectionError("Transport is no longer active")
        return transport

    def exec(self, command: str, timeout: Optional[float] = None, input: Optional[str] = None) -> CommandResult:
        """Execute a command on the remote host.

        Args:
            command: Shell command to execute
            timeout: Command timeout in seconds (None = no timeout)
            input: Optional stdin data to send

        Returns:
            CommandResult with exit_code, stdout, stderr

        Raises:
            SSHTimeoutError: If timeout is exceeded
            SSHConnectionError: If transport is not active
        """
        chan = self.transport.open_session()
        try:
            chan.exec_command(command)

            if input is not None:
                chan.sendall(input.encode())
            chan.shutdown_write()

            stdout, stderr, exit_code = drain_channel(chan, command, timeout)
            return CommandResult(
                command=command,
                exit_code=exit_code,
                stdout=stdout.decode(errors="replace"),
                stderr=stderr.decode(errors="replace"),
            )
        finally:
            chan.close()

    def exec_bytes(self, command: str, timeout: Optional[float] = None) -> tuple[bytes, bytes, int]:
        """Like exec(), but returns raw (stdout, stderr, exit_code)."""
        chan = self.transport.open_session()
        try:
            chan.exec_command(command)
            chan.shutdown_write()
            return drain_channel(chan, command, timeout)
        finally:
            chan.close()

    def forward(
        self,
        local_address: str,
        remote_host: str,
        remote_port: int,
        *,
        opener: SessionOpener = netcat_session,
        max_connections: int = 64,
    ) -> ForwardingTunnel:
        """Create a local forwarding tunnel through the SSH connection.

        Args:
            local_address: "host:port" to listen on (port 0 for OS-assigned)
            remote_host: Destination host, as seen from the final hop
            remote_port: Destination port
            opener: Session opener (default: ``nc`` on the final hop)
            max_connections: Ceiling on concurrently relayed connections

        Returns:
            Started ForwardingTunnel (use as context manager or call stop())
        """
        tunnel = ForwardingTunnel(
            self.transport,
            local_address,
            remote_host,
            remote_port,
            opener=opener,
            max_connections=max_connections,
        )
        self._tunnels.append(tunnel)
        return tunnel.start()

    def copy_bytes(
        self,
        data: bytes,
        filename: str,
        destination: str,
        mode: int = scp.DEFAULT_MODE,
        *,
        timeout: Optional[float] = 30.0,
    ) -> None:
        """Write ``data`` to the remote host as ``filename`` under ``destination``."""
        scp.copy_bytes(self.transport, data, filename, destination, mode, timeout=timeout)

    def copy_file(self, path: str, destination: str, *, timeout: Optional[float] = 30.0) -> None:
        """Copy a local file to ``destination`` on the remote host."""
        scp.copy_file(self.transport, path, destination, timeout=timeout)

    def sftp(self) -> RemoteFS:
        """Open an SFTP session on the remote host.

        Returns:
            RemoteFS (use as context manager or call close())
        """
        sftp_client = paramiko.SFTPClient.from_transport(self.transport)
        if sftp_client is None:
            raise SSHConnectionError("Failed to open SFTP session")
        return RemoteFS(sftp_client)

    def close(self):
        """Close the SSH connection and all tunnels."""
        # Stop all tunnels first
        for tunnel in self._tunnels:
            try:
                tunnel.stop()
            except Exception as e:
                logger.warning("Stopping %r failed: %s", tunnel, e)
        self._tunnels.clear()

        self._cleanup_transports()
        logger.info("SSH client closed")

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def __repr__(self):
        hops = " -> ".join(h.hostname for h in self._hops)
        state = "connected" if self._connected else "disconnected"
        return f"SSHClient({hops}, {state})"


__all__ = [
    "AUTH_METHODS",
    "DEFAULT_KEY_FILENAME",
    "SSHHop",
    "CommandResult",
    "SSHClient",
]
