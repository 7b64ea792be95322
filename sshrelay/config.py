"""
Configuration values and address helpers.

Configuration is explicit: servers and tunnels receive their settings at
construction time. The ``from_env()`` classmethods are the only places
environment variables are read.
"""

import os
from dataclasses import dataclass, field
from typing import Optional

from sshrelay.auth import AuthPolicy, DenyAll, policy_from_name

DEFAULT_PORT = 2222
DEFAULT_INTERFACE = "0.0.0.0"
DEFAULT_SSH_PORT = 22
# 127.0.0.1 instead of 0.0.0.0 - some programs only accept mappings to loopback
DEFAULT_LOCAL_HOST = "127.0.0.1"
DEFAULT_SHELL = ("bash",)


def _get_env_int(name: str, default: Optional[int] = None) -> Optional[int]:
    """Get environment variable as int."""
    val = os.environ.get(name)
    if val is None:
        return default
    try:
        return int(val)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be an integer, got {val!r}")


def _get_env_float(name: str, default: Optional[float] = None) -> Optional[float]:
    """Get environment variable as float."""
    val = os.environ.get(name)
    if val is None:
        return default
    try:
        return float(val)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be a number, got {val!r}")


def _validate_port(port: int, *, allow_zero: bool = False) -> None:
    low = 0 if allow_zero else 1
    if not isinstance(port, int) or port < low or port > 65535:
        raise ValueError(f"port must be {low}-65535, got {port}")


def parse_address(address: str, default_host: str = DEFAULT_LOCAL_HOST) -> tuple[str, int]:
    """Split a ``host:port`` string.

    "127.0.0.1:8080" -> ("127.0.0.1", 8080)
    ":8080"          -> (default_host, 8080)
    "[::1]:8080"     -> ("::1", 8080)

    Port 0 is allowed (ephemeral).
    """
    host, sep, port_str = address.rpartition(":")
    if not sep:
        raise ValueError(f"Address must be host:port, got {address!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    try:
        port = int(port_str)
    except ValueError:
        raise ValueError(f"Invalid port in address {address!r}")
    _validate_port(port, allow_zero=True)
    return host or default_host, port


def format_address(host: str, port: int) -> str:
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def parse_host(spec: str, default_port: int = DEFAULT_SSH_PORT) -> tuple[str, int]:
    """Parse an ssh host spec, defaulting the port.

    "jump.example.com"          -> ("jump.example.com", 22)
    "jump.example.com:2200"     -> ("jump.example.com", 2200)
    "jump.example.com/some/path" -> ("jump.example.com", 22)
    """
    hostpart = spec.split("/", 1)[0].strip()
    if not hostpart:
        raise ValueError(f"Empty host in {spec!r}")
    if ":" in hostpart and not hostpart.endswith("]"):
        return parse_address(hostpart, default_host="")
    return hostpart.strip("[]"), default_port


@dataclass(frozen=True)
class ServerConfig:
    """Settings for :class:`sshrelay.server.SSHServer`.

    Args:
        interface: Network interface to listen on
        port: TCP port (0 for OS-assigned)
        host_key_path: Private host key file; required unless a key object
            is handed to the server directly
        shell: argv of the shell spawned per session
        auth: Authentication policy (deny-all unless chosen explicitly)
        max_connections: Ceiling on concurrently served TCP connections
        handshake_timeout: Seconds to wait for the SSH handshake and first channel
        shutdown_grace: Seconds to wait for a hung-up shell before killing it
    """

    interface: str = DEFAULT_INTERFACE
    port: int = DEFAULT_PORT
    host_key_path: Optional[str] = None
    shell: tuple[str, ...] = DEFAULT_SHELL
    auth: AuthPolicy = field(default_factory=DenyAll)
    max_connections: int = 32
    handshake_timeout: float = 20.0
    shutdown_grace: float = 2.0

    def __post_init__(self):
        _validate_port(self.port, allow_zero=True)
        if not self.shell:
            raise ValueError("shell must name a program")
        if self.max_connections < 1:
            raise ValueError(f"max_connections must be positive, got {self.max_connections}")
        if self.handshake_timeout <= 0:
            raise ValueError(f"handshake_timeout must be positive, got {self.handshake_timeout}")

    @property
    def address(self) -> str:
        return format_address(self.interface, self.port)

    @classmethod
    def from_env(cls, **overrides) -> "ServerConfig":
        """Build a config from ``SSHRELAY_*`` environment variables.

        Keyword overrides win over the environment.
        """
        values: dict = {}
        interface = os.environ.get("SSHRELAY_INTERFACE")
        if interface:
            values["interface"] = interface
        port = _get_env_int("SSHRELAY_PORT")
        if port is not None:
            values["port"] = port
        host_key = os.environ.get("SSHRELAY_HOST_KEY")
        if host_key:
            values["host_key_path"] = host_key
        shell = os.environ.get("SSHRELAY_SHELL")
        if shell:
            values["shell"] = tuple(shell.split())
        max_conn = _get_env_int("SSHRELAY_MAX_CONNECTIONS")
        if max_conn is not None:
            values["max_connections"] = max_conn
        handshake = _get_env_float("SSHRELAY_HANDSHAKE_TIMEOUT")
        if handshake is not None:
            values["handshake_timeout"] = handshake
        auth_name = os.environ.get("SSHRELAY_AUTH")
        if auth_name:
            values["auth"] = policy_from_name(
                auth_name,
                password=os.environ.get("SSHRELAY_PASSWORD"),
                authorized_keys=os.environ.get("SSHRELAY_AUTHORIZED_KEYS"),
            )
        values.update(overrides)
        return cls(**values)


# Names accepted by sshrelay.session.OPENERS
OPENER_NAMES = ("netcat", "direct-tcpip")


@dataclass(frozen=True)
class TunnelConfig:
    """Settings for one :class:`sshrelay.tunnel.ForwardingTunnel`.

    Args:
        remote_host: Destination host, resolved on the SSH server side
        remote_port: Destination port
        local_address: "host:port" to listen on; port 0 picks a free port
        opener: How sessions reach the destination ("netcat" or "direct-tcpip")
        max_connections: Ceiling on concurrently relayed connections
    """

    remote_host: str
    remote_port: int
    local_address: str = f"{DEFAULT_LOCAL_HOST}:0"
    opener: str = "netcat"
    max_connections: int = 64

    def __post_init__(self):
        if not self.remote_host or not self.remote_host.strip():
            raise ValueError("remote_host must be a non-empty string")
        _validate_port(self.remote_port)
        parse_address(self.local_address)
        if self.opener not in OPENER_NAMES:
            raise ValueError(f"opener must be one of {OPENER_NAMES}, got {self.opener!r}")
        if self.max_connections < 1:
            raise ValueError(f"max_connections must be positive, got {self.max_connections}")

    @classmethod
    def from_env(cls, remote_host: str, remote_port: int, **overrides) -> "TunnelConfig":
        """Build a config, taking the optional settings from ``SSHRELAY_TUNNEL_*``."""
        values: dict = {}
        opener = os.environ.get("SSHRELAY_TUNNEL_OPENER")
        if opener:
            values["opener"] = opener
        max_conn = _get_env_int("SSHRELAY_TUNNEL_MAX_CONNECTIONS")
        if max_conn is not None:
            values["max_connections"] = max_conn
        values.update(overrides)
        return cls(remote_host=remote_host, remote_port=remote_port, **values)


__all__ = [
    "DEFAULT_PORT",
    "DEFAULT_INTERFACE",
    "DEFAULT_SSH_PORT",
    "DEFAULT_LOCAL_HOST",
    "DEFAULT_SHELL",
    "parse_address",
    "format_address",
    "parse_host",
    "ServerConfig",
    "OPENER_NAMES",
    "TunnelConfig",
]
