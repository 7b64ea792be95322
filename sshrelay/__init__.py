"""
sshrelay - Reach hosts behind an SSH jump host: forwarding tunnels, PTY shells and file copy.

Quick start:
    import sshrelay

    with sshrelay.SSHClient("jump.example.com") as ssh:
        with ssh.forward("127.0.0.1:5432", "db.internal", 5432) as tunnel:
            tunnel.wait()

Serving shells:
    config = sshrelay.ServerConfig(host_key_path="host_key", auth=sshrelay.AuthorizedKeys())
    with sshrelay.SSHServer(config) as server:
        server.serve_forever()
"""

from sshrelay.auth import AcceptAll, AuthorizedKeys, AuthPolicy, DenyAll, FixedPassword  # noqa: F401
from sshrelay.client import CommandResult, SSHClient, SSHHop  # noqa: F401
from sshrelay.config import ServerConfig, TunnelConfig, parse_address, parse_host  # noqa: F401
from sshrelay.errors import (  # noqa: F401
    CopyError,
    ProtocolError,
    RemoteFileError,
    RemoteFileExistsError,
    RemoteFileNotFoundError,
    ServerError,
    SessionOpenError,
    SSHCommandError,
    SSHConnectionError,
    SSHError,
    SSHTimeoutError,
    TunnelBindError,
    TunnelError,
)
from sshrelay.relay import Relay, TeardownGuard  # noqa: F401
from sshrelay.remote import RemoteFS, curl_from_remote  # noqa: F401
from sshrelay.scp import copy_bytes, copy_file, send_file_stream  # noqa: F401
from sshrelay.server import ShellSession, SSHServer  # noqa: F401
from sshrelay.session import direct_tcpip_session, netcat_session  # noqa: F401
from sshrelay.terminal import PtyProcess, Terminal  # noqa: F401
from sshrelay.tunnel import ForwardingTunnel  # noqa: F401
from sshrelay.wire import CopyHeader  # noqa: F401

__version__ = "0.1.0"

__all__ = [
    "__version__",
    # client side
    "SSHClient",
    "SSHHop",
    "CommandResult",
    "ForwardingTunnel",
    "TunnelConfig",
    "netcat_session",
    "direct_tcpip_session",
    "send_file_stream",
    "copy_bytes",
    "copy_file",
    "CopyHeader",
    "RemoteFS",
    "curl_from_remote",
    # server side
    "SSHServer",
    "ServerConfig",
    "ShellSession",
    "PtyProcess",
    "Terminal",
    "AuthPolicy",
    "DenyAll",
    "AcceptAll",
    "FixedPassword",
    "AuthorizedKeys",
    # engine
    "Relay",
    "TeardownGuard",
    "parse_address",
    "parse_host",
    # errors
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
