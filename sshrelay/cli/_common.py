"""Shared CLI infrastructure for sshrelay-forward/sshrelay-serve/sshrelay-curl."""

import argparse
import getpass
import logging
import os
import signal
import sys
from typing import Callable

from sshrelay.client import AUTH_METHODS, SSHClient, SSHHop

# Exit codes
EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE_ERROR = 2

LOG_FORMAT = "%(asctime)s %(levelname)-5s %(name)s %(message)s"


def base_parser(description: str) -> argparse.ArgumentParser:
    """Create ArgumentParser with common flags shared by all CLI tools."""
    parser = argparse.ArgumentParser(description=description)
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging (includes paramiko)")
    parser.add_argument("-q", "--quiet", action="store_true", help="only log warnings and errors")
    return parser


def add_ssh_arguments(parser: argparse.ArgumentParser, host_flag: str = "--ssh-host") -> None:
    """Flags that describe how to reach the SSH server."""
    parser.add_argument(
        "-H", host_flag, dest="ssh_host", required=True, help="ssh server, host[:port] (port defaults to 22)"
    )
    parser.add_argument("-l", "--login", default=None, help="ssh username (default: current user)")
    parser.add_argument(
        "-P", "--private-key", dest="private_key", default=None, help="private key file (default: ~/.ssh/id_rsa)"
    )
    parser.add_argument("-a", "--auth", choices=AUTH_METHODS, default="key", help="authentication method")
    parser.add_argument(
        "--connect-timeout", type=float, default=10.0, help="TCP connect timeout in seconds (default: 10.0)"
    )


def setup_logging(args) -> None:
    """Log to stderr. Library modules only create loggers; handlers live here."""
    if args.verbose:
        level = logging.DEBUG
    elif args.quiet:
        level = logging.WARNING
    else:
        level = logging.INFO
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level)
    # paramiko logs every packet at DEBUG
    logging.getLogger("paramiko").setLevel(logging.DEBUG if args.verbose else logging.WARNING)


def make_client(args) -> SSHClient:
    """Create a (lazily connecting) SSHClient from parsed args."""
    kwargs: dict = {"auth_method": args.auth, "username": args.login}
    if args.private_key is not None:
        kwargs["key_filename"] = args.private_key
    if args.auth == "password":
        kwargs["password"] = os.environ.get("SSHRELAY_SSH_PASSWORD") or getpass.getpass("ssh password: ")
    hop = SSHHop.parse(args.ssh_host, **kwargs)
    return SSHClient(hop, connect_timeout=args.connect_timeout)


def install_signal_handlers(cleanup_fn: Callable[[], None]) -> None:
    """Install SIGINT/SIGTERM handlers that call cleanup_fn then exit."""

    def _handler(signum, frame):
        cleanup_fn()
        sys.exit(128 + signum)

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)
