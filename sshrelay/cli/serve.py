"""sshrelay-serve -- Serve interactive PTY shells over SSH."""

import os
import sys

from sshrelay.auth import POLICY_NAMES, policy_from_name
from sshrelay.cli._common import (
    EXIT_FAILURE,
    EXIT_OK,
    EXIT_USAGE_ERROR,
    base_parser,
    install_signal_handlers,
    setup_logging,
)
from sshrelay.config import ServerConfig
from sshrelay.errors import SSHError
from sshrelay.server import SSHServer


def main() -> int:
    parser = base_parser("Serve PTY-backed shells to SSH clients")
    parser.add_argument("-i", "--interface", default=None, help="interface to listen on (default: 0.0.0.0)")
    parser.add_argument("-p", "--port", type=int, default=None, help="port to listen on (default: 2222)")
    parser.add_argument("-k", "--host-key", default=None, help="private host key file")
    parser.add_argument("--shell", default=None, help="shell command line (default: bash)")
    parser.add_argument(
        "--auth",
        choices=POLICY_NAMES,
        default=None,
        help="client authentication policy (default: deny-all; password from SSHRELAY_PASSWORD)",
    )
    parser.add_argument("--authorized-keys", default=None, help="authorized_keys file for --auth authorized-keys")
    parser.add_argument("--max-connections", type=int, default=None, help="concurrent connection ceiling")
    args = parser.parse_args()
    setup_logging(args)

    overrides: dict = {}
    if args.interface is not None:
        overrides["interface"] = args.interface
    if args.port is not None:
        overrides["port"] = args.port
    if args.host_key is not None:
        overrides["host_key_path"] = args.host_key
    if args.shell is not None:
        overrides["shell"] = tuple(args.shell.split())
    if args.max_connections is not None:
        overrides["max_connections"] = args.max_connections
    try:
        if args.auth is not None:
            overrides["auth"] = policy_from_name(
                args.auth,
                password=os.environ.get("SSHRELAY_PASSWORD"),
                authorized_keys=args.authorized_keys,
            )
        config = ServerConfig.from_env(**overrides)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_USAGE_ERROR

    try:
        server = SSHServer(config)
    except SSHError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILURE

    try:
        install_signal_handlers(server.stop)
        server.serve_forever()
    except KeyboardInterrupt:
        return 130
    finally:
        server.stop()

    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
