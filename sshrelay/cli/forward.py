"""sshrelay-forward -- Forward a local port to a host reachable from an SSH server."""

import sys

from sshrelay.cli._common import (
    EXIT_FAILURE,
    EXIT_OK,
    EXIT_USAGE_ERROR,
    add_ssh_arguments,
    base_parser,
    install_signal_handlers,
    make_client,
    setup_logging,
)
from sshrelay.config import DEFAULT_LOCAL_HOST, OPENER_NAMES, TunnelConfig, format_address
from sshrelay.errors import SSHError
from sshrelay.session import OPENERS


def main() -> int:
    parser = base_parser("Forward local connections through an SSH server to a remote address")
    add_ssh_arguments(parser)
    parser.add_argument("-r", "--remote-addr", required=True, help="destination host, as seen from the ssh server")
    parser.add_argument("-p", "--remote-port", type=int, required=True, help="destination port")
    parser.add_argument(
        "-L", "--local-port", type=int, default=0, help="local port to listen on (default: pick a free port)"
    )
    parser.add_argument(
        "--local-host", default=DEFAULT_LOCAL_HOST, help=f"local interface to listen on (default: {DEFAULT_LOCAL_HOST})"
    )
    parser.add_argument("--opener", choices=OPENER_NAMES, default=None, help="how sessions reach the destination")
    parser.add_argument("--max-connections", type=int, default=None, help="concurrent connection ceiling")
    args = parser.parse_args()
    setup_logging(args)

    overrides: dict = {"local_address": format_address(args.local_host, args.local_port)}
    if args.opener is not None:
        overrides["opener"] = args.opener
    if args.max_connections is not None:
        overrides["max_connections"] = args.max_connections
    try:
        config = TunnelConfig.from_env(args.remote_addr, args.remote_port, **overrides)
        ssh = make_client(args)
    except (ValueError, ImportError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_USAGE_ERROR

    try:
        tunnel = ssh.forward(
            config.local_address,
            config.remote_host,
            config.remote_port,
            opener=OPENERS[config.opener],
            max_connections=config.max_connections,
        )
        install_signal_handlers(ssh.close)
        print(f"Forwarding {tunnel.local_address} -> {config.remote_host}:{config.remote_port}", flush=True)
        tunnel.wait()
    except KeyboardInterrupt:
        return 130
    except SSHError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILURE
    finally:
        ssh.close()

    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
