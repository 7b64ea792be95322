"""sshrelay-curl -- Run curl on an SSH server and print the response.

Everything after ``--`` is handed to curl unchanged:

    sshrelay-curl -H jump.example.com -u http://intranet/logo.png -- -s -H "Accept: image/png"
"""

import argparse
import sys

from sshrelay.cli._common import (
    EXIT_FAILURE,
    EXIT_OK,
    EXIT_USAGE_ERROR,
    add_ssh_arguments,
    base_parser,
    make_client,
    setup_logging,
)
from sshrelay.errors import SSHError
from sshrelay.remote import curl_from_remote


def main() -> int:
    parser = base_parser("Fetch a URL from inside a remote network by running curl over SSH")
    add_ssh_arguments(parser)
    parser.add_argument("-u", "--url", required=True, help="URL to fetch from the ssh server")
    parser.add_argument("--timeout", type=float, default=None, help="command timeout in seconds")
    parser.add_argument("curl_args", nargs=argparse.REMAINDER, help="curl options, after --")
    args = parser.parse_args()
    setup_logging(args)

    curl_args = args.curl_args
    if curl_args and curl_args[0] == "--":
        curl_args = curl_args[1:]

    try:
        ssh = make_client(args)
    except (ValueError, ImportError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_USAGE_ERROR

    try:
        body = curl_from_remote(ssh, args.url, *curl_args, timeout=args.timeout)
    except KeyboardInterrupt:
        return 130
    except SSHError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILURE
    finally:
        ssh.close()

    sys.stdout.buffer.write(body)
    sys.stdout.flush()
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
