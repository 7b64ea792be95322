"""
Forwarding tunnel: local TCP listener -> remote session -> destination.

Every accepted local connection gets its own session on the shared SSH
transport (by default ``nc <host> <port>`` run on the jump host), and the
bytes are relayed both ways until the connection ends.

Example:
    from sshrelay.client import SSHClient

    with SSHClient("jump.example.com") as ssh:
        with ssh.forward("127.0.0.1:5432", "db.internal", 5432) as tunnel:
            tunnel.wait()
"""

from __future__ import annotations

import logging
import socket
import threading
from typing import Optional

import paramiko

from sshrelay.config import DEFAULT_LOCAL_HOST, format_address, parse_address
from sshrelay.errors import TunnelBindError, TunnelError
from sshrelay.relay import Direction, Relay
from sshrelay.session import SessionOpener, netcat_session

logger = logging.getLogger(__name__)

# Remote stderr kept per connection; older bytes are dropped
STDERR_LIMIT = 64 * 1024


class ForwardingTunnel:
    """Bridge local TCP connections to remote_host:remote_port through SSH sessions.

    The listener is bound in the constructor; failure raises TunnelBindError.
    Call start() (or serve_forever() in the calling thread) to accept. Use
    as context manager or call stop() explicitly.

    Args:
        transport: Authenticated transport shared by all connections
        local_address: "host:port" to listen on (port 0 for OS-assigned)
        remote_host: Destination host, as seen from the SSH server
        remote_port: Destination port
        opener: Opens one session per connection (default: netcat)
        max_connections: Connections served at once; extra ones are closed
        poll_interval: How often a blocked accept checks for stop()
    """

    def __init__(
        self,
        transport: paramiko.Transport,
        local_address: str,
        remote_host: str,
        remote_port: int,
        *,
        opener: SessionOpener = netcat_session,
        max_connections: int = 64,
        poll_interval: float = 0.5,
    ):
        if max_connections < 1:
            raise ValueError(f"max_connections must be positive, got {max_connections}")
        self.remote_host = remote_host
        self.remote_port = remote_port
        self._transport = transport
        self._opener = opener
        self._max_connections = max_connections
        self._slots = threading.BoundedSemaphore(max_connections)
        self._stop_event = threading.Event()
        self._relays: set[Relay] = set()
        self._relays_lock = threading.Lock()
        self._acceptor_thread: Optional[threading.Thread] = None
        self.error: Optional[OSError] = None

        host, port = parse_address(local_address, default_host=DEFAULT_LOCAL_HOST)
        family = socket.AF_INET6 if ":" in host else socket.AF_INET
        try:
            self._listener = socket.create_server((host, port), family=family)
        except OSError as e:
            raise TunnelBindError(local_address, e) from e
        self._listener.settimeout(poll_interval)
        # Update port in case 0 was passed (OS-assigned)
        self.local_host, self.local_port = self._listener.getsockname()[:2]
        logger.info(
            "[*] Listening on %s -> %s:%d", self.local_address, self.remote_host, self.remote_port
        )

    @property
    def local_address(self) -> str:
        return format_address(self.local_host, self.local_port)

    @property
    def active(self) -> bool:
        return not self._stop_event.is_set() and self.error is None

    @property
    def connection_count(self) -> int:
        with self._relays_lock:
            return len(self._relays)

    # -- accept loop ------------------------------------------------------------

    def accept_once(self) -> bool:
        """Wait for one local connection and hand it to a new thread.

        Returns False if stop() was called while waiting.

        Raises:
            OSError: If accept fails
        """
        while True:
            try:
                conn, addr = self._listener.accept()
                break
            except socket.timeout:
                if self._stop_event.is_set():
                    return False
        conn.settimeout(None)
        peer = format_address(*addr[:2])
        logger.info("Accepting connection from %s", peer)

        if not self._slots.acquire(blocking=False):
            logger.warning("Connection limit (%d) reached, refusing %s", self._max_connections, peer)
            conn.close()
            return True
        try:
            threading.Thread(
                target=self._handle_connection,
                args=(conn, peer),
                name=f"tunnel-{self.local_port}-{peer}",
                daemon=True,
            ).start()
        except RuntimeError as e:
            logger.error("Cannot start handler for %s: %s", peer, e)
            conn.close()
            self._slots.release()
        return True

    def serve_forever(self) -> Optional[OSError]:
        """Accept until stop() or an accept error.

        An accept error is treated as fatal for the tunnel: it is logged,
        the listener is closed and the error is stored in ``self.error``
        and returned.
        """
        try:
            while not self._stop_event.is_set():
                if not self.accept_once():
                    break
        except OSError as e:
            if self._stop_event.is_set():
                return None
            logger.error("Accept failed on %s: %s", self.local_address, e)
            self.error = e
            return e
        finally:
            self._listener.close()
        return None

    def start(self) -> "ForwardingTunnel":
        """Run serve_forever() in a background thread."""
        if self._acceptor_thread is None:
            self._acceptor_thread = threading.Thread(
                target=self.serve_forever,
                name=f"ssh-tunnel-{self.local_port}",
                daemon=True,
            )
            self._acceptor_thread.start()
        return self

    def wait(self, timeout: Optional[float] = None) -> None:
        """Block until the accept loop ends.

        Raises:
            TunnelError: If the loop ended because accept failed
        """
        if self._acceptor_thread is not None:
            self._acceptor_thread.join(timeout)
        if self.error is not None:
            raise TunnelError(f"Tunnel on {self.local_address} stopped: {self.error}") from self.error

    def stop(self) -> None:
        if self._stop_event.is_set():
            return
        self._stop_event.set()
        self._listener.close()
        with self._relays_lock:
            relays = list(self._relays)
        for relay in relays:
            relay.close()
        if self._acceptor_thread is not None and self._acceptor_thread is not threading.current_thread():
            self._acceptor_thread.join(timeout=3.0)
        logger.info("Tunnel on port %d stopped", self.local_port)

    # -- per connection -----------------------------------------------------------

    def _handle_connection(self, conn: socket.socket, peer: str) -> None:
        try:
            logger.info("Starting session for %s...", peer)
            try:
                chan = self._opener(self._transport, self.remote_host, self.remote_port)
            except Exception as e:
                logger.error("Session for %s -> %s:%d failed: %s", peer, self.remote_host, self.remote_port, e)
                conn.close()
                return
            relay = self._bridge(conn, chan, peer)
            relay.wait()
            relay.join(timeout=1.0)
            with self._relays_lock:
                self._relays.discard(relay)
        finally:
            self._slots.release()

    def _bridge(self, conn: socket.socket, chan: paramiko.Channel, peer: str) -> Relay:
        stderr_buf = bytearray()

        def capture_stderr(data: bytes) -> None:
            stderr_buf.extend(data)
            if len(stderr_buf) > STDERR_LIMIT:
                del stderr_buf[: len(stderr_buf) - STDERR_LIMIT]

        def flush_stderr() -> None:
            if stderr_buf:
                logger.warning("%s: remote stderr: %s", peer, stderr_buf.decode(errors="replace").strip())
                stderr_buf.clear()

        def half_close_local() -> None:
            conn.shutdown(socket.SHUT_WR)

        def teardown() -> None:
            try:
                # wakes a recv() blocked in another thread; close() alone does not
                conn.shutdown(socket.SHUT_RDWR)
            except OSError as e:
                logger.debug("%s: socket shutdown: %s", peer, e)
            conn.close()
            chan.close()
            logger.info("%s: connection closed", peer)

        relay = Relay(peer, teardown, cancel=self._stop_event)
        relay.add(Direction("remote->local", chan.recv, conn.sendall, on_eof=half_close_local))
        relay.add(Direction("local->remote", conn.recv, chan.sendall, on_eof=chan.shutdown_write))
        relay.add(Direction("stderr", chan.recv_stderr, capture_stderr, on_done=flush_stderr, essential=False))
        with self._relays_lock:
            self._relays.add(relay)
        relay.start()
        if self._stop_event.is_set():
            relay.close()
        return relay

    # -- context manager ------------------------------------------------------------

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.stop()

    def __repr__(self):
        state = "active" if self.active else "stopped"
        return (
            f"ForwardingTunnel({self.local_address} -> {self.remote_host}:{self.remote_port}, {state})"
        )


__all__ = ["STDERR_LIMIT", "ForwardingTunnel"]
