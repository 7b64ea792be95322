"""
SSH server that serves interactive PTY shells.

Each TCP connection gets a paramiko server Transport. Each accepted
"session" channel gets a ShellSession: a shell spawned on a fresh PTY,
relayed to the channel until either side ends. Any other channel type is
rejected with "unknown channel type" and the connection keeps running.

Example:
    from sshrelay.auth import AuthorizedKeys
    from sshrelay.config import ServerConfig
    from sshrelay.server import SSHServer

    config = ServerConfig(port=2222, host_key_path="/etc/ssh/sshrelay_host_key",
                          auth=AuthorizedKeys())
    with SSHServer(config) as server:
        server.serve_forever()
"""

from __future__ import annotations

import logging
import socket
import socketserver
import subprocess
import threading
from typing import Callable, Optional, Sequence

import paramiko

from sshrelay.auth import AuthPolicy
from sshrelay.config import DEFAULT_SHELL, ServerConfig, format_address
from sshrelay.errors import ProtocolError, ServerError
from sshrelay.relay import Direction, Relay, TeardownGuard
from sshrelay.terminal import PtyProcess, Terminal
from sshrelay.wire import parse_pty_request, parse_window_change

logger = logging.getLogger(__name__)

SESSION_CHANNEL = "session"

# (argv, terminal=...) -> PtyProcess-like object
SpawnFn = Callable[..., PtyProcess]


def unknown_channel_reason(kind: str) -> str:
    return f"unknown channel type: {kind}"


# ---------------------------------------------------------------------------
# ShellSession
# ---------------------------------------------------------------------------


class ShellSession:
    """One accepted "session" channel served by a shell on a PTY.

    In-band requests may arrive before the channel is attached (paramiko
    processes them on the transport thread); terminal geometry received
    early is applied when the shell is spawned.

    Args:
        chanid: Channel id, used in logs
        shell: argv of the shell to spawn
        peer: Remote address, used in logs
        spawn: Factory for the PTY adapter (PtyProcess by default)
        cancel: Server-wide stop signal passed to the relay
        shutdown_grace: Seconds to wait for the shell after hangup before killing it
        on_closed: Called with the session once teardown has finished
    """

    def __init__(
        self,
        chanid: int,
        shell: Sequence[str] = DEFAULT_SHELL,
        *,
        peer: str = "-",
        spawn: SpawnFn = PtyProcess,
        cancel: Optional[threading.Event] = None,
        shutdown_grace: float = 2.0,
        on_closed: Optional[Callable[["ShellSession"], None]] = None,
    ):
        self.chanid = chanid
        self.peer = peer
        self._shell = tuple(shell)
        self._spawn = spawn
        self._cancel = cancel
        self._grace = shutdown_grace
        self._lock = threading.Lock()
        self._terminal: Optional[Terminal] = None
        self._pty: Optional[PtyProcess] = None
        self._channel: Optional[paramiko.Channel] = None
        self._relay: Optional[Relay] = None
        self._guard = TeardownGuard(self._teardown)
        self.shell_requested = False
        self.exit_status: Optional[int] = None
        self.on_closed = on_closed

    @property
    def name(self) -> str:
        return f"{self.peer}#{self.chanid}"

    @property
    def terminal(self) -> Optional[Terminal]:
        return self._terminal

    @property
    def closed(self) -> bool:
        return self._guard.fired

    # -- in-band requests ---------------------------------------------------

    def handle_request(self, kind: str, payload: bytes = b"") -> bool:
        """Dispatch a raw channel request. Returns the reply to send.

        Supports "shell", "pty-req" and "window-change"; anything else is
        refused.
        """
        if kind == "shell":
            return self.request_shell(payload)
        if kind == "pty-req":
            try:
                term, width, height = parse_pty_request(payload)
            except ProtocolError as e:
                logger.warning("%s: bad pty-req: %s", self.name, e)
                return False
            logger.debug("%s: pty-req term=%s", self.name, term)
            self.resize(width, height)
            return True
        if kind == "window-change":
            try:
                width, height = parse_window_change(payload)
            except ProtocolError as e:
                logger.warning("%s: bad window-change: %s", self.name, e)
                return False
            self.resize(width, height)
            return True
        logger.debug("%s: refusing %r request", self.name, kind)
        return False

    def request_shell(self, command: bytes = b"") -> bool:
        """Accept a bare shell request; refuse command execution."""
        if command:
            logger.warning("%s: refusing command execution %r", self.name, command[:64])
            return False
        self.shell_requested = True
        return True

    def resize(self, width: int, height: int) -> None:
        terminal = Terminal(width, height)
        with self._lock:
            self._terminal = terminal
            pty_ = self._pty
            if pty_ is None or pty_.closed:
                return
            try:
                pty_.resize(width, height)
            except OSError as e:
                logger.warning("%s: resize to %s failed: %s", self.name, terminal, e)
                return
        logger.debug("%s: terminal resized to %s", self.name, terminal)

    # -- lifecycle ------------------------------------------------------------

    def attach(self, channel: paramiko.Channel) -> bool:
        """Spawn the shell on a PTY and start relaying it to ``channel``.

        Returns False (after closing the channel) if the PTY could not be
        allocated.
        """
        with self._lock:
            self._channel = channel
            if self._guard.fired:
                spawn_error: Optional[Exception] = RuntimeError("session already closed")
            else:
                logger.info("%s: creating pty for %s", self.name, self._shell[0])
                try:
                    self._pty = self._spawn(self._shell, terminal=self._terminal)
                    spawn_error = None
                except (OSError, subprocess.SubprocessError) as e:
                    spawn_error = e
        if spawn_error is not None:
            logger.error("%s: could not start pty (%s)", self.name, spawn_error)
            if not self.close():
                # teardown already ran without this channel
                channel.close()
            return False

        pty_ = self._pty
        relay = Relay(self.name, self._guard.fire, cancel=self._cancel)
        relay.add(Direction("pty->channel", pty_.recv, channel.sendall))
        relay.add(Direction("channel->pty", channel.recv, pty_.sendall))
        self._relay = relay
        relay.start()
        return True

    def close(self) -> bool:
        """Tear the session down. Only the first call does anything."""
        return self._guard.fire()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._guard.wait(timeout)

    def _teardown(self) -> None:
        try:
            pty_ = self._pty
            channel = self._channel
            if pty_ is not None:
                pty_.hangup()
                try:
                    status = pty_.wait(self._grace)
                except subprocess.TimeoutExpired:
                    logger.warning("%s: shell still running %.1fs after hangup, killing", self.name, self._grace)
                    pty_.kill()
                    status = pty_.wait()
                pty_.close()
                self.exit_status = status
                if status != 0:
                    logger.error("%s: shell exited with status %d", self.name, status)
            if channel is not None:
                if self.exit_status is not None:
                    try:
                        # negative status means killed by signal
                        channel.send_exit_status(self.exit_status if self.exit_status >= 0 else 128 - self.exit_status)
                    except Exception as e:
                        logger.debug("%s: could not send exit status: %s", self.name, e)
                channel.close()
            logger.info("%s: session closed", self.name)
        finally:
            if self.on_closed is not None:
                self.on_closed(self)

    def __repr__(self) -> str:
        state = "closed" if self.closed else "open"
        return f"ShellSession({self.name}, {state})"


# ---------------------------------------------------------------------------
# paramiko server interface
# ---------------------------------------------------------------------------


class ChannelRouter(paramiko.ServerInterface):
    """Per-connection paramiko ServerInterface.

    Applies the auth policy, admits only "session" channels and forwards
    in-band requests to the ShellSession of the channel they arrive on.
    """

    def __init__(self, policy: AuthPolicy, peer: str, make_session: Callable[[int], ShellSession]):
        self._policy = policy
        self._peer = peer
        self._make_session = make_session
        self._sessions: dict[int, ShellSession] = {}
        self._lock = threading.Lock()

    def session(self, chanid: int) -> Optional[ShellSession]:
        with self._lock:
            return self._sessions.get(chanid)

    def sessions(self) -> list[ShellSession]:
        with self._lock:
            return list(self._sessions.values())

    # -- auth -----------------------------------------------------------------

    def get_allowed_auths(self, username):
        return ",".join(self._policy.methods)

    def check_auth_password(self, username, password):
        return self._auth_decision(username, "password", self._policy.check_password(username, password))

    def check_auth_publickey(self, username, key):
        return self._auth_decision(username, "publickey", self._policy.check_publickey(username, key))

    def _auth_decision(self, username: str, method: str, ok: bool) -> int:
        if ok:
            logger.info("auth peer=%s user=%s method=%s decision=accepted", self._peer, username, method)
            return paramiko.AUTH_SUCCESSFUL
        logger.warning(
            "auth peer=%s user=%s method=%s decision=denied policy=%s", self._peer, username, method, self._policy.name
        )
        return paramiko.AUTH_FAILED

    # -- channels ---------------------------------------------------------------

    def check_channel_request(self, kind, chanid):
        if kind != SESSION_CHANNEL:
            logger.warning("%s: rejecting channel %d: %s", self._peer, chanid, unknown_channel_reason(kind))
            return paramiko.OPEN_FAILED_UNKNOWN_CHANNEL_TYPE
        session = self._make_session(chanid)
        session.on_closed = self._forget
        with self._lock:
            self._sessions[chanid] = session
        return paramiko.OPEN_SUCCEEDED

    def _forget(self, session: ShellSession) -> None:
        # channel ids are reused once closed
        with self._lock:
            if self._sessions.get(session.chanid) is session:
                del self._sessions[session.chanid]

    def check_channel_direct_tcpip_request(self, chanid, origin, destination):
        # paramiko routes direct-tcpip here instead of check_channel_request
        return self.check_channel_request("direct-tcpip", chanid)

    def check_channel_shell_request(self, channel):
        session = self.session(channel.get_id())
        return session is not None and session.request_shell()

    def check_channel_exec_request(self, channel, command):
        session = self.session(channel.get_id())
        return session is not None and session.request_shell(command)

    def check_channel_pty_request(self, channel, term, width, height, pixelwidth, pixelheight, modes):
        session = self.session(channel.get_id())
        if session is None:
            return False
        session.resize(width, height)
        return True

    def check_channel_window_change_request(self, channel, width, height, pixelwidth, pixelheight):
        session = self.session(channel.get_id())
        if session is None:
            return False
        session.resize(width, height)
        return True


# ---------------------------------------------------------------------------
# SSHServer
# ---------------------------------------------------------------------------


def load_host_key(path: Optional[str]) -> paramiko.PKey:
    """Load the server's private host key."""
    if not path:
        raise ServerError("No host key configured (set host_key_path or SSHRELAY_HOST_KEY)")
    try:
        return paramiko.PKey.from_path(path)
    except (OSError, paramiko.SSHException) as e:
        raise ServerError(f"Cannot load host key {path}: {e}") from e


class _ThreadedSSHServer(socketserver.ThreadingMixIn, socketserver.TCPServer):
    daemon_threads = True
    allow_reuse_address = True

    def __init__(self, address, handler_cls, owner: "SSHServer"):
        self.owner = owner
        self._active = 0
        self._active_lock = threading.Lock()
        super().__init__(address, handler_cls)

    def get_request(self):
        try:
            return super().get_request()
        except OSError as e:
            if not self.owner.stopping:
                logger.error("Failed to accept incoming connection (%s)", e)
            raise

    def verify_request(self, request, client_address):
        with self._active_lock:
            if self._active >= self.owner.config.max_connections:
                logger.warning(
                    "Connection limit (%d) reached, refusing %s",
                    self.owner.config.max_connections,
                    format_address(*client_address[:2]),
                )
                return False
            self._active += 1
        return True

    def process_request_thread(self, request, client_address):
        try:
            super().process_request_thread(request, client_address)
        finally:
            with self._active_lock:
                self._active -= 1

    def handle_error(self, request, client_address):
        logger.error("Unhandled error serving %s", client_address, exc_info=True)


class SSHServer:
    """PTY shell server.

    Binds at construction; a bind failure raises ServerError. Use as a
    context manager or call stop() explicitly.

    Args:
        config: Listen address, shell, auth policy and limits
        host_key: Host key object; loaded from config.host_key_path when None
        spawn: PTY adapter factory, replaceable for tests
    """

    def __init__(
        self,
        config: ServerConfig,
        host_key: Optional[paramiko.PKey] = None,
        *,
        spawn: SpawnFn = PtyProcess,
    ):
        self.config = config
        self._host_key = host_key if host_key is not None else load_host_key(config.host_key_path)
        self._spawn = spawn
        self._stop_event = threading.Event()
        self._transports: set[paramiko.Transport] = set()
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

        server = self

        class ConnectionHandler(socketserver.BaseRequestHandler):
            def handle(self):
                server._serve_connection(self.request, self.client_address)

        try:
            self._server = _ThreadedSSHServer((config.interface, config.port), ConnectionHandler, self)
        except OSError as e:
            raise ServerError(f"Cannot listen on {config.address}: {e}") from e
        logger.info("SSH server listening on %s (auth=%s)", format_address(*self.address), config.auth.name)

    @property
    def address(self) -> tuple[str, int]:
        host, port = self._server.server_address[:2]
        return host, port

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    def serve_forever(self) -> None:
        """Accept connections until stop() is called."""
        self._server.serve_forever(poll_interval=0.5)

    def start(self) -> "SSHServer":
        """Run the accept loop in a background thread."""
        if self._thread is None:
            self._thread = threading.Thread(
                target=self.serve_forever, name=f"sshrelay-server-{self.address[1]}", daemon=True
            )
            self._thread.start()
        return self

    def stop(self) -> None:
        if self._stop_event.is_set():
            return
        self._stop_event.set()
        if self._thread is not None:
            self._server.shutdown()
            self._thread.join(timeout=3.0)
        self._server.server_close()
        with self._lock:
            transports = list(self._transports)
        for t in transports:
            t.close()
        logger.info("SSH server on port %d stopped", self.address[1])

    def _new_session(self, chanid: int, peer: str) -> ShellSession:
        return ShellSession(
            chanid,
            self.config.shell,
            peer=peer,
            spawn=self._spawn,
            cancel=self._stop_event,
            shutdown_grace=self.config.shutdown_grace,
        )

    def _serve_connection(self, sock: socket.socket, client_address) -> None:
        peer = format_address(*client_address[:2])
        transport = paramiko.Transport(sock)
        transport.handshake_timeout = self.config.handshake_timeout
        transport.auth_timeout = self.config.handshake_timeout
        transport.add_server_key(self._host_key)
        router = ChannelRouter(self.config.auth, peer, lambda chanid: self._new_session(chanid, peer))

        try:
            transport.start_server(server=router)
        except (paramiko.SSHException, EOFError, OSError) as e:
            logger.error("Failed to handshake with %s (%s)", peer, e)
            transport.close()
            return

        with self._lock:
            self._transports.add(transport)
        logger.info("New SSH connection from %s (%s)", peer, transport.remote_version)
        try:
            while transport.is_active() and not self._stop_event.is_set():
                channel = transport.accept(timeout=1.0)
                if channel is None:
                    continue
                session = router.session(channel.get_id())
                if session is None:
                    channel.close()
                    continue
                session.attach(channel)
        finally:
            for session in router.sessions():
                session.close()
            transport.close()
            with self._lock:
                self._transports.discard(transport)
            logger.info("SSH connection from %s closed", peer)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.stop()

    def __repr__(self):
        state = "stopped" if self.stopping else "running"
        return f"SSHServer({format_address(*self.address)}, {state})"


__all__ = [
    "SESSION_CHANNEL",
    "unknown_channel_reason",
    "ShellSession",
    "ChannelRouter",
    "load_host_key",
    "SSHServer",
]
