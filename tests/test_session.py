"""Tests for sshrelay.session - session openers and the exec drain loop."""

import socket
import threading
from unittest.mock import MagicMock

import paramiko
import pytest

from sshrelay.errors import SessionOpenError, SSHTimeoutError
from sshrelay.session import (
    OPENERS,
    command_session,
    direct_tcpip_session,
    drain_channel,
    netcat_command,
    netcat_session,
)
from tests.fakes import make_exec_channel, make_mock_transport


class TestCommandSession:
    def test_starts_command_and_leaves_stdin_open(self):
        transport = make_mock_transport()
        chan = transport.open_session.return_value

        assert command_session(transport, "cat") is chan
        chan.exec_command.assert_called_once_with("cat")
        chan.shutdown_write.assert_not_called()
        chan.close.assert_not_called()

    def test_inactive_transport(self):
        transport = make_mock_transport(active=False)
        with pytest.raises(SessionOpenError, match="no longer active"):
            command_session(transport, "cat")
        transport.open_session.assert_not_called()

    def test_open_refused(self):
        transport = make_mock_transport()
        transport.open_session.side_effect = paramiko.ChannelException(1, "Administratively prohibited")
        with pytest.raises(SessionOpenError, match="Cannot open session"):
            command_session(transport, "cat")

    def test_exec_failure_closes_half_open_channel(self):
        transport = make_mock_transport()
        chan = transport.open_session.return_value
        chan.exec_command.side_effect = paramiko.SSHException("Channel closed.")

        with pytest.raises(SessionOpenError, match="Cannot start 'cat'"):
            command_session(transport, "cat")
        chan.close.assert_called_once()


class TestNetcat:
    def test_command(self):
        assert netcat_command("db.internal", 5432) == "nc db.internal 5432"

    def test_host_is_quoted(self):
        assert netcat_command("db; rm -rf /", 1) == "nc 'db; rm -rf /' 1"

    def test_session_runs_nc(self):
        transport = make_mock_transport()
        chan = netcat_session(transport, "db.internal", 5432)
        chan.exec_command.assert_called_once_with("nc db.internal 5432")

    def test_failure_names_target(self):
        transport = make_mock_transport()
        transport.open_session.side_effect = OSError("Socket is closed")
        with pytest.raises(SessionOpenError, match=r"target: db.internal:5432") as exc_info:
            netcat_session(transport, "db.internal", 5432)
        assert exc_info.value.host == "db.internal"
        assert exc_info.value.port == 5432


class TestDirectTcpip:
    def test_opens_channel(self):
        transport = make_mock_transport()
        chan = direct_tcpip_session(transport, "db.internal", 5432)
        assert chan is transport.open_channel.return_value
        transport.open_channel.assert_called_once_with("direct-tcpip", ("db.internal", 5432), ("127.0.0.1", 0))

    def test_refused(self):
        transport = make_mock_transport()
        transport.open_channel.side_effect = paramiko.ChannelException(2, "Connect failed")
        with pytest.raises(SessionOpenError, match="Cannot open direct-tcpip channel"):
            direct_tcpip_session(transport, "db.internal", 5432)

    def test_inactive_transport(self):
        with pytest.raises(SessionOpenError, match="no longer active"):
            direct_tcpip_session(make_mock_transport(active=False), "db.internal", 5432)

    def test_registry(self):
        assert OPENERS == {"netcat": netcat_session, "direct-tcpip": direct_tcpip_session}


class TestDrainChannel:
    def test_collects_output_and_status(self):
        chan = make_exec_channel(stdout=b"out", stderr=b"err", exit_code=3)
        assert drain_channel(chan, "cmd") == (b"out", b"err", 3)

    def test_timeout(self):
        chan = MagicMock()
        chan.status_event = threading.Event()
        chan.recv_ready.return_value = False
        chan.recv_stderr_ready.return_value = False
        chan.exit_status_ready.return_value = False

        with pytest.raises(SSHTimeoutError, match="timed out after 0.2s: 'sleep 100'"):
            drain_channel(chan, "sleep 100", timeout=0.2)

    def test_socket_timeout_converted(self):
        chan = MagicMock()
        chan.status_event = threading.Event()
        chan.recv_ready.side_effect = socket.timeout("timed out")
        with pytest.raises(SSHTimeoutError, match="timed out"):
            drain_channel(chan, "cmd")
