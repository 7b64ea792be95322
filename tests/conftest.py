"""
Shared pytest fixtures for sshrelay unit tests.

Fake endpoints live in tests/fakes.py; this module wires them into fixtures.
"""

import logging
import socket

import pytest

from tests.fakes import make_mock_transport


@pytest.fixture
def mock_transport():
    """An active mock paramiko.Transport."""
    return make_mock_transport()


@pytest.fixture
def connect():
    """Open client sockets to a local port; all are closed at teardown."""
    socks = []

    def _connect(port, timeout=5.0):
        s = socket.create_connection(("127.0.0.1", port), timeout=timeout)
        socks.append(s)
        return s

    yield _connect
    for s in socks:
        s.close()


@pytest.fixture(autouse=True)
def _sshrelay_debug_logs(caplog):
    caplog.set_level(logging.DEBUG, logger="sshrelay")
