"""Tests for sshrelay.terminal - Terminal geometry and the real PTY adapter."""

import os
import shutil
import sys
import threading
import time

import pytest

from sshrelay.terminal import PtyProcess, Terminal, get_winsize, set_winsize

pytestmark = pytest.mark.posix_pty

needs_pty = pytest.mark.skipif(
    not sys.platform.startswith("linux") or shutil.which("sh") is None,
    reason="needs a Linux pseudo-terminal and /bin/sh",
)


def _read_all(proc: PtyProcess) -> bytes:
    chunks = []
    while True:
        data = proc.recv(1024)
        if not data:
            return b"".join(chunks)
        chunks.append(data)


class TestTerminal:
    def test_str(self):
        assert str(Terminal(120, 40)) == "120x40"

    def test_negative_rejected(self):
        with pytest.raises(ValueError, match="non-negative"):
            Terminal(-1, 24)


@needs_pty
class TestWinsize:
    def test_set_and_get(self):
        master, slave = os.openpty()
        try:
            set_winsize(slave, 120, 40)
            assert get_winsize(master) == Terminal(120, 40)
        finally:
            os.close(master)
            os.close(slave)

    def test_values_truncated_to_16_bits(self):
        master, slave = os.openpty()
        try:
            set_winsize(slave, 0x10000 + 80, 24)
            assert get_winsize(master) == Terminal(80, 24)
        finally:
            os.close(master)
            os.close(slave)


@needs_pty
class TestPtyProcess:
    def test_initial_geometry_seen_by_child(self):
        proc = PtyProcess(["sh", "-c", "stty size"], terminal=Terminal(120, 40))
        try:
            out = _read_all(proc)
            assert proc.wait(5.0) == 0
        finally:
            proc.close()
        assert b"40 120" in out

    def test_resize(self):
        proc = PtyProcess(["sh", "-c", "read line"], terminal=Terminal(80, 24))
        try:
            proc.resize(132, 43)
            assert proc.terminal == Terminal(132, 43)
            proc.sendall(b"done\n")
            assert proc.wait(5.0) == 0
        finally:
            proc.close()

    def test_input_reaches_child(self):
        proc = PtyProcess(["sh", "-c", "read line; echo got:$line"])
        try:
            proc.sendall(b"hello\n")
            out = _read_all(proc)
            proc.wait(5.0)
        finally:
            proc.close()
        assert b"got:hello" in out

    def test_hangup_ends_shell(self):
        proc = PtyProcess(["sh", "-c", "sleep 30"])
        try:
            proc.hangup()
            status = proc.wait(5.0)
        finally:
            proc.close()
        assert status != 0

    def test_close_is_idempotent_and_recv_after_close_is_eof(self):
        proc = PtyProcess(["sh", "-c", "exit 0"])
        proc.wait(5.0)
        proc.close()
        proc.close()
        assert proc.closed
        assert proc.recv(10) == b""
        assert "closed" in repr(proc)

    def test_close_wakes_pending_reader(self):
        proc = PtyProcess(["sh", "-c", "sleep 30"])
        result = []
        reader = threading.Thread(target=lambda: result.append(proc.recv(1024)), daemon=True)
        reader.start()
        try:
            time.sleep(0.3)
            proc.close()
            reader.join(5.0)
            assert not reader.is_alive()
            assert result == [b""]
        finally:
            proc.kill()
            proc.wait(5.0)

    def test_closed_fd_number_is_never_read_or_written(self):
        proc = PtyProcess(["sh", "-c", "sleep 30"])
        try:
            proc.close()
            # the freed descriptor number is typically handed out again
            r, w = os.pipe()
            try:
                os.write(w, b"not the shell")
                assert proc.recv(100) == b""
                with pytest.raises(OSError):
                    proc.sendall(b"x")
                with pytest.raises(OSError):
                    proc.resize(80, 24)
                assert os.read(r, 100) == b"not the shell"
            finally:
                os.close(r)
                os.close(w)
        finally:
            proc.kill()
            proc.wait(5.0)
