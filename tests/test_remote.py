"""Tests for sshrelay.remote - SFTP file operations and remote curl."""

import errno
from unittest.mock import MagicMock

import paramiko
import pytest

from sshrelay.errors import RemoteFileError, RemoteFileExistsError, RemoteFileNotFoundError, SSHCommandError
from sshrelay.remote import RemoteFS, curl_command, curl_from_remote


def _sftp():
    return MagicMock(spec=paramiko.SFTPClient)


def _missing(path="/nope"):
    return IOError(errno.ENOENT, "No such file", path)


def _ssh(stdout=b"", stderr=b"", exit_code=0):
    ssh = MagicMock()
    ssh.exec_bytes.return_value = (stdout, stderr, exit_code)
    return ssh


# ---------------------------------------------------------------------------
# RemoteFS
# ---------------------------------------------------------------------------


class TestExists:
    def test_present(self):
        sftp = _sftp()
        assert RemoteFS(sftp).exists("/tmp/x") is True
        sftp.lstat.assert_called_once_with("/tmp/x")

    def test_absent(self):
        sftp = _sftp()
        sftp.lstat.side_effect = _missing("/tmp/x")
        assert RemoteFS(sftp).exists("/tmp/x") is False

    def test_permission_denied_raises(self):
        sftp = _sftp()
        sftp.lstat.side_effect = IOError(errno.EACCES, "Permission denied")
        with pytest.raises(RemoteFileError, match="Permission denied: /root/x") as exc_info:
            RemoteFS(sftp).exists("/root/x")
        assert not isinstance(exc_info.value, RemoteFileNotFoundError)
        assert exc_info.value.path == "/root/x"


class TestFileOps:
    def test_mkdir(self):
        sftp = _sftp()
        sftp.lstat.side_effect = _missing("/tmp/work")
        RemoteFS(sftp).mkdir("/tmp/work", 0o700)
        sftp.mkdir.assert_called_once_with("/tmp/work", 0o700)

    def test_mkdir_exists(self):
        sftp = _sftp()
        with pytest.raises(RemoteFileExistsError, match="already exists: /tmp/work") as exc_info:
            RemoteFS(sftp).mkdir("/tmp/work")
        assert exc_info.value.path == "/tmp/work"
        sftp.mkdir.assert_not_called()

    def test_mkdir_eexist_from_server(self):
        sftp = _sftp()
        sftp.lstat.side_effect = _missing("/tmp/work")
        sftp.mkdir.side_effect = IOError(errno.EEXIST, "File exists")
        with pytest.raises(RemoteFileExistsError):
            RemoteFS(sftp).mkdir("/tmp/work")

    @pytest.mark.parametrize("op", ["rmdir", "remove"])
    def test_removal_delegates(self, op):
        sftp = _sftp()
        getattr(RemoteFS(sftp), op)("/tmp/old")
        getattr(sftp, op).assert_called_once_with("/tmp/old")

    @pytest.mark.parametrize("op", ["rmdir", "remove", "stat"])
    def test_not_found(self, op):
        sftp = _sftp()
        getattr(sftp, op).side_effect = _missing()
        with pytest.raises(RemoteFileNotFoundError, match="No such file or directory: /nope"):
            getattr(RemoteFS(sftp), op)("/nope")

    def test_generic_failure_is_remote_file_error(self):
        sftp = _sftp()
        # SFTP v3 FX_FAILURE carries no errno
        sftp.rmdir.side_effect = IOError("Failure")
        with pytest.raises(RemoteFileError, match="Failure: /tmp/d") as exc_info:
            RemoteFS(sftp).rmdir("/tmp/d")
        assert type(exc_info.value) is RemoteFileError

    def test_stat_returns_attributes(self):
        sftp = _sftp()
        attrs = paramiko.SFTPAttributes()
        attrs.st_size = 42
        sftp.stat.return_value = attrs
        assert RemoteFS(sftp).stat("/etc/hosts").st_size == 42

    def test_read_returns_bytes_and_basename(self):
        sftp = _sftp()
        sftp.open.return_value.__enter__.return_value.read.return_value = b"\x00binary\xff"
        data, name = RemoteFS(sftp).read("/var/log/app/run.log")
        assert data == b"\x00binary\xff"
        assert name == "run.log"
        sftp.open.assert_called_once_with("/var/log/app/run.log", "rb")

    def test_read_missing(self):
        sftp = _sftp()
        sftp.open.side_effect = _missing()
        with pytest.raises(RemoteFileNotFoundError):
            RemoteFS(sftp).read("/nope")

    def test_context_manager(self):
        sftp = _sftp()
        with RemoteFS(sftp) as fs:
            fs.exists("/tmp")
        sftp.close.assert_called_once()


# ---------------------------------------------------------------------------
# curl
# ---------------------------------------------------------------------------


class TestCurl:
    def test_command_quotes_args(self):
        assert curl_command("http://intranet/a b", "-s", "-H", "X-Token: 1") == (
            "curl -s -H 'X-Token: 1' 'http://intranet/a b'"
        )

    def test_returns_body(self):
        ssh = _ssh(stdout=b"<html/>")
        assert curl_from_remote(ssh, "http://intranet/", "-s", timeout=10.0) == b"<html/>"
        ssh.exec_bytes.assert_called_once_with("curl -s http://intranet/", timeout=10.0)

    def test_failure(self):
        ssh = _ssh(stderr=b"curl: (6) Could not resolve host: intranet", exit_code=6)
        with pytest.raises(SSHCommandError, match="Could not resolve host") as exc_info:
            curl_from_remote(ssh, "http://intranet/")
        assert exc_info.value.exit_code == 6
