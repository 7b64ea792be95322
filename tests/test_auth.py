"""Tests for sshrelay.auth - server authentication policies."""

from unittest.mock import MagicMock

import paramiko
import pytest

from sshrelay.auth import (
    POLICY_NAMES,
    AcceptAll,
    AuthorizedKeys,
    DenyAll,
    FixedPassword,
    parse_authorized_keys,
    policy_from_name,
)


def _key(name="ssh-ed25519", blob="AAAAC3NzaC1lZDI1NTE5AAAAIGV4YW1wbGU="):
    key = MagicMock(spec=paramiko.PKey)
    key.get_name.return_value = name
    key.get_base64.return_value = blob
    return key


class TestSimplePolicies:
    def test_deny_all(self):
        policy = DenyAll()
        assert policy.name == "deny-all"
        assert policy.check_password("root", "root") is False
        assert policy.check_publickey("root", _key()) is False

    def test_accept_all(self):
        policy = AcceptAll()
        assert set(policy.methods) == {"password", "publickey"}
        assert policy.check_password("anyone", "x") is True
        assert policy.check_publickey("anyone", _key()) is True

    def test_fixed_password(self):
        policy = FixedPassword("hunter2")
        assert policy.check_password("alice", "hunter2") is True
        assert policy.check_password("alice", "hunter3") is False
        assert policy.check_publickey("alice", _key()) is False

    def test_fixed_password_hidden_from_repr(self):
        assert "hunter2" not in repr(FixedPassword("hunter2"))

    def test_fixed_password_empty_rejected(self):
        with pytest.raises(ValueError, match="non-empty"):
            FixedPassword("")


class TestParseAuthorizedKeys:
    def test_plain_lines_and_comments(self):
        text = "# admins\n\nssh-rsa AAAAB3Nza alice@laptop\nssh-ed25519 AAAAC3Nza bob\n"
        assert parse_authorized_keys(text) == [("ssh-rsa", "AAAAB3Nza"), ("ssh-ed25519", "AAAAC3Nza")]

    def test_options_prefix(self):
        text = 'no-pty,from="10.0.0.0/8" ecdsa-sha2-nistp256 AAAAE2Vj ops\n'
        assert parse_authorized_keys(text) == [("ecdsa-sha2-nistp256", "AAAAE2Vj")]

    def test_quoted_option_resembling_key_type(self):
        text = 'command="ssh-agent x",no-pty ssh-ed25519 AAAAC3Nza deploy\n'
        assert parse_authorized_keys(text) == [("ssh-ed25519", "AAAAC3Nza")]

    def test_quoted_option_with_escaped_quote(self):
        text = 'command="echo \\"ssh-rsa fake\\"" ssh-rsa AAAAB3Nza\n'
        assert parse_authorized_keys(text) == [("ssh-rsa", "AAAAB3Nza")]

    def test_garbage_line_skipped(self, caplog):
        assert parse_authorized_keys("not a key line\n") == []
        assert "line 1: no key found" in caplog.text


class TestAuthorizedKeys:
    def test_shared_file(self, tmp_path):
        path = tmp_path / "authorized_keys"
        path.write_text("ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIGV4YW1wbGU= alice\n")
        policy = AuthorizedKeys(path=str(path))
        assert policy.check_publickey("alice", _key()) is True
        assert policy.check_publickey("alice", _key(blob="AAAAother")) is False
        assert policy.check_publickey("alice", _key(name="ssh-rsa")) is False

    def test_missing_file_denies(self, tmp_path, caplog):
        policy = AuthorizedKeys(path=str(tmp_path / "absent"))
        assert policy.check_publickey("alice", _key()) is False
        assert "Cannot read" in caplog.text

    def test_per_user_default_path(self, monkeypatch):
        monkeypatch.setattr("sshrelay.auth.os.path.expanduser", lambda p: "/home/carol")
        assert str(AuthorizedKeys().keys_path("carol")) == "/home/carol/.ssh/authorized_keys"

    @pytest.mark.parametrize("username", ["", "../etc", "a/b", "~root"])
    def test_unsafe_usernames(self, username):
        assert AuthorizedKeys().keys_path(username) is None

    def test_unknown_user(self, monkeypatch):
        monkeypatch.setattr("sshrelay.auth.os.path.expanduser", lambda p: p)
        assert AuthorizedKeys().keys_path("nosuchuser") is None
        assert AuthorizedKeys().check_publickey("nosuchuser", _key()) is False

    def test_password_not_offered(self):
        policy = AuthorizedKeys()
        assert policy.methods == ("publickey",)
        assert policy.check_password("alice", "pw") is False


class TestPolicyFromName:
    @pytest.mark.parametrize("name", POLICY_NAMES)
    def test_all_names_resolve(self, name):
        policy = policy_from_name(name, password="pw")
        assert policy.name == name

    def test_password_required(self):
        with pytest.raises(ValueError, match="requires a password"):
            policy_from_name("password")

    def test_authorized_keys_path_passed(self):
        policy = policy_from_name("authorized-keys", authorized_keys="/etc/sshrelay/keys")
        assert policy == AuthorizedKeys(path="/etc/sshrelay/keys")

    def test_unknown(self):
        with pytest.raises(ValueError, match="Unknown auth policy"):
            policy_from_name("kerberos")
