"""
Server authentication policies.

A policy is chosen explicitly when the server is configured. The set is
closed: DenyAll, AcceptAll, AuthorizedKeys and FixedPassword. Each policy
answers "may this user log in with this credential" and nothing else.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
import hmac
import logging
import os
from pathlib import Path
from typing import Optional

import paramiko

logger = logging.getLogger(__name__)

# Key type prefixes that start the key field of an authorized_keys line.
_KEY_TYPE_PREFIXES = ("ssh-", "ecdsa-", "sk-")


class AuthPolicy(ABC):
    """Base class for server authentication policies."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Policy identifier (e.g., 'deny-all', 'authorized-keys')."""
        ...

    @property
    @abstractmethod
    def methods(self) -> tuple[str, ...]:
        """SSH auth method names offered to clients."""
        ...

    def check_password(self, username: str, password: str) -> bool:
        return False

    def check_publickey(self, username: str, key: paramiko.PKey) -> bool:
        return False


@dataclass(frozen=True)
class DenyAll(AuthPolicy):
    """Reject every login. The default, so that a server is never open by accident."""

    @property
    def name(self) -> str:
        return "deny-all"

    @property
    def methods(self) -> tuple[str, ...]:
        return ("publickey",)


@dataclass(frozen=True)
class AcceptAll(AuthPolicy):
    """Accept any password or public key. Test environments only."""

    @property
    def name(self) -> str:
        return "accept-all"

    @property
    def methods(self) -> tuple[str, ...]:
        return ("publickey", "password")

    def check_password(self, username: str, password: str) -> bool:
        return True

    def check_publickey(self, username: str, key: paramiko.PKey) -> bool:
        return True


@dataclass(frozen=True)
class FixedPassword(AuthPolicy):
    """Accept a single shared password for any user.

    Note:
        The password is excluded from __repr__ to keep it out of logs.
    """

    password: str = field(repr=False)

    def __post_init__(self):
        if not self.password:
            raise ValueError("password must be non-empty")

    @property
    def name(self) -> str:
        return "password"

    @property
    def methods(self) -> tuple[str, ...]:
        return ("password",)

    def check_password(self, username: str, password: str) -> bool:
        return hmac.compare_digest(password.encode(), self.password.encode())


def _split_fields(line: str) -> list[str]:
    """Split on whitespace, keeping double-quoted option values (which may hold spaces) intact."""
    fields = []
    current = []
    quoted = False
    escaped = False
    for ch in line:
        if escaped:
            escaped = False
        elif ch == "\\" and quoted:
            escaped = True
        elif ch == '"':
            quoted = not quoted
        elif ch.isspace() and not quoted:
            if current:
                fields.append("".join(current))
                current = []
            continue
        current.append(ch)
    if current:
        fields.append("".join(current))
    return fields


def parse_authorized_keys(text: str) -> list[tuple[str, str]]:
    """Parse authorized_keys content into (key_type, base64_blob) pairs.

    Blank lines and comments are skipped. A leading options field
    (``no-pty,from="..." ssh-ed25519 AAAA...``) is tolerated, including
    quoted values that themselves look like a key type.
    """
    keys = []
    for lineno, raw in enumerate(text.splitlines(), 1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        tokens = _split_fields(line)
        for i, tok in enumerate(tokens):
            if tok.startswith(_KEY_TYPE_PREFIXES) and i + 1 < len(tokens):
                keys.append((tok, tokens[i + 1]))
                break
        else:
            logger.warning("authorized_keys line %d: no key found", lineno)
    return keys


@dataclass(frozen=True)
class AuthorizedKeys(AuthPolicy):
    """Accept public keys listed in an authorized_keys file.

    Args:
        path: authorized_keys file shared by all users. When None, the
            logging-in user's ``~/.ssh/authorized_keys`` is used.
    """

    path: Optional[str] = None

    @property
    def name(self) -> str:
        return "authorized-keys"

    @property
    def methods(self) -> tuple[str, ...]:
        return ("publickey",)

    def keys_path(self, username: str) -> Optional[Path]:
        if self.path is not None:
            return Path(self.path).expanduser()
        if not username or "/" in username or username.startswith((".", "~")):
            return None
        home = os.path.expanduser(f"~{username}")
        if home.startswith("~"):
            # unknown user
            return None
        return Path(home) / ".ssh" / "authorized_keys"

    def check_publickey(self, username: str, key: paramiko.PKey) -> bool:
        path = self.keys_path(username)
        if path is None:
            logger.warning("No authorized_keys location for user %r", username)
            return False
        try:
            text = path.read_text()
        except OSError as e:
            logger.warning("Cannot read %s for user %r: %s", path, username, e)
            return False
        wanted = (key.get_name(), key.get_base64())
        return wanted in parse_authorized_keys(text)


def policy_from_name(
    name: str, *, password: Optional[str] = None, authorized_keys: Optional[str] = None
) -> AuthPolicy:
    """Resolve a policy name (CLI flag or env var) to a policy object."""
    if name == "deny-all":
        return DenyAll()
    if name == "accept-all":
        return AcceptAll()
    if name == "authorized-keys":
        return AuthorizedKeys(path=authorized_keys)
    if name == "password":
        if not password:
            raise ValueError("password auth policy requires a password")
        return FixedPassword(password)
    raise ValueError(f"Unknown auth policy: {name!r}")


POLICY_NAMES = ("deny-all", "accept-all", "authorized-keys", "password")

__all__ = [
    "AuthPolicy",
    "DenyAll",
    "AcceptAll",
    "FixedPassword",
    "AuthorizedKeys",
    "parse_authorized_keys",
    "policy_from_name",
    "POLICY_NAMES",
]
