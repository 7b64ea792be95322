"""
Bit-exact payload formats.

pty-req (RFC 4254 6.2), big-endian:
    uint32 term_len | term | uint32 width | uint32 height | uint32 px_w | uint32 px_h | string modes

window-change (RFC 4254 6.7), big-endian:
    uint32 width | uint32 height | uint32 px_w | uint32 px_h

Copy header (scp sink protocol):
    b"C<mode %04o> <length> <basename>\\n", followed by exactly <length>
    bytes and a single 0x00 terminator.
"""

import posixpath
import struct
from dataclasses import dataclass

from sshrelay.errors import ProtocolError

_DIMS = struct.Struct(">II")
_UINT32 = struct.Struct(">I")

COPY_TERMINATOR = b"\x00"


def parse_dims(payload: bytes, offset: int = 0) -> tuple[int, int]:
    """Decode a (width, height) pair of big-endian uint32 at ``offset``."""
    if len(payload) < offset + _DIMS.size:
        raise ProtocolError(f"Terminal size needs {_DIMS.size} bytes at offset {offset}, payload has {len(payload)}")
    return _DIMS.unpack_from(payload, offset)


def parse_pty_request(payload: bytes) -> tuple[str, int, int]:
    """Decode a pty-req payload into (term, width, height).

    The term name is variable length, so the dimensions start at
    ``4 + term_len``.
    """
    if len(payload) < _UINT32.size:
        raise ProtocolError("pty-req payload too short for term length")
    (term_len,) = _UINT32.unpack_from(payload, 0)
    start = _UINT32.size + term_len
    if len(payload) < start:
        raise ProtocolError(f"pty-req term length {term_len} exceeds payload ({len(payload)} bytes)")
    term = payload[_UINT32.size : start].decode("ascii", errors="replace")
    width, height = parse_dims(payload, start)
    return term, width, height


def parse_window_change(payload: bytes) -> tuple[int, int]:
    """Decode a window-change payload into (width, height)."""
    return parse_dims(payload, 0)


def encode_window_change(width: int, height: int, px_width: int = 0, px_height: int = 0) -> bytes:
    return struct.pack(">IIII", width, height, px_width, px_height)


def encode_pty_request(
    term: str, width: int, height: int, px_width: int = 0, px_height: int = 0, modes: bytes = b""
) -> bytes:
    term_b = term.encode("ascii")
    return (
        _UINT32.pack(len(term_b))
        + term_b
        + struct.pack(">IIII", width, height, px_width, px_height)
        + _UINT32.pack(len(modes))
        + modes
    )


@dataclass(frozen=True)
class CopyHeader:
    """Metadata line that precedes a file in the scp sink protocol.

    Attributes:
        mode: Permission bits (only the low 12 bits are sent)
        length: Payload size in bytes
        name: Destination file name (basename only)
    """

    mode: int
    length: int
    name: str

    def __post_init__(self):
        if self.length < 0:
            raise ValueError(f"length must be non-negative, got {self.length}")
        if not self.name or "/" in self.name or "\n" in self.name:
            raise ValueError(f"name must be a plain file name, got {self.name!r}")

    @classmethod
    def for_path(cls, mode: int, length: int, path: str) -> "CopyHeader":
        return cls(mode=mode, length=length, name=posixpath.basename(path.rstrip("/")))

    def encode(self) -> bytes:
        return f"C{self.mode & 0o7777:04o} {self.length} {self.name}\n".encode()

    @classmethod
    def parse(cls, line: bytes) -> "CopyHeader":
        """Decode a header line (with or without the trailing newline)."""
        text = line.decode(errors="replace").rstrip("\n")
        if not text.startswith("C"):
            raise ProtocolError(f"Copy header must start with 'C', got {text[:16]!r}")
        parts = text[1:].split(" ", 2)
        if len(parts) != 3:
            raise ProtocolError(f"Malformed copy header: {text!r}")
        mode_s, length_s, name = parts
        try:
            mode = int(mode_s, 8)
            length = int(length_s)
        except ValueError:
            raise ProtocolError(f"Malformed copy header: {text!r}")
        return cls(mode=mode, length=length, name=name)


__all__ = [
    "COPY_TERMINATOR",
    "CopyHeader",
    "parse_dims",
    "parse_pty_request",
    "parse_window_change",
    "encode_pty_request",
    "encode_window_change",
]
