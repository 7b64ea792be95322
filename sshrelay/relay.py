"""
Byte relays between stream endpoints.

A Relay owns a set of one-way copy directions, each pumped by its own
thread, and a single TeardownGuard. Endpoints are anything with a
``recv(n)`` style reader and a ``sendall(data)`` style writer: sockets,
paramiko Channels and PtyProcess all qualify.

Teardown rules:
    - an error in an essential direction fires teardown
    - a clean EOF in a direction without ``on_eof`` fires teardown
    - a clean EOF in a direction with ``on_eof`` half-closes the peer;
      teardown fires once every essential direction has finished
    - non-essential directions (stderr capture) never fire teardown
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional

logger = logging.getLogger(__name__)

CHUNK_SIZE = 16384

Reader = Callable[[int], bytes]
Writer = Callable[[bytes], None]


class TeardownGuard:
    """Run a teardown action at most once, no matter how many paths ask.

    ``fire()`` returns True only for the caller that actually ran the
    action. ``done`` is set once the action has returned.
    """

    def __init__(self, action: Callable[[], None]):
        self._action = action
        self._lock = threading.Lock()
        self._fired = False
        self.done = threading.Event()

    @property
    def fired(self) -> bool:
        return self._fired

    def fire(self) -> bool:
        with self._lock:
            if self._fired:
                return False
            self._fired = True
        try:
            self._action()
        finally:
            self.done.set()
        return True

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self.done.wait(timeout)


def pump(
    read: Reader,
    write: Writer,
    cancel: Optional[threading.Event] = None,
    chunk_size: int = CHUNK_SIZE,
) -> int:
    """Copy from ``read`` to ``write`` until EOF or cancellation.

    Returns the number of bytes copied. Read and write errors propagate.
    """
    total = 0
    while cancel is None or not cancel.is_set():
        data = read(chunk_size)
        if not data:
            break
        write(data)
        total += len(data)
    return total


@dataclass
class Direction:
    """One-way copy inside a Relay.

    Args:
        name: Label used in logs and thread names
        read: Source reader, returns b"" at EOF
        write: Destination writer
        on_eof: Half-close the destination after a clean EOF. When None,
            EOF tears the whole relay down.
        on_done: Called after the pump stops, however it stopped
        essential: Whether this direction takes part in teardown decisions
    """

    name: str
    read: Reader
    write: Writer
    on_eof: Optional[Callable[[], None]] = None
    on_done: Optional[Callable[[], None]] = None
    essential: bool = True


class Relay:
    """Concurrent copy directions sharing one single-fire teardown.

    Args:
        name: Label for logs (usually the peer address or channel id)
        teardown: Closes every endpoint of the relay; runs exactly once
        cancel: Stop signal shared with the owner (tunnel or server). When
            set, pumps stop at the next chunk boundary; the owner is
            expected to call close() to unblock pending reads.
    """

    def __init__(
        self,
        name: str,
        teardown: Callable[[], None],
        *,
        cancel: Optional[threading.Event] = None,
        chunk_size: int = CHUNK_SIZE,
    ):
        self.name = name
        self._teardown = teardown
        self._guard = TeardownGuard(self._run_teardown)
        self._cancel = cancel if cancel is not None else threading.Event()
        self._chunk_size = chunk_size
        self._directions: list[Direction] = []
        self._threads: list[threading.Thread] = []
        self._lock = threading.Lock()
        self._pending = 0
        self._started = False
        self.bytes_copied: dict[str, int] = {}

    @property
    def closed(self) -> bool:
        return self._guard.fired

    def add(self, direction: Direction) -> None:
        if self._started:
            raise RuntimeError("Relay already started")
        self._directions.append(direction)

    def start(self) -> None:
        if self._started:
            raise RuntimeError("Relay already started")
        self._started = True
        self._pending = sum(1 for d in self._directions if d.essential)
        for d in self._directions:
            t = threading.Thread(target=self._run, args=(d,), name=f"relay-{self.name}-{d.name}", daemon=True)
            self._threads.append(t)
            t.start()

    def close(self) -> bool:
        """Fire teardown. Returns True if this call ran it."""
        return self._guard.fire()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until teardown has completed."""
        return self._guard.wait(timeout)

    def join(self, timeout: Optional[float] = None) -> None:
        """Wait for every pump thread to exit."""
        for t in self._threads:
            t.join(timeout)

    def _run_teardown(self) -> None:
        try:
            self._teardown()
        except Exception:
            logger.error("%s: teardown failed", self.name, exc_info=True)
        logger.debug("%s: relay closed (%s)", self.name, self.bytes_copied)

    def _run(self, d: Direction) -> None:
        copied = [0]

        def counting_write(data: bytes) -> None:
            d.write(data)
            copied[0] += len(data)

        try:
            pump(d.read, counting_write, self._cancel, self._chunk_size)
        except Exception as e:
            self.bytes_copied[d.name] = copied[0]
            if self.closed or self._cancel.is_set():
                logger.debug("%s: %s stopped after teardown: %s", self.name, d.name, e)
            else:
                logger.warning("%s: %s failed after %d bytes: %s", self.name, d.name, copied[0], e)
            if d.essential:
                self.close()
            return
        finally:
            if d.on_done is not None:
                d.on_done()

        self.bytes_copied[d.name] = copied[0]
        logger.debug("%s: %s reached EOF after %d bytes", self.name, d.name, copied[0])
        if not d.essential:
            return
        if self._cancel.is_set() or d.on_eof is None:
            self.close()
            return

        if not self.closed:
            try:
                d.on_eof()
            except Exception as e:
                logger.debug("%s: half-close after %s failed: %s", self.name, d.name, e)
                self.close()
                return
        with self._lock:
            self._pending -= 1
            last = self._pending == 0
        if last:
            self.close()


__all__ = ["CHUNK_SIZE", "TeardownGuard", "pump", "Direction", "Relay"]
