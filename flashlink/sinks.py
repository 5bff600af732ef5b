"""Display sinks for monitor output and console log lines.

The UI layer supplies its own implementations; the ones here cover headless
use and tests.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Iterator
from typing import Annotated, Protocol

import msgspec

from .const import DEFAULT_MONITOR_BUFFER_BYTES, DEFAULT_MONITOR_BUFFER_ITEMS


class MonitorSink(Protocol):
    """Receives raw device output and inline annotations."""

    def write(self, data: bytes) -> None: ...

    def write_line(self, text: str) -> None: ...

    def clear(self) -> None: ...


class ConsoleSink(Protocol):
    """Receives human-readable status lines (connection, flashing progress)."""

    def write(self, text: str) -> None: ...

    def write_line(self, text: str) -> None: ...

    def clear(self) -> None: ...


class LoggingConsole:
    """Console sink that forwards status lines to the ``flashlink.console`` logger."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._logger = logger or logging.getLogger("flashlink.console")
        self._pending = ""

    def write(self, text: str) -> None:
        # Partial writes (progress bars) are flushed on the next full line.
        self._pending = text

    def write_line(self, text: str) -> None:
        if self._pending:
            self._logger.info("%s", self._pending.strip())
            self._pending = ""
        self._logger.info("%s", text.strip("\r\n"))

    def clear(self) -> None:
        self._pending = ""


def _make_deque() -> deque[bytes]:
    """Factory for msgspec default_factory to avoid lambdas."""
    return deque()


class MonitorBuffer(msgspec.Struct):
    """Scrollback of monitor output with item-count and byte-length limits.

    Oldest chunks are evicted first; a single chunk larger than the byte
    budget keeps only its tail.
    """

    max_items: Annotated[int | None, msgspec.Meta(ge=1)] = DEFAULT_MONITOR_BUFFER_ITEMS
    max_bytes: Annotated[int | None, msgspec.Meta(ge=1)] = DEFAULT_MONITOR_BUFFER_BYTES
    dropped_bytes: int = 0
    _queue: deque[bytes] = msgspec.field(default_factory=_make_deque)
    _bytes: int = 0

    def __len__(self) -> int:
        return len(self._queue)

    def __iter__(self) -> Iterator[bytes]:
        return iter(self._queue)

    @property
    def bytes_used(self) -> int:
        return self._bytes

    def getvalue(self) -> bytes:
        return b"".join(self._queue)

    def text(self, encoding: str = "utf-8") -> str:
        return self.getvalue().decode(encoding, errors="replace")

    def write(self, data: bytes) -> None:
        chunk = bytes(data)
        if not chunk:
            return
        if self.max_bytes and len(chunk) > self.max_bytes:
            self.dropped_bytes += len(chunk) - self.max_bytes
            chunk = chunk[-self.max_bytes :]
        self._make_room_for(len(chunk))
        self._queue.append(chunk)
        self._bytes += len(chunk)

    def write_line(self, text: str) -> None:
        self.write(f"{text}\r\n".encode("utf-8"))

    def clear(self) -> None:
        self._queue.clear()
        self._bytes = 0

    def _make_room_for(self, incoming_bytes: int) -> None:
        while self._queue and not self._can_fit(incoming_bytes):
            removed = self._queue.popleft()
            self._bytes -= len(removed)
            self.dropped_bytes += len(removed)

    def _can_fit(self, incoming_bytes: int) -> bool:
        if self.max_items is not None and len(self._queue) + 1 > self.max_items:
            return False
        if self.max_bytes is not None and self._bytes + incoming_bytes > self.max_bytes:
            return False
        return True


__all__ = ["ConsoleSink", "LoggingConsole", "MonitorBuffer", "MonitorSink"]
