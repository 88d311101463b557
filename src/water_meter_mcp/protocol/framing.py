"""Newline framing for the device's text stream.

The radio link delivers raw byte chunks with no framing guarantee: a chunk
may hold half a line, several lines, or a line split mid-character. The
device terminates every message with ``\\n``::

    FlowRate:3.50/Lmin,Total:120.75L\\n
    [LOG]{"datetime":"2024-01-01T00:00:00","flowRate":2.1}\\n
    [CMD]Log reset\\n

Framing happens on bytes and each complete line is decoded afterwards, so a
multi-byte UTF-8 character split across two chunks is reassembled intact.
"""

from __future__ import annotations

from typing import Iterator

DELIMITER = b"\n"
ENCODING = "utf-8"


class LineFramer:
    """Accumulates byte chunks and yields complete lines.

    Whatever follows the last newline stays in :attr:`pending` until a
    later chunk completes it. The buffer is unbounded: a peer that never
    sends a newline grows it indefinitely.

    Usage::

        framer = LineFramer()
        for line in framer.feed(b"FlowRate:1.0/Lmin,"):
            ...  # nothing yet
        for line in framer.feed(b"Total:2.0L\\n"):
            ...  # "FlowRate:1.0/Lmin,Total:2.0L"
    """

    def __init__(self) -> None:
        self._buffer = bytearray()

    @property
    def pending(self) -> bytes:
        """Bytes received but not yet terminated by a newline."""
        return bytes(self._buffer)

    def __len__(self) -> int:
        return len(self._buffer)

    def feed(self, chunk: bytes) -> Iterator[str]:
        """Append ``chunk`` and return an iterator over completed lines.

        The chunk is buffered before this returns, so bytes are never lost
        even if the caller stops iterating early; unconsumed lines are
        handed out by the next call.

        Lines are returned without the trailing newline and without any
        other trimming. Empty lines are returned too.
        """
        self._buffer += chunk
        return self._drain()

    def _drain(self) -> Iterator[str]:
        while True:
            index = self._buffer.find(DELIMITER)
            if index < 0:
                return
            raw = bytes(self._buffer[:index])
            del self._buffer[: index + 1]
            yield raw.decode(ENCODING, errors="replace")

    def reset(self) -> None:
        """Drop any partial line."""
        self._buffer.clear()
