"""Resumable cursor over raw recording bytes."""

from __future__ import annotations

from .errors import Truncated


class ByteReservoir:
    """Cursor over an in-memory byte buffer with absolute positions.

    Bytes may be appended with feed() while decoding is in progress.
    Positions are absolute offsets into the logical stream, so they stay
    valid across compact().
    """

    def __init__(self, data: bytes = b""):
        self._buf = bytearray(data)
        self._base = 0  # absolute offset of _buf[0]
        self._pos = 0   # index into _buf

    def feed(self, data: bytes) -> None:
        self._buf.extend(data)

    def position(self) -> int:
        return self._base + self._pos

    def remaining(self) -> int:
        """Number of unconsumed bytes (truthy while more bytes exist)."""
        return len(self._buf) - self._pos

    def peek(self, n: int) -> bytes:
        if n > self.remaining():
            raise Truncated(n, self.remaining())
        return bytes(self._buf[self._pos:self._pos + n])

    def consume(self, n: int) -> bytes:
        data = self.peek(n)
        self._pos += n
        return data

    def skip(self, n: int = 1) -> None:
        self._pos = min(self._pos + n, len(self._buf))

    def seek(self, position: int) -> None:
        """Move the cursor to an absolute position still held in the buffer."""
        index = position - self._base
        if index < 0 or index > len(self._buf):
            raise ValueError(f"position {position} is not buffered")
        self._pos = index

    def find(self, value: int) -> int | None:
        """Absolute position of the next byte equal to *value*, or None."""
        index = self._buf.find(value, self._pos)
        if index < 0:
            return None
        return self._base + index

    def compact(self) -> None:
        """Drop consumed bytes from the front of the buffer."""
        if self._pos:
            del self._buf[:self._pos]
            self._base += self._pos
            self._pos = 0
