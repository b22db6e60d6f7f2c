"""Incremental frame extraction from a byte stream."""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import TYPE_CHECKING

from replwire.bencode import Value, decode_one
from replwire.errors import FrameTooLargeError, MalformedFrameError, TruncatedFrameError

if TYPE_CHECKING:
    from replwire.transport import Transport

COMPACT_THRESHOLD = 64 * 1024
DEFAULT_MAX_BUFFER_BYTES = 64 * 1024 * 1024
DEFAULT_CHUNK_SIZE = 64 * 1024


class FrameReader:
    """Buffer raw reads and split them into complete bencode values."""

    def __init__(self, max_buffer_bytes: int = DEFAULT_MAX_BUFFER_BYTES) -> None:
        self.max_buffer_bytes = max_buffer_bytes
        self._buffer = bytearray()
        self._offset = 0
        self._failure: MalformedFrameError | None = None

    @property
    def pending(self) -> int:
        """Number of buffered bytes not yet decoded."""
        return len(self._buffer) - self._offset

    def feed(self, chunk: bytes) -> list[Value]:
        """Append ``chunk`` and return every frame it completes, in order."""

        if self._failure is not None:
            raise self._failure
        self._buffer += chunk

        frames: list[Value] = []
        while self._offset < len(self._buffer):
            try:
                result = decode_one(self._buffer, self._offset)
            except MalformedFrameError as exc:
                self._failure = exc
                raise
            if result is None:
                break
            value, self._offset = result
            frames.append(value)

        self._compact()
        if self.pending > self.max_buffer_bytes:
            self._failure = FrameTooLargeError(self.pending, self.max_buffer_bytes)
            raise self._failure
        return frames

    def close(self) -> None:
        """Signal end of stream; an undecoded tail is a truncation."""

        if self.pending:
            raise TruncatedFrameError(self.pending)

    def _compact(self) -> None:
        if self._offset == len(self._buffer):
            self._buffer.clear()
            self._offset = 0
        elif self._offset >= COMPACT_THRESHOLD or self._offset * 2 >= len(self._buffer):
            del self._buffer[: self._offset]
            self._offset = 0


async def read_frames(
    transport: Transport,
    reader: FrameReader | None = None,
    *,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> AsyncIterator[Value]:
    """Yield frames read from ``transport`` until it reaches end of stream."""

    reader = reader or FrameReader()
    while True:
        chunk = await transport.read(chunk_size)
        if not chunk:
            reader.close()
            return
        for frame in reader.feed(chunk):
            yield frame
