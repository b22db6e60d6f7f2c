"""Duplex byte stream adapters.

The protocol core never opens connections itself; it reads and writes through
the small :class:`Transport` contract below.
"""

from __future__ import annotations

import asyncio
from contextlib import suppress
from typing import Protocol

from replwire.errors import TransportError


class Transport(Protocol):
    """Ordered, reliable byte stream."""

    async def read(self, n: int) -> bytes: ...

    async def write(self, data: bytes) -> None: ...

    async def close(self) -> None: ...


class StreamTransport:
    """Transport over an asyncio stream pair (usually a TCP socket)."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._reader = reader
        self._writer = writer

    @property
    def peer(self) -> str:
        peer = self._writer.get_extra_info("peername")
        if isinstance(peer, tuple) and len(peer) >= 2:
            return f"{peer[0]}:{peer[1]}"
        return str(peer)

    async def read(self, n: int) -> bytes:
        try:
            return await self._reader.read(n)
        except OSError as exc:
            raise TransportError(f"read failed: {exc}") from exc

    async def write(self, data: bytes) -> None:
        try:
            self._writer.write(data)
            await self._writer.drain()
        except OSError as exc:
            raise TransportError(f"write failed: {exc}") from exc

    async def close(self) -> None:
        if self._writer.is_closing():
            return
        self._writer.close()
        with suppress(OSError):
            await self._writer.wait_closed()


async def open_connection(host: str, port: int) -> StreamTransport:
    try:
        reader, writer = await asyncio.open_connection(host, port)
    except OSError as exc:
        raise TransportError(f"cannot connect to {host}:{port}: {exc}") from exc
    return StreamTransport(reader, writer)


class MemoryTransport:
    """One end of an in-process duplex pipe; see :func:`memory_pipe`."""

    def __init__(self) -> None:
        self._inbox: asyncio.Queue[bytes] = asyncio.Queue()
        self._pending = b""
        self._eof = False
        self._closed = False
        self.peer: MemoryTransport | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    async def read(self, n: int) -> bytes:
        if not self._pending:
            if self._eof:
                return b""
            chunk = await self._inbox.get()
            if not chunk:
                self._eof = True
                return b""
            self._pending = chunk
        data, self._pending = self._pending[:n], self._pending[n:]
        return data

    async def write(self, data: bytes) -> None:
        if self._closed or self.peer is None or self.peer._closed:
            raise TransportError("write on closed pipe")
        if data:
            self.peer._inbox.put_nowait(bytes(data))

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._inbox.put_nowait(b"")
        if self.peer is not None:
            self.peer._inbox.put_nowait(b"")


def memory_pipe() -> tuple[MemoryTransport, MemoryTransport]:
    """Two connected transports: bytes written to one are read from the other."""

    left = MemoryTransport()
    right = MemoryTransport()
    left.peer = right
    right.peer = left
    return left, right
