"""Per-connection context shared by the client and server drivers."""

from __future__ import annotations

import asyncio
import itertools
from contextlib import suppress
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from loguru import logger

from replwire.bencode import encode
from replwire.config import Settings
from replwire.correlation import CorrelationEngine
from replwire.errors import TransportError
from replwire.frames import FrameReader
from replwire.sessions import SessionRegistry

if TYPE_CHECKING:
    from loguru import Logger

    from replwire.message import Message
    from replwire.transport import Transport

_connection_ids = itertools.count(1)


@dataclass
class Connection:
    """Everything one connection owns; passed explicitly to every driver call."""

    transport: Transport
    settings: Settings = field(default_factory=Settings)
    correlation: CorrelationEngine = field(default_factory=CorrelationEngine)
    sessions: SessionRegistry = field(default_factory=SessionRegistry)
    name: str = field(default_factory=lambda: f"conn-{next(_connection_ids)}")
    closed: bool = False
    _write_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def log(self) -> Logger:
        return logger.bind(conn=self.name)

    def frame_reader(self) -> FrameReader:
        return FrameReader(max_buffer_bytes=self.settings.max_frame_bytes)

    async def send(self, message: Message) -> None:
        """Encode and write one message; writes never interleave.

        A failed write is fatal: the connection is closed before the
        :class:`TransportError` propagates, so the read side sees end of
        stream and every driver tears down the whole connection.
        """

        data = encode(message.to_value())
        async with self._write_lock:
            if self.closed:
                raise TransportError(f"{self.name} is closed")
            try:
                await self.transport.write(data)
            except TransportError as exc:
                self.log.warning("connection.write_failed error={}", exc)
                with suppress(TransportError, OSError):
                    await self.close()
                raise

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        await self.transport.close()
