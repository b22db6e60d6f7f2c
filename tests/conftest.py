from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

import pytest_asyncio

from replwire.bencode import encode
from replwire.client import NreplClient
from replwire.errors import TransportError
from replwire.frames import FrameReader
from replwire.message import Message
from replwire.server import Failure, NreplServer, Output, Result
from replwire.sessions import SessionState
from replwire.transport import MemoryTransport, memory_pipe


class ScriptedEvaluator:
    """Evaluate a tiny command vocabulary instead of a real language."""

    def __init__(self) -> None:
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.calls: list[tuple[str, str]] = []
        self.cancelled = False

    async def evaluate(self, code: str, session: SessionState) -> AsyncIterator[Output | Result | Failure]:
        self.calls.append((code, session.id))
        command, _, arg = code.partition(" ")
        if command == "block":
            yield Output("waiting\n")
            self.started.set()
            try:
                await self.release.wait()
            except asyncio.CancelledError:
                self.cancelled = True
                raise
            yield Result("released")
        elif command == "print":
            yield Output(arg)
            yield Output("!", stream="err")
        elif command == "boom":
            raise RuntimeError("boom")
        elif command == "fail":
            yield Failure("ZeroDivisionError", "division by zero")
        elif command == "set":
            key, _, value = arg.partition("=")
            session.context[key] = value
            yield Result(value, ns="user")
        elif command == "get":
            yield Result(str(session.context.get(arg)), ns="user")
        else:
            yield Result(code, ns="user")


class BrokenWriteTransport(MemoryTransport):
    """Pipe end whose writes can be made to fail; closing it never wakes a pending read."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_writes = False

    async def write(self, data: bytes) -> None:
        if self.fail_writes:
            raise TransportError("broken pipe")
        await super().write(data)

    async def close(self) -> None:
        self._closed = True


def broken_write_pipe() -> tuple[BrokenWriteTransport, MemoryTransport]:
    broken = BrokenWriteTransport()
    other = MemoryTransport()
    broken.peer = other
    other.peer = broken
    return broken, other

class RawPeer:
    """Speak raw bencode over one end of a pipe."""

    def __init__(self, transport: MemoryTransport) -> None:
        self.transport = transport
        self.reader = FrameReader()
        self._frames: deque[Any] = deque()
        self._stash: list[Message] = []

    async def send(self, value: Any) -> None:
        await self.transport.write(encode(value))

    async def recv_raw(self, timeout: float = 1.0) -> Any:
        while not self._frames:
            chunk = await asyncio.wait_for(self.transport.read(65536), timeout)
            if not chunk:
                raise EOFError("peer closed")
            self._frames.extend(self.reader.feed(chunk))
        return self._frames.popleft()

    async def recv(self, timeout: float = 1.0) -> Message:
        return Message.from_value(await self.recv_raw(timeout))

    async def responses(self, request_id: str, timeout: float = 1.0) -> list[Message]:
        """Collect responses for one id through its terminal status."""

        collected = [message for message in self._stash if message.id == request_id]
        self._stash = [message for message in self._stash if message.id != request_id]
        while not (collected and collected[-1].is_terminal):
            message = await self.recv(timeout)
            if message.id == request_id:
                collected.append(message)
            else:
                self._stash.append(message)
        return collected


@dataclass
class Harness:
    server: NreplServer
    evaluator: ScriptedEvaluator
    server_task: asyncio.Task[None]
    server_end: MemoryTransport
    peer_end: MemoryTransport


@pytest_asyncio.fixture
async def harness() -> AsyncIterator[Harness]:
    evaluator = ScriptedEvaluator()
    server = NreplServer(evaluator)
    peer_end, server_end = memory_pipe()
    task = asyncio.create_task(server.handle(server_end))
    yield Harness(server, evaluator, task, server_end, peer_end)
    evaluator.release.set()
    await peer_end.close()
    await asyncio.wait_for(task, 1.0)


@pytest_asyncio.fixture
async def raw(harness: Harness) -> RawPeer:
    return RawPeer(harness.peer_end)


@pytest_asyncio.fixture
async def client(harness: Harness) -> AsyncIterator[NreplClient]:
    nrepl = NreplClient.over(harness.peer_end)
    nrepl.start()
    yield nrepl
    await nrepl.close()
