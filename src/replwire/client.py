"""Client driver: issue ops and await their correlated responses."""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import AsyncIterator
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any

from replwire import fields as f
from replwire import message as m
from replwire.config import Settings
from replwire.connection import Connection
from replwire.correlation import ResponseReceiver
from replwire.errors import (
    ProtocolError,
    ReplWireError,
    RequestCancelledError,
    RequestTimeoutError,
    TransportError,
    TypeMismatchError,
)
from replwire.frames import read_frames
from replwire.message import Message
from replwire.transport import Transport, open_connection


@dataclass
class EvalResult:
    """Responses to one ``eval`` folded into a single result."""

    values: list[str] = field(default_factory=list)
    out: str = ""
    err: str = ""
    ex: str | None = None
    root_ex: str | None = None
    ns: str | None = None
    status: frozenset[str] = frozenset()
    messages: list[Message] = field(default_factory=list)

    @property
    def value(self) -> str | None:
        return self.values[-1] if self.values else None

    @property
    def has_error(self) -> bool:
        return self.ex is not None or f.ERROR in self.status or f.EVAL_ERROR in self.status

    @classmethod
    def from_messages(cls, messages: list[Message]) -> EvalResult:
        result = cls(messages=list(messages), status=m.status_of(messages))
        for message in messages:
            if message.value is not None:
                result.values.append(message.value)
            if message.out is not None:
                result.out += message.out
            if message.err is not None:
                result.err += message.err
            if message.ex is not None:
                result.ex = message.ex
            if message.root_ex is not None:
                result.root_ex = message.root_ex
            if message.ns is not None:
                result.ns = message.ns
        return result


def new_request_id() -> str:
    return uuid.uuid4().hex


class NreplClient:
    """Talk to an nREPL server over one connection.

    A single pump task reads frames and hands them to the correlation engine;
    callers only ever wait on their own :class:`ResponseReceiver`.
    """

    def __init__(self, connection: Connection) -> None:
        self.connection = connection
        self.session: str | None = None
        self._pump: asyncio.Task[None] | None = None
        self._lost: str | None = None

    @classmethod
    async def connect(cls, host: str | None = None, port: int | None = None, settings: Settings | None = None) -> NreplClient:
        settings = settings or Settings()
        transport = await open_connection(host or settings.host, port or settings.port)
        client = cls.over(transport, settings)
        client.start()
        return client

    @classmethod
    def over(cls, transport: Transport, settings: Settings | None = None) -> NreplClient:
        return cls(Connection(transport, settings=settings or Settings()))

    async def __aenter__(self) -> NreplClient:
        self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    @property
    def is_connected(self) -> bool:
        return self._lost is None and not self.connection.closed

    def start(self) -> None:
        if self._pump is None:
            self._pump = asyncio.create_task(self._run_pump(), name=f"{self.connection.name}.pump")

    async def _run_pump(self) -> None:
        conn = self.connection
        reason = "connection closed"
        try:
            async for frame in read_frames(
                conn.transport, conn.frame_reader(), chunk_size=conn.settings.read_chunk_size
            ):
                try:
                    message = Message.from_value(frame)
                except TypeMismatchError as exc:
                    conn.log.warning("client.pump.bad_message error={}", exc)
                    self._reject_response(frame, exc)
                    continue
                conn.correlation.deliver(message)
            conn.log.info("client.pump.eof")
        except ProtocolError as exc:
            reason = f"protocol error: {exc}"
            conn.log.error("client.pump.protocol_error error={}", exc)
        except TransportError as exc:
            reason = f"transport error: {exc}"
            conn.log.error("client.pump.transport_error error={}", exc)
        except asyncio.CancelledError:
            reason = "client closed"
            raise
        finally:
            self._lost = self._lost or reason
            abandoned = conn.correlation.abandon_all(reason)
            if abandoned:
                conn.log.warning("client.pump.abandoned count={} reason={}", abandoned, reason)
            if not conn.closed:
                with suppress(ReplWireError, OSError):
                    await conn.close()

    def _reject_response(self, frame: Any, error: TypeMismatchError) -> None:
        """Fail the request a badly typed response names, when its id is readable."""

        if not isinstance(frame, dict) or not isinstance(frame.get(b"id"), bytes):
            return
        request_id = frame[b"id"].decode("utf-8", errors="replace")
        self.connection.correlation.abandon(request_id, RequestCancelledError(request_id, f"bad response: {error}"))

    def _fail(self, reason: str) -> None:
        """Treat the connection as lost: release every waiter and stop the pump."""

        self._lost = self._lost or reason
        abandoned = self.connection.correlation.abandon_all(reason)
        self.connection.log.warning("client.connection.lost count={} reason={}", abandoned, reason)
        if self._pump is not None and self._pump is not asyncio.current_task():
            self._pump.cancel()

    async def send(self, request: Message) -> ResponseReceiver:
        """Write ``request`` with a fresh id and return its receiver."""

        if not self.is_connected:
            raise TransportError(f"not connected: {self._lost or 'closed'}")
        self.start()
        request_id = new_request_id()
        session = request.session
        if session is None and self.session is not None and request.op != f.CLONE:
            session = self.session
        outgoing = request.with_fields(id=request_id, session=session)

        # Register before writing so a fast reply is never an orphan.
        receiver = self.connection.correlation.register(request_id, session)
        try:
            await self.connection.send(outgoing)
        except TransportError as exc:
            self._fail(f"transport error: {exc}")
            raise
        except BaseException:
            self.connection.correlation.abandon(request_id)
            raise
        self.connection.log.debug("client.send op={} id={} session={}", outgoing.op, request_id, session)
        return receiver

    async def request(self, request: Message, timeout: float | None = None) -> list[Message]:
        """Send ``request`` and collect responses through the terminal one."""

        receiver = await self.send(request)
        return await receiver.collect(self._timeout(timeout))

    def _timeout(self, timeout: float | None) -> float | None:
        if timeout is not None:
            return timeout
        return self.connection.settings.request_timeout_seconds

    async def describe(self, verbose: bool = False) -> Message:
        responses = await self.request(m.describe_request(verbose))
        return responses[-1]

    async def clone_session(self, parent: str | None = None, *, make_default: bool = True) -> str:
        responses = await self.request(m.clone_request(parent))
        new_session = next((r.new_session for r in responses if r.new_session), None)
        if new_session is None:
            raise ReplWireError(f"clone failed: status={sorted(m.status_of(responses))}")
        if make_default and self.session is None:
            self.session = new_session
        return new_session

    async def close_session(self, session: str | None = None) -> frozenset[str]:
        target = session or self.session
        if target is None:
            raise ValueError("no session to close")
        responses = await self.request(m.close_request(target))
        if target == self.session:
            self.session = None
        return m.status_of(responses)

    async def ls_sessions(self) -> list[str]:
        responses = await self.request(m.ls_sessions_request())
        sessions: list[str] = []
        for response in responses:
            for item in response.get(f.SESSIONS) or ():
                sessions.append(item.decode("utf-8") if isinstance(item, bytes) else str(item))
        return sessions

    async def eval_stream(
        self, code: str, session: str | None = None, ns: str | None = None, **extra: Any
    ) -> AsyncIterator[Message]:
        receiver = await self.send(m.eval_request(code, session=session, ns=ns, **extra))
        try:
            async for response in receiver:
                yield response
        finally:
            self.connection.correlation.abandon(receiver.id)

    async def eval(
        self,
        code: str,
        session: str | None = None,
        ns: str | None = None,
        timeout: float | None = None,
        **extra: Any,
    ) -> EvalResult:
        """Evaluate ``code``; on timeout interrupt the evaluation and re-raise."""

        receiver = await self.send(m.eval_request(code, session=session, ns=ns, **extra))
        try:
            responses = await receiver.collect(self._timeout(timeout))
        except RequestTimeoutError:
            if receiver.session is not None and self.is_connected:
                with suppress(ReplWireError):
                    await self.send(m.interrupt_request(receiver.session, receiver.id))
            raise
        return EvalResult.from_messages(responses)

    async def interrupt(self, session: str | None = None, interrupt_id: str | None = None) -> frozenset[str]:
        target = session or self.session
        if target is None:
            raise ValueError("no session to interrupt")
        responses = await self.request(m.interrupt_request(target, interrupt_id))
        return m.status_of(responses)

    async def close(self) -> None:
        """Stop the pump, release every waiter, close the transport."""

        if self._pump is not None and not self._pump.done():
            self._pump.cancel()
            with suppress(asyncio.CancelledError):
                await self._pump
        self._lost = self._lost or "client closed"
        self.connection.correlation.abandon_all(self._lost)
        await self.connection.close()
