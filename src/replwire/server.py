"""Server driver: receive ops, dispatch to handlers, stream responses back."""

from __future__ import annotations

import asyncio
import inspect
import platform
import traceback
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable, Iterator
from contextlib import aclosing, suppress
from dataclasses import dataclass
from typing import Any, Literal, Protocol

from loguru import logger

from replwire import __version__
from replwire import fields as f
from replwire.config import Settings
from replwire.connection import Connection
from replwire.errors import ProtocolError, TransportError, TypeMismatchError, UnknownOpError, UnknownSessionError
from replwire.frames import read_frames
from replwire.message import Message, response_to
from replwire.sessions import ContextFactory, SessionRegistry, SessionState, default_context_factory
from replwire.transport import StreamTransport, Transport


@dataclass(frozen=True)
class Output:
    """A chunk of captured output."""

    text: str
    stream: Literal["out", "err"] = "out"


@dataclass(frozen=True)
class Result:
    """A printed evaluation result."""

    value: str
    ns: str | None = None


@dataclass(frozen=True)
class Failure:
    """An exception reported by the evaluated code."""

    ex: str
    message: str = ""
    root_ex: str | None = None


type EvalEvent = Output | Result | Failure


class Evaluator(Protocol):
    """Evaluation capability the server delegates ``eval`` to.

    ``evaluate`` returns a finite, non-restartable sequence of events, either
    an async iterator or a plain iterator. Plain iterators are advanced in a
    worker thread so a slow evaluation does not block the connection.
    """

    def evaluate(self, code: str, session: SessionState) -> AsyncIterator[EvalEvent] | Iterator[EvalEvent]: ...


type Handler = Callable[[Message, ServerConnection], AsyncIterator[Message]]

_EXHAUSTED = object()


class ServerConnection:
    """Serve one connection: a read pump plus one task per request."""

    def __init__(self, server: NreplServer, connection: Connection) -> None:
        self.server = server
        self.connection = connection
        self._tasks: set[asyncio.Task[None]] = set()
        self._evals: dict[str, asyncio.Task[None]] = {}
        self._interrupted: set[str] = set()
        self._reader: asyncio.Task[None] | None = None

    @property
    def sessions(self) -> SessionRegistry:
        return self.connection.sessions

    @property
    def running_evals(self) -> list[str]:
        return list(self._evals)

    async def run(self) -> None:
        conn = self.connection
        conn.log.info("server.connection.open")
        self._reader = asyncio.create_task(self._read_requests(), name=f"{conn.name}.reader")
        try:
            await self._reader
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
        finally:
            self._reader.cancel()
            await self._shutdown()

    async def _read_requests(self) -> None:
        conn = self.connection
        try:
            async for frame in read_frames(
                conn.transport, conn.frame_reader(), chunk_size=conn.settings.read_chunk_size
            ):
                try:
                    request = Message.from_value(frame)
                except TypeMismatchError as exc:
                    conn.log.warning("server.request.bad_message error={}", exc)
                    await self._reject_malformed(frame)
                    continue
                self._dispatch(request)
            conn.log.info("server.connection.eof")
        except ProtocolError as exc:
            conn.log.error("server.connection.protocol_error error={}", exc)
        except TransportError as exc:
            conn.log.error("server.connection.transport_error error={}", exc)

    def _lose(self, reason: str) -> None:
        """Stop reading after a failed write; the connection is torn down by :meth:`run`."""

        if self._reader is not None and not self._reader.done():
            self.connection.log.warning("server.connection.lost reason={}", reason)
            self._reader.cancel()

    async def _send(self, message: Message) -> None:
        try:
            await self.connection.send(message)
        except TransportError as exc:
            self._lose(f"write failed: {exc}")
            raise

    def _dispatch(self, request: Message) -> None:
        self.connection.log.debug("server.request op={} id={} session={}", request.op, request.id, request.session)
        task = asyncio.create_task(self._run_request(request), name=f"{self.connection.name}.{request.op}.{request.id}")
        self._tasks.add(task)
        if request.id is not None:
            if request.op == f.EVAL:
                self._evals[request.id] = task
            if request.session in self.sessions:
                self.sessions.track(request.session, request.id)
        task.add_done_callback(lambda done: self._finished(request, done))

    def _finished(self, request: Message, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if request.id is None:
            return
        if self._evals.get(request.id) is task:
            del self._evals[request.id]
        if request.session is not None:
            self.sessions.untrack(request.session, request.id)
        if request.id in self._interrupted:
            self._interrupted.discard(request.id)
            if task.cancelled() and not self.connection.closed:
                followup = asyncio.create_task(self._report_interrupted(request))
                self._tasks.add(followup)
                followup.add_done_callback(self._tasks.discard)

    async def _report_interrupted(self, request: Message) -> None:
        with suppress(TransportError):
            await self.emit(request, response_to(request, f.INTERRUPTED))
            await self.emit(request, response_to(request, f.DONE))

    async def _run_request(self, request: Message) -> None:
        handler = self.server.handlers.get(request.op or "")
        try:
            if handler is None:
                raise UnknownOpError(request.op)
            if request.session is not None and request.session not in self.sessions:
                raise UnknownSessionError(request.session)
            async with aclosing(handler(request, self)) as responses:
                async for response in responses:
                    await self.emit(request, response)
        except UnknownOpError as exc:
            with suppress(TransportError):
                await self.emit(request, response_to(request, f.ERROR, f.UNKNOWN_OP))
            self.connection.log.info("server.request.unknown_op op={} id={}", exc.op, request.id)
        except UnknownSessionError as exc:
            with suppress(TransportError):
                await self.emit(request, response_to(request, f.ERROR, f.UNKNOWN_SESSION))
            self.connection.log.info("server.request.unknown_session op={} session={}", request.op, exc.session_id)
        except TransportError as exc:
            self.connection.log.warning("server.request.write_failed op={} id={} error={}", request.op, request.id, exc)
        except Exception as exc:
            self.connection.log.opt(exception=True).error("server.handler.error op={} id={}", request.op, request.id)
            with suppress(TransportError):
                await self.emit(request, response_to(request, f.ERROR, ex=_class_name(exc), root_ex=_root_name(exc)))

    async def emit(self, request: Message, response: Message) -> None:
        """Write one response, making sure it echoes the request's id and session."""

        if response.id != request.id:
            if response.id is not None:
                self.connection.log.warning("server.response.id_mismatch expected={} got={}", request.id, response.id)
            response = response.with_fields(id=request.id)
        if response.session is None and request.session is not None:
            response = response.with_fields(session=request.session)
        await self._send(response)

    def interrupt(self, request_id: str) -> bool:
        task = self._evals.get(request_id)
        if task is None or task.done():
            return False
        self._interrupted.add(request_id)
        task.cancel()
        return True

    def resolve_session(self, request: Message) -> SessionState:
        """The request's session, or a throwaway one when it names none."""

        if request.session is not None:
            return self.sessions.lookup(request.session)
        return SessionState(id=str(uuid.uuid4()), parent=None, context=self.server.context_factory(None))

    async def _reject_malformed(self, frame: Any) -> None:
        if not isinstance(frame, dict) or not isinstance(frame.get(b"id"), bytes):
            return
        request_id = frame[b"id"].decode("utf-8", errors="replace")
        with suppress(TransportError):
            await self._send(Message({f.ID: request_id, f.STATUS: (f.ERROR,)}))

    async def _shutdown(self) -> None:
        conn = self.connection
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        with suppress(TransportError, OSError):
            await conn.close()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        conn.log.info("server.connection.closed cancelled={}", len(tasks))


async def _iterate(events: AsyncIterator[EvalEvent] | Iterator[EvalEvent]) -> AsyncIterator[EvalEvent]:
    if hasattr(events, "__anext__"):
        async_events: Any = events
        if hasattr(async_events, "aclose"):
            async with aclosing(async_events) as closing:
                async for event in closing:
                    yield event
        else:
            async for event in async_events:
                yield event
        return

    iterator = iter(events)  # type: ignore[arg-type]
    while True:
        event = await asyncio.to_thread(next, iterator, _EXHAUSTED)
        if event is _EXHAUSTED:
            return
        yield event


def _event_responses(request: Message, event: EvalEvent) -> list[Message]:
    match event:
        case Output(text=text, stream="err"):
            return [response_to(request, err=text)]
        case Output(text=text):
            return [response_to(request, out=text)]
        case Result(value=value, ns=ns):
            return [response_to(request, value=value, ns=ns)]
        case Failure(ex=ex, message=text, root_ex=root_ex):
            responses = [response_to(request, err=text)] if text else []
            responses.append(response_to(request, f.EVAL_ERROR, ex=ex, root_ex=root_ex or ex))
            return responses
    raise TypeError(f"unsupported evaluation event: {event!r}")


def _class_name(exc: BaseException) -> str:
    cls = type(exc)
    return f"{cls.__module__}.{cls.__qualname__}" if cls.__module__ != "builtins" else cls.__qualname__


def _root_name(exc: BaseException) -> str:
    root = exc
    seen = {id(root)}
    while (parent := root.__cause__ or root.__context__) is not None and id(parent) not in seen:
        seen.add(id(parent))
        root = parent
    return _class_name(root)


async def handle_clone(request: Message, ctx: ServerConnection) -> AsyncIterator[Message]:
    """Create a new session, copying the state of the requesting session if any."""

    new_session = ctx.sessions.clone(request.session)
    yield response_to(request, f.DONE, new_session=new_session)


async def handle_close(request: Message, ctx: ServerConnection) -> AsyncIterator[Message]:
    """Close the session and interrupt anything still running in it."""

    if request.session is None:
        yield response_to(request, f.ERROR, f.UNKNOWN_SESSION)
        return
    state = ctx.sessions.close(request.session)
    for request_id in list(state.pending):
        ctx.interrupt(request_id)
    yield response_to(request, f.DONE, f.SESSION_CLOSED)


async def handle_ls_sessions(request: Message, ctx: ServerConnection) -> AsyncIterator[Message]:
    """List the ids of live sessions."""

    yield response_to(request, f.DONE, sessions=ctx.sessions.ids())


async def handle_describe(request: Message, ctx: ServerConnection) -> AsyncIterator[Message]:
    """Describe available ops and server versions."""

    verbose = bool(request.get(f.VERBOSE))
    ops: dict[str, Any] = {}
    for name, handler in ctx.server.handlers.items():
        doc = inspect.getdoc(handler) if verbose else None
        ops[name] = {"doc": doc} if doc else {}
    versions = {
        "replwire": {"version-string": __version__},
        "python": {"version-string": platform.python_version()},
    }
    yield response_to(request, f.DONE, ops=ops, versions=versions)


async def handle_interrupt(request: Message, ctx: ServerConnection) -> AsyncIterator[Message]:
    """Interrupt running evaluations in a session."""

    if request.session is None:
        yield response_to(request, f.ERROR, f.UNKNOWN_SESSION)
        return
    state = ctx.sessions.lookup(request.session)
    running = [request_id for request_id in state.pending if request_id in ctx.running_evals]
    if not running:
        yield response_to(request, f.SESSION_IDLE, f.DONE)
        return
    target = request.interrupt_id
    if target is not None and target not in running:
        yield response_to(request, f.INTERRUPT_ID_MISMATCH, f.DONE)
        return
    for request_id in [target] if target is not None else running:
        ctx.interrupt(request_id)
    yield response_to(request, f.DONE)


async def handle_eval(request: Message, ctx: ServerConnection) -> AsyncIterator[Message]:
    """Evaluate code in the request's session, streaming output and values."""

    if request.code is None:
        yield response_to(request, f.ERROR, f.NO_CODE)
        return
    evaluator = ctx.server.evaluator
    if evaluator is None:
        yield response_to(request, f.ERROR, f.UNKNOWN_OP)
        return
    state = ctx.resolve_session(request)
    try:
        async with aclosing(_iterate(evaluator.evaluate(request.code, state))) as events:
            async for event in events:
                for response in _event_responses(request, event):
                    yield response
    except Exception as exc:
        ctx.connection.log.info("server.eval.failed id={} error={!r}", request.id, exc)
        yield response_to(request, err="".join(traceback.format_exception_only(exc)))
        yield response_to(request, f.EVAL_ERROR, f.ERROR, ex=_class_name(exc), root_ex=_root_name(exc))
        return
    yield response_to(request, f.DONE)


class NreplServer:
    """nREPL server: op handlers plus the evaluator they delegate to."""

    def __init__(
        self,
        evaluator: Evaluator | None = None,
        settings: Settings | None = None,
        *,
        context_factory: ContextFactory = default_context_factory,
    ) -> None:
        self.evaluator = evaluator
        self.settings = settings or Settings()
        self.context_factory = context_factory
        self.handlers: dict[str, Handler] = {
            f.CLONE: handle_clone,
            f.CLOSE: handle_close,
            f.DESCRIBE: handle_describe,
            f.LS_SESSIONS: handle_ls_sessions,
        }
        if evaluator is not None:
            self.handlers[f.EVAL] = handle_eval
            self.handlers[f.INTERRUPT] = handle_interrupt

    def register(self, op: str, handler: Handler) -> Handler:
        """Register (or replace) the handler for ``op``."""

        self.handlers[op] = handler
        return handler

    def op(self, name: str) -> Callable[[Handler], Handler]:
        """Decorator form of :meth:`register`."""

        def _decorator(handler: Handler) -> Handler:
            return self.register(name, handler)

        return _decorator

    def connection_for(self, transport: Transport) -> ServerConnection:
        connection = Connection(
            transport,
            settings=self.settings,
            sessions=SessionRegistry(self.context_factory),
        )
        return ServerConnection(self, connection)

    async def handle(self, transport: Transport) -> None:
        """Serve one already-established connection until it closes."""

        await self.connection_for(transport).run()

    async def serve(
        self,
        host: str | None = None,
        port: int | None = None,
        *,
        on_ready: Callable[[asyncio.Server], Awaitable[None] | None] | None = None,
    ) -> None:
        """Listen for TCP connections and serve each one until cancelled."""

        async def _on_client(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            transport = StreamTransport(reader, writer)
            logger.info("server.accept peer={}", transport.peer)
            await self.handle(transport)

        bind_host = host or self.settings.host
        bind_port = self.settings.port if port is None else port
        listener = await asyncio.start_server(_on_client, bind_host, bind_port)
        async with listener:
            sockets = listener.sockets or ()
            bound = sockets[0].getsockname()[1] if sockets else bind_port
            logger.info("server.listen host={} port={}", bind_host, bound)
            if on_ready is not None:
                ready = on_ready(listener)
                if inspect.isawaitable(ready):
                    await ready
            await listener.serve_forever()
