"""Match asynchronous responses back to the request that caused them."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import NoReturn

from blinker import Signal
from loguru import logger

from replwire.errors import ConnectionLostError, DuplicateRequestError, RequestCancelledError, RequestTimeoutError
from replwire.message import Message


@dataclass(frozen=True)
class _Finished:
    error: RequestCancelledError | None = None


class ResponseReceiver:
    """Consumer handle for every response to one request id.

    Iterate it (``async for``) or call :meth:`next` to receive messages in
    stream order; iteration stops after the terminal response. An abandoned
    request raises :class:`RequestCancelledError` instead of hanging.
    """

    def __init__(self, engine: CorrelationEngine, request_id: str, session: str | None) -> None:
        self.id = request_id
        self.session = session
        self._engine = engine
        self._queue: asyncio.Queue[Message | _Finished] = asyncio.Queue()
        self._finished: _Finished | None = None

    @property
    def closed(self) -> bool:
        """True once no further messages will be queued."""
        return not self._engine.is_pending(self.id, self)

    def _put(self, item: Message | _Finished) -> None:
        self._queue.put_nowait(item)

    async def next(self) -> Message:
        if self._finished is not None:
            return self._raise_finished(self._finished)
        item = await self._queue.get()
        if isinstance(item, _Finished):
            self._finished = item
            return self._raise_finished(item)
        return item

    def _raise_finished(self, item: _Finished) -> NoReturn:
        if item.error is not None:
            raise item.error
        raise StopAsyncIteration

    def __aiter__(self) -> ResponseReceiver:
        return self

    async def __anext__(self) -> Message:
        return await self.next()

    async def collect(self, timeout: float | None = None) -> list[Message]:
        """Gather every response through the terminal one.

        On timeout the request is abandoned and :class:`RequestTimeoutError`
        is raised; cancelling the awaiting task abandons it as well.
        """

        messages: list[Message] = []

        async def _drain() -> None:
            async for message in self:
                messages.append(message)

        try:
            if timeout is None:
                await _drain()
            else:
                await asyncio.wait_for(_drain(), timeout=timeout)
        except TimeoutError:
            error = RequestTimeoutError(self.id, timeout or 0.0)
            self._engine.abandon(self.id, error)
            raise error from None
        except asyncio.CancelledError:
            self._engine.abandon(self.id)
            raise
        return messages


class CorrelationEngine:
    """Own the mapping from request id to its waiting receiver."""

    def __init__(self) -> None:
        self._pending: dict[str, ResponseReceiver] = {}
        self.orphans = 0
        self.orphaned = Signal("replwire.orphaned")

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._pending

    def pending_ids(self) -> list[str]:
        return list(self._pending)

    def is_pending(self, request_id: str, receiver: ResponseReceiver | None = None) -> bool:
        current = self._pending.get(request_id)
        if receiver is None:
            return current is not None
        return current is receiver

    def register(self, request_id: str, session: str | None = None) -> ResponseReceiver:
        if request_id in self._pending:
            raise DuplicateRequestError(request_id)
        receiver = ResponseReceiver(self, request_id, session)
        self._pending[request_id] = receiver
        return receiver

    def deliver(self, message: Message) -> bool:
        """Route ``message`` to its receiver; returns False for an orphan."""

        request_id = message.id
        receiver = self._pending.get(request_id) if request_id is not None else None
        if receiver is None:
            self.orphans += 1
            logger.warning("correlation.orphan id={} status={}", request_id, sorted(message.status))
            self.orphaned.send(self, message=message)
            return False

        receiver._put(message)
        if message.is_terminal:
            del self._pending[request_id]
            receiver._put(_Finished())
        return True

    def abandon(self, request_id: str, error: RequestCancelledError | None = None) -> bool:
        """Finalize a request without a terminal message; waiters get an error."""

        receiver = self._pending.pop(request_id, None)
        if receiver is None:
            return False
        logger.debug("correlation.abandon id={} reason={}", request_id, error.reason if error else "cancelled")
        receiver._put(_Finished(error or RequestCancelledError(request_id)))
        return True

    def abandon_all(self, reason: str) -> int:
        """Abandon every pending request with :class:`ConnectionLostError`."""

        request_ids = list(self._pending)
        for request_id in request_ids:
            self.abandon(request_id, ConnectionLostError(request_id, reason))
        return len(request_ids)
