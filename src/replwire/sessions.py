"""Server-side session registry."""

from __future__ import annotations

import copy
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from replwire.errors import UnknownSessionError

type ContextFactory = Callable[[Any | None], Any]


def default_context_factory(parent: Any | None) -> Any:
    """Give a new session a copy of its parent's context, or an empty dict."""

    if parent is None:
        return {}
    return copy.copy(parent)


@dataclass
class SessionState:
    """State owned by one live session."""

    id: str
    parent: str | None
    context: Any
    pending: set[str] = field(default_factory=set)
    created_at: float = field(default_factory=time.time)


class SessionRegistry:
    """Create, look up and close sessions; ids are never reused."""

    def __init__(self, context_factory: ContextFactory = default_context_factory) -> None:
        self._context_factory = context_factory
        self._sessions: dict[str, SessionState] = {}
        self._issued: set[str] = set()

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def ids(self) -> list[str]:
        return list(self._sessions)

    def create_root(self) -> str:
        return self._create(parent=None)

    def clone(self, parent: str | None = None) -> str:
        """Create a session derived from ``parent`` (a fresh root when ``None``)."""

        if parent is None:
            return self.create_root()
        return self._create(parent=self.lookup(parent))

    def close(self, session_id: str) -> SessionState:
        state = self._sessions.pop(session_id, None)
        if state is None:
            raise UnknownSessionError(session_id)
        logger.debug("session.close id={} pending={}", session_id, len(state.pending))
        return state

    def lookup(self, session_id: str) -> SessionState:
        try:
            return self._sessions[session_id]
        except KeyError:
            raise UnknownSessionError(session_id) from None

    def track(self, session_id: str, request_id: str) -> None:
        self.lookup(session_id).pending.add(request_id)

    def untrack(self, session_id: str, request_id: str) -> None:
        state = self._sessions.get(session_id)
        if state is not None:
            state.pending.discard(request_id)

    def _create(self, parent: SessionState | None) -> str:
        session_id = self._new_id()
        context = self._context_factory(parent.context if parent is not None else None)
        parent_id = parent.id if parent is not None else None
        self._sessions[session_id] = SessionState(id=session_id, parent=parent_id, context=context)
        self._issued.add(session_id)
        logger.debug("session.create id={} parent={}", session_id, parent_id)
        return session_id

    def _new_id(self) -> str:
        while True:
            candidate = str(uuid.uuid4())
            if candidate not in self._issued:
                return candidate
