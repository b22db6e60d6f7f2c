"""Typed view over decoded nREPL maps."""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from typing import Any

from replwire import fields as f
from replwire.bencode import Value
from replwire.errors import TypeMismatchError


def field_name(name: str) -> str:
    """Map a Python keyword name to its wire field name (``root_ex`` -> ``root-ex``)."""

    return name.replace("_", "-")


class Message(Mapping[str, Any]):
    """One protocol message: an insertion-ordered map with field accessors.

    Reserved text fields hold ``str``; ``status`` holds a tuple of tokens.
    Extension fields keep whatever value they were built or decoded with.
    """

    __slots__ = ("_fields",)

    def __init__(self, fields: Mapping[str, Any] | None = None, /, **kwargs: Any) -> None:
        merged: dict[str, Any] = dict(fields or {})
        for key, value in kwargs.items():
            merged[field_name(key)] = value
        status = merged.get(f.STATUS)
        if status is not None and not isinstance(status, tuple):
            merged[f.STATUS] = _status_tuple(status)
        self._fields = {key: value for key, value in merged.items() if value is not None}

    @classmethod
    def from_value(cls, value: Value) -> Message:
        """Interpret a decoded value; raises :class:`TypeMismatchError` on bad shape."""

        if not isinstance(value, dict):
            raise TypeMismatchError(f"message must be a map, got {type(value).__name__}")

        decoded: dict[str, Any] = {}
        for raw_key, item in value.items():
            key = _utf8(raw_key, "field name")
            if key in f.TEXT_FIELDS:
                if not isinstance(item, bytes):
                    raise TypeMismatchError(f"field {key!r} must be a byte string, got {type(item).__name__}")
                decoded[key] = _utf8(item, f"field {key!r}")
            elif key == f.STATUS:
                if not isinstance(item, list) or not all(isinstance(token, bytes) for token in item):
                    raise TypeMismatchError("field 'status' must be a list of byte strings")
                decoded[key] = tuple(_utf8(token, "status token") for token in item)
            else:
                decoded[key] = item
        return cls(decoded)

    def to_value(self) -> dict[str, Any]:
        """Return an encodable map in field insertion order."""

        value = dict(self._fields)
        if f.STATUS in value:
            value[f.STATUS] = list(value[f.STATUS])
        return value

    def with_fields(self, **kwargs: Any) -> Message:
        """Copy of this message with fields added or replaced (``None`` removes)."""

        merged = dict(self._fields)
        for key, value in kwargs.items():
            merged[field_name(key)] = value
        return Message(merged)

    def text(self, key: str, default: str | None = None) -> str | None:
        """Read a field as text, decoding byte strings as UTF-8."""

        value = self._fields.get(key)
        if value is None:
            return default
        if isinstance(value, bytes):
            return value.decode("utf-8", errors="replace")
        return str(value)

    def __getitem__(self, key: str) -> Any:
        return self._fields[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._fields)

    def __len__(self) -> int:
        return len(self._fields)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Message):
            return self._fields == other._fields
        if isinstance(other, Mapping):
            return self._fields == dict(other)
        return NotImplemented

    def __repr__(self) -> str:
        return f"Message({self._fields!r})"

    @property
    def op(self) -> str | None:
        return self._fields.get(f.OP)

    @property
    def id(self) -> str | None:
        return self._fields.get(f.ID)

    @property
    def session(self) -> str | None:
        return self._fields.get(f.SESSION)

    @property
    def code(self) -> str | None:
        return self._fields.get(f.CODE)

    @property
    def ns(self) -> str | None:
        return self._fields.get(f.NS)

    @property
    def value(self) -> str | None:
        return self._fields.get(f.VALUE)

    @property
    def out(self) -> str | None:
        return self._fields.get(f.OUT)

    @property
    def err(self) -> str | None:
        return self._fields.get(f.ERR)

    @property
    def ex(self) -> str | None:
        return self._fields.get(f.EX)

    @property
    def root_ex(self) -> str | None:
        return self._fields.get(f.ROOT_EX)

    @property
    def new_session(self) -> str | None:
        return self._fields.get(f.NEW_SESSION)

    @property
    def interrupt_id(self) -> str | None:
        return self._fields.get(f.INTERRUPT_ID)

    @property
    def status(self) -> frozenset[str]:
        return frozenset(self._fields.get(f.STATUS, ()))

    @property
    def is_terminal(self) -> bool:
        return not self.status.isdisjoint(f.TERMINAL_STATUSES)

    @property
    def is_error(self) -> bool:
        return f.ERROR in self.status or f.EVAL_ERROR in self.status


def _utf8(raw: bytes, what: str) -> str:
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise TypeMismatchError(f"{what} is not valid UTF-8") from exc


def _status_tuple(status: Any) -> tuple[str, ...]:
    if isinstance(status, (str, bytes)):
        status = [status]
    tokens: list[str] = []
    for token in status:
        text = token.decode("utf-8") if isinstance(token, bytes) else str(token)
        if text not in tokens:
            tokens.append(text)
    return tuple(tokens)


def request(op: str, **fields: Any) -> Message:
    """Build a request for any op; ``id`` is injected by the client on send."""

    return Message({f.OP: op}, **fields)


def clone_request(session: str | None = None) -> Message:
    return request(f.CLONE, session=session)


def close_request(session: str) -> Message:
    return request(f.CLOSE, session=session)


def eval_request(code: str, session: str | None = None, ns: str | None = None, **extra: Any) -> Message:
    return request(f.EVAL, code=code, session=session, ns=ns, **extra)


def interrupt_request(session: str, interrupt_id: str | None = None) -> Message:
    return request(f.INTERRUPT, session=session, interrupt_id=interrupt_id)


def describe_request(verbose: bool = False) -> Message:
    if verbose:
        return Message({f.OP: f.DESCRIBE, f.VERBOSE: 1})
    return request(f.DESCRIBE)


def ls_sessions_request() -> Message:
    return request(f.LS_SESSIONS)


def response_to(req: Message, *statuses: str, **fields: Any) -> Message:
    """Build a response echoing the request's ``id`` and ``session``."""

    head: dict[str, Any] = {f.ID: req.id}
    if req.session is not None:
        head[f.SESSION] = req.session
    response = Message(head, **fields)
    if statuses:
        response = response.with_fields(status=statuses)
    return response


def status_of(messages: Iterable[Message]) -> frozenset[str]:
    """Union of the status tokens across a response sequence."""

    tokens: set[str] = set()
    for message in messages:
        tokens |= message.status
    return frozenset(tokens)
