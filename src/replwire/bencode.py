"""Bencode codec.

The codec only knows four kinds of value: integers, byte strings, lists, and
maps keyed by byte strings. Maps keep their insertion order in both
directions so that re-encoding a decoded frame is byte-for-byte stable.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from replwire.errors import EncodeError, MalformedFrameError, TruncatedFrameError

type Value = int | bytes | list[Value] | dict[bytes, Value]

MAX_DEPTH = 200
# Decimal digit cap for integers and string lengths; matches the interpreter's
# default int/str conversion limit.
MAX_INT_DIGITS = 4300

_DIGITS = frozenset(b"0123456789")
_INT = ord("i")
_LIST = ord("l")
_DICT = ord("d")
_END = ord("e")
_COLON = ord(":")
_MINUS = ord("-")
_ZERO = ord("0")


def encode(value: Any) -> bytes:
    """Encode a value tree into bencode bytes."""

    out = bytearray()
    _encode_into(value, out)
    return bytes(out)


def _encode_into(value: Any, out: bytearray) -> None:
    # bool is an int subclass but has no wire form of its own.
    if isinstance(value, bool) or value is None:
        raise EncodeError(f"cannot encode {value!r}")
    if isinstance(value, int):
        try:
            out += b"i%de" % value
        except ValueError as exc:
            raise EncodeError(f"integer too large to encode: {exc}") from None
    elif isinstance(value, (bytes, bytearray, memoryview)):
        raw = bytes(value)
        out += b"%d:" % len(raw)
        out += raw
    elif isinstance(value, str):
        raw = value.encode("utf-8")
        out += b"%d:" % len(raw)
        out += raw
    elif isinstance(value, (list, tuple)):
        out.append(_LIST)
        for item in value:
            _encode_into(item, out)
        out.append(_END)
    elif isinstance(value, Mapping):
        out.append(_DICT)
        for key, item in value.items():
            if not isinstance(key, (bytes, str)):
                raise EncodeError(f"map keys must be byte strings, got {type(key).__name__}")
            _encode_into(key, out)
            _encode_into(item, out)
        out.append(_END)
    else:
        raise EncodeError(f"cannot encode object of type {type(value).__name__}")


def decode_one(data: bytes | bytearray | memoryview, offset: int = 0) -> tuple[Value, int] | None:
    """Decode the value starting at ``offset``.

    Returns ``(value, end)`` where ``end`` is the offset just past the value,
    or ``None`` when the bytes are a valid prefix that needs more input.
    Raises :class:`MalformedFrameError` on a grammar violation.
    """

    with memoryview(data) as buf:
        return _decode(buf, offset, 0)


def decode(data: bytes | bytearray | memoryview) -> Value:
    """Decode a buffer holding exactly one value."""

    result = decode_one(data)
    if result is None:
        raise TruncatedFrameError(len(data))
    value, end = result
    if end != len(data):
        raise MalformedFrameError("trailing bytes after value", end)
    return value


def _decode(buf: memoryview, pos: int, depth: int) -> tuple[Value, int] | None:
    if pos >= len(buf):
        return None
    if depth > MAX_DEPTH:
        raise MalformedFrameError(f"nesting deeper than {MAX_DEPTH}", pos)

    lead = buf[pos]
    if lead == _INT:
        return _decode_int(buf, pos)
    if lead in _DIGITS:
        return _decode_bytes(buf, pos)
    if lead == _LIST:
        return _decode_list(buf, pos, depth)
    if lead == _DICT:
        return _decode_dict(buf, pos, depth)
    raise MalformedFrameError(f"unexpected byte {bytes([lead])!r}", pos)


def _decode_int(buf: memoryview, pos: int) -> tuple[int, int] | None:
    start = pos + 1
    cursor = start
    if cursor < len(buf) and buf[cursor] == _MINUS:
        cursor += 1
    digits_start = cursor
    while cursor < len(buf) and buf[cursor] in _DIGITS:
        cursor += 1
    if cursor >= len(buf):
        return None
    if buf[cursor] != _END:
        raise MalformedFrameError("non-digit in integer", cursor)

    digits = bytes(buf[digits_start:cursor])
    if not digits:
        raise MalformedFrameError("integer without digits", pos)
    if len(digits) > 1 and digits[0] == _ZERO:
        raise MalformedFrameError("integer with leading zero", pos)
    if digits == b"0" and digits_start != start:
        raise MalformedFrameError("negative zero", pos)
    if len(digits) > MAX_INT_DIGITS:
        raise MalformedFrameError(f"integer longer than {MAX_INT_DIGITS} digits", pos)
    try:
        return int(bytes(buf[start:cursor])), cursor + 1
    except ValueError:
        raise MalformedFrameError("integer out of range", pos) from None


def _decode_bytes(buf: memoryview, pos: int) -> tuple[bytes, int] | None:
    cursor = pos
    while cursor < len(buf) and buf[cursor] in _DIGITS:
        cursor += 1
    if cursor >= len(buf):
        return None
    if buf[cursor] != _COLON:
        raise MalformedFrameError("non-digit in string length", cursor)

    digits = bytes(buf[pos:cursor])
    if len(digits) > 1 and digits[0] == _ZERO:
        raise MalformedFrameError("string length with leading zero", pos)
    if len(digits) > MAX_INT_DIGITS:
        raise MalformedFrameError("string length out of range", pos)
    try:
        length = int(digits)
    except ValueError:
        raise MalformedFrameError("string length out of range", pos) from None
    start = cursor + 1
    end = start + length
    if end > len(buf):
        return None
    return bytes(buf[start:end]), end


def _decode_list(buf: memoryview, pos: int, depth: int) -> tuple[list[Value], int] | None:
    items: list[Value] = []
    cursor = pos + 1
    while True:
        if cursor >= len(buf):
            return None
        if buf[cursor] == _END:
            return items, cursor + 1
        result = _decode(buf, cursor, depth + 1)
        if result is None:
            return None
        item, cursor = result
        items.append(item)


def _decode_dict(buf: memoryview, pos: int, depth: int) -> tuple[dict[bytes, Value], int] | None:
    items: dict[bytes, Value] = {}
    cursor = pos + 1
    while True:
        if cursor >= len(buf):
            return None
        if buf[cursor] == _END:
            return items, cursor + 1
        if buf[cursor] not in _DIGITS:
            raise MalformedFrameError("map key is not a byte string", cursor)
        key_start = cursor
        result = _decode_bytes(buf, cursor)
        if result is None:
            return None
        key, cursor = result
        if key in items:
            raise MalformedFrameError(f"duplicate map key {key!r}", key_start)
        result = _decode(buf, cursor, depth + 1)
        if result is None:
            return None
        items[key], cursor = result
