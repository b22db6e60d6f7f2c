"""Exception hierarchy for replwire."""

from __future__ import annotations


class ReplWireError(Exception):
    """Base exception for replwire."""


class EncodeError(ReplWireError):
    """Raised when a Python object has no bencode representation."""


class ProtocolError(ReplWireError):
    """Base exception for connection-fatal framing errors."""


class MalformedFrameError(ProtocolError):
    """Raised when incoming bytes violate the bencode grammar."""

    def __init__(self, reason: str, offset: int | None = None) -> None:
        if offset is None:
            super().__init__(reason)
        else:
            super().__init__(f"{reason} at offset {offset}")
        self.reason = reason
        self.offset = offset


class FrameTooLargeError(MalformedFrameError):
    """Raised when an undecoded frame grows past the configured limit."""

    def __init__(self, size: int, limit: int) -> None:
        super().__init__(f"frame of at least {size} bytes exceeds limit of {limit} bytes")
        self.size = size
        self.limit = limit


class TruncatedFrameError(ProtocolError):
    """Raised when the stream ends in the middle of a frame."""

    def __init__(self, pending: int) -> None:
        super().__init__(f"stream ended with {pending} undecoded bytes")
        self.pending = pending


class TypeMismatchError(ReplWireError):
    """Raised when a decoded value does not have the shape of a message."""


class UnknownSessionError(ReplWireError):
    """Raised when an operation references a session that does not exist."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"unknown session: {session_id}")
        self.session_id = session_id


class UnknownOpError(ReplWireError):
    """Raised when no handler is registered for an op."""

    def __init__(self, op: str | None) -> None:
        super().__init__(f"unknown op: {op}")
        self.op = op


class DuplicateRequestError(ReplWireError):
    """Raised when a request id is registered while still pending."""

    def __init__(self, request_id: str) -> None:
        super().__init__(f"request id already pending: {request_id}")
        self.request_id = request_id


class TransportError(ReplWireError):
    """Raised when the underlying byte stream fails."""


class RequestCancelledError(ReplWireError):
    """Raised to a waiting caller when its request is abandoned."""

    def __init__(self, request_id: str, reason: str = "cancelled") -> None:
        super().__init__(f"request {request_id} abandoned: {reason}")
        self.request_id = request_id
        self.reason = reason


class RequestTimeoutError(RequestCancelledError):
    """Raised when a caller gives up waiting for a request."""

    def __init__(self, request_id: str, timeout: float) -> None:
        super().__init__(request_id, f"no terminal response in {timeout:.2f}s")
        self.timeout = timeout


class ConnectionLostError(RequestCancelledError):
    """Raised to waiting callers when the connection is torn down."""
