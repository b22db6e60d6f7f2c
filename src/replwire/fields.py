"""nREPL field vocabulary.

Keep op names, field names and status tokens in one place to avoid string
drift across the client and server.
"""

from __future__ import annotations

# Ops
CLONE = "clone"
CLOSE = "close"
EVAL = "eval"
INTERRUPT = "interrupt"
DESCRIBE = "describe"
LS_SESSIONS = "ls-sessions"

WELL_KNOWN_OPS = (CLONE, CLOSE, EVAL, INTERRUPT, DESCRIBE, LS_SESSIONS)

# Fields
OP = "op"
ID = "id"
SESSION = "session"
CODE = "code"
NS = "ns"
STATUS = "status"
VALUE = "value"
OUT = "out"
ERR = "err"
EX = "ex"
ROOT_EX = "root-ex"
NEW_SESSION = "new-session"
INTERRUPT_ID = "interrupt-id"
SESSIONS = "sessions"
OPS = "ops"
VERSIONS = "versions"
VERBOSE = "verbose?"

TEXT_FIELDS = frozenset({OP, ID, SESSION, CODE, NS, VALUE, OUT, ERR, EX, ROOT_EX, NEW_SESSION, INTERRUPT_ID})

# Status tokens
DONE = "done"
ERROR = "error"
UNKNOWN_OP = "unknown-op"
UNKNOWN_SESSION = "unknown-session"
EVAL_ERROR = "eval-error"
INTERRUPTED = "interrupted"
SESSION_IDLE = "session-idle"
SESSION_CLOSED = "session-closed"
INTERRUPT_ID_MISMATCH = "interrupt-id-mismatch"
NO_CODE = "no-code"

TERMINAL_STATUSES = frozenset({DONE, ERROR})
