"""replwire - nREPL wire protocol engine: bencode, sessions, correlation, drivers."""

__version__ = "0.1.0"

from .client import EvalResult, NreplClient
from .correlation import CorrelationEngine, ResponseReceiver
from .message import Message
from .server import Failure, NreplServer, Output, Result
from .sessions import SessionRegistry

__all__ = [
    "CorrelationEngine",
    "EvalResult",
    "Failure",
    "Message",
    "NreplClient",
    "NreplServer",
    "Output",
    "ResponseReceiver",
    "Result",
    "SessionRegistry",
]
