"""
Error taxonomy for adapter communication.

Low layers (connection, gate, decoders) raise these exceptions. The session
and scheduler layers catch them and turn them into tagged results, so a bad
reading never takes down the polling loop.
"""

from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    """Tag attached to failed readings and command results."""
    CONNECTION = "connection"
    TIMEOUT = "timeout"
    ADAPTER = "adapter"
    PARSE = "parse"


class OBDLinkError(Exception):
    """Base class for all obd_link errors."""
    kind: ErrorKind = ErrorKind.ADAPTER

    def __init__(self, message: str, raw: Optional[str] = None):
        super().__init__(message)
        self.raw = raw


class AdapterConnectionError(OBDLinkError, ConnectionError):
    """Channel unavailable or not connected after retries."""
    kind = ErrorKind.CONNECTION


class AdapterTimeoutError(OBDLinkError, TimeoutError):
    """No response within the call's time budget."""
    kind = ErrorKind.TIMEOUT


class AdapterError(OBDLinkError):
    """Adapter answered with explicit error text (ERROR, NO DATA, ...)."""
    kind = ErrorKind.ADAPTER


class ParseError(OBDLinkError, ValueError):
    """Response payload had an unexpected shape."""
    kind = ErrorKind.PARSE
