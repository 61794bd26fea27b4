"""Error types raised by corpc."""

from typing import Any, Optional


class CorpcError(Exception):
    """Base class for all corpc errors."""


class RemoteProcedureError(CorpcError):
    """
    Raised on the calling side when the remote handler failed.

    Only the marshaled form of the remote failure crosses the channel, so
    the original exception type and traceback are lost. ``payload`` holds
    the value exactly as it arrived (usually the error message, possibly
    ``None``).
    """

    def __init__(self, payload: Any, procedure: Optional[str] = None,
                 call_id: Optional[int] = None):
        self.payload = payload
        self.procedure = procedure
        self.call_id = call_id
        if payload is None:
            message = "Remote procedure failed"
        else:
            message = str(payload)
        super().__init__(message)


class RpcTimeoutError(CorpcError, TimeoutError):
    """Raised when no result arrives for a call within the configured timeout."""

    def __init__(self, procedure: Optional[str] = None, call_id: Optional[int] = None):
        self.procedure = procedure
        self.call_id = call_id
        super().__init__("Event handler timed out.")


class HandlerNotDefinedError(CorpcError):
    """Raised by the dispatcher when a registered procedure has no handler."""

    def __init__(self, procedure: str):
        self.procedure = procedure
        super().__init__("Handler has not been defined")
