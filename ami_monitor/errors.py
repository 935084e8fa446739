"""
Exceptions raised by the AMI monitor.

Connection and timeout errors are recovered locally (reconnection, per-query
failure); authentication and protocol errors are surfaced to the caller.
"""
from typing import Any, Dict, Optional


class AMIError(Exception):
    """Base class for every error raised by this package."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} (details: {self.details})"
        return self.message

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(message={self.message!r}, details={self.details!r})"


class ConnectionError(AMIError):
    """Socket-level failure. Triggers reconnection."""


class ReconnectExhausted(ConnectionError):
    """Raised once the configured number of reconnection attempts has been used up."""


class AuthenticationError(AMIError):
    """The server rejected the credentials. Never retried automatically."""


class QueryTimeout(AMIError):
    """A pending action exceeded its deadline."""


class ActionFailed(AMIError):
    """The server answered an action with ``Response: Error``."""


class ProtocolError(AMIError):
    """A frame or an outgoing action could not be encoded or parsed."""


class TruncatedStream(ProtocolError):
    """The connection closed while a partial frame was still buffered."""


class BusyError(AMIError):
    """A synchronization cycle was requested while another one is running."""
