"""
Error types raised or reported by the OBD monitor.

Transport and protocol failures are normally reported asynchronously
(state events, failed DiagnosticResults); these classes give those
reports a type so callers such as the HTTP gateway can map them.
"""

from typing import Optional


class OBDError(Exception):
    """Base class for all OBD monitor errors."""


class TransportError(OBDError):
    """Connection refused, dropped, or the radio is unavailable."""


class NotConnectedError(OBDError):
    """An operation needs a polling session but none is running."""


class OperationInProgressError(OBDError):
    """A scan or clear is already pending."""


class ProtocolTimeoutError(OBDError):
    """The adapter did not answer within the command budget."""


class VehicleRejectedError(OBDError):
    """The vehicle answered a diagnostic request with a negative response."""

    def __init__(self, message: str, payload: Optional[str] = None):
        super().__init__(message)
        self.payload = payload


class DecodeError(OBDError, ValueError):
    """A response payload could not be interpreted."""

    def __init__(self, message: str, payload: Optional[str] = None):
        super().__init__(message)
        self.payload = payload
