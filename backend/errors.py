"""
Exceptions raised by the relay and the session client.
"""

from typing import Any, Dict, Optional


class RelayError(Exception):
    """Base exception for call signaling errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class RoutingFailure(RelayError):
    """Target identity is unknown or already disconnected."""
    pass


class InvalidStateError(RelayError):
    """An operation was invoked out of sequence."""
    pass


class CallCancelledError(RelayError):
    """The call was ended while it was still being set up."""
    pass


class CaptureError(RelayError):
    """Raised by media capture collaborators."""
    pass


class PermissionDenied(CaptureError):
    pass


class DeviceNotFound(CaptureError):
    pass


class TransportLost(RelayError):
    """The relay connection dropped unexpectedly."""
    pass
