"""
Exception hierarchy for the relay.

Transport failures are split into transient and permanent ones so the retry
loop knows which to retry. Configuration and transition errors signal bugs or
operator mistakes rather than runtime conditions.
"""
from typing import Optional

from fourwarder.core.events import RoomRole


class FourwarderError(Exception):
    """Base class for all relay errors."""


class ConfigError(FourwarderError):
    """Configuration is missing or malformed; fatal at startup."""


class TransportError(FourwarderError):
    """A transport call did not succeed."""

    def __init__(self, message: str, *, status_code: Optional[int] = None,
                 errcode: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.errcode = errcode


class TransportTransient(TransportError):
    """Network trouble or rate limiting; worth retrying."""

    def __init__(self, message: str, *, retry_after: Optional[float] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class TransportPermanent(TransportError):
    """Room inaccessible, permission revoked, bad request; never retried."""


class CopyFailed(FourwarderError):
    """A post into the moderation or output room failed after retries."""

    def __init__(self, room_role: RoomRole, cause: Exception):
        super().__init__(f"copy into {room_role.value} room failed: {cause}")
        self.room_role = room_role
        self.cause = cause


class InvalidTransition(FourwarderError):
    """A correlation entry was asked to move against its lifecycle."""

    def __init__(self, current, requested):
        super().__init__(f"invalid transition {current.value} -> {requested.value}")
        self.current = current
        self.requested = requested


class DuplicateCorrelation(FourwarderError):
    """An entry already exists for the original or moderation copy."""
