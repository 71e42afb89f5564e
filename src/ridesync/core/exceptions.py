"""Standardized exception hierarchy for the ride sync engine."""

from typing import Any


class RideSyncError(Exception):
    """Base exception for all ride sync errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class TransientError(RideSyncError):
    """A fetch or send that can be attempted again once connectivity returns."""

    pass


class NetworkError(TransientError):
    """Request timed out or the backend could not be reached."""

    pass


class ServiceUnavailableError(TransientError):
    """Backend temporarily unavailable (5xx responses)."""

    pass


class TransportDisconnected(TransientError):
    """The push channel is not connected. Retried by the session manager."""

    pass


class PermanentError(RideSyncError):
    """Retrying will not help; the caller must change something first."""

    pass


class Unauthorized(PermanentError):
    """Credential rejected. Requires re-authentication upstream."""

    pass


class NotFoundError(PermanentError):
    """Requested entity does not exist or is no longer accessible."""

    pass


# A ride that vanished from the backend is reported as a missing entity.
RideGone = NotFoundError


class ValidationError(PermanentError):
    """Payload failed validation, on the way in or on the way out."""

    pass


class ActiveRideExistsError(ValidationError):
    """Passenger or driver already has a non-terminal ride."""

    pass


class StateError(PermanentError):
    """Operation not permitted in the current state."""

    pass


class ConfigurationError(PermanentError):
    """Environment settings could not be loaded or failed validation."""

    pass


class LocationUnavailable(PermanentError):
    """Device position cannot be read (permission denied or no provider)."""

    pass
