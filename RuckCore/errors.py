"""
Error taxonomy for the ruck analytics core.

Caller input errors derive from ValidationError, lifecycle violations from
SessionStateError. StorageError is kept separate so persistence failures are
never confused with bad input.
"""


class RuckCoreError(Exception):
    """Base class for all errors raised by RuckCore."""

    http_status = 500

    def __init__(self, message: str, details=None):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(RuckCoreError, ValueError):
    http_status = 400


class InvalidSample(ValidationError):
    """Raw sample is malformed (bad accuracy, coordinates, timestamp ordering)."""


class InvalidLoadWeight(ValidationError):
    """Load weight outside (0, 200] kg."""


class InvalidQuery(ValidationError):
    """Query parameters are out of range."""


class InvalidSessionData(ValidationError):
    """A session field violates its invariant (rpe range, end before start...)."""


class SessionNotFound(RuckCoreError):
    http_status = 404


class SessionStateError(RuckCoreError):
    """Operation is not permitted in the session's current lifecycle state."""

    http_status = 409


class ActiveSessionExists(SessionStateError):
    pass


class ConcurrentWriteError(SessionStateError):
    """Another writer holds the session; the write is rejected, not queued."""


class SessionCompleted(SessionStateError):
    pass


class StorageError(RuckCoreError):
    http_status = 503


class SegmentationAmbiguous(RuckCoreError):
    """Low-confidence terrain classification. Recorded on the segment, never raised."""

    def __init__(self, message: str, segment=None):
        super().__init__(message)
        self.segment = segment


class WeatherUnavailable(RuckCoreError):
    """Weather lookup failed or timed out; callers degrade to neutral."""
