"""
Exception taxonomy for the tracking pipeline.

SensorUnavailable and PersistenceFailure surface to the tracking session.
Delivery failures stay inside the uplink retry loop.
"""


class TrackingError(Exception):
    """Base class for all tracking pipeline errors."""


class SensorUnavailable(TrackingError):
    """The fix feed cannot produce positions (missing device, no permission)."""


class FormatError(TrackingError):
    """The configured server URL cannot be used to build a request."""


class DeliveryFailure(TrackingError):
    """A single delivery attempt did not succeed."""

    def __init__(self, reason: str, status_code: int | None = None):
        super().__init__(reason)
        self.reason = reason
        self.status_code = status_code


class TransientDeliveryFailure(DeliveryFailure):
    """Network unreachable, timeout, rate limit or 5xx. Expected to clear with time."""


class PermanentDeliveryFailure(DeliveryFailure):
    """Malformed-request class response (4xx other than 429)."""


class PersistenceFailure(TrackingError):
    """A durable queue write or delete did not complete."""
