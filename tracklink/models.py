"""
Data models shared across the tracking pipeline.
"""
import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import NamedTuple, Optional

from tracklink.errors import DeliveryFailure, PermanentDeliveryFailure


# Knots per metre/second; the OsmAnd protocol reports speed in knots
MPS_TO_KNOTS = 1.943844


class AccuracyPolicy(str, Enum):
    """Desired accuracy class for the position source."""
    HIGH = "high"      # Reject fixes worse than 20 m
    MEDIUM = "medium"  # Reject fixes worse than 100 m
    LOW = "low"        # Accept anything

    @property
    def max_accuracy_m(self) -> Optional[float]:
        return {
            AccuracyPolicy.HIGH: 20.0,
            AccuracyPolicy.MEDIUM: 100.0,
            AccuracyPolicy.LOW: None,
        }[self]


@dataclass(frozen=True)
class PositionSample:
    """One timestamped fix with its sensor metadata. Never mutated."""
    time: float         # Wall clock, epoch seconds
    latitude: float
    longitude: float
    altitude: float = 0.0
    speed: float = 0.0     # Knots
    bearing: float = 0.0   # Degrees from true north
    accuracy: float = 0.0  # Horizontal accuracy, metres
    battery: Optional[float] = None  # Percent
    charging: Optional[bool] = None
    direct: bool = False
    monotonic: float = field(default_factory=time.monotonic)

    def is_valid(self) -> bool:
        """Check coordinates are finite and in range."""
        return (
            math.isfinite(self.latitude) and
            math.isfinite(self.longitude) and
            -90 <= self.latitude <= 90 and
            -180 <= self.longitude <= 180
        )


@dataclass(frozen=True)
class RequestDescriptor:
    """A ready-to-send request built from one PositionSample."""
    url: str
    persisted_id: Optional[int] = None


class QueueEntry(NamedTuple):
    """Oldest pending request as returned by the durable queue."""
    persisted_id: int
    descriptor: RequestDescriptor


class DeliveryStatus(str, Enum):
    """Result class of a single delivery attempt."""
    SUCCESS = "SUCCESS"
    TRANSIENT_FAILURE = "TRANSIENT_FAILURE"  # Network, timeout, 5xx, 429
    PERMANENT_FAILURE = "PERMANENT_FAILURE"  # Other 4xx


@dataclass(frozen=True)
class DeliveryOutcome:
    """Outcome of Transport.send for exactly one request."""
    status: DeliveryStatus
    reason: Optional[str] = None
    status_code: Optional[int] = None

    @classmethod
    def success(cls, status_code: Optional[int] = None) -> "DeliveryOutcome":
        return cls(DeliveryStatus.SUCCESS, status_code=status_code)

    @classmethod
    def transient(cls, reason: str, status_code: Optional[int] = None) -> "DeliveryOutcome":
        return cls(DeliveryStatus.TRANSIENT_FAILURE, reason, status_code)

    @classmethod
    def permanent(cls, reason: str, status_code: Optional[int] = None) -> "DeliveryOutcome":
        return cls(DeliveryStatus.PERMANENT_FAILURE, reason, status_code)

    @property
    def ok(self) -> bool:
        return self.status is DeliveryStatus.SUCCESS

    @classmethod
    def from_failure(cls, error: DeliveryFailure) -> "DeliveryOutcome":
        """Outcome for a DeliveryFailure raised during one attempt."""
        if isinstance(error, PermanentDeliveryFailure):
            return cls.permanent(error.reason, error.status_code)
        return cls.transient(error.reason, error.status_code)
