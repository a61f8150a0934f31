"""
One-way status events for UI / notification collaborators.

The core never waits on listeners: they run synchronously on emit and any
exception they raise is logged and dropped. A short history of human
readable messages is kept for status screens.
"""
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import structlog

logger = structlog.get_logger("events")

MESSAGE_HISTORY_LIMIT = 20


class EventKind(str, Enum):
    """Status event kinds."""
    SERVICE_STARTED = "SERVICE_STARTED"
    SERVICE_STOPPED = "SERVICE_STOPPED"
    LOCATION_UPDATE = "LOCATION_UPDATE"
    DELIVERY_SUCCEEDED = "DELIVERY_SUCCEEDED"
    DELIVERY_FAILED = "DELIVERY_FAILED"
    BACKOFF = "BACKOFF"
    QUEUE_DEPTH_CHANGED = "QUEUE_DEPTH_CHANGED"
    SENSOR_ERROR = "SENSOR_ERROR"
    FORMAT_ERROR = "FORMAT_ERROR"
    PERSISTENCE_ERROR = "PERSISTENCE_ERROR"


@dataclass(frozen=True)
class StatusEvent:
    kind: EventKind
    message: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    ts: float = field(default_factory=time.time)


Listener = Callable[[StatusEvent], None]


class StatusEvents:
    """Fan-out of status events to registered listeners."""

    def __init__(self, history_limit: int = MESSAGE_HISTORY_LIMIT):
        self._listeners: List[Listener] = []
        self._messages: deque = deque(maxlen=history_limit)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener. Returns a callable that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def emit(self, kind: EventKind, message: Optional[str] = None, **data: Any) -> StatusEvent:
        event = StatusEvent(kind=kind, message=message, data=data)
        if message:
            self._messages.append((event.ts, message))

        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.warning("Status listener failed", kind=kind.value, error=str(e))
        return event

    @property
    def messages(self) -> List[tuple]:
        """Recent (timestamp, message) pairs, oldest first."""
        return list(self._messages)

    def clear_messages(self) -> None:
        self._messages.clear()
