"""
Observer notifications for capture lifecycle events.

Delivery is fire-and-forget: a failing subscriber is logged and skipped.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable

from .logger import get_logger


logger = get_logger(__name__)


class EventType(Enum):
    """Notification types emitted by the session engine."""

    FRAME_CAPTURED = "frame-captured"
    CAPTURE_ERROR = "capture-error"
    CAPTURE_COMPLETED = "capture-completed"
    CAPTURE_STOPPED = "capture-stopped"
    ASSEMBLY_READY = "assembly-ready"


@dataclass
class CaptureEvent:
    """A single notification about one session."""

    type: EventType
    session_id: str
    data: dict = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON delivery."""
        return {
            'type': self.type.value,
            'session_id': self.session_id,
            'timestamp': self.timestamp.isoformat(),
            **self.data,
        }


Subscriber = Callable[[CaptureEvent], Any]


class EventBus:
    """Thread-safe fan-out of CaptureEvents to registered callbacks."""

    def __init__(self):
        self._subscribers: list[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """
        Register a callback.

        Returns:
            A function that removes the callback again
        """
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, event: CaptureEvent) -> None:
        """Deliver an event to every subscriber."""
        with self._lock:
            subscribers = list(self._subscribers)

        for callback in subscribers:
            try:
                callback(event)
            except Exception as e:
                logger.warning(f"Event subscriber failed on {event.type.value}: {e}")

    def emit(self, event_type: EventType, session_id: str, **data) -> None:
        """Build and publish an event."""
        self.publish(CaptureEvent(type=event_type, session_id=session_id, data=data))
