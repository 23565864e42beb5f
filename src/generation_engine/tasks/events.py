"""Lifecycle event contract and simple publishers."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from generation_engine.storage.common import utc_now

logger = logging.getLogger(__name__)


class LifecycleEventType(str, Enum):
    TASK_CREATED = "task-created"
    TASK_PROCESSING = "task-processing"
    TASK_COMPLETED = "task-completed"
    TASK_FAILED = "task-failed"


@dataclass(slots=True)
class LifecycleEvent:
    """One lifecycle notification; ``payload`` holds the event-specific fields."""

    event_type: LifecycleEventType
    task_id: str
    user_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event": self.event_type.value,
            "task_id": self.task_id,
            "user_id": self.user_id,
            **self.payload,
            "occurred_at": self.occurred_at.isoformat(),
        }


@runtime_checkable
class EventPublisher(Protocol):
    """Sink for lifecycle events (notifications, observability)."""

    def publish(self, event: LifecycleEvent) -> None:
        """Deliver one event; failures must not affect the caller's transition."""


class LoggingEventPublisher:
    """Writes every event to the engine log."""

    def __init__(self, level: int = logging.INFO) -> None:
        self.level = level

    def publish(self, event: LifecycleEvent) -> None:
        logger.log(
            self.level,
            "%s task_id=%s user_id=%s %s",
            event.event_type.value,
            event.task_id,
            event.user_id,
            event.payload,
        )


class RecordingEventPublisher:
    """Keeps published events in memory, for in-process consumers and tests."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: list[LifecycleEvent] = []

    def publish(self, event: LifecycleEvent) -> None:
        with self._lock:
            self._events.append(event)

    @property
    def events(self) -> list[LifecycleEvent]:
        with self._lock:
            return list(self._events)

    def of_type(self, event_type: LifecycleEventType) -> list[LifecycleEvent]:
        return [event for event in self.events if event.event_type == event_type]


class CompositeEventPublisher:
    """Fans one event out to several publishers; one failing sink does not stop the rest."""

    def __init__(self, *publishers: EventPublisher) -> None:
        self.publishers = publishers

    def publish(self, event: LifecycleEvent) -> None:
        for publisher in self.publishers:
            publish_safely(publisher, event)


def publish_safely(publisher: EventPublisher, event: LifecycleEvent) -> None:
    """Fire-and-forget delivery: a failing publisher is logged, never raised."""

    try:
        publisher.publish(event)
    except Exception:  # noqa: BLE001
        logger.warning(
            "Event publish failed: %s task_id=%s",
            event.event_type.value,
            event.task_id,
            exc_info=True,
        )
