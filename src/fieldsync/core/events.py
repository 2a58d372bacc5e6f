"""In-process pub/sub for sync, processing and cache notifications."""

import logging
import threading
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

SYNC_PROGRESS = "sync.progress"
SYNC_COMPLETED = "sync.completed"
SYNC_ERROR = "sync.error"
PROCESSING_STARTED = "processing.started"
PROCESSING_COMPLETED = "processing.completed"
PROCESSING_ERROR = "processing.error"
CACHE_UPDATED = "cache.updated"
CACHE_REFRESH_NEEDED = "cache.refresh_needed"
CONTINUITY_CHANGED = "cache.continuity_changed"

ALL_TOPICS = "*"


@dataclass
class SyncProgress:
    percent: int
    status: str
    timestamp: datetime


@dataclass
class CacheUpdated:
    category: str
    record_count: int
    timestamp: datetime


@dataclass
class RefreshNeeded:
    category: str
    age_hours: float | None
    timestamp: datetime


@dataclass
class ContinuityChanged:
    ready: bool
    previous: bool | None
    timestamp: datetime


@dataclass
class ErrorEvent:
    source: str
    message: str
    error: BaseException | None
    timestamp: datetime


Handler = Callable[[Any], None]


def now() -> datetime:
    return datetime.now(UTC)


class EventBus:
    """Topic-routed event fan-out.

    Each handler subscribed when ``publish`` is called receives the event
    once. Handler exceptions are logged and do not reach the publisher or
    other handlers.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: dict[str, list[Handler]] = defaultdict(list)

    def subscribe(self, topic: str, handler: Handler) -> Callable[[], None]:
        """Subscribe a handler to a topic ("*" for all). Returns an unsubscribe callable."""
        with self._lock:
            self._subscribers[topic].append(handler)

        def _unsubscribe() -> None:
            self.unsubscribe(topic, handler)

        return _unsubscribe

    def unsubscribe(self, topic: str, handler: Handler) -> None:
        with self._lock:
            handlers = self._subscribers.get(topic, [])
            if handler in handlers:
                handlers.remove(handler)

    def publish(self, topic: str, event: Any) -> None:
        """Publish an event to a topic."""
        handlers: list[Handler] = []
        with self._lock:
            handlers.extend(self._subscribers.get(topic, []))
            if topic != ALL_TOPICS:
                handlers.extend(self._subscribers.get(ALL_TOPICS, []))
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception("Event handler failed for topic '%s'", topic)
