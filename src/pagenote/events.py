"""
In-process event bus.

Connects the document store, the sync coordinator and whatever UI is
listening. Delivery is synchronous and fire-and-forget: a subscriber
that raises is logged and skipped, and never affects the publisher
or the other subscribers.

Topics:
    data.changed          A local mutation was saved.
    sync.complete         A push or pull finished.
    sync.quota_exceeded   The chunked store refused a payload.
"""

from __future__ import annotations

import fnmatch
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger("pagenote.events")

DATA_CHANGED = "data.changed"
SYNC_COMPLETE = "sync.complete"
QUOTA_EXCEEDED = "sync.quota_exceeded"


class Event(BaseModel):
    """A published event."""

    topic: str
    payload: dict[str, Any] = Field(default_factory=dict)
    published_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class EventBus:
    """Topic-based publish/subscribe within one process."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._callbacks: dict[str, list[Callable[[Event], None]]] = {}

    def subscribe(self, pattern: str, callback: Callable[[Event], None]) -> None:
        """Register a callback for topics matching a glob pattern."""
        with self._lock:
            self._callbacks.setdefault(pattern, []).append(callback)

    def unsubscribe(self, pattern: str, callback: Callable[[Event], None]) -> bool:
        """Remove a callback.

        Returns:
            True if the callback was registered.
        """
        with self._lock:
            callbacks = self._callbacks.get(pattern, [])
            if callback not in callbacks:
                return False
            callbacks.remove(callback)
            if not callbacks:
                del self._callbacks[pattern]
            return True

    def publish(self, topic: str, payload: Optional[dict[str, Any]] = None) -> int:
        """Deliver an event to every matching subscriber.

        Returns:
            Number of callbacks that ran without raising.
        """
        event = Event(topic=topic, payload=payload or {})
        with self._lock:
            targets = [
                cb
                for pattern, callbacks in self._callbacks.items()
                if fnmatch.fnmatch(topic, pattern)
                for cb in callbacks
            ]

        delivered = 0
        for cb in targets:
            try:
                cb(event)
                delivered += 1
            except Exception as exc:
                logger.error("Callback error on '%s': %s", topic, exc)
        return delivered
