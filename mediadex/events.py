"""
In-process change notifications.

The MediaLibrary owns one EventBus; presentation code subscribes to it
instead of observing shared mutable state. Callbacks run synchronously
on the publishing thread (often a worker), so they must be quick.
"""

import logging
import threading
from typing import Any, Callable

logger = logging.getLogger(__name__)

ITEM_STATE_CHANGED = "item_state_changed"
PROGRESS_CHANGED = "progress_changed"
BATCH_STARTED = "batch_started"
BATCH_COMPLETED = "batch_completed"
COLLECTIONS_CHANGED = "collections_changed"
INDEX_REBUILT = "index_rebuilt"

Callback = Callable[[dict[str, Any]], None]


class EventBus:
    """Minimal thread-safe event bus."""

    def __init__(self):
        self._subscribers: dict[str, list[Callback]] = {}
        self._lock = threading.Lock()

    def subscribe(self, event_name: str, callback: Callback) -> Callable[[], None]:
        """Register a callback. Returns a function that unsubscribes it."""
        with self._lock:
            self._subscribers.setdefault(event_name, []).append(callback)
        return lambda: self.unsubscribe(event_name, callback)

    def unsubscribe(self, event_name: str, callback: Callback) -> None:
        with self._lock:
            if event_name in self._subscribers:
                self._subscribers[event_name] = [
                    cb for cb in self._subscribers[event_name] if cb != callback
                ]

    def publish(self, event_name: str, **payload: Any) -> None:
        with self._lock:
            callbacks = list(self._subscribers.get(event_name, []))
        for cb in callbacks:
            try:
                cb(payload)
            except Exception:
                # A broken listener must not break the pipeline or other listeners
                logger.exception("Event listener for %s failed", event_name)
