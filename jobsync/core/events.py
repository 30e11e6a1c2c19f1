"""
Publish/subscribe channel for sync progress.

Listeners are called synchronously in publish order. A listener that raises
is logged and skipped; it never breaks the pipeline or other listeners.
"""

import itertools
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

SYNC_PROGRESS = "sync-progress"
SYNC_ACTIVITY = "sync-activity"
SYNC_COMPLETE = "sync-complete"
SYNC_ERROR = "sync-error"
JOB_FOUND = "job-found"
JOB_UPDATED = "job-updated"

EVENT_NAMES = (SYNC_PROGRESS, SYNC_ACTIVITY, SYNC_COMPLETE, SYNC_ERROR, JOB_FOUND, JOB_UPDATED)

Listener = Callable[[str, Dict[str, Any]], None]


@dataclass(frozen=True)
class Subscription:
    id: int
    event: Optional[str]  # None = all events


class EventBus:
    """
    Explicit subscribe/unsubscribe registry.

    Usage:
        bus = EventBus()
        sub = bus.subscribe("sync-progress", lambda name, payload: ...)
        bus.publish("sync-progress", {"current": 1, "total": 2})
        bus.unsubscribe(sub)   # safe to call twice
    """

    def __init__(self):
        self._listeners: Dict[int, tuple] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def subscribe(self, event: str, callback: Listener) -> Subscription:
        if event not in EVENT_NAMES:
            raise ValueError(f"Unknown event: {event}")
        return self._add(event, callback)

    def subscribe_all(self, callback: Listener) -> Subscription:
        return self._add(None, callback)

    def _add(self, event: Optional[str], callback: Listener) -> Subscription:
        with self._lock:
            sub = Subscription(id=next(self._ids), event=event)
            self._listeners[sub.id] = (event, callback)
        return sub

    def unsubscribe(self, subscription: Subscription) -> bool:
        """Returns False if the subscription was already removed."""
        with self._lock:
            return self._listeners.pop(subscription.id, None) is not None

    def listener_count(self, event: Optional[str] = None) -> int:
        with self._lock:
            if event is None:
                return len(self._listeners)
            return sum(1 for ev, _ in self._listeners.values() if ev in (event, None))

    def publish(self, event: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            targets: List[Listener] = [
                cb for ev, cb in self._listeners.values() if ev is None or ev == event
            ]
        for callback in targets:
            try:
                callback(event, payload)
            except Exception as e:
                logger.warning(f"Listener for {event} failed: {e}")
