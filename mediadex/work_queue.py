"""
Priority work queue for pending analysis.

Holds item ids awaiting analysis, ordered by priority level and then by
the queue's ordering mode:

- FIFO (default): discovery/enqueue order
- by year: creation year descending, creation time descending, id

An id is present at most once. ``get()`` blocks while the queue is empty
or paused and hands each entry to exactly one caller. Removal for
cancellation is lazy: removed entries are skipped when they surface.
"""

import heapq
import itertools
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import IntEnum
from typing import Iterable, Optional

from .types import as_utc

logger = logging.getLogger(__name__)


class Priority(IntEnum):
    LOW = 0
    NORMAL = 1
    HIGH = 2


@dataclass(order=True)
class _Entry:
    sort_key: tuple
    item_id: str = field(compare=False)
    priority: Priority = field(compare=False, default=Priority.NORMAL)


class WorkQueue:
    """Thread-safe priority queue of item ids with blocking dequeue."""

    def __init__(self, *, by_year: bool = False):
        self._by_year = by_year
        self._heap: list[_Entry] = []
        self._entries: dict[str, _Entry] = {}
        self._seq = itertools.count()
        self._cond = threading.Condition()
        self._paused = False
        self._closed = False

    @property
    def by_year(self) -> bool:
        return self._by_year

    def _sort_key(self, item_id: str, created_at: datetime, priority: Priority) -> tuple:
        if self._by_year:
            created = as_utc(created_at)
            return (-int(priority), -created.year, -created.timestamp(), item_id)
        return (-int(priority), next(self._seq))

    def put(
        self,
        item_id: str,
        created_at: datetime,
        priority: Priority = Priority.NORMAL,
    ) -> bool:
        """Add an id. Returns False if it is already queued or the queue is closed."""
        with self._cond:
            if self._closed or item_id in self._entries:
                return False
            entry = _Entry(self._sort_key(item_id, created_at, priority), item_id, priority)
            self._entries[item_id] = entry
            heapq.heappush(self._heap, entry)
            self._cond.notify()
            return True

    def get(self, timeout: Optional[float] = None) -> Optional[str]:
        """
        Remove and return the next id.

        Blocks while the queue is empty or paused. Returns None on timeout
        or once the queue is closed.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                if self._closed:
                    return None
                if not self._paused:
                    while self._heap:
                        entry = heapq.heappop(self._heap)
                        if self._entries.get(entry.item_id) is entry:
                            del self._entries[entry.item_id]
                            return entry.item_id
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return None
                self._cond.wait(remaining)

    def remove(self, ids: Iterable[str]) -> list[str]:
        """Drop not-yet-dequeued ids. Returns the ids actually removed."""
        removed = []
        with self._cond:
            for item_id in ids:
                if self._entries.pop(item_id, None) is not None:
                    removed.append(item_id)
            if removed:
                logger.debug("Removed %d queued items", len(removed))
            # Compact once stale entries dominate the heap
            if len(self._heap) > 2 * len(self._entries) + 64:
                self._heap = [e for e in self._heap if self._entries.get(e.item_id) is e]
                heapq.heapify(self._heap)
        return removed

    def pending_ids(self) -> list[str]:
        """Queued ids in dequeue order."""
        with self._cond:
            return [e.item_id for e in sorted(self._entries.values())]

    def pause(self) -> None:
        with self._cond:
            self._paused = True

    def resume(self) -> None:
        with self._cond:
            self._paused = False
            self._cond.notify_all()

    @property
    def paused(self) -> bool:
        return self._paused

    def clear(self) -> list[str]:
        """Remove everything. Returns the ids that were queued."""
        with self._cond:
            ids = [e.item_id for e in sorted(self._entries.values())]
            self._entries.clear()
            self._heap.clear()
        return ids

    def close(self) -> None:
        """Wake all waiters; subsequent get() calls return None."""
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def stats(self) -> dict:
        with self._cond:
            by_priority: dict[str, int] = {}
            for e in self._entries.values():
                by_priority[e.priority.name.lower()] = by_priority.get(e.priority.name.lower(), 0) + 1
            return {
                "pending": len(self._entries),
                "paused": self._paused,
                "closed": self._closed,
                "order": "year" if self._by_year else "fifo",
                "by_priority": by_priority,
            }

    def __len__(self) -> int:
        with self._cond:
            return len(self._entries)

    def __contains__(self, item_id: str) -> bool:
        with self._cond:
            return item_id in self._entries

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
