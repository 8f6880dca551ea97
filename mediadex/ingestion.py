"""
Ingestion: reconcile the AssetSource with the index and feed the scheduler.

``sync()`` is the only place the set of known items changes in bulk:

- new ids are registered as UNPROCESSED
- ids whose fingerprint changed are reset to UNPROCESSED, keeping their
  committed attributes searchable until the re-analysis commits
- ids missing from the listing are cancelled and dropped

With auto analysis on, every item that needs analysis is then enqueued.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable

from .faces import FaceRegistry
from .index import MediaIndex
from .scheduler import AnalysisScheduler
from .types import ProcessingState, validate_id
from .work_queue import Priority

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    """Outcome of one reconciliation pass."""
    added: list[str] = field(default_factory=list)
    changed: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    unchanged: int = 0
    queued: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "added": len(self.added),
            "changed": len(self.changed),
            "removed": len(self.removed),
            "unchanged": self.unchanged,
            "queued": len(self.queued),
            "skipped": len(self.skipped),
        }


def needs_analysis(item) -> bool:
    """Never analysed, or analysed for content that has since changed."""
    if item.state == ProcessingState.UNPROCESSED:
        return True
    return item.state.is_terminal and item.is_stale


class IngestionCoordinator:
    """Detects new/changed items and enqueues work with priority."""

    def __init__(
        self,
        index: MediaIndex,
        source,
        scheduler: AnalysisScheduler,
        *,
        faces: FaceRegistry | None = None,
        auto_analysis: bool = True,
    ):
        self._index = index
        self._source = source
        self._scheduler = scheduler
        self._faces = faces
        self.auto_analysis = auto_analysis

    def sync(self) -> SyncResult:
        """Diff the source listing against the index and apply the changes."""
        result = SyncResult()
        listing = {}
        for entry in self._source.list_items():
            try:
                validate_id(entry.id)
            except ValueError as e:
                logger.warning("Ignoring source item: %s", e)
                result.skipped.append(entry.id)
                continue
            # First listing wins on duplicate ids
            listing.setdefault(entry.id, entry)

        known = set(self._index.ids())
        new_entries = [
            (item_id, e.fingerprint, e.created_at, e.kind)
            for item_id, e in listing.items() if item_id not in known
        ]
        result.added = [item.id for item in self._index.register_many(new_entries)]
        for item_id, entry in listing.items():
            if item_id not in known:
                continue
            previous = self._index.get(item_id)
            updated = self._index.update_source(
                item_id, entry.fingerprint, entry.created_at, entry.kind,
            )
            if updated is not None and previous is not None and previous.fingerprint != updated.fingerprint:
                result.changed.append(item_id)
            else:
                result.unchanged += 1

        vanished = sorted(known - set(listing))
        if vanished:
            self._scheduler.cancel(vanished)
            for item_id in vanished:
                if self._index.remove(item_id):
                    result.removed.append(item_id)
                if self._faces is not None:
                    self._faces.forget_item(item_id)

        if self.auto_analysis:
            result.queued = self.enqueue(self.pending_ids())

        logger.info(
            "Sync: %d added, %d changed, %d removed, %d unchanged, %d queued",
            len(result.added), len(result.changed), len(result.removed),
            result.unchanged, len(result.queued),
        )
        return result

    def pending_ids(self) -> list[str]:
        """Items needing analysis, in discovery order."""
        snap = self._index.snapshot()
        pending = [item for item in snap.items.values() if needs_analysis(item)]
        pending.sort(key=lambda item: (item.discovered_seq, item.id))
        return [item.id for item in pending]

    def enqueue(self, ids: Iterable[str], priority: Priority = Priority.NORMAL) -> list[str]:
        """Push eligible items into the scheduler's queue. Returns the ids queued."""
        return self._scheduler.enqueue(ids, priority)

    def cancel(self, ids: Iterable[str]) -> dict:
        return self._scheduler.cancel(ids)

    def pause(self) -> None:
        self._scheduler.pause()

    def resume(self) -> None:
        self._scheduler.resume()
