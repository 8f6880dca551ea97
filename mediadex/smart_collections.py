"""
Smart collections: named predicates materialized from the index.

Collections are recomputed from an index snapshot, never edited by hand,
and recomputation never touches item state. Members are ordered newest
first (ties by id) so two recomputes of an unchanged index are identical.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from .events import COLLECTIONS_CHANGED, EventBus
from .index import IndexSnapshot, MediaIndex
from .types import MediaItem, ProcessingState, SmartCollection, as_utc

logger = logging.getLogger(__name__)


def _analysed(item: MediaItem) -> bool:
    """Has committed analysis attributes that count for derived collections."""
    return item.committed and item.state != ProcessingState.FAILED


@dataclass(frozen=True)
class CollectionRule:
    name: str
    predicate: Callable[[MediaItem], bool]
    derived: bool = True

    def matches(self, item: MediaItem) -> bool:
        if self.derived and not _analysed(item):
            return False
        return self.predicate(item)


FAVORITES = "Favorites"

RULES: tuple[CollectionRule, ...] = (
    CollectionRule("Beach & Vacation", lambda i: bool(i.attributes.tags & {"beach", "vacation"})),
    CollectionRule("Family & Friends", lambda i: bool(i.attributes.faces)),
    CollectionRule("Nature & Landscapes", lambda i: bool(i.attributes.tags & {"nature", "landscape"})),
    CollectionRule("Food & Dining", lambda i: "food" in i.attributes.tags),
    CollectionRule("Screenshots & Documents", lambda i: bool(i.attributes.text)),
    # Favorite is a user edit, independent of analysis
    CollectionRule(FAVORITES, lambda i: i.is_favorite, derived=False),
)


def _newest_first(item: MediaItem):
    return (-as_utc(item.created_at).timestamp(), item.id)


class CollectionMaterializer:
    """Holds the ordered rule list and the cached membership of each rule."""

    def __init__(
        self,
        index: MediaIndex,
        rules: tuple[CollectionRule, ...] = RULES,
        *,
        events: Optional[EventBus] = None,
    ):
        self._index = index
        self._rules = rules
        self._events = events
        self._lock = threading.Lock()
        self._collections: dict[str, SmartCollection] = {
            rule.name: SmartCollection(rule.name, (), -1) for rule in rules
        }

    @property
    def names(self) -> list[str]:
        return [rule.name for rule in self._rules]

    def _evaluate(self, snap: IndexSnapshot, rules) -> dict[str, SmartCollection]:
        items = sorted(snap.items.values(), key=_newest_first)
        return {
            rule.name: SmartCollection(
                rule.name,
                tuple(item.id for item in items if rule.matches(item)),
                snap.version,
            )
            for rule in rules
        }

    def recompute(self, names: Optional[Iterable[str]] = None) -> list[SmartCollection]:
        """
        Re-evaluate rules against the current snapshot (all of them by default).

        Returns every collection in rule order. Unknown names raise KeyError.
        """
        rules = self._rules
        if names is not None:
            wanted = set(names)
            unknown = wanted - set(self.names)
            if unknown:
                raise KeyError(sorted(unknown)[0])
            rules = tuple(rule for rule in self._rules if rule.name in wanted)
        snap = self._index.snapshot()
        fresh = self._evaluate(snap, rules)
        changed = []
        with self._lock:
            for name, collection in fresh.items():
                # A concurrent recompute may already hold a newer view
                if collection.version < self._collections[name].version:
                    continue
                if self._collections[name].members != collection.members:
                    changed.append(name)
                self._collections[name] = collection
            result = [self._collections[rule.name] for rule in self._rules]
        logger.debug("Recomputed collections at version %d (%d changed)", snap.version, len(changed))
        if changed and self._events:
            self._events.publish(COLLECTIONS_CHANGED, names=changed, version=snap.version)
        return result

    def get(self, name: str) -> SmartCollection:
        with self._lock:
            if name not in self._collections:
                raise KeyError(name)
            return self._collections[name]

    def list(self) -> list[tuple[str, int, tuple[str, ...]]]:
        """(name, count, member ids) per collection, in rule order."""
        with self._lock:
            return [
                (c.name, c.count, c.members)
                for c in (self._collections[rule.name] for rule in self._rules)
            ]
