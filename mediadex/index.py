"""
Concurrent multi-attribute media index.

The index keeps every known MediaItem plus inverted indices over the
attributes of items that have a committed analysis:

- tag      -> item ids
- token    -> item ids   (detected text + location, whitespace-tokenized)
- kind     -> item ids
- date     -> sorted (created_at, id) pairs
- favorites (every known item; favorite is a user edit, not analysis)

State is published as immutable IndexSnapshot objects. Readers grab the
current snapshot reference and never lock, so a long scan sees one
consistent point-in-time view. Writers take a per-item lock (striped)
for the whole read-check-write of that item, then swap in a new snapshot
under a short publish lock.

Snapshots share structure. The item table and the posting maps are split
into hash shards and the date index into sorted chunks, so a write copies
only the shards and chunk it touches rather than the whole index.

Every snapshot carries a monotonically increasing version stamp.
"""

import bisect
import logging
import threading
from collections.abc import Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, Iterator, Optional

from .errors import IndexCorruption, InvalidTransition
from .types import (
    Attributes,
    MediaItem,
    MediaKind,
    ProcessingState,
    as_utc,
    is_forward_transition,
    normalize_tag,
    validate_id,
)

logger = logging.getLogger(__name__)

LOCK_STRIPES = 64
MAP_SHARDS = 256
DATE_CHUNK = 512

# Largest string sorting after any real id, for inclusive date-range bisects
_MAX_ID = "\U0010ffff"

_MISSING = object()

ChangeListener = Callable[[Optional[MediaItem], Optional[MediaItem]], None]


class ShardedMap(Mapping):
    """
    Immutable mapping split into hash shards.

    ``evolve`` returns a new map that shares every shard it did not touch,
    so an update costs one shard copy instead of a full dict copy. Shard
    dicts are never mutated once a map holding them has been returned.
    """

    __slots__ = ("_shards", "_len")

    def __init__(self, shards: Optional[tuple] = None, length: int = 0):
        self._shards = shards if shards is not None else ({},) * MAP_SHARDS
        self._len = length

    @classmethod
    def from_dict(cls, data: Mapping) -> "ShardedMap":
        buckets = [{} for _ in range(MAP_SHARDS)]
        for key, value in data.items():
            buckets[hash(key) % MAP_SHARDS][key] = value
        return cls(tuple(buckets), len(data))

    def _shard(self, key) -> dict:
        return self._shards[hash(key) % MAP_SHARDS]

    def __getitem__(self, key):
        return self._shard(key)[key]

    def get(self, key, default=None):
        return self._shard(key).get(key, default)

    def __contains__(self, key) -> bool:
        return key in self._shard(key)

    def __iter__(self):
        for shard in self._shards:
            yield from shard

    def __len__(self) -> int:
        return self._len

    def __repr__(self) -> str:
        return f"ShardedMap({dict(self)!r})"

    def evolve(self, changes: Mapping) -> "ShardedMap":
        """New map with ``changes`` applied. A value of None deletes the key."""
        if not changes:
            return self
        shards = list(self._shards)
        copied: dict[int, dict] = {}
        length = self._len
        for key, value in changes.items():
            n = hash(key) % MAP_SHARDS
            shard = copied.get(n)
            if shard is None:
                shard = copied[n] = dict(shards[n])
            if value is None:
                if shard.pop(key, _MISSING) is not _MISSING:
                    length -= 1
            else:
                if key not in shard:
                    length += 1
                shard[key] = value
        for n, shard in copied.items():
            shards[n] = shard
        return ShardedMap(tuple(shards), length)


class SortedKeys(Sequence):
    """
    Immutable sorted sequence stored as a tuple of bounded chunks.

    ``insert`` and ``remove`` copy one chunk plus the chunk table.
    """

    __slots__ = ("_chunks", "_maxes", "_len")

    def __init__(self, chunks: tuple = (), length: int = 0):
        self._chunks = chunks
        self._maxes = tuple(c[-1] for c in chunks)
        self._len = length

    @classmethod
    def from_sorted(cls, keys: list) -> "SortedKeys":
        chunks = tuple(
            tuple(keys[i:i + DATE_CHUNK]) for i in range(0, len(keys), DATE_CHUNK)
        )
        return cls(chunks, len(keys))

    def __len__(self) -> int:
        return self._len

    def __iter__(self):
        for chunk in self._chunks:
            yield from chunk

    def __getitem__(self, i):
        if isinstance(i, slice):
            return tuple(self)[i]
        if i < 0:
            i += self._len
        for chunk in self._chunks:
            if i < len(chunk):
                return chunk[i]
            i -= len(chunk)
        raise IndexError("SortedKeys index out of range")

    def __eq__(self, other) -> bool:
        if not isinstance(other, Sequence):
            return NotImplemented
        return len(self) == len(other) and all(a == b for a, b in zip(self, other))

    __hash__ = None

    def __contains__(self, key) -> bool:
        n = bisect.bisect_left(self._maxes, key)
        if n == len(self._chunks):
            return False
        chunk = self._chunks[n]
        pos = bisect.bisect_left(chunk, key)
        return pos < len(chunk) and chunk[pos] == key

    def between(self, lo=None, hi=None) -> list:
        """Keys k with lo <= k <= hi (None leaves that side open)."""
        out = []
        start = 0 if lo is None else bisect.bisect_left(self._maxes, lo)
        for chunk in self._chunks[start:]:
            if hi is not None and chunk[0] > hi:
                break
            a = 0 if lo is None else bisect.bisect_left(chunk, lo)
            b = len(chunk) if hi is None else bisect.bisect_right(chunk, hi)
            out.extend(chunk[a:b])
            if b < len(chunk):
                break
        return out

    def insert(self, key) -> "SortedKeys":
        """Raises ValueError if the key is already present."""
        if not self._chunks:
            return SortedKeys(((key,),), 1)
        n = min(bisect.bisect_left(self._maxes, key), len(self._chunks) - 1)
        chunk = list(self._chunks[n])
        pos = bisect.bisect_left(chunk, key)
        if pos < len(chunk) and chunk[pos] == key:
            raise ValueError(key)
        chunk.insert(pos, key)
        if len(chunk) > 2 * DATE_CHUNK:
            replacement = (tuple(chunk[:DATE_CHUNK]), tuple(chunk[DATE_CHUNK:]))
        else:
            replacement = (tuple(chunk),)
        return SortedKeys(self._chunks[:n] + replacement + self._chunks[n + 1:], self._len + 1)

    def remove(self, key) -> "SortedKeys":
        """Raises KeyError if the key is absent."""
        n = bisect.bisect_left(self._maxes, key)
        if n == len(self._chunks):
            raise KeyError(key)
        chunk = self._chunks[n]
        pos = bisect.bisect_left(chunk, key)
        if pos >= len(chunk) or chunk[pos] != key:
            raise KeyError(key)
        rest = chunk[:pos] + chunk[pos + 1:]
        replacement = (rest,) if rest else ()
        return SortedKeys(self._chunks[:n] + replacement + self._chunks[n + 1:], self._len - 1)


@dataclass(frozen=True)
class _Entries:
    """The index keys one committed item contributes."""
    tags: frozenset[str]
    tokens: frozenset[str]
    kind: MediaKind
    date_key: tuple[datetime, str]


def _contribution(item: Optional[MediaItem]) -> Optional[_Entries]:
    if item is None or not item.committed:
        return None
    return _Entries(
        tags=item.attributes.tags,
        tokens=item.attributes.tokens(),
        kind=item.kind,
        date_key=(as_utc(item.created_at), item.id),
    )


@dataclass(frozen=True)
class IndexSnapshot:
    """Immutable point-in-time view of the index."""
    version: int
    items: Mapping[str, MediaItem]
    by_tag: Mapping[str, frozenset[str]]
    by_token: Mapping[str, frozenset[str]]
    by_kind: Mapping[MediaKind, frozenset[str]]
    by_date: SortedKeys
    favorites: frozenset[str]

    def get(self, item_id: str) -> Optional[MediaItem]:
        return self.items.get(item_id)

    def lookup_by_tag(self, tag: str) -> frozenset[str]:
        return self.by_tag.get(normalize_tag(tag), frozenset())

    def lookup_by_token(self, token: str) -> frozenset[str]:
        return self.by_token.get(token.lower(), frozenset())

    def lookup_by_kind(self, kind: MediaKind) -> frozenset[str]:
        return self.by_kind.get(kind, frozenset())

    def range_by_date(
        self, start: Optional[datetime] = None, end: Optional[datetime] = None,
    ) -> list[str]:
        """Ids of indexed items created within [start, end], oldest first."""
        lo = None if start is None else (as_utc(start), "")
        hi = None if end is None else (as_utc(end), _MAX_ID)
        return [item_id for _, item_id in self.by_date.between(lo, hi)]

    def indexed_ids(self) -> list[str]:
        """Ids contributing index entries, oldest first."""
        return [item_id for _, item_id in self.by_date]

    def __len__(self) -> int:
        return len(self.items)


def _build(items: Iterable[MediaItem], version: int) -> IndexSnapshot:
    """Compute a snapshot from scratch."""
    all_items: dict[str, MediaItem] = {}
    by_tag: dict[str, set[str]] = {}
    by_token: dict[str, set[str]] = {}
    by_kind: dict[MediaKind, set[str]] = {}
    dates: list[tuple[datetime, str]] = []
    favorites = set()
    for item in items:
        all_items[item.id] = item
        if item.is_favorite:
            favorites.add(item.id)
        entries = _contribution(item)
        if entries is None:
            continue
        for tag in entries.tags:
            by_tag.setdefault(tag, set()).add(item.id)
        for token in entries.tokens:
            by_token.setdefault(token, set()).add(item.id)
        by_kind.setdefault(entries.kind, set()).add(item.id)
        dates.append(entries.date_key)
    dates.sort()
    return IndexSnapshot(
        version=version,
        items=ShardedMap.from_dict(all_items),
        by_tag=ShardedMap.from_dict({k: frozenset(v) for k, v in by_tag.items()}),
        by_token=ShardedMap.from_dict({k: frozenset(v) for k, v in by_token.items()}),
        by_kind=ShardedMap.from_dict({k: frozenset(v) for k, v in by_kind.items()}),
        by_date=SortedKeys.from_sorted(dates),
        favorites=frozenset(favorites),
    )


def _swap_postings(postings: ShardedMap, item_id: str, old_keys, new_keys) -> ShardedMap:
    """Move item_id from old_keys to new_keys. Returns postings unchanged if equal."""
    old_keys = frozenset(old_keys)
    new_keys = frozenset(new_keys)
    if old_keys == new_keys:
        return postings
    changes = {}
    for key in old_keys - new_keys:
        ids = postings.get(key, frozenset())
        if item_id not in ids:
            raise IndexCorruption(f"Missing index entry {key!r} for {item_id}")
        changes[key] = (ids - {item_id}) or None
    for key in new_keys - old_keys:
        ids = postings.get(key, frozenset())
        if item_id in ids:
            raise IndexCorruption(f"Duplicate index entry {key!r} for {item_id}")
        changes[key] = ids | {item_id}
    return postings.evolve(changes)


def _swap_date(by_date: SortedKeys, old_key, new_key) -> SortedKeys:
    if old_key == new_key:
        return by_date
    if old_key is not None:
        try:
            by_date = by_date.remove(old_key)
        except KeyError:
            raise IndexCorruption(f"Missing date entry for {old_key[1]}") from None
    if new_key is not None:
        try:
            by_date = by_date.insert(new_key)
        except ValueError:
            raise IndexCorruption(f"Duplicate date entry for {new_key[1]}") from None
    return by_date


def _apply(snapshot: IndexSnapshot, changes) -> IndexSnapshot:
    """Derive the next snapshot from a list of (old, new) item replacements."""
    items = snapshot.items.evolve({(new or old).id: new for old, new in changes})
    by_tag = snapshot.by_tag
    by_token = snapshot.by_token
    by_kind = snapshot.by_kind
    by_date = snapshot.by_date
    favorites = snapshot.favorites

    for old, new in changes:
        item_id = (new or old).id
        old_e = _contribution(old)
        new_e = _contribution(new)

        was_fav = old is not None and old.is_favorite
        is_fav = new is not None and new.is_favorite
        if was_fav and not is_fav:
            favorites = favorites - {item_id}
        elif is_fav and not was_fav:
            favorites = favorites | {item_id}

        if old_e is None and new_e is None:
            continue
        by_tag = _swap_postings(
            by_tag, item_id,
            old_e.tags if old_e else (), new_e.tags if new_e else (),
        )
        by_token = _swap_postings(
            by_token, item_id,
            old_e.tokens if old_e else (), new_e.tokens if new_e else (),
        )
        by_kind = _swap_postings(
            by_kind, item_id,
            (old_e.kind,) if old_e else (), (new_e.kind,) if new_e else (),
        )
        by_date = _swap_date(
            by_date,
            old_e.date_key if old_e else None,
            new_e.date_key if new_e else None,
        )

    return IndexSnapshot(
        version=snapshot.version + 1,
        items=items,
        by_tag=by_tag,
        by_token=by_token,
        by_kind=by_kind,
        by_date=by_date,
        favorites=favorites,
    )


def settle(item: MediaItem) -> MediaItem:
    """Resolve an in-flight state to where the item rests with no work running.

    Used when restoring from a snapshot or rebuilding: nothing is queued
    or processing at that point.
    """
    if item.state not in (ProcessingState.QUEUED, ProcessingState.PROCESSING):
        return item
    fallback = ProcessingState.PROCESSED if item.committed else ProcessingState.UNPROCESSED
    return item.evolve(state=item.prior_state or fallback, prior_state=None)


class MediaIndex:
    """
    Thread-safe store of MediaItems and their inverted indices.

    All mutators are scoped to one item: they hold that item's lock for
    the whole operation, so writers for unrelated items never wait on
    each other except for the brief snapshot swap.
    """

    def __init__(
        self,
        items: Iterable[MediaItem] = (),
        *,
        listener: Optional[ChangeListener] = None,
        version: int = 0,
    ):
        self._publish_lock = threading.Lock()
        self._stripes = [threading.RLock() for _ in range(LOCK_STRIPES)]
        self._listener = listener
        self._snapshot = _build((settle(i) for i in items), version)
        self._next_seq = max(
            (i.discovered_seq for i in self._snapshot.items.values()), default=0,
        ) + 1

    # -------------------------------------------------------------------------
    # Read operations (lock-free)
    # -------------------------------------------------------------------------

    def snapshot(self) -> IndexSnapshot:
        return self._snapshot

    @property
    def version(self) -> int:
        return self._snapshot.version

    def get(self, item_id: str) -> Optional[MediaItem]:
        return self._snapshot.get(item_id)

    def lookup_by_tag(self, tag: str) -> frozenset[str]:
        return self._snapshot.lookup_by_tag(tag)

    def lookup_by_token(self, token: str) -> frozenset[str]:
        return self._snapshot.lookup_by_token(token)

    def range_by_date(self, start=None, end=None) -> list[str]:
        return self._snapshot.range_by_date(start, end)

    def ids(self) -> list[str]:
        return list(self._snapshot.items)

    def __len__(self) -> int:
        return len(self._snapshot)

    def __contains__(self, item_id: str) -> bool:
        return item_id in self._snapshot.items

    # -------------------------------------------------------------------------
    # Write primitives
    # -------------------------------------------------------------------------

    @contextmanager
    def locked(self, item_id: str) -> Iterator[None]:
        """Hold the per-item lock. Reentrant, so mutators may be called inside."""
        lock = self._stripes[hash(item_id) % LOCK_STRIPES]
        with lock:
            yield

    @contextmanager
    def locked_many(self, item_ids: Iterable[str]) -> Iterator[None]:
        """Hold the locks of several items, acquired in stripe order."""
        stripes = sorted({hash(i) % LOCK_STRIPES for i in item_ids})
        for n in stripes:
            self._stripes[n].acquire()
        try:
            yield
        finally:
            for n in reversed(stripes):
                self._stripes[n].release()

    def _publish(self, old: Optional[MediaItem], new: Optional[MediaItem]) -> IndexSnapshot:
        """Swap in the snapshot reflecting old -> new. Caller holds the item lock."""
        return self._publish_many([(old, new)])

    def _publish_many(self, changes: list) -> IndexSnapshot:
        """Apply (old, new) replacements as one snapshot. Caller holds their item locks."""
        with self._publish_lock:
            for old, new in changes:
                current = self._snapshot.items.get((new or old).id)
                if current != old:
                    raise IndexCorruption(
                        f"Concurrent modification of {(new or old).id} outside its item lock"
                    )
            self._snapshot = _apply(self._snapshot, changes)
            snap = self._snapshot
        if self._listener is not None:
            for old, new in changes:
                self._listener(old, new)
        return snap

    # -------------------------------------------------------------------------
    # Item lifecycle
    # -------------------------------------------------------------------------

    def register(
        self,
        item_id: str,
        fingerprint: str,
        created_at: datetime,
        kind: MediaKind = MediaKind.PHOTO,
    ) -> MediaItem:
        """Add a newly discovered item in state UNPROCESSED."""
        validate_id(item_id)
        with self.locked(item_id):
            existing = self.get(item_id)
            if existing is not None:
                return existing
            with self._publish_lock:
                seq = self._next_seq
                self._next_seq += 1
            item = MediaItem(
                id=item_id,
                fingerprint=fingerprint,
                created_at=as_utc(created_at),
                kind=kind,
                discovered_seq=seq,
            )
            self._publish(None, item)
            return item

    def register_many(
        self, entries: Iterable[tuple[str, str, datetime, MediaKind]],
    ) -> list[MediaItem]:
        """
        Add many newly discovered items in one snapshot swap.

        ``entries`` are (id, fingerprint, created_at, kind) tuples. Ids
        already known, or repeated within ``entries``, are skipped.
        Discovery order follows ``entries``. Returns the items added.
        """
        entries = list(entries)
        for item_id, *_ in entries:
            validate_id(item_id)
        with self.locked_many(e[0] for e in entries):
            fresh = {}
            for item_id, fingerprint, created_at, kind in entries:
                if item_id in fresh or self.get(item_id) is not None:
                    continue
                fresh[item_id] = (fingerprint, created_at, kind)
            if not fresh:
                return []
            with self._publish_lock:
                first = self._next_seq
                self._next_seq += len(fresh)
            added = [
                MediaItem(
                    id=item_id,
                    fingerprint=fingerprint,
                    created_at=as_utc(created_at),
                    kind=kind,
                    discovered_seq=first + n,
                )
                for n, (item_id, (fingerprint, created_at, kind)) in enumerate(fresh.items())
            ]
            self._publish_many([(None, item) for item in added])
        logger.debug("Registered %d items", len(added))
        return added

    def update_source(
        self,
        item_id: str,
        fingerprint: str,
        created_at: datetime,
        kind: MediaKind,
    ) -> Optional[MediaItem]:
        """
        Record the source's current fingerprint / creation time / kind.

        A terminal item whose content changed is reset to UNPROCESSED; its
        committed attributes stay indexed until re-analysis commits.
        Returns the updated item, or None if nothing changed.
        """
        with self.locked(item_id):
            item = self.get(item_id)
            if item is None:
                return None
            created_at = as_utc(created_at)
            if (item.fingerprint, item.created_at, item.kind) == (fingerprint, created_at, kind):
                return None
            updated = item.evolve(fingerprint=fingerprint, created_at=created_at, kind=kind)
            if updated.state.is_terminal and updated.is_stale:
                updated = updated.evolve(state=ProcessingState.UNPROCESSED)
            self._publish(item, updated)
            return updated

    def remove(self, item_id: str) -> bool:
        """Forget an item entirely (it vanished from the source)."""
        with self.locked(item_id):
            item = self.get(item_id)
            if item is None:
                return False
            self._publish(item, None)
            return True

    def mark_queued(self, item_id: str) -> bool:
        """
        UNPROCESSED -> QUEUED, or re-analyze PROCESSED/FAILED -> QUEUED.

        Returns False (and changes nothing) if the item is unknown or
        already QUEUED / PROCESSING: an item is never enqueued twice.
        """
        with self.locked(item_id):
            item = self.get(item_id)
            if item is None or not is_forward_transition(item.state, ProcessingState.QUEUED):
                return False
            self._publish(item, item.evolve(
                state=ProcessingState.QUEUED, prior_state=item.state,
            ))
            return True

    def claim(self, item_id: str) -> Optional[MediaItem]:
        """QUEUED -> PROCESSING. Returns the claimed item, or None if not queued."""
        with self.locked(item_id):
            item = self.get(item_id)
            if item is None or item.state != ProcessingState.QUEUED:
                return None
            claimed = item.evolve(state=ProcessingState.PROCESSING)
            self._publish(item, claimed)
            return claimed

    def rollback(self, item_id: str) -> bool:
        """Undo a queue/claim: restore the state held before the item was queued."""
        with self.locked(item_id):
            item = self.get(item_id)
            if item is None or item.state not in (
                ProcessingState.QUEUED, ProcessingState.PROCESSING,
            ):
                return False
            self._publish(item, settle(item))
            return True

    def commit(
        self,
        item_id: str,
        old_attrs: Attributes,
        new_attrs: Attributes,
        *,
        state: ProcessingState = ProcessingState.PROCESSED,
        fingerprint: Optional[str] = None,
    ) -> bool:
        """
        Atomically swap an item's analysis attributes and index entries.

        ``old_attrs`` must equal the currently committed attributes; a
        mismatch means the commit was already applied or the index diverged,
        and raises IndexCorruption. Returns False (discarding the result)
        if the item is no longer PROCESSING, e.g. after a rebuild.
        """
        if state not in (ProcessingState.PROCESSED, ProcessingState.FAILED):
            raise InvalidTransition(f"commit cannot move {item_id} to {state.value}")
        with self.locked(item_id):
            item = self.get(item_id)
            if item is None or item.state != ProcessingState.PROCESSING:
                logger.debug("Discarding commit for %s (not processing)", item_id)
                return False
            if item.attributes != old_attrs:
                raise IndexCorruption(
                    f"Commit for {item_id} does not match committed attributes"
                )
            updated = item.evolve(
                attributes=new_attrs,
                state=state,
                last_analyzed_fingerprint=fingerprint or item.fingerprint,
                prior_state=None,
            )
            snap = self._publish(item, updated)
            self._verify_item(snap, updated, previous=item)
            return True

    def toggle_favorite(self, item_id: str) -> bool:
        """Flip the favorite flag. Visible to readers immediately. Returns new value."""
        with self.locked(item_id):
            item = self.get(item_id)
            if item is None:
                raise KeyError(item_id)
            updated = item.evolve(is_favorite=not item.is_favorite)
            self._publish(item, updated)
            return updated.is_favorite

    def rebuild(self, items: Iterable[MediaItem]) -> IndexSnapshot:
        """Replace the whole index with one computed from item records.

        In-flight states are settled. The version stamp keeps increasing.
        """
        settled = [settle(i) for i in items]
        for lock in self._stripes:
            lock.acquire()
        try:
            with self._publish_lock:
                self._snapshot = _build(settled, self._snapshot.version + 1)
                self._next_seq = max(
                    (i.discovered_seq for i in settled), default=0,
                ) + 1
                snap = self._snapshot
        finally:
            for lock in reversed(self._stripes):
                lock.release()
        logger.info("Index rebuilt: %d items at version %d", len(settled), snap.version)
        return snap

    # -------------------------------------------------------------------------
    # Consistency checks
    # -------------------------------------------------------------------------

    @staticmethod
    def _verify_item(snap: IndexSnapshot, item: MediaItem,
                     previous: Optional[MediaItem] = None) -> None:
        """Check one item's entries against its attributes in a snapshot."""
        entries = _contribution(item)
        old_entries = _contribution(previous)
        tags = entries.tags if entries else frozenset()
        tokens = entries.tokens if entries else frozenset()
        for tag in tags:
            if item.id not in snap.by_tag.get(tag, ()):
                raise IndexCorruption(f"Tag {tag!r} missing for {item.id}")
        for token in tokens:
            if item.id not in snap.by_token.get(token, ()):
                raise IndexCorruption(f"Token {token!r} missing for {item.id}")
        if old_entries:
            for tag in old_entries.tags - tags:
                if item.id in snap.by_tag.get(tag, ()):
                    raise IndexCorruption(f"Stale tag {tag!r} for {item.id}")
            for token in old_entries.tokens - tokens:
                if item.id in snap.by_token.get(token, ()):
                    raise IndexCorruption(f"Stale token {token!r} for {item.id}")

    def verify(self) -> IndexSnapshot:
        """Full consistency check of the current snapshot.

        Raises IndexCorruption if any inverted index disagrees with the
        committed attributes of the items.
        """
        snap = self._snapshot
        expected = _build(snap.items.values(), snap.version)
        for name in ("by_tag", "by_token", "by_kind"):
            if dict(getattr(snap, name)) != dict(getattr(expected, name)):
                raise IndexCorruption(f"Inverted index {name} is inconsistent")
        if snap.by_date != expected.by_date:
            raise IndexCorruption("Date index is inconsistent")
        if snap.favorites != expected.favorites:
            raise IndexCorruption("Favorites index is inconsistent")
        return snap


__all__ = ["IndexSnapshot", "MediaIndex", "settle"]
