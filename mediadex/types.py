"""
Data types for the media library.

Items are immutable snapshots: every change (state transition, analysis
commit, favorite toggle) produces a new MediaItem via ``evolve()`` and is
published by the MediaIndex. Nothing holds a mutable item across threads.
"""

import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(dt: datetime) -> datetime:
    """Treat naive datetimes as UTC; convert aware ones to UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_utc(dt: datetime) -> str:
    """Canonical storage format: YYYY-MM-DDTHH:MM:SS.ffffff (UTC, no suffix)."""
    return as_utc(dt).strftime("%Y-%m-%dT%H:%M:%S.%f")


def parse_utc_timestamp(ts: str) -> datetime:
    """Parse a stored timestamp string to a timezone-aware UTC datetime.

    Handles the canonical format (no suffix) as well as values that
    carry a 'Z' or '+00:00' suffix.
    """
    ts = ts.replace("Z", "+00:00")
    dt = datetime.fromisoformat(ts)
    return as_utc(dt)


def tokenize(text: Optional[str]) -> list[str]:
    """Case-insensitive whitespace tokenization."""
    if not text:
        return []
    return text.lower().split()


def normalize_tag(tag: str) -> str:
    return tag.strip().casefold()


def normalize_tags(tags) -> frozenset[str]:
    """Casefold and strip tags, dropping empties."""
    return frozenset(t for t in (normalize_tag(str(x)) for x in tags) if t)


MAX_ID_LENGTH = 1024

# Control characters are never valid in an item id
_ID_BLOCKED_RE = re.compile(r'[\x00-\x1f\x7f]')


def validate_id(id: str) -> None:
    """Validate an item ID: length and no control characters."""
    if not id or len(id) > MAX_ID_LENGTH:
        raise ValueError(f"ID must be 1-{MAX_ID_LENGTH} characters")
    if _ID_BLOCKED_RE.search(id):
        raise ValueError(f"ID contains invalid characters: {id!r}")


class MediaKind(str, Enum):
    PHOTO = "photo"
    VIDEO = "video"


class ProcessingState(str, Enum):
    UNPROCESSED = "unprocessed"
    QUEUED = "queued"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ProcessingState.PROCESSED, ProcessingState.FAILED)


# Forward edges of the per-item state machine. PROCESSED/FAILED -> QUEUED
# is the explicit re-analyze transition.
FORWARD_TRANSITIONS: dict[ProcessingState, frozenset[ProcessingState]] = {
    ProcessingState.UNPROCESSED: frozenset({ProcessingState.QUEUED}),
    ProcessingState.QUEUED: frozenset({ProcessingState.PROCESSING}),
    ProcessingState.PROCESSING: frozenset({
        ProcessingState.PROCESSED, ProcessingState.FAILED,
    }),
    ProcessingState.PROCESSED: frozenset({ProcessingState.QUEUED}),
    ProcessingState.FAILED: frozenset({ProcessingState.QUEUED}),
}


def is_forward_transition(old: ProcessingState, new: ProcessingState) -> bool:
    return new in FORWARD_TRANSITIONS[old]


class MergePolicy(str, Enum):
    """How a new analysis pass combines with previously committed attributes."""
    REPLACE = "replace"
    MERGE = "merge"


@dataclass(frozen=True)
class Attributes:
    """
    Analysis-derived attributes of an item.

    Only ever written as a whole by an analysis commit. The favorite flag
    is a user edit and lives on MediaItem, not here.
    """
    tags: frozenset[str] = frozenset()
    text: str = ""
    faces: frozenset[str] = frozenset()
    location: Optional[str] = None

    def tokens(self) -> frozenset[str]:
        """Tokens contributed to the text-token index (detected text + location)."""
        return frozenset(tokenize(self.text)) | frozenset(tokenize(self.location))

    def to_dict(self) -> dict:
        return {
            "tags": sorted(self.tags),
            "text": self.text,
            "faces": sorted(self.faces),
            "location": self.location,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Attributes":
        return cls(
            tags=normalize_tags(d.get("tags", ())),
            text=d.get("text") or "",
            faces=frozenset(d.get("faces", ())),
            location=d.get("location") or None,
        )


EMPTY_ATTRIBUTES = Attributes()


@dataclass(frozen=True)
class MediaItem:
    """
    A media item known to the library.

    Attributes:
        id: Stable identity from the AssetSource (immutable)
        fingerprint: Current content fingerprint reported by the source
        created_at: Creation timestamp (UTC)
        kind: Photo or video
        attributes: Last committed analysis attributes
        is_favorite: User edit, independent of analysis
        state: Processing state
        last_analyzed_fingerprint: Fingerprint of the content that produced
            ``attributes``; None until the first commit
        prior_state: State held before the item was queued, restored on cancel
        discovered_seq: Discovery order (monotonic per library)
    """
    id: str
    fingerprint: str
    created_at: datetime
    kind: MediaKind = MediaKind.PHOTO
    attributes: Attributes = EMPTY_ATTRIBUTES
    is_favorite: bool = False
    state: ProcessingState = ProcessingState.UNPROCESSED
    last_analyzed_fingerprint: Optional[str] = None
    prior_state: Optional[ProcessingState] = None
    discovered_seq: int = 0

    @property
    def committed(self) -> bool:
        """True once an analysis result (success or failure) has been committed."""
        return self.last_analyzed_fingerprint is not None

    @property
    def is_stale(self) -> bool:
        """Committed, but for content that has since changed."""
        return self.committed and self.fingerprint != self.last_analyzed_fingerprint

    def evolve(self, **changes) -> "MediaItem":
        return replace(self, **changes)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "fingerprint": self.fingerprint,
            "created_at": format_utc(self.created_at),
            "kind": self.kind.value,
            "attributes": self.attributes.to_dict(),
            "is_favorite": self.is_favorite,
            "state": self.state.value,
            "last_analyzed_fingerprint": self.last_analyzed_fingerprint,
            "discovered_seq": self.discovered_seq,
        }

    def __str__(self) -> str:
        tags = ",".join(sorted(self.attributes.tags))
        return f"{self.id} [{self.state.value}] {tags}"


@dataclass
class FaceCluster:
    """A group of detected faces judged to be the same person."""
    id: str
    label: Optional[str] = None
    members: set[str] = field(default_factory=set)


@dataclass(frozen=True)
class SmartCollection:
    """Materialized membership of a named predicate at an index version."""
    name: str
    members: tuple[str, ...]
    version: int

    @property
    def count(self) -> int:
        return len(self.members)


# ---------------------------------------------------------------------------
# Search filters
# ---------------------------------------------------------------------------

DATE_PRESETS = ("all_time", "this_week", "this_month", "this_year", "last_year")


@dataclass(frozen=True)
class DateRange:
    """Inclusive creation-time range."""
    start: datetime
    end: datetime

    def contains(self, ts: datetime) -> bool:
        return as_utc(self.start) <= as_utc(ts) <= as_utc(self.end)

    @property
    def is_inverted(self) -> bool:
        return as_utc(self.start) > as_utc(self.end)

    @classmethod
    def preset(cls, name: str, now: Optional[datetime] = None) -> Optional["DateRange"]:
        """Build one of the named ranges. ``all_time`` means no constraint."""
        now = as_utc(now or utc_now())
        midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
        if name == "all_time":
            return None
        if name == "this_week":
            return cls(midnight - timedelta(days=now.weekday()), now)
        if name == "this_month":
            return cls(midnight.replace(day=1), now)
        if name == "this_year":
            return cls(midnight.replace(month=1, day=1), now)
        if name == "last_year":
            start = midnight.replace(year=now.year - 1, month=1, day=1)
            end = midnight.replace(month=1, day=1) - timedelta(microseconds=1)
            return cls(start, end)
        raise ValueError(f"Unknown date preset {name!r}. Available: {', '.join(DATE_PRESETS)}")


@dataclass(frozen=True)
class FilterSet:
    """
    Structured search filters. Every dimension is optional; None (or an
    empty tag tuple) means unconstrained.
    """
    date_range: Optional[DateRange] = None
    media_type: Optional[MediaKind] = None
    location: Optional[str] = None
    tags: tuple[str, ...] = ()
