"""
Free-text + filter search over an index snapshot.

Matching: the query is lowercased and split on whitespace. An item
matches if ANY token is one of its tags (exact), or a substring of its
detected text or location. Filters are ANDed on top.

Ranking is fully deterministic:
    1. number of distinct query tokens matched (descending)
    2. creation time (descending)
    3. item id (ascending)

Empty query text returns no results. Browsing everything is not a search.
"""

import logging
from datetime import datetime, timezone
from typing import Iterable, Optional

from .errors import QueryMalformed
from .index import IndexSnapshot, MediaIndex
from .types import (
    DateRange,
    FilterSet,
    MediaItem,
    MediaKind,
    as_utc,
    normalize_tag,
    tokenize,
)

logger = logging.getLogger(__name__)

# (title, query) pairs offered before the user types anything
QUICK_SEARCHES: tuple[tuple[str, str], ...] = (
    ("Recent Photos", "photos from this week"),
    ("Beach & Vacation", "beach vacation summer"),
    ("Screenshots", "screenshot text document"),
    ("Family & Friends", "family friends people"),
    ("Food Photos", "food restaurant meal"),
    ("Nature & Landscapes", "nature landscape sunset"),
    ("Documents", "document text receipt"),
    ("Selfies", "selfie portrait face"),
)

# Accepted spellings for "no media type constraint" at the text edges (CLI)
ANY_MEDIA_TYPE = ("", "any", "all")


def validate_filters(filters: FilterSet) -> None:
    """Reject malformed filter combinations instead of correcting them."""
    if filters.date_range is not None:
        if not isinstance(filters.date_range, DateRange):
            raise QueryMalformed(f"date_range must be a DateRange, got {type(filters.date_range).__name__}")
        if filters.date_range.is_inverted:
            raise QueryMalformed(
                f"Inverted date range: {filters.date_range.start.isoformat()} "
                f"is after {filters.date_range.end.isoformat()}"
            )
    if filters.media_type is not None and not isinstance(filters.media_type, MediaKind):
        raise QueryMalformed(f"Unknown media type: {filters.media_type!r}")
    if filters.location is not None and not filters.location.strip():
        raise QueryMalformed("Location filter must not be blank (omit it to disable)")
    for tag in filters.tags:
        if not isinstance(tag, str) or not normalize_tag(tag):
            raise QueryMalformed(f"Invalid tag filter: {tag!r}")


def build_filters(
    *,
    date_preset: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    media_type: Optional[str] = None,
    location: Optional[str] = None,
    tags: Iterable[str] = (),
    now: Optional[datetime] = None,
) -> FilterSet:
    """
    Build a FilterSet from loosely typed inputs (command line, JSON).

    ``date_preset`` and an explicit ``start``/``end`` are mutually
    exclusive. A missing ``start`` or ``end`` is open-ended.

    Raises:
        QueryMalformed: For conflicting or unrecognised values
    """
    date_range = None
    if date_preset is not None and (start is not None or end is not None):
        raise QueryMalformed("Use either a date preset or an explicit start/end, not both")
    if date_preset is not None:
        try:
            date_range = DateRange.preset(date_preset, now)
        except ValueError as e:
            raise QueryMalformed(str(e)) from None
    elif start is not None or end is not None:
        date_range = DateRange(
            as_utc(start) if start is not None else datetime.min.replace(tzinfo=timezone.utc),
            as_utc(end) if end is not None else datetime.max.replace(tzinfo=timezone.utc),
        )

    kind = None
    if media_type is not None and media_type.strip().lower() not in ANY_MEDIA_TYPE:
        try:
            kind = MediaKind(media_type.strip().lower())
        except ValueError:
            raise QueryMalformed(
                f"Unknown media type {media_type!r} "
                f"(expected one of: any, {', '.join(k.value for k in MediaKind)})"
            ) from None

    filters = FilterSet(
        date_range=date_range,
        media_type=kind,
        location=location,
        tags=tuple(tags),
    )
    validate_filters(filters)
    return filters


class QueryEngine:
    """Answers searches against the current index snapshot without locking."""

    def __init__(self, index: MediaIndex):
        self._index = index

    @staticmethod
    def suggestions() -> list[tuple[str, str]]:
        return list(QUICK_SEARCHES)

    def search(self, text: str, filters: Optional[FilterSet] = None) -> list[str]:
        """
        Ordered item ids matching ``text`` under ``filters``.

        Raises:
            QueryMalformed: If the filters are inconsistent
        """
        tokens = list(dict.fromkeys(tokenize(text)))
        if not tokens:
            return []
        filters = filters or FilterSet()
        validate_filters(filters)

        snap = self._index.snapshot()
        matched = self._match_tokens(snap, tokens)
        results = [
            (len(hits), snap.items[item_id])
            for item_id, hits in matched.items()
            if item_id in snap.items and self._passes(snap.items[item_id], filters)
        ]
        results.sort(key=lambda r: (-r[0], -as_utc(r[1].created_at).timestamp(), r[1].id))
        logger.debug(
            "search %r -> %d results at version %d", text, len(results), snap.version,
        )
        return [item.id for _, item in results]

    @staticmethod
    def _match_tokens(snap: IndexSnapshot, tokens: list[str]) -> dict[str, set[str]]:
        """Map item id -> distinct query tokens it matched."""
        matched: dict[str, set[str]] = {}
        vocabulary = list(snap.by_token)
        for token in tokens:
            hits = set(snap.lookup_by_tag(token))
            # A whitespace-free token is a substring of the text only if it
            # is a substring of one whitespace-delimited word of it
            for word in vocabulary:
                if token in word:
                    hits |= snap.by_token[word]
            for item_id in hits:
                matched.setdefault(item_id, set()).add(token)
        return matched

    @staticmethod
    def _passes(item: MediaItem, filters: FilterSet) -> bool:
        if filters.date_range is not None and not filters.date_range.contains(item.created_at):
            return False
        if filters.media_type is not None and item.kind != filters.media_type:
            return False
        if filters.location is not None:
            location = (item.attributes.location or "").lower()
            if filters.location.strip().lower() not in location:
                return False
        if filters.tags:
            wanted = {normalize_tag(t) for t in filters.tags}
            if not wanted <= item.attributes.tags:
                return False
        return True
