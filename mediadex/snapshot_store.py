"""
Persisted library snapshot using SQLite.

Stores the MediaItem records, the face cluster registry and the index
version stamp so a restart can reconcile against the AssetSource instead
of re-analysing everything. A save replaces the whole snapshot in one
transaction; readers never see a half-written snapshot.

In-flight items are stored in the state they rest in with no work
running (see ``index.settle``).
"""

import json
import logging
import sqlite3
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional

from .index import settle
from .types import (
    Attributes,
    MediaItem,
    MediaKind,
    ProcessingState,
    format_utc,
    parse_utc_timestamp,
)

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1


@dataclass
class PersistedSnapshot:
    """What a load returns."""
    version: int
    items: list[MediaItem]
    faces: dict = field(default_factory=dict)
    saved_at: Optional[str] = None


def _item_row(item: MediaItem) -> tuple:
    return (
        item.id,
        item.fingerprint,
        format_utc(item.created_at),
        item.kind.value,
        json.dumps(item.attributes.to_dict(), ensure_ascii=False),
        int(item.is_favorite),
        item.state.value,
        item.last_analyzed_fingerprint,
        item.discovered_seq,
    )


def _row_to_item(row: sqlite3.Row) -> MediaItem:
    return MediaItem(
        id=row["id"],
        fingerprint=row["fingerprint"],
        created_at=parse_utc_timestamp(row["created_at"]),
        kind=MediaKind(row["kind"]),
        attributes=Attributes.from_dict(json.loads(row["attributes_json"])),
        is_favorite=bool(row["is_favorite"]),
        state=ProcessingState(row["state"]),
        last_analyzed_fingerprint=row["last_analyzed_fingerprint"],
        discovered_seq=row["discovered_seq"],
    )


class SnapshotStore:
    """SQLite-backed store for the persisted library snapshot."""

    def __init__(self, store_path: Path):
        """
        Args:
            store_path: Path to SQLite database file
        """
        self._db_path = store_path
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the SQLite database."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        # isolation_level=None gives us manual transaction control
        self._conn = sqlite3.connect(
            str(self._db_path), check_same_thread=False, isolation_level=None,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS items (
                id TEXT PRIMARY KEY,
                fingerprint TEXT NOT NULL,
                created_at TEXT NOT NULL,
                kind TEXT NOT NULL,
                attributes_json TEXT NOT NULL DEFAULT '{}',
                is_favorite INTEGER NOT NULL DEFAULT 0,
                state TEXT NOT NULL,
                last_analyzed_fingerprint TEXT,
                discovered_seq INTEGER NOT NULL DEFAULT 0
            )
        """)
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS meta (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
        """)

        stored = self._get_meta("schema_version")
        if stored is not None and int(stored) > SCHEMA_VERSION:
            raise ValueError(
                f"Snapshot schema {stored} is newer than supported ({SCHEMA_VERSION})"
            )
        self._set_meta("schema_version", str(SCHEMA_VERSION))

    def _get_meta(self, key: str) -> Optional[str]:
        row = self._conn.execute("SELECT value FROM meta WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def _set_meta(self, key: str, value: str) -> None:
        self._conn.execute(
            "INSERT OR REPLACE INTO meta (key, value) VALUES (?, ?)", (key, value),
        )

    @property
    def version(self) -> int:
        """Version stamp of the stored snapshot (0 if none)."""
        with self._lock:
            value = self._get_meta("version")
        return int(value) if value is not None else 0

    # -------------------------------------------------------------------------
    # Save / load
    # -------------------------------------------------------------------------

    def save(self, items: Iterable[MediaItem], version: int, faces: Optional[dict] = None) -> int:
        """
        Replace the stored snapshot.

        The stored version never decreases: a version at or below the
        stored one is bumped past it. Returns the version written.
        """
        rows = [_item_row(settle(item)) for item in items]
        saved_at = datetime.now(timezone.utc).isoformat()
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                previous = int(self._get_meta("version") or 0)
                if version <= previous:
                    logger.debug("Snapshot version %d <= stored %d; bumping", version, previous)
                    version = previous + 1
                self._conn.execute("DELETE FROM items")
                self._conn.executemany("""
                    INSERT INTO items
                    (id, fingerprint, created_at, kind, attributes_json,
                     is_favorite, state, last_analyzed_fingerprint, discovered_seq)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, rows)
                self._set_meta("version", str(version))
                self._set_meta("saved_at", saved_at)
                self._set_meta("faces", json.dumps(faces or {}, ensure_ascii=False))
                self._conn.execute("COMMIT")
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
        logger.info("Saved snapshot: %d items at version %d", len(rows), version)
        return version

    def load(self) -> Optional[PersistedSnapshot]:
        """Load the stored snapshot, or None if nothing was ever saved."""
        with self._lock:
            version = self._get_meta("version")
            if version is None:
                return None
            rows = self._conn.execute(
                "SELECT * FROM items ORDER BY discovered_seq, id"
            ).fetchall()
            faces = json.loads(self._get_meta("faces") or "{}")
            saved_at = self._get_meta("saved_at")
        return PersistedSnapshot(
            version=int(version),
            items=[_row_to_item(row) for row in rows],
            faces=faces,
            saved_at=saved_at,
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __del__(self):
        self.close()
