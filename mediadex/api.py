"""
Core API for the media library.

``MediaLibrary`` is the pipeline root: it owns the index, the scheduler,
the ingestion coordinator, the query engine and the collection
materializer, and exposes their state through an EventBus rather than
shared mutable objects.

    lib = MediaLibrary("~/Pictures/.mediadex")
    lib.sync()
    lib.wait_idle()
    ids = lib.search("beach")
"""

import json
import logging
import threading
from collections import Counter
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional

from .config import LibraryConfig, get_library_directory, load_or_create_config
from .errors import IndexCorruption
from .events import INDEX_REBUILT, ITEM_STATE_CHANGED, EventBus
from .faces import FaceRegistry
from .index import MediaIndex
from .ingestion import IngestionCoordinator, SyncResult
from .processors import RetryPolicy
from .protocol import InputDevice, VoiceQueryAdapter
from .providers import get_registry
from .query import QueryEngine
from .scheduler import AnalysisScheduler
from .smart_collections import FAVORITES, CollectionMaterializer
from .snapshot_store import SnapshotStore
from .types import FaceCluster, FilterSet, MediaItem, ProcessingState, SmartCollection
from .voice import ExclusiveInput, VoiceSearchSession
from .work_queue import Priority

logger = logging.getLogger(__name__)

EXPORT_FORMAT = "mediadex-export"
EXPORT_VERSION = 1


class MediaLibrary:
    """
    A searchable media library backed by an asynchronous analysis pipeline.

    Example:
        with MediaLibrary(source=my_source, analyzer=my_analyzer) as lib:
            lib.sync()
            lib.wait_idle()
            lib.collections()
    """

    def __init__(
        self,
        library_path: Optional[str | Path] = None,
        *,
        config: Optional[LibraryConfig] = None,
        source=None,
        analyzer=None,
        events: Optional[EventBus] = None,
        persist: bool = True,
        start: bool = True,
        reconcile: bool = True,
    ) -> None:
        """
        Open (or create) a library.

        Args:
            library_path: Library directory. Uses MEDIADEX_LIBRARY_PATH or
                ~/.mediadex if not specified.
            config: Pre-loaded LibraryConfig (skips filesystem config discovery)
            source: Injected AssetSource (skips the configured provider)
            analyzer: Injected analyzer (skips the configured provider)
            events: Event bus to publish on; a private one is created otherwise
            persist: Load and save the SQLite snapshot in the library directory
            start: Start the worker pool immediately
            reconcile: When a snapshot was restored, sync it against the
                source right away (vanished items dropped, changed ones reset)
        """
        # --- Config resolution ---
        if config is not None:
            self._config = config
        else:
            path = get_library_directory(Path(library_path) if library_path is not None else None)
            self._config = load_or_create_config(path)
        self._library_path = self._config.path

        # --- Providers (injected or created from config) ---
        registry = get_registry()
        self._source = source if source is not None else registry.create_source(
            self._config.source.name, self._config.source.params,
        )
        self._analyzer = analyzer if analyzer is not None else registry.create_analyzer(
            self._config.analyzer.name, self._config.analyzer.params,
        )

        # --- Persistent operations log ---
        from .logging_config import configure_ops_log
        self._ops_log_handler = configure_ops_log(self._library_path)

        self.events = events or EventBus()

        # --- Restore from snapshot ---
        self._snapshot_store = SnapshotStore(self._config.snapshot_path) if persist else None
        stored = self._snapshot_store.load() if self._snapshot_store else None
        if stored is not None:
            self._faces = FaceRegistry.from_records(stored.faces)
            logger.info("Restored %d items at version %d", len(stored.items), stored.version)
        else:
            self._faces = FaceRegistry()
        self._index = MediaIndex(
            stored.items if stored else (),
            listener=self._on_item_change,
            version=stored.version if stored else 0,
        )

        pipeline = self._config.pipeline
        self._scheduler = AnalysisScheduler(
            self._index,
            self._source,
            self._analyzer,
            faces=self._faces,
            concurrency=pipeline.concurrency,
            retry=RetryPolicy(
                max_attempts=pipeline.max_attempts,
                backoff_base=pipeline.backoff_base,
                backoff_max=pipeline.backoff_max,
                timeout=pipeline.capability_timeout,
            ),
            capabilities=self._config.enabled_capabilities(),
            merge_policy=pipeline.merge_policy,
            prioritize_by_year=pipeline.prioritize_by_year,
            events=self.events,
            on_batch_complete=self._on_batch_complete,
            on_corruption=self._on_corruption,
        )
        self._ingestion = IngestionCoordinator(
            self._index,
            self._source,
            self._scheduler,
            faces=self._faces,
            auto_analysis=pipeline.auto_analysis,
        )
        self._query = QueryEngine(self._index)
        self._collections = CollectionMaterializer(self._index, events=self.events)

        self._rebuild_lock = threading.Lock()
        self._closed = False
        if stored is not None and reconcile:
            self._reconcile()
        self._collections.recompute()
        if start:
            self._scheduler.start()

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def config(self) -> LibraryConfig:
        return self._config

    @property
    def library_path(self) -> Path:
        return self._library_path

    @property
    def index(self) -> MediaIndex:
        return self._index

    @property
    def faces(self) -> FaceRegistry:
        return self._faces

    @property
    def query_engine(self) -> QueryEngine:
        return self._query

    # -------------------------------------------------------------------------
    # Ingestion control
    # -------------------------------------------------------------------------

    def sync(self) -> SyncResult:
        """Reconcile with the asset source; queue new/changed items if auto analysis is on."""
        return self._ingestion.sync()

    def _reconcile(self) -> None:
        """Bring a restored snapshot in line with the source's current listing."""
        try:
            result = self._ingestion.sync()
        except OSError as e:
            # Source offline (e.g. unmounted drive): keep serving the snapshot
            logger.warning("Could not reconcile restored library with its source: %s", e)
            return
        logger.info(
            "Reconciled restored library: %d added, %d changed, %d removed",
            len(result.added), len(result.changed), len(result.removed),
        )

    def enqueue(self, ids: Iterable[str], priority: Priority = Priority.NORMAL) -> list[str]:
        return self._ingestion.enqueue(ids, priority)

    def cancel(self, ids: Iterable[str]) -> dict:
        return self._ingestion.cancel(ids)

    def pause(self) -> None:
        self._ingestion.pause()

    def resume(self) -> None:
        self._ingestion.resume()

    def reanalyze(self, ids: Optional[Iterable[str]] = None) -> list[str]:
        """Queue PROCESSED/FAILED items again (all of them when ids is None)."""
        if ids is None:
            snap = self._index.snapshot()
            ids = sorted(
                (i for i in snap.items.values() if i.state.is_terminal),
                key=lambda i: (i.discovered_seq, i.id),
            )
            ids = [i.id for i in ids]
        return self._ingestion.enqueue(ids)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until the current batch drains. Returns False on timeout."""
        return self._scheduler.wait_idle(timeout)

    @property
    def progress(self) -> float:
        return self._scheduler.progress.value

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get(self, item_id: str) -> Optional[MediaItem]:
        return self._index.get(item_id)

    def search(self, text: str, filters: Optional[FilterSet] = None) -> list[str]:
        return self._query.search(text, filters)

    def suggestions(self) -> list[tuple[str, str]]:
        return self._query.suggestions()

    def collections(self) -> list[tuple[str, int, tuple[str, ...]]]:
        """(name, count, member ids) for every smart collection."""
        return self._collections.list()

    def collection(self, name: str) -> SmartCollection:
        return self._collections.get(name)

    def refresh_collections(self) -> list[SmartCollection]:
        return self._collections.recompute()

    def recently_added(self, limit: int = 5) -> list[str]:
        """Most recently discovered items, newest first."""
        items = sorted(
            self._index.snapshot().items.values(),
            key=lambda i: (i.discovered_seq, i.id),
            reverse=True,
        )
        return [i.id for i in items[:limit]]

    def list_failed(self) -> list[str]:
        snap = self._index.snapshot()
        return sorted(i.id for i in snap.items.values() if i.state == ProcessingState.FAILED)

    def stats(self) -> dict[str, Any]:
        snap = self._index.snapshot()
        states = Counter(i.state.value for i in snap.items.values())
        kinds = Counter(i.kind.value for i in snap.items.values())
        return {
            "items": len(snap),
            "version": snap.version,
            "states": {s.value: states.get(s.value, 0) for s in ProcessingState},
            "kinds": dict(sorted(kinds.items())),
            "favorites": len(snap.favorites),
            "face_clusters": len(self._faces.clusters()),
            "queue": self._scheduler.queue.stats(),
            "progress": self._scheduler.progress.snapshot(),
            "paused": self._scheduler.paused,
        }

    # -------------------------------------------------------------------------
    # User edits
    # -------------------------------------------------------------------------

    def toggle_favorite(self, item_id: str) -> bool:
        """Flip an item's favorite flag and refresh Favorites. Returns the new value."""
        value = self._index.toggle_favorite(item_id)
        self._collections.recompute([FAVORITES])
        return value

    def label_face(self, cluster_id: str, name: Optional[str]) -> FaceCluster:
        return self._faces.label(cluster_id, name)

    def merge_faces(self, keep_id: str, absorb_id: str) -> FaceCluster:
        return self._faces.merge(keep_id, absorb_id)

    # -------------------------------------------------------------------------
    # Voice
    # -------------------------------------------------------------------------

    def voice_session(
        self,
        device: ExclusiveInput | InputDevice,
        adapter: VoiceQueryAdapter,
        filters: Optional[FilterSet] = None,
    ) -> VoiceSearchSession:
        return VoiceSearchSession(device, adapter, self._query, filters)

    # -------------------------------------------------------------------------
    # Consistency and persistence
    # -------------------------------------------------------------------------

    def verify(self) -> bool:
        """Full index consistency check; rebuilds on corruption. Returns True if clean."""
        try:
            self._index.verify()
            return True
        except IndexCorruption as e:
            self._on_corruption(e)
            return False

    def rebuild(self) -> None:
        """
        Rebuild the index from item records and resync with the source.

        Queued and in-flight work is withdrawn and queued again afterwards.
        """
        with self._rebuild_lock:
            was_paused = self._scheduler.paused
            self._scheduler.pause()
            try:
                requeue = self._scheduler.clear()
                snap = self._index.snapshot()
                requeue += [
                    i.id for i in snap.items.values() if i.state == ProcessingState.PROCESSING
                ]
                records = list(snap.items.values())
                if not records and self._snapshot_store is not None:
                    stored = self._snapshot_store.load()
                    records = stored.items if stored else []
                self._index.rebuild(records)
                self._ingestion.sync()
                self._scheduler.enqueue(requeue)
                self._collections.recompute()
            finally:
                if not was_paused:
                    self._scheduler.resume()
        self.events.publish(INDEX_REBUILT, version=self._index.version)

    def save(self) -> Optional[int]:
        """Persist the snapshot. Returns the stored version (None without persistence)."""
        if self._snapshot_store is None:
            return None
        snap = self._index.snapshot()
        return self._snapshot_store.save(
            snap.items.values(), snap.version, self._faces.to_records(),
        )

    def export_data(self) -> dict:
        """All item records, face clusters and collections as one dict."""
        snap = self._index.snapshot()
        items = sorted(snap.items.values(), key=lambda i: (i.discovered_seq, i.id))
        return {
            "format": EXPORT_FORMAT,
            "version": EXPORT_VERSION,
            "exported_at": datetime.now(timezone.utc).isoformat(),
            "index_version": snap.version,
            "items": [i.to_dict() for i in items],
            "faces": [
                {"id": c.id, "label": c.label, "members": sorted(c.members)}
                for c in self._faces.clusters()
            ],
            "collections": [
                {"name": name, "count": count, "members": list(members)}
                for name, count, members in self._collections.list()
            ],
        }

    def export_json(self, path: str | Path) -> Path:
        path = Path(path).expanduser()
        data = self.export_data()
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        logger.info("Exported %d items to %s", len(data["items"]), path)
        return path

    # -------------------------------------------------------------------------
    # Pipeline callbacks
    # -------------------------------------------------------------------------

    def _on_item_change(self, old: Optional[MediaItem], new: Optional[MediaItem]) -> None:
        old_state = old.state if old else None
        new_state = new.state if new else None
        if old_state != new_state:
            self.events.publish(
                ITEM_STATE_CHANGED,
                id=(new or old).id,
                old_state=old_state.value if old_state else None,
                new_state=new_state.value if new_state else None,
            )

    def _on_batch_complete(self) -> None:
        self._collections.recompute()
        if self._snapshot_store is not None and not self._closed:
            self.save()

    def _on_corruption(self, error: IndexCorruption) -> None:
        logger.warning("Index corruption detected, rebuilding: %s", error)
        try:
            self.rebuild()
        except Exception:
            logger.exception("Index rebuild failed")
            raise

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Stop the workers, save the snapshot and release resources."""
        if self._closed:
            return
        self._scheduler.stop(timeout=5.0)
        self._closed = True
        if self._snapshot_store is not None:
            self.save()
            self._snapshot_store.close()
        from .logging_config import remove_ops_log
        remove_ops_log(self._ops_log_handler)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
