"""
Shared pytest fixtures for mediadex tests.

Provides an in-memory asset source and a scripted analyzer so the
pipeline can be exercised without real media or vision models.
"""

import threading
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from mediadex.config import LibraryConfig, PipelineConfig
from mediadex.errors import AssetUnavailable
from mediadex.index import MediaIndex
from mediadex.processors import RetryPolicy
from mediadex.protocol import AssetListing
from mediadex.scheduler import AnalysisScheduler
from mediadex.types import Attributes, MediaKind, normalize_tags


BASE_TIME = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def content_for(item_id: str, revision: int = 0) -> bytes:
    """Content bytes that carry the item id, so the analyzer can script by id."""
    return f"{item_id}|{revision}".encode()


def item_id_of(content: bytes) -> str:
    return content.decode().split("|", 1)[0]


class MockAssetSource:
    """
    In-memory AssetSource.

    Items are added with ``add()``; ``change()`` bumps the content so the
    fingerprint changes; ``vanish()`` makes fetches raise AssetUnavailable
    while keeping the item listed (deleted mid-processing).
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._items: dict[str, dict] = {}
        self._vanished: set[str] = set()
        self._unreadable: set[str] = set()
        self.fetch_calls = Counter()

    def add(self, item_id: str, created_at: Optional[datetime] = None,
            kind: MediaKind = MediaKind.PHOTO) -> None:
        with self._lock:
            self._items[item_id] = {
                "created_at": created_at or BASE_TIME + timedelta(minutes=len(self._items)),
                "kind": kind,
                "revision": 0,
            }

    def change(self, item_id: str) -> None:
        with self._lock:
            self._items[item_id]["revision"] += 1

    def delete(self, item_id: str) -> None:
        with self._lock:
            del self._items[item_id]

    def vanish(self, item_id: str) -> None:
        with self._lock:
            self._vanished.add(item_id)

    def make_unreadable(self, item_id: str) -> None:
        with self._lock:
            self._unreadable.add(item_id)

    def list_items(self) -> list[AssetListing]:
        with self._lock:
            return [
                AssetListing(
                    id=item_id,
                    fingerprint=f"fp-{item_id}-{rec['revision']}",
                    created_at=rec["created_at"],
                    kind=rec["kind"],
                )
                for item_id, rec in self._items.items()
            ]

    def fetch_content(self, id: str) -> bytes:
        with self._lock:
            self.fetch_calls[id] += 1
            if id in self._vanished or id not in self._items:
                raise AssetUnavailable(id)
            if id in self._unreadable:
                raise PermissionError(f"cannot read {id}")
            return content_for(id, self._items[id]["revision"])


class ScriptedAnalyzer:
    """
    Analyzer implementing all four capabilities from a script.

    Args:
        results: item id -> {"tags": [...], "text": str, "faces": [...], "location": str}
        failures: (item id, capability) -> exception instance raised on every call
        block: item ids whose tagging waits on ``gate`` (signals ``entered``)
    """

    def __init__(self, results: Optional[dict] = None, failures: Optional[dict] = None,
                 block: Optional[set] = None):
        self.results = results or {}
        self.failures = failures or {}
        self.block = block or set()
        self.gate = threading.Event()
        self.entered = threading.Event()
        self.calls = Counter()
        self._lock = threading.Lock()
        self._active: Counter = Counter()
        self.max_concurrent_per_item = 0

    def _enter(self, capability: str, content: bytes) -> str:
        item_id = item_id_of(content)
        with self._lock:
            self.calls[(capability, item_id)] += 1
            self._active[item_id] += 1
            self.max_concurrent_per_item = max(self.max_concurrent_per_item, self._active[item_id])
        return item_id

    def _leave(self, item_id: str) -> None:
        with self._lock:
            self._active[item_id] -= 1

    def _run(self, capability: str, content: bytes, field: str, default):
        item_id = self._enter(capability, content)
        try:
            if capability == "tagging" and item_id in self.block:
                self.entered.set()
                self.gate.wait(5)
            failure = self.failures.get((item_id, capability))
            if failure is not None:
                raise failure
            return self.results.get(item_id, {}).get(field, default)
        finally:
            self._leave(item_id)

    def analyzed(self, item_id: str) -> int:
        """Number of times the item was tagged (one per analysis pass)."""
        return self.calls[("tagging", item_id)]

    def tag(self, content: bytes):
        return self._run("tagging", content, "tags", [])

    def recognize_text(self, content: bytes) -> str:
        return self._run("ocr", content, "text", "")

    def face_signatures(self, content: bytes):
        return self._run("faces", content, "faces", [])

    def locate(self, content: bytes):
        return self._run("geocoding", content, "location", None)


class TaggingOnlyAnalyzer:
    """Implements just the tagging capability."""

    def __init__(self, tags: dict[str, list[str]]):
        self.tags = tags

    def tag(self, content: bytes):
        return self.tags.get(item_id_of(content), [])


def commit_item(index: MediaIndex, item_id: str, tags=(), text: str = "",
                faces=(), location: Optional[str] = None) -> None:
    """Drive an item through queue -> claim -> commit with the given attributes."""
    assert index.mark_queued(item_id)
    claimed = index.claim(item_id)
    assert claimed is not None
    index.commit(item_id, claimed.attributes, Attributes(
        tags=normalize_tags(tags), text=text, faces=frozenset(faces), location=location,
    ))


def fast_retry(**overrides) -> RetryPolicy:
    params = {"max_attempts": 3, "backoff_base": 0.0, "backoff_max": 0.0, "timeout": 5.0}
    params.update(overrides)
    return RetryPolicy(**params)


@pytest.fixture
def source():
    return MockAssetSource()


@pytest.fixture
def analyzer():
    return ScriptedAnalyzer()


@pytest.fixture
def index():
    return MediaIndex()


@pytest.fixture
def make_scheduler():
    """Factory for started schedulers; all are stopped at teardown."""
    created = []

    def _make(index, source, analyzer, **kwargs) -> AnalysisScheduler:
        kwargs.setdefault("retry", fast_retry())
        kwargs.setdefault("concurrency", 2)
        start = kwargs.pop("start", True)
        scheduler = AnalysisScheduler(index, source, analyzer, **kwargs)
        created.append(scheduler)
        if start:
            scheduler.start()
        return scheduler

    yield _make
    for scheduler in created:
        scheduler.stop(timeout=5)


@pytest.fixture
def library_config(tmp_path):
    """Library config with zero backoff and short timeouts."""
    return LibraryConfig(
        path=tmp_path / "library",
        pipeline=PipelineConfig(
            concurrency=2,
            max_attempts=3,
            backoff_base=0.0,
            backoff_max=0.0,
            capability_timeout=5.0,
        ),
    )


@pytest.fixture
def make_library(library_config):
    """Factory for MediaLibrary instances over mock collaborators; closed at teardown."""
    from mediadex.api import MediaLibrary

    created = []

    def _make(source, analyzer, **kwargs) -> MediaLibrary:
        kwargs.setdefault("config", library_config)
        lib = MediaLibrary(source=source, analyzer=analyzer, **kwargs)
        created.append(lib)
        return lib

    yield _make
    for lib in created:
        lib.close()


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (timing-dependent concurrency checks)"
    )
