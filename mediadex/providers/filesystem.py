"""
Directory-backed asset source.

Every photo or video file below a root directory is one item. Item ids
are root-relative POSIX paths; the fingerprint is a SHA-256 over the file
bytes plus its modification time.
"""

import hashlib
import logging
import os
import threading
from datetime import datetime, timezone
from pathlib import Path

from ..errors import AssetUnavailable
from ..protocol import AssetListing
from ..types import MediaKind
from .base import get_registry

logger = logging.getLogger(__name__)

_CHUNK = 1 << 20


class DirectoryAssetSource:
    """
    Lists media files under ``root``.

    Fingerprints are cached by (mtime_ns, size): an unchanged stat skips
    re-hashing the file on the next listing.
    """

    EXTENSION_KINDS = {
        # Images
        ".jpg": MediaKind.PHOTO,
        ".jpeg": MediaKind.PHOTO,
        ".png": MediaKind.PHOTO,
        ".heic": MediaKind.PHOTO,
        ".heif": MediaKind.PHOTO,
        ".gif": MediaKind.PHOTO,
        ".tiff": MediaKind.PHOTO,
        ".tif": MediaKind.PHOTO,
        ".webp": MediaKind.PHOTO,
        ".bmp": MediaKind.PHOTO,
        # Video
        ".mp4": MediaKind.VIDEO,
        ".mov": MediaKind.VIDEO,
        ".m4v": MediaKind.VIDEO,
        ".avi": MediaKind.VIDEO,
        ".mkv": MediaKind.VIDEO,
        ".webm": MediaKind.VIDEO,
    }

    def __init__(self, root: str | Path = ".", recursive: bool = True, include_hidden: bool = False):
        self.root = Path(root).expanduser().resolve()
        self.recursive = recursive
        self.include_hidden = include_hidden
        self._lock = threading.Lock()
        self._fingerprints: dict[str, tuple[int, int, str]] = {}

    def _candidates(self):
        if not self.root.is_dir():
            raise FileNotFoundError(f"Media root not found: {self.root}")
        pattern = "**/*" if self.recursive else "*"
        for path in sorted(self.root.glob(pattern)):
            rel = path.relative_to(self.root)
            if not self.include_hidden and any(part.startswith(".") for part in rel.parts):
                continue
            if path.suffix.lower() in self.EXTENSION_KINDS and path.is_file():
                yield path, rel.as_posix()

    @staticmethod
    def _hash(path: Path, mtime_ns: int) -> str:
        h = hashlib.sha256()
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(_CHUNK), b""):
                h.update(chunk)
        h.update(str(mtime_ns).encode("ascii"))
        return h.hexdigest()

    def _fingerprint(self, item_id: str, path: Path, st: os.stat_result) -> str:
        with self._lock:
            cached = self._fingerprints.get(item_id)
        if cached and cached[:2] == (st.st_mtime_ns, st.st_size):
            return cached[2]
        fingerprint = self._hash(path, st.st_mtime_ns)
        with self._lock:
            self._fingerprints[item_id] = (st.st_mtime_ns, st.st_size, fingerprint)
        return fingerprint

    def list_items(self) -> list[AssetListing]:
        listings = []
        for path, item_id in self._candidates():
            try:
                st = path.stat()
                fingerprint = self._fingerprint(item_id, path, st)
            except OSError as e:
                # Vanished or unreadable between glob and stat
                logger.warning("Skipping %s: %s", item_id, e)
                continue
            # File creation time (birthtime on macOS, may exist on Linux 3.12+)
            created = getattr(st, "st_birthtime", None) or st.st_mtime
            listings.append(AssetListing(
                id=item_id,
                fingerprint=fingerprint,
                created_at=datetime.fromtimestamp(created, tz=timezone.utc),
                kind=self.EXTENSION_KINDS[path.suffix.lower()],
            ))
        return listings

    def fetch_content(self, id: str) -> bytes:
        path = (self.root / id).resolve()
        if not path.is_relative_to(self.root):
            raise AssetUnavailable(id, "path escapes media root")
        try:
            return path.read_bytes()
        except (FileNotFoundError, NotADirectoryError):
            raise AssetUnavailable(id, "file no longer exists") from None


get_registry().register_source("directory", DirectoryAssetSource)
