"""
Protocol definitions for the external collaborators of the pipeline.

- AssetSource: enumerates items and supplies raw content
- Capability protocols: the independent units an analyzer may implement
  (any subset; missing capabilities are no-ops, not errors)
- InputDevice / VoiceQueryAdapter: the voice-search capture session

Using Protocol for structural subtyping - no explicit inheritance required.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Iterator, Optional, Protocol, runtime_checkable

from .types import MediaKind


@dataclass(frozen=True)
class AssetListing:
    """One row of an AssetSource listing."""
    id: str
    fingerprint: str
    created_at: datetime
    kind: MediaKind = MediaKind.PHOTO


@runtime_checkable
class AssetSource(Protocol):
    """
    Enumerates media items with stable identity and content fingerprints.

    Example implementation:
        class DirectoryAssetSource:
            def list_items(self) -> list[AssetListing]:
                return [AssetListing(p.name, fingerprint(p), mtime(p)) for p in ...]

            def fetch_content(self, id: str) -> bytes:
                return (self.root / id).read_bytes()
    """

    def list_items(self) -> Iterable[AssetListing]:
        """Return the current set of items."""
        ...

    def fetch_content(self, id: str) -> bytes:
        """
        Return the raw content of an item.

        Raises:
            AssetUnavailable: If the item no longer exists
            OSError: If the content cannot be read
        """
        ...


# -----------------------------------------------------------------------------
# Analyzer capabilities
# -----------------------------------------------------------------------------
#
# Each capability may raise AnalysisTransientError (retried with backoff),
# AnalysisPermanentError (item marked Failed), or TimeoutError.

@runtime_checkable
class TaggingCapability(Protocol):
    """Produces descriptive tags ("beach", "food", ...) for content."""

    def tag(self, content: bytes) -> Iterable[str]: ...


@runtime_checkable
class TextRecognitionCapability(Protocol):
    """Recognizes text in content (OCR). Empty string when there is none."""

    def recognize_text(self, content: bytes) -> str: ...


@runtime_checkable
class FaceDetectionCapability(Protocol):
    """
    Detects faces and returns one signature per face.

    Signatures are opaque: equal signatures denote the same person. The
    library maps signatures to FaceCluster ids.
    """

    def face_signatures(self, content: bytes) -> Iterable[str]: ...


@runtime_checkable
class GeocodingCapability(Protocol):
    """Resolves a human-readable location, or None when unknown."""

    def locate(self, content: bytes) -> Optional[str]: ...


# -----------------------------------------------------------------------------
# Voice query
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class TranscriptEvent:
    """A partial or final transcription result."""
    text: str
    is_final: bool = False


@runtime_checkable
class InputDevice(Protocol):
    """Exclusive audio input. acquire() must be paired with release()."""

    def acquire(self) -> None: ...

    def release(self) -> None: ...


@runtime_checkable
class VoiceQueryAdapter(Protocol):
    """Transcribes captured audio into a stream of transcript events."""

    def transcripts(self) -> Iterator[TranscriptEvent]: ...

    def stop(self) -> None: ...
