"""
mediadex

A personal media library made searchable through automatically derived
metadata (tags, recognized text, faces, locations).

Quick Start:
    from mediadex import MediaLibrary

    with MediaLibrary("~/.mediadex") as lib:
        lib.sync()          # discover items and queue them for analysis
        lib.wait_idle()
        lib.search("beach sunset")
        lib.collections()

CLI Usage:
    mediadex init --root ~/Pictures
    mediadex sync
    mediadex search "receipt" --type photo --date this_month

Environment Variables:
    MEDIADEX_LIBRARY_PATH  - Override the default library location (~/.mediadex)
    MEDIADEX_VERBOSE       - Set to 1 for debug logging

Analyzers plug in through the provider registry or the
``mediadex.analyzers`` entry-point group.
"""

from .api import MediaLibrary
from .errors import (
    AnalysisPermanentError,
    AnalysisTransientError,
    AssetUnavailable,
    DeviceBusy,
    IndexCorruption,
    MediadexError,
    QueryMalformed,
)
from .protocol import AssetListing, TranscriptEvent
from .types import (
    Attributes,
    DateRange,
    FilterSet,
    MediaItem,
    MediaKind,
    MergePolicy,
    ProcessingState,
)
from .work_queue import Priority

__version__ = "0.1.0"
__all__ = [
    "AnalysisPermanentError",
    "AnalysisTransientError",
    "AssetListing",
    "AssetUnavailable",
    "Attributes",
    "DateRange",
    "DeviceBusy",
    "FilterSet",
    "IndexCorruption",
    "MediaItem",
    "MediaKind",
    "MediaLibrary",
    "MediadexError",
    "MergePolicy",
    "Priority",
    "ProcessingState",
    "QueryMalformed",
    "TranscriptEvent",
]
