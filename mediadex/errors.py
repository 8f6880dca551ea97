"""
Error taxonomy and error logging for mediadex.

Per-item and per-capability failures are isolated by the scheduler;
only IndexCorruption is fatal to the index (and triggers a rebuild).
The CLI logs full stack traces to a file while showing clean messages.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path


class MediadexError(Exception):
    """Base class for mediadex errors."""


class AssetUnavailable(MediadexError):
    """The item vanished from the AssetSource (dropped silently, never retried)."""

    def __init__(self, item_id: str, reason: str = ""):
        self.item_id = item_id
        super().__init__(f"Asset unavailable: {item_id}" + (f" ({reason})" if reason else ""))


class AnalysisTransientError(MediadexError):
    """Timeout or resource exhaustion in a capability; retried with backoff."""


class AnalysisPermanentError(MediadexError):
    """Content is structurally unreadable; the item is marked Failed."""


class IndexCorruption(MediadexError):
    """Internal consistency violation in the MediaIndex; requires a rebuild."""


class QueryMalformed(MediadexError, ValueError):
    """Invalid filter combination; rejected to the caller."""


class InvalidTransition(MediadexError):
    """A processing-state change that the state machine does not allow."""


class DeviceBusy(MediadexError):
    """The voice input device is already held by another session."""


def _error_log_path() -> Path:
    """Resolve error log path, respecting MEDIADEX_LIBRARY_PATH."""
    library = os.environ.get("MEDIADEX_LIBRARY_PATH")
    if library:
        return Path(library) / "mediadex-errors.log"
    return Path.home() / ".mediadex" / "mediadex-errors.log"


def log_exception(exc: Exception, context: str = "") -> Path:
    """
    Log exception with full traceback to file.

    Args:
        exc: The exception that occurred
        context: Optional context string (e.g., command name)

    Returns:
        Path to the error log file
    """
    log_path = _error_log_path()
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a") as f:
            f.write(f"\n{'='*60}\n")
            f.write(f"[{timestamp}]")
            if context:
                f.write(f" {context}")
            f.write("\n")
            f.write("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)))
    except OSError:
        pass  # Can't write the error log; nothing more to do
    return log_path
