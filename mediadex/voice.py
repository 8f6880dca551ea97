"""
Voice search: feeds transcripts from a VoiceQueryAdapter into search.

The capture session is a scoped resource. Entering it takes exclusive
hold of the input device; leaving it (stop, final transcript, error)
always stops the adapter and releases the device.

    with VoiceSearchSession(microphone, adapter, engine) as session:
        for event, ids in session.results():
            show(ids)
"""

import logging
import threading
from typing import Callable, Iterator, Optional

from .errors import DeviceBusy
from .protocol import InputDevice, TranscriptEvent, VoiceQueryAdapter
from .query import QueryEngine
from .types import FilterSet

logger = logging.getLogger(__name__)


class ExclusiveInput:
    """Wraps an InputDevice so only one session in the process holds it."""

    def __init__(self, device: InputDevice):
        self._device = device
        self._lock = threading.Lock()

    @property
    def held(self) -> bool:
        return self._lock.locked()

    def acquire(self) -> None:
        if not self._lock.acquire(blocking=False):
            raise DeviceBusy("Voice input device is already in use")
        try:
            self._device.acquire()
        except BaseException:
            self._lock.release()
            raise

    def release(self) -> None:
        try:
            self._device.release()
        finally:
            self._lock.release()


class VoiceSearchSession:
    """One capture session: transcripts in, ranked ids out."""

    def __init__(
        self,
        device: ExclusiveInput | InputDevice,
        adapter: VoiceQueryAdapter,
        engine: QueryEngine,
        filters: Optional[FilterSet] = None,
    ):
        self._input = device if isinstance(device, ExclusiveInput) else ExclusiveInput(device)
        self._adapter = adapter
        self._engine = engine
        self._filters = filters
        self._active = False
        self._stopped = threading.Event()
        self.last_results: list[str] = []

    @property
    def active(self) -> bool:
        return self._active

    def __enter__(self) -> "VoiceSearchSession":
        self._input.acquire()
        self._active = True
        logger.debug("Voice session started")
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def stop(self) -> None:
        """Request an explicit stop; safe to call from another thread."""
        self._stopped.set()

    def close(self) -> None:
        if not self._active:
            return
        self._active = False
        try:
            self._adapter.stop()
        finally:
            self._input.release()
            logger.debug("Voice session released device")

    def results(self) -> Iterator[tuple[TranscriptEvent, list[str]]]:
        """
        Search each transcript as it arrives.

        Ends after the final transcript or an explicit stop.
        """
        if not self._active:
            raise RuntimeError("Voice session is not active; use it as a context manager")
        for event in self._adapter.transcripts():
            if self._stopped.is_set():
                break
            self.last_results = self._engine.search(event.text, self._filters)
            yield event, self.last_results
            if event.is_final:
                break


def voice_search(
    device: ExclusiveInput | InputDevice,
    adapter: VoiceQueryAdapter,
    engine: QueryEngine,
    filters: Optional[FilterSet] = None,
    on_partial: Optional[Callable[[TranscriptEvent, list[str]], None]] = None,
) -> list[str]:
    """Run a session to completion and return the results for the last transcript."""
    with VoiceSearchSession(device, adapter, engine, filters) as session:
        for event, ids in session.results():
            if on_partial is not None and not event.is_final:
                on_partial(event, ids)
        return session.last_results
