"""
Capability execution for a single item.

These functions encapsulate the "compute" portion of analysis without
any index reads or writes: ``CapabilityRunner.run()`` invokes every
enabled capability the analyzer implements and returns a
ProcessorResult, which the scheduler merges and commits.

Each capability is independent. Transient failures (timeouts, resource
exhaustion, unexpected errors) are retried with exponential backoff:
min(BASE * 2^(attempt-1), MAX) seconds. A capability that exhausts its
attempts contributes nothing; it does not fail the item. Only
AnalysisPermanentError fails the item.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from .errors import AnalysisPermanentError, AnalysisTransientError
from .protocol import (
    FaceDetectionCapability,
    GeocodingCapability,
    TaggingCapability,
    TextRecognitionCapability,
)
from .types import Attributes, MergePolicy, normalize_tags

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CapabilitySpec:
    """Binds a capability name to the protocol and method that provide it."""
    name: str
    protocol: type
    method: str


CAPABILITIES = (
    CapabilitySpec("tagging", TaggingCapability, "tag"),
    CapabilitySpec("ocr", TextRecognitionCapability, "recognize_text"),
    CapabilitySpec("faces", FaceDetectionCapability, "face_signatures"),
    CapabilitySpec("geocoding", GeocodingCapability, "locate"),
)


def available_capabilities(analyzer, enabled: Optional[frozenset[str]] = None) -> list[CapabilitySpec]:
    """Capabilities the analyzer implements, filtered by the enabled set.

    Missing capabilities are simply absent from the list.
    """
    if analyzer is None:
        return []
    return [
        spec for spec in CAPABILITIES
        if (enabled is None or spec.name in enabled) and isinstance(analyzer, spec.protocol)
    ]


class Outcome(str, Enum):
    SUCCESS = "success"
    EXHAUSTED = "exhausted"    # transient failures up to the attempt ceiling
    SKIPPED = "skipped"        # run stopped (cancellation / shutdown) before finishing


@dataclass
class CapabilityResult:
    name: str
    outcome: Outcome
    value: Any = None
    attempts: int = 0
    error: Optional[str] = None


@dataclass
class ProcessorResult:
    """Result of analysing one item. Caller merges and commits."""
    results: dict[str, CapabilityResult] = field(default_factory=dict)
    stopped: bool = False

    def value(self, name: str) -> Any:
        r = self.results.get(name)
        return r.value if r is not None and r.outcome == Outcome.SUCCESS else None

    def succeeded(self, name: str) -> bool:
        r = self.results.get(name)
        return r is not None and r.outcome == Outcome.SUCCESS

    @property
    def attempted(self) -> frozenset[str]:
        return frozenset(
            name for name, r in self.results.items() if r.outcome != Outcome.SKIPPED
        )


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    backoff_base: float = 0.5
    backoff_max: float = 30.0
    timeout: float = 30.0

    def delay(self, attempt: int) -> float:
        """Backoff after the given (1-based) failed attempt."""
        return min(self.backoff_base * (2 ** (attempt - 1)), self.backoff_max)


def _normalize_value(name: str, raw: Any) -> Any:
    if name == "tagging":
        return normalize_tags(raw or ())
    if name == "ocr":
        return (raw or "").strip()
    if name == "faces":
        return frozenset(str(s) for s in (raw or ()))
    if name == "geocoding":
        return (raw or "").strip() or None
    return raw


class CapabilityRunner:
    """
    Runs analyzer capabilities with per-call timeouts and retries.

    Calls execute on a dedicated thread pool so a hung capability is
    abandoned after ``policy.timeout`` instead of blocking the worker.
    """

    def __init__(
        self,
        policy: RetryPolicy,
        *,
        max_workers: int = 8,
        wait: Optional[Callable[[float], bool]] = None,
    ):
        """
        Args:
            policy: Attempt ceiling, backoff and timeout
            max_workers: Threads available for capability calls
            wait: Sleeps for the given seconds; returns True if interrupted
                (shutdown), which stops the run. Defaults to time.sleep.
        """
        self._policy = policy
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="mediadex-capability",
        )
        self._wait = wait or (lambda seconds: time.sleep(seconds) or False)

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    def run(
        self,
        item_id: str,
        content: bytes,
        analyzer,
        specs: list[CapabilitySpec],
        should_stop: Callable[[], bool] = lambda: False,
    ) -> ProcessorResult:
        """
        Invoke each capability in ``specs`` on ``content``.

        Raises:
            AnalysisPermanentError: If any capability reports permanent failure
        """
        result = ProcessorResult()
        for spec in specs:
            if result.stopped or should_stop():
                result.stopped = True
                result.results[spec.name] = CapabilityResult(spec.name, Outcome.SKIPPED)
                continue
            cap_result = self._run_one(item_id, content, analyzer, spec, should_stop)
            if cap_result.outcome == Outcome.SKIPPED:
                result.stopped = True
            result.results[spec.name] = cap_result
        return result

    def _call(self, fn: Callable, content: bytes) -> Any:
        future: Future = self._executor.submit(fn, content)
        try:
            return future.result(timeout=self._policy.timeout)
        except FutureTimeout:
            future.cancel()
            raise TimeoutError(f"capability call exceeded {self._policy.timeout}s") from None

    def _run_one(self, item_id, content, analyzer, spec, should_stop) -> CapabilityResult:
        fn = getattr(analyzer, spec.method)
        last_error = None
        for attempt in range(1, self._policy.max_attempts + 1):
            try:
                raw = self._call(fn, content)
                return CapabilityResult(
                    spec.name, Outcome.SUCCESS, _normalize_value(spec.name, raw), attempt,
                )
            except AnalysisPermanentError:
                raise
            except (AnalysisTransientError, TimeoutError, MemoryError) as e:
                last_error = f"{type(e).__name__}: {e}"
            except Exception as e:
                # Unknown errors are retried like transient ones
                last_error = f"{type(e).__name__}: {e}"
                logger.debug("Unexpected error from %s on %s", spec.name, item_id, exc_info=True)

            if attempt >= self._policy.max_attempts:
                break
            delay = self._policy.delay(attempt)
            logger.debug(
                "%s failed on %s (attempt %d), retry after %.2fs: %s",
                spec.name, item_id, attempt, delay, last_error,
            )
            interrupted = delay > 0 and self._wait(delay)
            if interrupted or should_stop():
                return CapabilityResult(spec.name, Outcome.SKIPPED, attempts=attempt, error=last_error)

        logger.warning(
            "Abandoned %s for %s after %d attempts: %s",
            spec.name, item_id, self._policy.max_attempts, last_error,
        )
        return CapabilityResult(
            spec.name, Outcome.EXHAUSTED, attempts=self._policy.max_attempts, error=last_error,
        )

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)


# --- Merging a pass into committed attributes ---

_FIELDS = {"tagging": "tags", "ocr": "text", "faces": "faces", "geocoding": "location"}
_EMPTY = {"tags": frozenset(), "text": "", "faces": frozenset(), "location": None}


def merge_attributes(
    previous: Attributes,
    result: ProcessorResult,
    policy: MergePolicy = MergePolicy.REPLACE,
) -> Attributes:
    """
    Combine a new analysis pass with the previously committed attributes.

    REPLACE: every attempted capability overwrites its field; an exhausted
    capability leaves the field empty. Fields of capabilities that were
    not attempted keep their previous value.

    MERGE: tags and faces are unioned; text and location take the new
    value when one was produced, otherwise keep the previous value.
    """
    values = {
        "tags": previous.tags,
        "text": previous.text,
        "faces": previous.faces,
        "location": previous.location,
    }
    for name in result.attempted:
        field_name = _FIELDS.get(name)
        if field_name is None:
            continue
        new = result.value(name) if result.succeeded(name) else _EMPTY[field_name]
        if policy == MergePolicy.REPLACE:
            values[field_name] = new
        elif field_name in ("tags", "faces"):
            values[field_name] = values[field_name] | new
        elif new:
            values[field_name] = new
    return Attributes(**values)
