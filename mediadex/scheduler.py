"""
Analysis scheduler: a fixed pool of worker threads draining the work queue.

Per item: UNPROCESSED -> QUEUED -> PROCESSING -> {PROCESSED | FAILED}.

- Enqueue is atomic per item: the index marks the item QUEUED before it is
  pushed, and an item already QUEUED/PROCESSING is never pushed again.
- Dequeue claims: the worker moves QUEUED -> PROCESSING under the item
  lock before doing any work, so at most one worker analyses an id.
  The id stays held until the worker leaves it; an index rebuild that
  settles a held item cannot hand it to a second worker before then.
- Capabilities run without any index lock held. The result is merged and
  committed as one atomic index step.
- Cancellation is cooperative. Queued items are pulled from the queue;
  in-flight items finish computing but their result is discarded and the
  item returns to the state it had before it was queued.
"""

import logging
import threading
from typing import Callable, Iterable, Optional

from .errors import AnalysisPermanentError, AssetUnavailable, IndexCorruption
from .events import (
    BATCH_COMPLETED,
    BATCH_STARTED,
    PROGRESS_CHANGED,
    EventBus,
)
from .faces import FaceRegistry
from .index import MediaIndex
from .processors import (
    CAPABILITIES,
    CapabilityRunner,
    RetryPolicy,
    available_capabilities,
    merge_attributes,
)
from .types import EMPTY_ATTRIBUTES, MergePolicy, ProcessingState
from .work_queue import Priority, WorkQueue

logger = logging.getLogger(__name__)

# How long an idle worker waits on the queue before re-checking for shutdown
WORKER_POLL_SECONDS = 0.5


class Progress:
    """
    Progress of the current ingestion batch: completed / enqueued.

    A batch starts when work arrives while no batch is active; work
    arriving mid-batch joins it. The reported fraction never decreases
    within a batch and is exactly 1.0 once the batch drains. The tracker
    is idle once a drained batch's completion callbacks have run.
    """

    def __init__(self):
        self._cond = threading.Condition()
        self._total = 0
        self._done = 0
        self._batch = 0
        self._reported = 0.0
        self._active = False
        self._idle = True

    def add(self, n: int) -> bool:
        """Account for newly enqueued work. Returns True if a new batch began."""
        if n <= 0:
            return False
        with self._cond:
            started = not self._active
            if started:
                self._batch += 1
                self._total = 0
                self._done = 0
                self._reported = 0.0
                self._active = True
            self._idle = False
            self._total += n
            return started

    def complete(self, n: int = 1) -> bool:
        """Record finished work. Returns True if this drained the batch."""
        with self._cond:
            self._done += n
            return self._settle()

    def withdraw(self, n: int) -> bool:
        """Remove cancelled, never-started work from the batch total."""
        if n <= 0:
            return False
        with self._cond:
            self._total -= n
            return self._settle()

    def _settle(self) -> bool:
        if not self._active:
            return False
        if self._total > 0:
            self._reported = max(self._reported, min(1.0, self._done / self._total))
        if self._done >= self._total:
            self._active = False
            self._reported = 1.0
            return True
        return False

    def mark_idle(self) -> None:
        """Called after a drained batch's callbacks; wakes wait_idle()."""
        with self._cond:
            if not self._active:
                self._idle = True
                self._cond.notify_all()

    @property
    def value(self) -> float:
        with self._cond:
            return self._reported

    @property
    def outstanding(self) -> int:
        with self._cond:
            return max(0, self._total - self._done) if self._active else 0

    @property
    def batch(self) -> int:
        with self._cond:
            return self._batch

    def snapshot(self) -> dict:
        with self._cond:
            return {
                "batch": self._batch,
                "done": self._done,
                "total": self._total,
                "progress": self._reported,
                "active": self._active,
            }

    def wait_drained(self, timeout: Optional[float] = None) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: self._idle, timeout)


class AnalysisScheduler:
    """Bounded worker pool that analyses queued items and commits results."""

    def __init__(
        self,
        index: MediaIndex,
        source,
        analyzer,
        *,
        faces: Optional[FaceRegistry] = None,
        concurrency: int = 4,
        retry: Optional[RetryPolicy] = None,
        capabilities: Optional[frozenset[str]] = None,
        merge_policy: MergePolicy = MergePolicy.REPLACE,
        prioritize_by_year: bool = False,
        events: Optional[EventBus] = None,
        on_batch_complete: Optional[Callable[[], None]] = None,
        on_corruption: Optional[Callable[[IndexCorruption], None]] = None,
    ):
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")
        self._index = index
        self._source = source
        self._analyzer = analyzer
        self._faces = faces or FaceRegistry()
        self._concurrency = concurrency
        self._capabilities = capabilities
        self._merge_policy = merge_policy
        self._events = events
        self._on_batch_complete = on_batch_complete
        self._on_corruption = on_corruption

        self._queue = WorkQueue(by_year=prioritize_by_year)
        self._progress = Progress()
        self._stop_event = threading.Event()
        self._runner = CapabilityRunner(
            retry or RetryPolicy(),
            max_workers=concurrency * len(CAPABILITIES) + 2,
            wait=self._stop_event.wait,
        )
        self._cancel_lock = threading.Lock()
        self._cancel_requested: set[str] = set()
        self._threads: list[threading.Thread] = []
        # Bumped by clear(); results claimed in an older epoch are dropped
        self._epoch = 0
        # Ids a worker holds between claim and release, guarded by their item lock
        self._active: set[str] = set()
        # Ids to queue again as soon as their worker releases them
        self._deferred: set[str] = set()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
        if self._threads:
            return
        for i in range(self._concurrency):
            t = threading.Thread(
                target=self._worker_loop, name=f"mediadex-worker-{i}", daemon=True,
            )
            t.start()
            self._threads.append(t)
        logger.info("Started %d analysis workers", self._concurrency)

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop workers. In-flight items are rolled back, not committed."""
        self._stop_event.set()
        self._queue.close()
        for t in self._threads:
            t.join(timeout)
        self._threads = []
        for item_id in self._queue.clear():
            self._index.rollback(item_id)
        self._runner.close()
        logger.info("Analysis workers stopped")

    @property
    def running(self) -> bool:
        return bool(self._threads) and not self._stop_event.is_set()

    # -------------------------------------------------------------------------
    # Control API
    # -------------------------------------------------------------------------

    @property
    def queue(self) -> WorkQueue:
        return self._queue

    @property
    def progress(self) -> Progress:
        return self._progress

    def enqueue(self, ids: Iterable[str], priority: Priority = Priority.NORMAL) -> list[str]:
        """
        Queue items for analysis. Returns the ids queued.

        Items that are unknown or already QUEUED/PROCESSING are skipped;
        PROCESSED/FAILED items are re-analyzed. An item whose previous
        analysis is still running in a worker (it was settled by a rebuild
        meanwhile) is queued once that worker lets go of it, and is
        included in the result.
        """
        accepted = []
        deferred = []
        for item_id in dict.fromkeys(ids):
            with self._index.locked(item_id):
                if item_id in self._active:
                    item = self._index.get(item_id)
                    if item is not None and item.state != ProcessingState.PROCESSING:
                        self._deferred.add(item_id)
                        deferred.append(item_id)
                    continue
                if self._index.mark_queued(item_id):
                    accepted.append(item_id)
        if deferred:
            logger.info("Deferred %d items until their running analysis exits", len(deferred))
        if not accepted:
            return deferred

        if self._progress.add(len(accepted)) and self._events:
            self._events.publish(BATCH_STARTED, batch=self._progress.batch)

        for item_id in accepted:
            item = self._index.get(item_id)
            if item is None or not self._queue.put(item_id, item.created_at, priority):
                # Vanished or queue closed between mark and push
                self._index.rollback(item_id)
                self._finish_withdrawn(1)
        logger.info("Queued %d items", len(accepted))
        return accepted + deferred

    def cancel(self, ids: Iterable[str]) -> dict:
        """
        Cancel analysis for ids.

        Not-yet-started items leave the queue and return to their prior
        state. In-flight items are flagged; their result is discarded when
        the analysis finishes.
        """
        ids = list(dict.fromkeys(ids))
        removed = self._queue.remove(ids)
        for item_id in removed:
            self._index.rollback(item_id)
        self._finish_withdrawn(len(removed))

        flagged = []
        for item_id in ids:
            if item_id in removed:
                continue
            with self._index.locked(item_id):
                if item_id in self._deferred:
                    self._deferred.discard(item_id)
                    removed.append(item_id)
                    continue
                item = self._index.get(item_id)
                if item is not None and item.state in (
                    ProcessingState.QUEUED, ProcessingState.PROCESSING,
                ):
                    with self._cancel_lock:
                        self._cancel_requested.add(item_id)
                    flagged.append(item_id)
        if removed or flagged:
            logger.info("Cancelled %d queued, %d in-flight", len(removed), len(flagged))
        return {"removed": removed, "in_flight": flagged}

    def pause(self) -> None:
        """Stop handing out new work. In-flight items run to completion."""
        self._queue.pause()
        logger.info("Analysis paused")

    def resume(self) -> None:
        self._queue.resume()
        logger.info("Analysis resumed")

    @property
    def paused(self) -> bool:
        return self._queue.paused

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until the current batch drains. Returns False on timeout."""
        return self._progress.wait_drained(timeout)

    def clear(self) -> list[str]:
        """Drop all queued work (used before an index rebuild).

        Analyses already in flight finish, but their results are discarded.
        Their items are queued again only after the worker releases them.
        """
        with self._cancel_lock:
            self._epoch += 1
        ids = self._queue.clear()
        for item_id in ids:
            self._index.rollback(item_id)
        self._finish_withdrawn(len(ids))
        return ids

    # -------------------------------------------------------------------------
    # Workers
    # -------------------------------------------------------------------------

    def _take_cancel(self, item_id: str) -> bool:
        with self._cancel_lock:
            if item_id in self._cancel_requested:
                self._cancel_requested.discard(item_id)
                return True
            return False

    def _cancel_pending(self, item_id: str) -> bool:
        with self._cancel_lock:
            return item_id in self._cancel_requested

    def _superseded(self, epoch: int) -> bool:
        with self._cancel_lock:
            return epoch != self._epoch

    def _worker_loop(self) -> None:
        while not self._stop_event.is_set():
            item_id = self._queue.get(timeout=WORKER_POLL_SECONDS)
            if item_id is None:
                continue
            try:
                self._process(item_id)
            except IndexCorruption as e:
                logger.error("Index corruption while committing %s: %s", item_id, e)
                if self._on_corruption is not None:
                    try:
                        self._on_corruption(e)
                    except Exception:
                        logger.exception("Corruption handler failed")
            except Exception:
                logger.exception("Unexpected failure analysing %s", item_id)
                with self._index.locked(item_id):
                    self._take_cancel(item_id)
                    self._index.rollback(item_id)
            finally:
                self._finish_one()

    def _process(self, item_id: str) -> None:
        with self._index.locked(item_id):
            if self._take_cancel(item_id):
                self._index.rollback(item_id)
                logger.debug("Skipped cancelled item %s", item_id)
                return
            item = self._index.claim(item_id)
            if item is None:
                return
            epoch = self._epoch
            self._active.add(item_id)
        try:
            self._analyse(item, epoch)
        except IndexCorruption:
            raise
        except Exception:
            logger.exception("Unexpected failure analysing %s", item_id)
            with self._index.locked(item_id):
                self._take_cancel(item_id)
                if not self._superseded(epoch):
                    self._index.rollback(item_id)
        finally:
            self._release(item_id)

    def _release(self, item_id: str) -> None:
        """The worker is done with item_id; queue it again if that was deferred."""
        with self._index.locked(item_id):
            self._active.discard(item_id)
            requeue = item_id in self._deferred
            self._deferred.discard(item_id)
        if requeue:
            self.enqueue([item_id])

    def _analyse(self, item, epoch: int) -> None:
        item_id = item.id
        try:
            content = self._source.fetch_content(item_id)
        except AssetUnavailable:
            logger.info("Item %s vanished; dropping", item_id)
            with self._index.locked(item_id):
                self._take_cancel(item_id)
                self._index.remove(item_id)
            self._faces.forget_item(item_id)
            return
        except OSError as e:
            self._commit_failed(item, epoch, AnalysisPermanentError(f"unreadable content: {e}"))
            return

        specs = available_capabilities(self._analyzer, self._capabilities)
        try:
            result = self._runner.run(
                item_id, content, self._analyzer, specs,
                should_stop=lambda: (
                    self._stop_event.is_set()
                    or self._cancel_pending(item_id)
                    or self._superseded(epoch)
                ),
            )
        except AnalysisPermanentError as e:
            self._commit_failed(item, epoch, e)
            return

        if result.succeeded("faces"):
            result.results["faces"].value = self._faces.resolve(result.value("faces"))
        new_attrs = merge_attributes(item.attributes, result, self._merge_policy)

        with self._index.locked(item_id):
            if self._superseded(epoch):
                self._take_cancel(item_id)
                logger.info("Discarded analysis of %s (index rebuilt)", item_id)
                return
            if self._take_cancel(item_id) or result.stopped:
                self._index.rollback(item_id)
                logger.info("Discarded analysis of %s (cancelled)", item_id)
                return
            committed = self._index.commit(
                item_id, item.attributes, new_attrs, fingerprint=item.fingerprint,
            )
        if committed:
            self._faces.update_members(item_id, item.attributes.faces, new_attrs.faces)
            logger.debug("Committed %s", item_id)

    def _commit_failed(self, item, epoch: int, error: Exception) -> None:
        logger.warning("Analysis of %s failed permanently: %s", item.id, error)
        with self._index.locked(item.id):
            if self._superseded(epoch):
                self._take_cancel(item.id)
                return
            if self._take_cancel(item.id):
                self._index.rollback(item.id)
                return
            committed = self._index.commit(
                item.id, item.attributes, EMPTY_ATTRIBUTES,
                state=ProcessingState.FAILED, fingerprint=item.fingerprint,
            )
        if committed:
            self._faces.update_members(item.id, item.attributes.faces, ())

    # -------------------------------------------------------------------------
    # Progress
    # -------------------------------------------------------------------------

    def _finish_one(self) -> None:
        drained = self._progress.complete(1)
        self._after_progress(drained)

    def _finish_withdrawn(self, n: int) -> None:
        if n:
            self._after_progress(self._progress.withdraw(n))

    def _after_progress(self, drained: bool) -> None:
        if self._events:
            self._events.publish(PROGRESS_CHANGED, **self._progress.snapshot())
        if not drained:
            return
        batch = self._progress.batch
        logger.info("Batch %d complete", batch)
        try:
            if self._on_batch_complete is not None:
                self._on_batch_complete()
        except Exception:
            logger.exception("Batch completion handler failed")
        finally:
            self._progress.mark_idle()
        if self._events:
            self._events.publish(BATCH_COMPLETED, batch=batch)
