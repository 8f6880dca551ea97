"""Tests for the analysis scheduler and its worker pool."""

import threading
import time
from datetime import timedelta

import pytest

from conftest import BASE_TIME, ScriptedAnalyzer, fast_retry
from mediadex.errors import AnalysisPermanentError, IndexCorruption
from mediadex.events import BATCH_COMPLETED, BATCH_STARTED, EventBus
from mediadex.faces import FaceRegistry
from mediadex.index import MediaIndex
import mediadex.scheduler as scheduler_module
from mediadex.scheduler import AnalysisScheduler
from mediadex.smart_collections import CollectionMaterializer
from mediadex.types import FORWARD_TRANSITIONS, MergePolicy, ProcessingState
from mediadex.work_queue import Priority


def _register(index, source, *ids):
    for n, item_id in enumerate(ids):
        created = BASE_TIME + timedelta(minutes=n)
        source.add(item_id, created)
        index.register(item_id, f"fp-{item_id}-0", created)


def _states(index, ids):
    return {item_id: index.get(item_id).state for item_id in ids}


class TestBasicProcessing:

    def test_items_are_processed_and_committed(self, index, source, make_scheduler):
        analyzer = ScriptedAnalyzer(results={
            "a": {"tags": ["Beach"], "text": "Sunset Bar", "location": "Malibu"},
            "b": {"tags": ["nature"]},
        })
        _register(index, source, "a", "b")
        scheduler = make_scheduler(index, source, analyzer)

        assert scheduler.enqueue(["a", "b"]) == ["a", "b"]
        assert scheduler.wait_idle(10)

        assert _states(index, ["a", "b"]) == {
            "a": ProcessingState.PROCESSED, "b": ProcessingState.PROCESSED,
        }
        assert index.lookup_by_tag("beach") == {"a"}
        assert index.lookup_by_token("malibu") == {"a"}
        assert index.get("a").last_analyzed_fingerprint == "fp-a-0"
        assert scheduler.progress.value == 1.0
        index.verify()

    def test_enqueue_skips_unknown_and_in_flight(self, index, source, make_scheduler, analyzer):
        _register(index, source, "a")
        scheduler = make_scheduler(index, source, analyzer, start=False)
        assert scheduler.enqueue(["missing"]) == []
        assert scheduler.enqueue(["a", "a"]) == ["a"]
        assert scheduler.enqueue(["a"]) == []
        assert len(scheduler.queue) == 1

    def test_wait_idle_without_work(self, index, source, make_scheduler, analyzer):
        scheduler = make_scheduler(index, source, analyzer)
        assert scheduler.wait_idle(1)

    def test_concurrency_must_be_positive(self, index, source, analyzer):
        with pytest.raises(ValueError):
            AnalysisScheduler(index, source, analyzer, concurrency=0)


class TestAtMostOnce:

    def test_concurrent_enqueue_analyses_once(self, index, source, make_scheduler, analyzer):
        """Two racing enqueues of the same item yield a single analysis."""
        _register(index, source, "x")
        scheduler = make_scheduler(index, source, analyzer, start=False)

        barrier = threading.Barrier(2)
        accepted = []

        def enqueue():
            barrier.wait()
            accepted.append(scheduler.enqueue(["x"]))

        threads = [threading.Thread(target=enqueue) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(5)

        scheduler.start()
        assert scheduler.wait_idle(10)
        assert sorted(accepted) == [[], ["x"]]
        assert analyzer.analyzed("x") == 1
        assert source.fetch_calls["x"] == 1

    @pytest.mark.slow
    def test_no_item_analysed_concurrently(self, index, source, make_scheduler, analyzer):
        ids = [f"item{n:03d}" for n in range(100)]
        _register(index, source, *ids)
        scheduler = make_scheduler(index, source, analyzer, concurrency=8)

        threads = [
            threading.Thread(target=scheduler.enqueue, args=(ids[i::4],))
            for i in range(4)
        ] + [threading.Thread(target=scheduler.enqueue, args=(ids,))]
        for t in threads:
            t.start()
        for t in threads:
            t.join(10)

        assert scheduler.wait_idle(30)
        assert analyzer.max_concurrent_per_item <= 1
        assert all(analyzer.analyzed(i) == 1 for i in ids)
        index.verify()


class TestFailures:

    def test_capability_timeout_exhaustion_still_processes(self, index, source, make_scheduler):
        """OCR timing out on every attempt leaves the item Processed without text."""
        analyzer = ScriptedAnalyzer(
            results={"y": {"tags": ["dog"], "text": "should not appear"}},
            failures={("y", "ocr"): TimeoutError("ocr timed out")},
        )
        _register(index, source, "y")
        scheduler = make_scheduler(index, source, analyzer, retry=fast_retry(max_attempts=3))
        scheduler.enqueue(["y"])
        assert scheduler.wait_idle(10)

        item = index.get("y")
        assert item.state == ProcessingState.PROCESSED
        assert item.attributes.text == ""
        assert item.attributes.tags == {"dog"}
        assert analyzer.calls[("ocr", "y")] == 3

        collections = CollectionMaterializer(index)
        collections.recompute()
        assert "y" not in collections.get("Screenshots & Documents").members

    def test_permanent_error_marks_failed(self, index, source, make_scheduler):
        analyzer = ScriptedAnalyzer(failures={("a", "tagging"): AnalysisPermanentError("corrupt file")})
        _register(index, source, "a")
        scheduler = make_scheduler(index, source, analyzer)
        scheduler.enqueue(["a"])
        assert scheduler.wait_idle(10)

        item = index.get("a")
        assert item.state == ProcessingState.FAILED
        assert item.committed
        assert analyzer.calls[("tagging", "a")] == 1

    def test_unreadable_content_marks_failed(self, index, source, make_scheduler, analyzer):
        _register(index, source, "a")
        source.make_unreadable("a")
        scheduler = make_scheduler(index, source, analyzer)
        scheduler.enqueue(["a"])
        assert scheduler.wait_idle(10)
        assert index.get("a").state == ProcessingState.FAILED
        assert analyzer.analyzed("a") == 0

    def test_vanished_item_is_removed(self, index, source, make_scheduler, analyzer):
        _register(index, source, "a", "b")
        source.vanish("a")
        scheduler = make_scheduler(index, source, analyzer)
        scheduler.enqueue(["a", "b"])
        assert scheduler.wait_idle(10)

        assert index.get("a") is None
        assert index.get("b").state == ProcessingState.PROCESSED
        assert scheduler.progress.value == 1.0

    def test_failed_item_can_be_reanalyzed(self, index, source, make_scheduler):
        analyzer = ScriptedAnalyzer(failures={("a", "tagging"): AnalysisPermanentError("bad")})
        _register(index, source, "a")
        scheduler = make_scheduler(index, source, analyzer)
        scheduler.enqueue(["a"])
        scheduler.wait_idle(10)

        analyzer.failures.clear()
        analyzer.results["a"] = {"tags": ["fixed"]}
        assert scheduler.enqueue(["a"]) == ["a"]
        assert scheduler.wait_idle(10)
        assert index.get("a").state == ProcessingState.PROCESSED
        assert index.lookup_by_tag("fixed") == {"a"}

    def test_index_corruption_reported(self, index, source, make_scheduler, analyzer, monkeypatch):
        reported = []
        _register(index, source, "a")

        def broken_commit(*args, **kwargs):
            raise IndexCorruption("posting list diverged")

        monkeypatch.setattr(index, "commit", broken_commit)
        scheduler = make_scheduler(index, source, analyzer, on_corruption=reported.append)
        scheduler.enqueue(["a"])
        assert scheduler.wait_idle(10)
        assert len(reported) == 1
        assert isinstance(reported[0], IndexCorruption)

    def test_failing_corruption_handler_keeps_worker_alive(self, index, source, make_scheduler,
                                                          analyzer, monkeypatch):
        _register(index, source, "a", "b")
        original = index.commit

        def commit(item_id, *args, **kwargs):
            if item_id == "a":
                raise IndexCorruption("bad")
            return original(item_id, *args, **kwargs)

        def handler(error):
            raise RuntimeError("rebuild failed")

        monkeypatch.setattr(index, "commit", commit)
        scheduler = make_scheduler(index, source, analyzer, concurrency=1, on_corruption=handler)
        scheduler.enqueue(["a", "b"])
        assert scheduler.wait_idle(10)
        assert index.get("b").state == ProcessingState.PROCESSED


class TestCancellation:

    def test_cancel_mid_batch_keeps_only_committed(self, index, source, make_scheduler):
        """Ten items; cancel after four commit while the fifth is in flight."""
        ids = [f"i{n:02d}" for n in range(1, 11)]
        analyzer = ScriptedAnalyzer(
            results={item_id: {"tags": [f"tag-{item_id}"], "text": f"text {item_id}"} for item_id in ids},
            block={"i05"},
        )
        _register(index, source, *ids)
        scheduler = make_scheduler(index, source, analyzer, concurrency=1)
        scheduler.enqueue(ids)

        assert analyzer.entered.wait(10)
        outcome = scheduler.cancel(ids)
        analyzer.gate.set()
        assert scheduler.wait_idle(10)

        assert outcome["in_flight"] == ["i05"]
        assert outcome["removed"] == ids[5:]

        committed = ids[:4]
        for item_id in committed:
            assert index.get(item_id).state == ProcessingState.PROCESSED
            assert index.lookup_by_tag(f"tag-{item_id}") == {item_id}
        for item_id in ids[4:]:
            item = index.get(item_id)
            assert item.state == ProcessingState.UNPROCESSED
            assert not item.committed
            assert index.lookup_by_tag(f"tag-{item_id}") == frozenset()
            assert index.lookup_by_token(item_id) == frozenset()
        assert index.range_by_date() == committed
        assert scheduler.progress.value == 1.0
        index.verify()

    def test_cancel_reanalysis_restores_previous_result(self, index, source, make_scheduler):
        analyzer = ScriptedAnalyzer(results={"a": {"tags": ["first"]}})
        _register(index, source, "a")
        scheduler = make_scheduler(index, source, analyzer, concurrency=1)
        scheduler.enqueue(["a"])
        scheduler.wait_idle(10)

        analyzer.results["a"] = {"tags": ["second"]}
        analyzer.block.add("a")
        scheduler.enqueue(["a"])
        assert analyzer.entered.wait(10)
        scheduler.cancel(["a"])
        analyzer.gate.set()
        assert scheduler.wait_idle(10)

        assert index.get("a").state == ProcessingState.PROCESSED
        assert index.lookup_by_tag("first") == {"a"}
        assert index.lookup_by_tag("second") == frozenset()

    def test_cancel_everything_queued_drains_batch(self, index, source, make_scheduler, analyzer):
        _register(index, source, "a", "b")
        scheduler = make_scheduler(index, source, analyzer, start=False)
        scheduler.enqueue(["a", "b"])
        outcome = scheduler.cancel(["a", "b"])
        assert outcome == {"removed": ["a", "b"], "in_flight": []}
        assert scheduler.wait_idle(1)
        assert _states(index, ["a", "b"]) == {
            "a": ProcessingState.UNPROCESSED, "b": ProcessingState.UNPROCESSED,
        }

    def test_stop_rolls_back_queued(self, index, source, analyzer):
        _register(index, source, "a")
        scheduler = AnalysisScheduler(index, source, analyzer, retry=fast_retry())
        scheduler.enqueue(["a"])
        scheduler.stop(timeout=1)
        assert index.get("a").state == ProcessingState.UNPROCESSED


class TestRebuildHandoff:
    """An index rebuild while a worker still holds an item."""

    @staticmethod
    def _block_in_analysis(index, source, make_scheduler, **results):
        analyzer = ScriptedAnalyzer(results=results, block={"a"})
        _register(index, source, "a")
        scheduler = make_scheduler(index, source, analyzer)
        scheduler.enqueue(["a"])
        assert analyzer.entered.wait(10)
        return analyzer, scheduler

    def test_settled_item_waits_for_running_worker(self, index, source, make_scheduler):
        analyzer, scheduler = self._block_in_analysis(
            index, source, make_scheduler, a={"tags": ["beach"]},
        )
        scheduler.clear()
        index.rebuild(index.snapshot().items.values())
        assert index.get("a").state == ProcessingState.UNPROCESSED

        assert scheduler.enqueue(["a"]) == ["a"]
        assert len(scheduler.queue) == 0
        assert index.get("a").state == ProcessingState.UNPROCESSED
        time.sleep(0.2)
        assert analyzer.analyzed("a") == 1

        analyzer.gate.set()
        assert scheduler.wait_idle(10)
        assert analyzer.max_concurrent_per_item == 1
        assert analyzer.analyzed("a") == 2
        assert index.get("a").state == ProcessingState.PROCESSED
        assert index.lookup_by_tag("beach") == {"a"}
        index.verify()

    def test_cancel_deferred_item(self, index, source, make_scheduler):
        analyzer, scheduler = self._block_in_analysis(index, source, make_scheduler)
        scheduler.clear()
        index.rebuild(index.snapshot().items.values())
        scheduler.enqueue(["a"])

        assert scheduler.cancel(["a"]) == {"removed": ["a"], "in_flight": []}
        analyzer.gate.set()
        assert scheduler.wait_idle(10)
        assert analyzer.analyzed("a") == 1
        assert index.get("a").state == ProcessingState.UNPROCESSED

    def test_cancel_flag_consumed_when_result_superseded(self, index, source, make_scheduler):
        analyzer, scheduler = self._block_in_analysis(
            index, source, make_scheduler, a={"tags": ["beach"]},
        )
        assert scheduler.cancel(["a"])["in_flight"] == ["a"]
        scheduler.clear()
        index.rebuild(index.snapshot().items.values())
        analyzer.gate.set()
        assert scheduler.wait_idle(10)
        assert index.get("a").state == ProcessingState.UNPROCESSED

        assert scheduler.enqueue(["a"]) == ["a"]
        assert scheduler.wait_idle(10)
        assert index.get("a").state == ProcessingState.PROCESSED
        assert index.lookup_by_tag("beach") == {"a"}

    def test_cancel_flag_consumed_after_unexpected_error(self, index, source, make_scheduler,
                                                         monkeypatch):
        original = scheduler_module.merge_attributes
        broken = threading.Event()
        broken.set()

        def merge(*args, **kwargs):
            if broken.is_set():
                raise RuntimeError("merge exploded")
            return original(*args, **kwargs)

        monkeypatch.setattr(scheduler_module, "merge_attributes", merge)
        analyzer, scheduler = self._block_in_analysis(
            index, source, make_scheduler, a={"tags": ["beach"]},
        )
        assert scheduler.cancel(["a"])["in_flight"] == ["a"]
        analyzer.gate.set()
        assert scheduler.wait_idle(10)
        assert index.get("a").state == ProcessingState.UNPROCESSED

        broken.clear()
        assert scheduler.enqueue(["a"]) == ["a"]
        assert scheduler.wait_idle(10)
        assert index.get("a").state == ProcessingState.PROCESSED
        assert index.lookup_by_tag("beach") == {"a"}


class TestControl:

    def test_pause_holds_queued_work(self, index, source, make_scheduler, analyzer):
        _register(index, source, "a")
        scheduler = make_scheduler(index, source, analyzer)
        scheduler.pause()
        assert scheduler.paused
        scheduler.enqueue(["a"])
        assert not scheduler.wait_idle(0.3)
        assert index.get("a").state == ProcessingState.QUEUED
        assert analyzer.analyzed("a") == 0

        scheduler.resume()
        assert scheduler.wait_idle(10)
        assert index.get("a").state == ProcessingState.PROCESSED

    def test_high_priority_runs_first(self, index, source, make_scheduler):
        order = []
        analyzer = ScriptedAnalyzer()
        original = analyzer.tag

        def tag(content):
            order.append(content.decode().split("|")[0])
            return original(content)

        analyzer.tag = tag
        _register(index, source, "a", "b", "urgent")
        scheduler = make_scheduler(index, source, analyzer, concurrency=1, start=False)
        scheduler.enqueue(["a", "b"])
        scheduler.enqueue(["urgent"], Priority.HIGH)
        scheduler.start()
        assert scheduler.wait_idle(10)
        assert order == ["urgent", "a", "b"]

    def test_disabled_capability_never_runs(self, index, source, make_scheduler, analyzer):
        _register(index, source, "a")
        scheduler = make_scheduler(index, source, analyzer, capabilities=frozenset({"tagging"}))
        scheduler.enqueue(["a"])
        assert scheduler.wait_idle(10)
        assert analyzer.calls[("tagging", "a")] == 1
        assert analyzer.calls[("ocr", "a")] == 0
        assert analyzer.calls[("geocoding", "a")] == 0

    def test_progress_never_decreases(self, index, source, make_scheduler):
        ids = [f"p{n:02d}" for n in range(40)]
        analyzer = ScriptedAnalyzer(block={"p00"})
        _register(index, source, *ids)
        scheduler = make_scheduler(index, source, analyzer, concurrency=4)
        scheduler.enqueue(ids[:20])
        assert analyzer.entered.wait(10)

        readings = []
        deadline = time.monotonic() + 20
        while time.monotonic() < deadline and scheduler.progress.outstanding > 1:
            readings.append(scheduler.progress.value)
        readings.append(scheduler.progress.value)

        # Work joining mid-batch must not pull the fraction back
        scheduler.enqueue(ids[20:])
        readings.append(scheduler.progress.value)
        analyzer.gate.set()
        while time.monotonic() < deadline:
            readings.append(scheduler.progress.value)
            if scheduler.wait_idle(0.001):
                break
        readings.append(scheduler.progress.value)

        assert readings == sorted(readings)
        assert readings[-1] == 1.0
        assert scheduler.progress.batch == 1

    def test_batch_events(self, index, source, make_scheduler, analyzer):
        events = EventBus()
        seen = []
        events.subscribe(BATCH_STARTED, lambda p: seen.append(("started", p["batch"])))
        events.subscribe(BATCH_COMPLETED, lambda p: seen.append(("completed", p["batch"])))
        callbacks = []
        _register(index, source, "a", "b")

        scheduler = make_scheduler(
            index, source, analyzer, events=events,
            on_batch_complete=lambda: callbacks.append(True),
        )
        scheduler.enqueue(["a"])
        scheduler.wait_idle(10)
        scheduler.enqueue(["b"])
        scheduler.wait_idle(10)

        # Completion is published just after the tracker goes idle
        deadline = time.monotonic() + 5
        while len(seen) < 4 and time.monotonic() < deadline:
            time.sleep(0.01)
        assert callbacks == [True, True]
        assert sorted(seen) == [("completed", 1), ("completed", 2), ("started", 1), ("started", 2)]


class TestMergePolicies:

    def _reanalyze(self, index, source, make_scheduler, policy):
        analyzer = ScriptedAnalyzer(results={"a": {"tags": ["beach"], "text": "menu"}})
        _register(index, source, "a")
        scheduler = make_scheduler(index, source, analyzer, merge_policy=policy)
        scheduler.enqueue(["a"])
        scheduler.wait_idle(10)
        analyzer.results["a"] = {"tags": ["sunset"]}
        scheduler.enqueue(["a"])
        scheduler.wait_idle(10)
        return index.get("a").attributes

    def test_replace_policy(self, index, source, make_scheduler):
        attrs = self._reanalyze(index, source, make_scheduler, MergePolicy.REPLACE)
        assert attrs.tags == {"sunset"}
        assert attrs.text == ""
        assert index.lookup_by_tag("beach") == frozenset()

    def test_merge_policy(self, index, source, make_scheduler):
        attrs = self._reanalyze(index, source, make_scheduler, MergePolicy.MERGE)
        assert attrs.tags == {"beach", "sunset"}
        assert attrs.text == "menu"
        index.verify()


class TestFaces:

    def test_signatures_resolve_to_shared_clusters(self, index, source, make_scheduler):
        faces = FaceRegistry()
        analyzer = ScriptedAnalyzer(results={
            "a": {"faces": ["sig-alice"]},
            "b": {"faces": ["sig-alice", "sig-bob"]},
        })
        _register(index, source, "a", "b")
        scheduler = make_scheduler(index, source, analyzer, faces=faces)
        scheduler.enqueue(["a", "b"])
        assert scheduler.wait_idle(10)

        a_faces = index.get("a").attributes.faces
        b_faces = index.get("b").attributes.faces
        assert len(a_faces) == 1
        assert len(b_faces) == 2
        assert a_faces < b_faces
        (alice,) = a_faces
        assert faces.get(alice).members == {"a", "b"}


class TestStateMachine:

    def test_only_allowed_transitions_observed(self, source, make_scheduler):
        transitions = []
        lock = threading.Lock()

        def listener(old, new):
            with lock:
                transitions.append((old, new))

        index = MediaIndex(listener=listener)
        ids = [f"s{n}" for n in range(12)]
        analyzer = ScriptedAnalyzer(
            failures={("s3", "tagging"): AnalysisPermanentError("bad")},
            block={"s6"},
        )
        _register(index, source, *ids)
        scheduler = make_scheduler(index, source, analyzer, concurrency=2)
        scheduler.enqueue(ids)
        assert analyzer.entered.wait(10)
        scheduler.cancel(ids[6:])
        analyzer.gate.set()
        assert scheduler.wait_idle(10)
        scheduler.enqueue(ids[:3])
        assert scheduler.wait_idle(10)

        for old, new in transitions:
            if old is None or new is None or old.state == new.state:
                continue
            forward = new.state in FORWARD_TRANSITIONS[old.state]
            rolled_back = (
                old.state in (ProcessingState.QUEUED, ProcessingState.PROCESSING)
                and new.state == (old.prior_state or ProcessingState.UNPROCESSED)
            )
            assert forward or rolled_back, (old.id, old.state, new.state)
