"""Tests for smart collection materialization."""

from datetime import timedelta

import pytest

from conftest import BASE_TIME, ScriptedAnalyzer, commit_item
from mediadex.events import COLLECTIONS_CHANGED, EventBus
from mediadex.smart_collections import (
    FAVORITES,
    RULES,
    CollectionMaterializer,
    CollectionRule,
)
from mediadex.types import EMPTY_ATTRIBUTES, ProcessingState


def _counts(materializer):
    return {name: count for name, count, _ in materializer.list()}


class TestRules:

    def test_rule_order(self):
        assert [r.name for r in RULES] == [
            "Beach & Vacation",
            "Family & Friends",
            "Nature & Landscapes",
            "Food & Dining",
            "Screenshots & Documents",
            "Favorites",
        ]

    def test_membership_per_rule(self, index):
        for n, item_id in enumerate(("beach", "people", "nature", "food", "receipt", "vacation")):
            index.register(item_id, "fp", BASE_TIME + timedelta(minutes=n))
        commit_item(index, "beach", tags=["beach"])
        commit_item(index, "vacation", tags=["Vacation"])
        commit_item(index, "people", faces=["face-1"])
        commit_item(index, "nature", tags=["landscape"])
        commit_item(index, "food", tags=["food"])
        commit_item(index, "receipt", text="TOTAL 12.00")

        materializer = CollectionMaterializer(index)
        materializer.recompute()
        assert materializer.get("Beach & Vacation").members == ("vacation", "beach")
        assert materializer.get("Family & Friends").members == ("people",)
        assert materializer.get("Nature & Landscapes").members == ("nature",)
        assert materializer.get("Food & Dining").members == ("food",)
        assert materializer.get("Screenshots & Documents").members == ("receipt",)
        assert materializer.get("Favorites").members == ()


class TestMaterializer:

    def test_three_items_scenario(self, index):
        for n, item_id in enumerate(("a", "b", "c")):
            index.register(item_id, "fp", BASE_TIME + timedelta(minutes=n))
        commit_item(index, "a", tags=["beach"])
        commit_item(index, "b", tags=["nature"])
        commit_item(index, "c", tags=[])

        materializer = CollectionMaterializer(index)
        materializer.recompute()
        counts = _counts(materializer)
        assert counts["Beach & Vacation"] == 1
        assert counts["Nature & Landscapes"] == 1
        assert counts["Screenshots & Documents"] == 0

    def test_recompute_is_idempotent(self, index):
        for n in range(5):
            index.register(f"i{n}", "fp", BASE_TIME)
            commit_item(index, f"i{n}", tags=["beach"], text="x")
        materializer = CollectionMaterializer(index)
        first = materializer.recompute()
        second = materializer.recompute()
        assert first == second
        assert materializer.get("Beach & Vacation").members == ("i0", "i1", "i2", "i3", "i4")

    def test_recompute_does_not_change_items(self, index):
        index.register("a", "fp", BASE_TIME)
        commit_item(index, "a", tags=["beach"])
        index.register("b", "fp", BASE_TIME)
        before = index.snapshot()
        CollectionMaterializer(index).recompute()
        assert index.snapshot() is before

    def test_failed_and_unanalysed_items_excluded(self, index):
        index.register("failed", "fp", BASE_TIME)
        index.mark_queued("failed")
        index.claim("failed")
        index.commit("failed", EMPTY_ATTRIBUTES, EMPTY_ATTRIBUTES, state=ProcessingState.FAILED)
        index.register("new", "fp", BASE_TIME)
        index.toggle_favorite("new")
        index.toggle_favorite("failed")

        materializer = CollectionMaterializer(index)
        materializer.recompute()
        counts = _counts(materializer)
        assert counts["Favorites"] == 2
        assert sum(counts.values()) == 2

    def test_reanalysis_in_progress_keeps_membership(self, index):
        index.register("a", "fp", BASE_TIME)
        commit_item(index, "a", tags=["beach"])
        index.mark_queued("a")
        index.claim("a")
        materializer = CollectionMaterializer(index)
        materializer.recompute()
        assert materializer.get("Beach & Vacation").members == ("a",)

    def test_unknown_collection(self, index):
        with pytest.raises(KeyError):
            CollectionMaterializer(index).get("Cats")

    def test_changed_event_names_only_changed(self, index):
        events = EventBus()
        seen = []
        events.subscribe(COLLECTIONS_CHANGED, seen.append)
        materializer = CollectionMaterializer(index, events=events)

        index.register("a", "fp", BASE_TIME)
        commit_item(index, "a", tags=["food"])
        materializer.recompute()
        materializer.recompute()
        index.toggle_favorite("a")
        materializer.recompute()

        assert [p["names"] for p in seen] == [["Food & Dining"], ["Favorites"]]

    def test_recompute_named_collections_only(self, index):
        materializer = CollectionMaterializer(index)
        index.register("a", "fp", BASE_TIME)
        commit_item(index, "a", tags=["food"])
        index.toggle_favorite("a")

        result = materializer.recompute([FAVORITES])
        assert [c.name for c in result] == [r.name for r in RULES]
        assert materializer.get(FAVORITES).members == ("a",)
        assert materializer.get("Food & Dining").members == ()

        materializer.recompute()
        assert materializer.get("Food & Dining").members == ("a",)

    def test_recompute_unknown_name(self, index):
        materializer = CollectionMaterializer(index)
        with pytest.raises(KeyError):
            materializer.recompute(["Cats"])

    def test_older_view_never_replaces_newer(self, index, monkeypatch):
        materializer = CollectionMaterializer(index)
        index.register("a", "fp", BASE_TIME)
        stale = index.snapshot()
        index.toggle_favorite("a")
        materializer.recompute()

        monkeypatch.setattr(index, "snapshot", lambda: stale)
        materializer.recompute()
        assert materializer.get(FAVORITES).members == ("a",)

    def test_custom_rules(self, index):
        rules = (CollectionRule("Videos", lambda i: i.kind.value == "video"),)
        materializer = CollectionMaterializer(index, rules)
        assert materializer.names == ["Videos"]
        assert materializer.recompute()[0].members == ()


class TestLibraryCollections:

    def test_collections_after_processing(self, source, make_library):
        analyzer = ScriptedAnalyzer(results={
            "a": {"tags": ["beach"]},
            "b": {"tags": ["nature"]},
            "c": {"tags": []},
        })
        for item_id in ("a", "b", "c"):
            source.add(item_id)
        lib = make_library(source, analyzer)
        lib.sync()
        assert lib.wait_idle(10)

        counts = {name: count for name, count, _ in lib.collections()}
        assert counts["Beach & Vacation"] == 1
        assert counts["Nature & Landscapes"] == 1
        assert counts["Screenshots & Documents"] == 0
