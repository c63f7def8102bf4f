"""
Tests for the dynamic memory building blocks: config, scoring, tiering,
selection, the event log, the store and the ingestion buffer.
"""

import gc
import math
import random
import threading
from unittest.mock import MagicMock

import pytest

from conftest import HOUR_MS, make_entry
from dynamic_memory.config import DynamicMemoryConfig, resolve_config
from dynamic_memory.errors import ConfigInvalid, EmbeddingDimensionMismatch
from dynamic_memory.events import MAX_TOOL_EVENTS, ToolEventLog
from dynamic_memory.ingestion import IngestionBuffer
from dynamic_memory.locks import SessionLocks
from dynamic_memory.models import MemoryEntry, Tier, ToolEventKind
from dynamic_memory.scoring import cosine_similarity, recency, rescore, score_entry
from dynamic_memory.selector import (
    extract_keywords,
    normalize_query_text,
    pack_within_budget,
    render_memories_for_prompt,
    search_cold_by_keyword,
    select_within_budget,
)
from dynamic_memory.store import MemoryStore
from dynamic_memory.tiering import reclassify, select_evictions, target_tier


# ── Config Tests ──


class TestDynamicMemoryConfig:
    def test_default_values(self):
        config = DynamicMemoryConfig()
        assert config.enabled is False
        assert config.summary_message_interval == 20
        assert config.max_entries == 50
        assert config.min_similarity_threshold == 0.35
        assert config.hot_memory_token_budget == 2000
        assert config.decay_rate == 0.08
        assert config.cold_threshold == 0.3
        assert config.context_enrichment_enabled is True

    def test_from_dict_none_gives_defaults(self):
        assert DynamicMemoryConfig.from_dict(None) == DynamicMemoryConfig()

    def test_from_dict_camel_case_and_nulls(self):
        config = DynamicMemoryConfig.from_dict({
            "enabled": True,
            "summaryMessageInterval": 5,
            "maxEntries": None,
            "hotMemoryTokenBudget": 300,
            "decayRate": 0.1,
        })
        assert config.enabled is True
        assert config.summary_message_interval == 5
        assert config.max_entries == 50
        assert config.hot_memory_token_budget == 300
        assert config.decay_rate == 0.1

    def test_from_dict_clamps_out_of_range(self):
        config = DynamicMemoryConfig.from_dict({
            "summaryMessageInterval": 0,
            "maxEntries": -3,
            "decayRate": 1.5,
            "coldThreshold": -0.2,
            "hotMemoryTokenBudget": -10,
        })
        assert config.summary_message_interval == 1
        assert config.max_entries == 1
        assert config.decay_rate == 1.0
        assert config.cold_threshold == 0.0
        assert config.hot_memory_token_budget == 0

    def test_from_dict_rejects_non_numbers(self):
        with pytest.raises(ConfigInvalid):
            DynamicMemoryConfig.from_dict({"maxEntries": "lots"})
        with pytest.raises(ConfigInvalid):
            DynamicMemoryConfig.from_dict({"decayRate": True})

    def test_constructor_refuses_invalid(self):
        with pytest.raises(ConfigInvalid):
            DynamicMemoryConfig(max_entries=0)
        with pytest.raises(ConfigInvalid):
            DynamicMemoryConfig(min_similarity_threshold=1.2)
        with pytest.raises(ConfigInvalid):
            DynamicMemoryConfig(summary_message_interval=2.5)
        with pytest.raises(ConfigInvalid):
            DynamicMemoryConfig(decay_rate=float("nan"))

    def test_infinite_settings_refused(self, monkeypatch):
        with pytest.raises(ConfigInvalid):
            DynamicMemoryConfig.from_dict({"maxEntries": float("inf")})
        with pytest.raises(ConfigInvalid):
            DynamicMemoryConfig.from_dict({"hotMemoryTokenBudget": "-inf"})
        with pytest.raises(ConfigInvalid):
            DynamicMemoryConfig(max_entries=float("inf"))
        monkeypatch.setenv("DYNAMIC_MEMORY_MAX_ENTRIES", "inf")
        with pytest.raises(ConfigInvalid):
            DynamicMemoryConfig.from_env()

    def test_integral_floats_become_ints(self):
        config = DynamicMemoryConfig(max_entries=3.0, summary_message_interval=20.0)
        assert type(config.max_entries) is int
        assert type(config.summary_message_interval) is int
        assert type(config.hot_memory_token_budget) is int
        assert config.max_entries == 3

    def test_from_dict_parses_string_booleans(self):
        config = DynamicMemoryConfig.from_dict({
            "enabled": "false",
            "contextEnrichmentEnabled": "False",
        })
        assert config.enabled is False
        assert config.context_enrichment_enabled is False
        assert DynamicMemoryConfig.from_dict({"enabled": "true"}).enabled is True
        assert DynamicMemoryConfig.from_dict({"enabled": 1}).enabled is True

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("DYNAMIC_MEMORY_ENABLED", "true")
        monkeypatch.setenv("DYNAMIC_MEMORY_SUMMARY_INTERVAL", "8")
        monkeypatch.setenv("DYNAMIC_MEMORY_MAX_ENTRIES", "12")
        monkeypatch.setenv("DYNAMIC_MEMORY_DECAY_RATE", "0.2")
        monkeypatch.setenv("DYNAMIC_MEMORY_CONTEXT_ENRICHMENT", "no")
        config = DynamicMemoryConfig.from_env()
        assert config.enabled is True
        assert config.summary_message_interval == 8
        assert config.max_entries == 12
        assert config.decay_rate == 0.2
        assert config.context_enrichment_enabled is False

    def test_to_dict_uses_settings_keys(self):
        data = DynamicMemoryConfig(enabled=True).to_dict()
        assert data["enabled"] is True
        assert data["summaryMessageInterval"] == 20
        assert data["coldThreshold"] == 0.3
        assert DynamicMemoryConfig.from_dict(data) == DynamicMemoryConfig(enabled=True)

    def test_resolve_config_override_wins(self):
        base = DynamicMemoryConfig()
        override = DynamicMemoryConfig(enabled=True, max_entries=3)
        assert resolve_config(base, None) is base
        assert resolve_config(base, override) is override


# ── Model Tests ──


class TestMemoryEntry:
    def test_content_is_immutable(self):
        entry = make_entry("a")
        with pytest.raises(AttributeError):
            entry.text = "changed"
        with pytest.raises(AttributeError):
            entry.embedding = [0.0, 1.0, 0.0]
        with pytest.raises(ValueError):
            entry.embedding[0] = 5.0

    def test_metadata_is_mutable(self):
        entry = make_entry("a")
        entry.decay_score = 0.1
        entry.tier = Tier.COLD
        assert entry.decay_score == 0.1
        assert entry.tier is Tier.COLD

    def test_token_count_must_be_positive(self):
        with pytest.raises(ValueError):
            make_entry("a", tokens=0)

    def test_create_clamps_base_similarity(self):
        entry = MemoryEntry.create("s1", "text", [1.0, 0.0], 3, created_at_ms=5, base_similarity=-0.4)
        assert entry.base_similarity == 0.0
        assert entry.last_accessed_ms == 5
        assert entry.dimension == 2

    def test_dict_round_trip_keeps_fields(self):
        entry = make_entry("a", score=0.7, tier=Tier.COLD, pinned=True)
        entry.access_count = 3
        data = entry.to_dict()
        assert data["sessionId"] == "s1"
        assert data["tier"] == "cold"
        restored = MemoryEntry.from_dict(data)
        assert restored.id == "a"
        assert restored.tier is Tier.COLD
        assert restored.is_pinned is True
        assert restored.access_count == 3
        assert restored.embedding.tolist() == [1.0, 0.0, 0.0]


# ── Decay Scorer Tests ──


class TestDecayScorer:
    def test_ten_hour_old_irrelevant_entry_goes_cold(self):
        entry = make_entry("a", created_at_ms=0, embedding=(1.0, 0.0, 0.0))
        score = score_entry(entry, 10 * HOUR_MS, 0.08, query_embedding=[0.0, 1.0, 0.0])
        assert recency(0, 10 * HOUR_MS, 0.08) == pytest.approx(math.exp(-0.8))
        assert score == pytest.approx(0.2247, abs=1e-3)
        entry.decay_score = score
        assert target_tier(entry, 0.3) is Tier.COLD

    def test_zero_decay_rate_never_ages(self):
        assert recency(0, 1000 * HOUR_MS, 0.0) == 1.0

    def test_without_query_uses_base_similarity(self):
        entry = make_entry("a", created_at_ms=0, base_similarity=0.6)
        assert score_entry(entry, 0, 0.08) == pytest.approx(0.8)

    def test_score_is_deterministic(self):
        entry = make_entry("a", created_at_ms=123, embedding=(0.3, 0.4, 0.5))
        query = [0.9, 0.1, 0.2]
        first = score_entry(entry, 7 * HOUR_MS, 0.08, query)
        second = score_entry(entry, 7 * HOUR_MS, 0.08, query)
        assert first == second

    def test_score_is_clamped(self):
        entry = make_entry("a", created_at_ms=0, embedding=(1.0, 0.0, 0.0))
        score = score_entry(entry, 100 * HOUR_MS, 1.0, query_embedding=[-1.0, 0.0, 0.0])
        assert score == 0.0

    def test_future_created_at_counts_as_new(self):
        assert recency(10 * HOUR_MS, 0, 0.5) == 1.0

    def test_cosine_similarity_edge_cases(self):
        assert cosine_similarity([1, 0], [1, 0]) == pytest.approx(1.0)
        assert cosine_similarity([1, 0], [0, 1]) == pytest.approx(0.0)
        assert cosine_similarity([1, 0], [1, 0, 0]) == 0.0
        assert cosine_similarity([0, 0], [1, 0]) == 0.0
        assert cosine_similarity([], []) == 0.0

    def test_rescore_updates_in_place_and_reports_similarity(self):
        entries = [
            make_entry("a", embedding=(1.0, 0.0, 0.0)),
            make_entry("b", embedding=(0.0, 1.0, 0.0)),
        ]
        sims = rescore(entries, 0, 0.08, query_embedding=[1.0, 0.0, 0.0])
        assert sims["a"] == pytest.approx(1.0)
        assert sims["b"] == pytest.approx(0.0)
        assert entries[0].decay_score == pytest.approx(1.0)
        assert entries[1].decay_score == pytest.approx(0.5)


# ── Tiering & Eviction Tests ──


class TestTiering:
    def test_reclassify_demotes_and_promotes(self):
        entries = [
            make_entry("a", score=0.1, tier=Tier.HOT),
            make_entry("b", score=0.6, tier=Tier.COLD),
            make_entry("c", score=0.3, tier=Tier.HOT),
        ]
        changes = reclassify(entries, 0.3)
        assert changes.demoted == ["a"]
        assert changes.promoted == ["b"]
        assert [e.tier for e in entries] == [Tier.COLD, Tier.HOT, Tier.HOT]

    def test_pinned_entries_stay_hot(self):
        entries = [make_entry("a", score=0.0, pinned=True)]
        changes = reclassify(entries, 0.3)
        assert changes.demoted == []
        assert entries[0].tier is Tier.HOT

    def test_evicts_only_lowest_score(self):
        entries = [
            make_entry("high", score=0.9, created_at_ms=1),
            make_entry("low", score=0.4, created_at_ms=2),
            make_entry("new", score=0.5, created_at_ms=3),
        ]
        evicted = select_evictions(entries, 2)
        assert [e.id for e in evicted] == ["low"]

    def test_ties_evict_oldest_first(self):
        entries = [
            make_entry("newer", score=0.5, created_at_ms=20),
            make_entry("older", score=0.5, created_at_ms=10),
            make_entry("newest", score=0.5, created_at_ms=30),
        ]
        assert [e.id for e in select_evictions(entries, 2)] == ["older"]

    def test_eviction_is_minimal(self):
        entries = [make_entry(str(i), score=i / 10, created_at_ms=i) for i in range(10)]
        evicted = select_evictions(entries, 7)
        assert len(evicted) == 3
        assert select_evictions(entries, 10) == []
        assert select_evictions(entries, 20) == []

    def test_pinned_evicted_last(self):
        entries = [
            make_entry("pinned", score=0.0, pinned=True),
            make_entry("a", score=0.8),
            make_entry("b", score=0.9),
        ]
        assert [e.id for e in select_evictions(entries, 2)] == ["a"]
        assert [e.id for e in select_evictions(entries, 0)][-1] == "pinned"


# ── Selector Tests ──


class TestSelector:
    def test_skips_overflowing_entry_and_fits_smaller(self):
        entries = [
            make_entry("60", score=0.9, tokens=60),
            make_entry("50", score=0.8, tokens=50),
            make_entry("30", score=0.7, tokens=30),
        ]
        sims = {e.id: 1.0 for e in entries}
        selected = select_within_budget(entries, sims, 0.35, 100)
        assert [e.id for e in selected] == ["60", "30"]
        assert sum(e.token_count for e in selected) == 90

    def test_zero_budget_is_empty(self):
        entries = [make_entry("a", tokens=1)]
        assert select_within_budget(entries, {"a": 1.0}, 0.0, 0) == []

    def test_cold_and_dissimilar_excluded(self):
        entries = [
            make_entry("cold-far", score=0.2, tier=Tier.COLD),
            make_entry("cold-near", score=0.25, tier=Tier.COLD),
            make_entry("hot-far", score=0.5, tier=Tier.HOT),
        ]
        sims = {"cold-far": 0.1, "cold-near": 0.8, "hot-far": 0.0}
        selected = select_within_budget(entries, sims, 0.35, 1000)
        assert [e.id for e in selected] == ["hot-far", "cold-near"]

    def test_ties_prefer_fresher(self):
        entries = [
            make_entry("old", score=0.6, created_at_ms=1),
            make_entry("new", score=0.6, created_at_ms=2),
        ]
        selected = select_within_budget(entries, {"old": 1.0, "new": 1.0}, 0.35, 1000)
        assert [e.id for e in selected] == ["new", "old"]

    def test_budget_never_exceeded(self):
        rng = random.Random(7)
        for _ in range(200):
            entries = [
                make_entry(
                    f"e{i}",
                    score=rng.random(),
                    created_at_ms=rng.randint(0, 1000),
                    tokens=rng.randint(1, 120),
                    tier=rng.choice([Tier.HOT, Tier.COLD]),
                )
                for i in range(rng.randint(0, 25))
            ]
            sims = {e.id: rng.random() for e in entries}
            budget = rng.randint(0, 400)
            selected = select_within_budget(entries, sims, 0.35, budget)
            assert sum(e.token_count for e in selected) <= budget

    def test_pack_within_budget_stops_when_full(self):
        entries = [make_entry("a", tokens=50), make_entry("b", tokens=50), make_entry("c", tokens=1)]
        assert [e.id for e in pack_within_budget(entries, 100)] == ["a", "b"]

    def test_keyword_helpers(self):
        assert normalize_query_text("Hello,  WORLD!! it's me") == "hello world it s me"
        assert extract_keywords("the cat and the hat, cat") == ["the", "cat", "and", "hat"]

    def test_keyword_search_only_cold(self):
        entries = [
            make_entry("cold", tier=Tier.COLD, text="The dragon named Ember lives in the north"),
            make_entry("hot", tier=Tier.HOT, text="Ember is also a hot topic"),
            make_entry("other", tier=Tier.COLD, text="Nothing relevant here"),
        ]
        found = search_cold_by_keyword(entries, "Where does Ember live?", 1000)
        assert [e.id for e in found] == ["cold"]

    def test_keyword_search_respects_budget(self):
        entries = [make_entry("cold", tier=Tier.COLD, tokens=50, text="ember")]
        assert search_cold_by_keyword(entries, "ember", 10) == []

    def test_render_memories(self):
        assert render_memories_for_prompt([]) == ""
        text = render_memories_for_prompt([make_entry("a", text="First"), make_entry("b", text="Second")])
        assert text == "[Relevant Memories]\n- First\n- Second"


# ── Tool Event Log Tests ──


class TestToolEventLog:
    def test_capped_oldest_trimmed(self):
        log = ToolEventLog()
        for i in range(MAX_TOOL_EVENTS + 10):
            log.append(ToolEventKind.RETRIEVED, [str(i)], timestamp_ms=i)
        events = log.list()
        assert len(events) == MAX_TOOL_EVENTS
        assert events[0].entry_ids == ("10",)
        assert events[-1].entry_ids == (str(MAX_TOOL_EVENTS + 9),)

    def test_event_to_dict(self):
        event = ToolEventLog().append(ToolEventKind.EVICTED, ["x"], "gone", timestamp_ms=5)
        assert event.to_dict() == {
            "timestampMs": 5,
            "kind": "evicted",
            "entryIds": ["x"],
            "detail": "gone",
        }


# ── Store Tests ──


class TestMemoryStore:
    def test_insert_keeps_bound(self):
        store = MemoryStore()
        for i in range(6):
            store.insert(make_entry(f"e{i}", score=i / 10, created_at_ms=i), max_entries=3)
            assert store.count("s1") <= 3
        assert [e.id for e in store.all("s1")] == ["e3", "e4", "e5"]

    def test_insert_evicts_lowest_and_logs(self):
        store = MemoryStore()
        store.insert(make_entry("keep", score=0.9, created_at_ms=1), max_entries=2)
        store.insert(make_entry("drop", score=0.4, created_at_ms=2), max_entries=2)
        evicted = store.insert(make_entry("new", score=0.5, created_at_ms=3), max_entries=2)
        assert [e.id for e in evicted] == ["drop"]
        assert [e.id for e in store.all("s1")] == ["keep", "new"]
        events = store.get("s1").events
        assert [(e.kind, e.entry_ids) for e in events] == [(ToolEventKind.EVICTED, ("drop",))]

    def test_dimension_mismatch_rejected(self):
        store = MemoryStore()
        store.insert(make_entry("a", embedding=(1.0, 0.0, 0.0)), max_entries=5)
        with pytest.raises(EmbeddingDimensionMismatch):
            store.insert(make_entry("b", embedding=(1.0, 0.0)), max_entries=5)
        assert store.count("s1") == 1

    def test_all_returns_copies(self):
        store = MemoryStore()
        store.insert(make_entry("a", score=0.5), max_entries=5)
        copy = store.all("s1")[0]
        copy.decay_score = 0.0
        assert store.all("s1")[0].decay_score == 0.5

    def test_write_back_logs_tier_moves(self):
        store = MemoryStore()
        store.insert(make_entry("a", score=0.9), max_entries=5)
        copy = store.all("s1")[0]
        copy.decay_score = 0.1
        copy.tier = Tier.COLD
        copy.access_count = 2
        changes = store.write_back("s1", [copy])
        assert changes.demoted == ["a"]
        live = store.all("s1")[0]
        assert live.tier is Tier.COLD
        assert live.access_count == 2
        assert store.get("s1").events[-1].kind is ToolEventKind.DEMOTED

    def test_write_back_skips_removed_entries(self):
        store = MemoryStore()
        store.insert(make_entry("a"), max_entries=5)
        copy = store.all("s1")[0]
        store.remove("s1", ["a"])
        copy.tier = Tier.COLD
        assert store.write_back("s1", [copy]).demoted == []
        assert store.count("s1") == 0

    def test_sessions_are_isolated(self):
        store = MemoryStore()
        store.insert(make_entry("a", session_id="s1"), max_entries=1)
        store.insert(make_entry("b", session_id="s2"), max_entries=1)
        assert [e.id for e in store.all("s1")] == ["a"]
        assert [e.id for e in store.all("s2")] == ["b"]

    def test_eviction_with_integral_float_setting(self):
        config = DynamicMemoryConfig(enabled=True, max_entries=1.0)
        store = MemoryStore()
        store.insert(make_entry("a", score=0.2, created_at_ms=1), config.max_entries)
        evicted = store.insert(make_entry("b", score=0.9, created_at_ms=2), config.max_entries)
        assert [e.id for e in evicted] == ["a"]
        assert store.count("s1") == 1

    def test_events_use_store_clock(self):
        store = MemoryStore(clock=lambda: 42_000)
        store.insert(make_entry("a", score=0.2), max_entries=1)
        store.insert(make_entry("b", score=0.9), max_entries=1)
        store.append_event("s1", ToolEventKind.SUMMARIZED, ["b"])
        assert [e.timestamp_ms for e in store.get("s1").events] == [42_000, 42_000]

    def test_reset_clears_and_bumps_epoch(self):
        store = MemoryStore()
        store.insert(make_entry("a"), max_entries=5)
        before = store.epoch("s1")
        store.set_summary("s1", "hello", 1)
        store.append_event("s1", ToolEventKind.SUMMARIZED, ["a"])
        store.reset("s1")
        view = store.get("s1")
        assert view.entries == []
        assert view.events == []
        assert view.summary == ""
        assert store.epoch("s1") != before

    def test_set_pinned(self):
        store = MemoryStore()
        store.insert(make_entry("a", tier=Tier.COLD), max_entries=5)
        assert store.set_pinned("s1", "a", True) is True
        entry = store.all("s1")[0]
        assert entry.is_pinned is True
        assert entry.tier is Tier.HOT
        assert store.set_pinned("s1", "missing", True) is False

    def test_loads_from_persistence(self):
        entry = make_entry("a", score=0.7)
        persistence = MagicMock()
        persistence.load.return_value = {
            "memorySummary": "earlier",
            "memorySummaryTokenCount": 2,
            "memoryEmbeddings": [entry.to_dict()],
            "memoryToolEvents": [],
        }
        store = MemoryStore(persistence=persistence)
        view = store.get("s1")
        assert view.summary == "earlier"
        assert [e.id for e in view.entries] == ["a"]
        persistence.load.assert_called_once_with("s1")

    def test_corrupt_record_resets_session(self):
        persistence = MagicMock()
        persistence.load.return_value = {"memoryEmbeddings": [{"id": "broken"}]}
        store = MemoryStore(persistence=persistence)
        view = store.get("s1")
        assert view.entries == []
        assert view.events[0].kind is ToolEventKind.FAILED
        assert "corrupt" in view.events[0].detail
        persistence.save.assert_called()

    def test_non_object_record_is_corrupt(self):
        persistence = MagicMock()
        persistence.load.return_value = "not json"
        store = MemoryStore(persistence=persistence)
        assert store.count("s1") == 0
        assert store.get("s1").events[0].kind is ToolEventKind.FAILED

    def test_mutations_are_saved(self):
        persistence = MagicMock()
        persistence.load.return_value = None
        store = MemoryStore(persistence=persistence)
        store.insert(make_entry("a"), max_entries=5)
        saved_session, payload = persistence.save.call_args[0]
        assert saved_session == "s1"
        assert payload["memoryEmbeddings"][0]["id"] == "a"

    def test_delete_session_removes_persisted(self):
        persistence = MagicMock()
        persistence.load.return_value = None
        store = MemoryStore(persistence=persistence)
        store.insert(make_entry("a"), max_entries=5)
        before = store.epoch("s1")
        store.delete_session("s1")
        persistence.delete.assert_called_once_with("s1")
        assert "s1" not in store._epochs
        assert store.epoch("s1") != before


# ── Ingestion Buffer Tests ──


class TestIngestionBuffer:
    def _config(self, interval=3, enabled=True):
        return DynamicMemoryConfig(enabled=enabled, summary_message_interval=interval)

    def test_emits_once_per_interval(self):
        buffer = IngestionBuffer()
        config = self._config(3)
        assert buffer.record_turn("s1", "t0", config) is None
        assert buffer.record_turn("s1", "t1", config) is None
        request = buffer.record_turn("s1", "t2", config)
        assert request is not None
        assert request.turns == ("t0", "t1", "t2")
        assert buffer.in_flight("s1") is True

    def test_disabled_records_nothing(self):
        buffer = IngestionBuffer()
        config = self._config(1, enabled=False)
        assert buffer.record_turn("s1", "t0", config) is None
        assert buffer.pending_count("s1") == 0

    def test_success_consumes_window(self):
        buffer = IngestionBuffer()
        config = self._config(2)
        buffer.record_turn("s1", "t0", config)
        request = buffer.record_turn("s1", "t1", config)
        assert buffer.complete(request, True, config) is None
        assert buffer.pending_count("s1") == 0
        assert buffer.in_flight("s1") is False

    def test_boundary_during_flight_is_deferred(self):
        buffer = IngestionBuffer()
        config = self._config(2)
        buffer.record_turn("s1", "t0", config)
        first = buffer.record_turn("s1", "t1", config)
        buffer.record_turn("s1", "t2", config)
        assert buffer.record_turn("s1", "t3", config) is None
        second = buffer.complete(first, True, config)
        assert second is not None
        assert second.turns == ("t2", "t3")
        assert second.sequence == first.sequence + 1

    def test_turns_after_deferred_boundary_start_next_window(self):
        buffer = IngestionBuffer()
        config = self._config(2)
        buffer.record_turn("s1", "t0", config)
        first = buffer.record_turn("s1", "t1", config)
        buffer.record_turn("s1", "t2", config)
        buffer.record_turn("s1", "t3", config)
        buffer.record_turn("s1", "t4", config)

        deferred = buffer.complete(first, True, config)
        assert deferred.turns == ("t2", "t3")
        assert buffer.complete(deferred, True, config) is None
        assert buffer.pending_count("s1") == 1

        nxt = buffer.record_turn("s1", "t5", config)
        assert nxt is not None
        assert nxt.turns == ("t4", "t5")

    def test_windows_cover_every_turn_in_order(self):
        buffer = IngestionBuffer()
        config = self._config(3)
        issued = []
        in_flight = None
        for i in range(30):
            request = buffer.record_turn("s1", f"t{i}", config)
            if request is not None:
                issued.append(request)
                in_flight = request
            # Finish the running request every fourth turn so later boundaries defer
            if in_flight is not None and i % 4 == 3:
                follow_up = buffer.complete(in_flight, True, config)
                in_flight = follow_up
                if follow_up is not None:
                    issued.append(follow_up)
        while in_flight is not None:
            in_flight = buffer.complete(in_flight, True, config)
            if in_flight is not None:
                issued.append(in_flight)

        turns = [t for request in issued for t in request.turns]
        assert turns == [f"t{i}" for i in range(30)]
        assert all(len(request.turns) >= 3 for request in issued)

    def test_integral_float_interval(self):
        buffer = IngestionBuffer()
        config = DynamicMemoryConfig(enabled=True, summary_message_interval=2.0)
        buffer.record_turn("s1", "t0", config)
        assert buffer.record_turn("s1", "t1", config) is not None

    def test_failure_retains_window(self):
        buffer = IngestionBuffer()
        config = self._config(2)
        buffer.record_turn("s1", "t0", config)
        first = buffer.record_turn("s1", "t1", config)
        assert buffer.complete(first, False, config) is None
        assert buffer.pending_count("s1") == 2
        buffer.record_turn("s1", "t2", config)
        retry = buffer.record_turn("s1", "t3", config)
        assert retry.turns == ("t0", "t1", "t2", "t3")

    def test_retention_is_capped(self):
        buffer = IngestionBuffer()
        config = self._config(1)
        request = buffer.record_turn("s1", "t0", config)
        buffer.complete(request, False, config)
        for i in range(1, 20):
            request = buffer.record_turn("s1", f"t{i}", config)
            buffer.complete(request, False, config)
        assert buffer.pending_count("s1") == 5

    def test_stale_completion_ignored(self):
        buffer = IngestionBuffer()
        config = self._config(1)
        request = buffer.record_turn("s1", "t0", config)
        buffer.discard("s1")
        assert buffer.complete(request, True, config) is None
        assert buffer.pending_count("s1") == 0

    def test_flush_takes_partial_window(self):
        buffer = IngestionBuffer()
        config = self._config(10)
        buffer.record_turn("s1", "t0", config)
        request = buffer.flush("s1")
        assert request.turns == ("t0",)
        assert buffer.flush("s1") is None

    def test_concurrent_calls_emit_exactly_one(self):
        buffer = IngestionBuffer()
        interval = 50
        config = self._config(interval)
        barrier = threading.Barrier(interval)
        requests = []
        lock = threading.Lock()

        def worker(i):
            barrier.wait()
            request = buffer.record_turn("s1", f"t{i}", config)
            if request is not None:
                with lock:
                    requests.append(request)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(interval)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(requests) == 1
        assert len(requests[0].turns) == interval


# ── Session Lock Tests ──


class TestSessionLocks:
    def test_same_lock_while_in_use(self):
        locks = SessionLocks()
        with locks.hold("s1"):
            assert locks.get("s1") is locks.get("s1")
            assert len(locks) == 1

    def test_unused_locks_are_released(self):
        locks = SessionLocks()
        for i in range(100):
            with locks.hold(f"s{i}"):
                pass
        gc.collect()
        assert len(locks) == 0

    def test_lock_is_reentrant(self):
        locks = SessionLocks()
        with locks.hold("s1"):
            with locks.hold("s1"):
                assert len(locks) == 1
