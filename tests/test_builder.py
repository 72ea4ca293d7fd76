"""Tests for collapsing heartbeats into summaries."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from codetime.aliases import AliasResolver
from codetime.builder import (
    CanonicalHeartbeat,
    SummaryBuilder,
    collapse_spans,
    matches,
    split_entries,
)
from codetime.config import StatsSettings
from codetime.errors import StorageError
from codetime.heartbeats import HeartbeatStore
from codetime.models import SUMMARY_CATEGORIES, Filters

from conftest import make_heartbeat, utc

DAY_START = utc(2024, 3, 1)
DAY_END = utc(2024, 3, 2)


@pytest.fixture
def builder(store: HeartbeatStore, aliases: AliasResolver, settings: StatsSettings) -> SummaryBuilder:
    return SummaryBuilder(store, aliases, settings)


def _totals(summary, category: str) -> dict[str, timedelta]:
    return {item.key: item.total for item in summary.items(category)}


class TestSpanCollapsing:
    """Heartbeats within the idle timeout form continuous activity."""

    def test_close_heartbeats_merge(self, store, builder):
        store.insert_batch(
            [
                make_heartbeat(utc(2024, 3, 1, 9, 0)),
                make_heartbeat(utc(2024, 3, 1, 9, 4)),
                make_heartbeat(utc(2024, 3, 1, 9, 5)),
            ]
        )
        summary = builder.build("alice", DAY_START, DAY_END)
        assert summary.total == timedelta(minutes=5)
        assert _totals(summary, "projects") == {"app": timedelta(minutes=5)}

    def test_lone_heartbeat_counts_nothing(self, store, builder):
        store.insert(make_heartbeat(utc(2024, 3, 1, 9, 0)))
        summary = builder.build("alice", DAY_START, DAY_END)
        assert summary.total == timedelta(0)
        assert summary.projects == []
        assert summary.is_empty()

    def test_idle_gap_splits_spans(self, store, builder):
        store.insert_batch(
            [
                make_heartbeat(utc(2024, 3, 1, 9, 0)),
                make_heartbeat(utc(2024, 3, 1, 9, 3)),
                make_heartbeat(utc(2024, 3, 1, 9, 20)),
                make_heartbeat(utc(2024, 3, 1, 9, 22)),
            ]
        )
        summary = builder.build("alice", DAY_START, DAY_END)
        assert summary.total == timedelta(minutes=5)

    def test_context_switch_credits_gap_to_earlier_span(self, store, builder):
        store.insert_batch(
            [
                make_heartbeat(utc(2024, 3, 1, 9, 0), project="a"),
                make_heartbeat(utc(2024, 3, 1, 9, 2), project="a"),
                make_heartbeat(utc(2024, 3, 1, 9, 4), project="b"),
                make_heartbeat(utc(2024, 3, 1, 9, 7), project="b"),
            ]
        )
        summary = builder.build("alice", DAY_START, DAY_END)
        assert summary.total == timedelta(minutes=7)
        assert _totals(summary, "projects") == {
            "a": timedelta(minutes=4),
            "b": timedelta(minutes=3),
        }
        assert [item.key for item in summary.projects] == ["a", "b"]

    def test_long_span_is_clipped(self, store, aliases):
        settings = StatsSettings(
            idle_timeout=timedelta(minutes=5), max_span_duration=timedelta(minutes=10)
        )
        store.insert_batch(
            [make_heartbeat(utc(2024, 3, 1, 9, minute)) for minute in range(0, 21, 4)]
        )
        summary = SummaryBuilder(store, aliases, settings).build("alice", DAY_START, DAY_END)
        assert summary.total == timedelta(minutes=10)

    def test_every_category_adds_up_to_total(self, store, builder):
        store.insert_batch(
            [
                make_heartbeat(utc(2024, 3, 1, 9, 0), language="Python"),
                make_heartbeat(utc(2024, 3, 1, 9, 2), language="Go", machine=None),
                make_heartbeat(utc(2024, 3, 1, 9, 6), language="Go", machine=None),
                make_heartbeat(utc(2024, 3, 1, 11, 0), project=None),
                make_heartbeat(utc(2024, 3, 1, 11, 1), project=None),
            ]
        )
        summary = builder.build("alice", DAY_START, DAY_END)
        assert summary.total == timedelta(minutes=7)
        for category in SUMMARY_CATEGORIES:
            if category == "labels":
                continue
            assert summary.category_total(category) == summary.total, category

    def test_missing_names_become_unknown(self, store, builder):
        store.insert_batch(
            [
                make_heartbeat(utc(2024, 3, 1, 9, 0), project=None),
                make_heartbeat(utc(2024, 3, 1, 9, 2), project=None),
            ]
        )
        summary = builder.build("alice", DAY_START, DAY_END)
        assert _totals(summary, "projects") == {"unknown": timedelta(minutes=2)}

    def test_range_is_half_open(self, store, builder):
        store.insert_batch(
            [
                make_heartbeat(utc(2024, 2, 29, 23, 58)),
                make_heartbeat(utc(2024, 3, 1, 0, 0)),
                make_heartbeat(utc(2024, 3, 1, 0, 3)),
                make_heartbeat(utc(2024, 3, 2, 0, 0)),
            ]
        )
        summary = builder.build("alice", DAY_START, DAY_END)
        assert summary.total == timedelta(minutes=3)

    def test_empty_range(self, builder):
        summary = builder.build("alice", DAY_START, DAY_END)
        assert summary.is_empty()
        assert summary.from_time == DAY_START
        assert summary.to_time == DAY_END

    def test_other_users_are_ignored(self, store, builder):
        store.insert_batch(
            [
                make_heartbeat(utc(2024, 3, 1, 9, 0), user_id="bob"),
                make_heartbeat(utc(2024, 3, 1, 9, 4), user_id="bob"),
            ]
        )
        assert builder.build("alice", DAY_START, DAY_END).is_empty()


class TestOrdering:
    """Input order must not change the result."""

    def test_unordered_input_is_sorted(self, aliases, settings):
        store = MagicMock(spec=HeartbeatStore)
        store.get_all_within.return_value = [
            make_heartbeat(utc(2024, 3, 1, 9, 5), id=3),
            make_heartbeat(utc(2024, 3, 1, 9, 0), id=1),
            make_heartbeat(utc(2024, 3, 1, 9, 4), id=2),
        ]
        summary = SummaryBuilder(store, aliases, settings).build("alice", DAY_START, DAY_END)
        assert summary.total == timedelta(minutes=5)
        store.get_all_within.assert_called_once_with(DAY_START, DAY_END, "alice")

    def test_equal_times_are_ordered_by_id(self, aliases, settings):
        store = MagicMock(spec=HeartbeatStore)
        store.get_all_within.return_value = [
            make_heartbeat(utc(2024, 3, 1, 9, 0), project="b", id=2),
            make_heartbeat(utc(2024, 3, 1, 9, 0), project="a", id=1),
            make_heartbeat(utc(2024, 3, 1, 9, 3), project="b", id=3),
        ]
        summary = SummaryBuilder(store, aliases, settings).build("alice", DAY_START, DAY_END)
        assert _totals(summary, "projects") == {"b": timedelta(minutes=3)}

    def test_storage_errors_propagate(self, aliases, settings):
        store = MagicMock(spec=HeartbeatStore)
        store.get_all_within.side_effect = StorageError("disk gone")
        with pytest.raises(StorageError):
            SummaryBuilder(store, aliases, settings).build("alice", DAY_START, DAY_END)


class TestSegments:
    """Several ranges built from one scan."""

    def test_one_scan_for_all_segments(self, aliases, settings):
        store = MagicMock(spec=HeartbeatStore)
        store.get_all_within.return_value = [
            make_heartbeat(utc(2024, 3, 1, 9, 0)),
            make_heartbeat(utc(2024, 3, 1, 9, 4)),
            make_heartbeat(utc(2024, 3, 3, 10, 0)),
            make_heartbeat(utc(2024, 3, 3, 10, 2)),
        ]
        segments = [(utc(2024, 3, day), utc(2024, 3, day + 1)) for day in (1, 2, 3)]
        summaries = SummaryBuilder(store, aliases, settings).build_segments("alice", segments)
        store.get_all_within.assert_called_once_with(utc(2024, 3, 1), utc(2024, 3, 4), "alice")
        assert [summary.total for summary in summaries] == [
            timedelta(minutes=4),
            timedelta(0),
            timedelta(minutes=2),
        ]
        assert [(summary.from_time, summary.to_time) for summary in summaries] == segments

    def test_spans_stop_at_segment_boundaries(self, store, builder):
        store.insert_batch(
            [
                make_heartbeat(utc(2024, 3, 1, 23, 58)),
                make_heartbeat(utc(2024, 3, 2, 0, 2)),
            ]
        )
        segments = [(DAY_START, DAY_END), (DAY_END, utc(2024, 3, 3))]
        summaries = builder.build_segments("alice", segments)
        assert [summary.total for summary in summaries] == [timedelta(0), timedelta(0)]
        whole = builder.build("alice", DAY_START, utc(2024, 3, 3))
        assert whole.total == timedelta(minutes=4)

    def test_no_segments(self, builder):
        assert builder.build_segments("alice", []) == []

    def test_split_entries_drops_entries_between_segments(self):
        entries = [
            CanonicalHeartbeat(time=utc(2024, 3, 1, hour), context=(), label=None)
            for hour in (1, 5, 9)
        ]
        segments = [
            (utc(2024, 3, 1, 0), utc(2024, 3, 1, 2)),
            (utc(2024, 3, 1, 8), utc(2024, 3, 1, 10)),
        ]
        buckets = split_entries(entries, segments)
        assert [[entry.time.hour for entry in bucket] for bucket in buckets] == [[1], [9]]


class TestFiltersAndAliases:
    """Filters and aliases apply to canonical names."""

    def test_project_filter(self, store, builder):
        store.insert_batch(
            [
                make_heartbeat(utc(2024, 3, 1, 9, 0), project="a"),
                make_heartbeat(utc(2024, 3, 1, 9, 2), project="a"),
                make_heartbeat(utc(2024, 3, 1, 10, 0), project="b"),
                make_heartbeat(utc(2024, 3, 1, 10, 3), project="b"),
            ]
        )
        summary = builder.build("alice", DAY_START, DAY_END, Filters(project="b"))
        assert summary.total == timedelta(minutes=3)
        assert _totals(summary, "projects") == {"b": timedelta(minutes=3)}

    def test_filter_without_matches(self, store, builder):
        store.insert_batch(
            [make_heartbeat(utc(2024, 3, 1, 9, 0)), make_heartbeat(utc(2024, 3, 1, 9, 2))]
        )
        assert builder.build("alice", DAY_START, DAY_END, Filters(language="Rust")).is_empty()

    def test_aliases_merge_raw_names(self, store, aliases, builder):
        aliases.add_alias("alice", "project", "app", "app-legacy")
        store.insert_batch(
            [
                make_heartbeat(utc(2024, 3, 1, 9, 0), project="app"),
                make_heartbeat(utc(2024, 3, 1, 9, 2), project="app-legacy"),
                make_heartbeat(utc(2024, 3, 1, 9, 4), project="app"),
            ]
        )
        summary = builder.build("alice", DAY_START, DAY_END)
        assert _totals(summary, "projects") == {"app": timedelta(minutes=4)}

    def test_filter_matches_aliased_name(self, store, aliases, builder):
        aliases.add_alias("alice", "project", "app", "app-legacy")
        store.insert_batch(
            [
                make_heartbeat(utc(2024, 3, 1, 9, 0), project="app-legacy"),
                make_heartbeat(utc(2024, 3, 1, 9, 2), project="app-legacy"),
            ]
        )
        summary = builder.build("alice", DAY_START, DAY_END, Filters(project="app"))
        assert summary.total == timedelta(minutes=2)

    def test_labels_are_aggregated(self, store, aliases, builder):
        aliases.add_label("alice", "app", "work")
        store.insert_batch(
            [
                make_heartbeat(utc(2024, 3, 1, 9, 0), project="app"),
                make_heartbeat(utc(2024, 3, 1, 9, 2), project="app"),
                make_heartbeat(utc(2024, 3, 1, 10, 0), project="hobby"),
                make_heartbeat(utc(2024, 3, 1, 10, 3), project="hobby"),
            ]
        )
        summary = builder.build("alice", DAY_START, DAY_END)
        assert _totals(summary, "labels") == {"work": timedelta(minutes=2)}
        assert summary.total == timedelta(minutes=5)

        labelled = builder.build("alice", DAY_START, DAY_END, Filters(label="work"))
        assert labelled.total == timedelta(minutes=2)


class TestHelpers:
    def test_matches_without_filters(self):
        entry = CanonicalHeartbeat(
            time=utc(2024, 3, 1), context=("app", "Python", "vim", "Linux", "box", "x.py"), label=None
        )
        assert matches(entry, None)
        assert matches(entry, Filters())
        assert matches(entry, Filters(editor="vim", machine="box"))
        assert not matches(entry, Filters(editor="vim", machine="other"))
        assert not matches(entry, Filters(label="work"))

    def test_collapse_spans_empty(self):
        assert collapse_spans([], timedelta(minutes=5)) == []
