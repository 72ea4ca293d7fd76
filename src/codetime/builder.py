"""Aggregate heartbeats into per-category durations.

Heartbeats are first mapped onto canonical names, filtered, and then
collapsed into spans of continuous activity. A span grows while consecutive
heartbeats share the same context and arrive within the idle timeout:

* same context, gap <= idle timeout: the span extends to the new heartbeat;
* different context, gap <= idle timeout: the running span ends at the new
  heartbeat and a new span starts there, so no active time is lost;
* gap > idle timeout: the running span ends at its last heartbeat and the gap
  counts for nothing.

A lone heartbeat yields a zero-length span. Spans longer than
``max_span_duration`` are clipped. Zero-length spans are not attributed to
any category.
"""

from __future__ import annotations

import logging
from bisect import bisect_right
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, NamedTuple, Optional, Sequence

from .aliases import AliasResolver
from .config import StatsSettings
from .heartbeats import HeartbeatStore
from .models import (
    HEARTBEAT_ENTITY_TYPES,
    UNKNOWN_KEY,
    EntityType,
    Filters,
    Heartbeat,
    Summary,
    sorted_items,
)

logger = logging.getLogger(__name__)


class CanonicalHeartbeat(NamedTuple):
    """A heartbeat reduced to its time, canonical names and project label."""

    time: datetime
    context: tuple[Optional[str], ...]
    label: Optional[str]

    def value_of(self, entity_type: EntityType) -> Optional[str]:
        return self.context[HEARTBEAT_ENTITY_TYPES.index(entity_type)]


@dataclass(slots=True)
class Span:
    context: tuple[Optional[str], ...]
    label: Optional[str]
    start: datetime
    end: datetime

    def duration(self, limit: Optional[timedelta] = None) -> timedelta:
        elapsed = self.end - self.start
        if limit is not None and elapsed > limit:
            return limit
        return elapsed


class SummaryBuilder:
    """Build a Summary for one user and range straight from the heartbeat store."""

    def __init__(
        self,
        store: HeartbeatStore,
        aliases: AliasResolver,
        settings: Optional[StatsSettings] = None,
    ) -> None:
        self.store = store
        self.aliases = aliases
        self.settings = settings or StatsSettings()

    def build(
        self,
        user_id: str,
        start: datetime,
        end: datetime,
        filters: Optional[Filters] = None,
    ) -> Summary:
        return self.build_segments(user_id, [(start, end)], filters)[0]

    def build_segments(
        self,
        user_id: str,
        segments: Sequence[tuple[datetime, datetime]],
        filters: Optional[Filters] = None,
    ) -> list[Summary]:
        """Build one summary per ``(from, to)`` segment from a single store scan.

        Segments must be ordered and must not overlap. Spans never cross a
        segment boundary, so a segment's summary is the same whichever
        segments it is built with.
        """
        if not segments:
            return []
        start, end = segments[0][0], segments[-1][1]
        heartbeats = self.store.get_all_within(start, end, user_id)
        ordered = sorted(heartbeats, key=_order_key)
        entries = [
            entry
            for entry in (self.canonicalize(user_id, heartbeat) for heartbeat in ordered)
            if matches(entry, filters)
        ]

        summaries = []
        span_count = 0
        for (seg_start, seg_end), bucket in zip(segments, split_entries(entries, segments)):
            spans = collapse_spans(bucket, self.settings.idle_timeout)
            span_count += len(spans)
            summaries.append(
                aggregate(user_id, seg_start, seg_end, spans, self.settings.max_span_duration)
            )
        logger.debug(
            "Built %d summaries for %s [%s, %s): %d heartbeats, %d spans.",
            len(summaries),
            user_id,
            start.isoformat(),
            end.isoformat(),
            len(heartbeats),
            span_count,
        )
        return summaries

    def canonicalize(self, user_id: str, heartbeat: Heartbeat) -> CanonicalHeartbeat:
        context = tuple(
            self.aliases.canonicalize(user_id, entity_type, heartbeat.value_of(entity_type))
            for entity_type in HEARTBEAT_ENTITY_TYPES
        )
        project = context[HEARTBEAT_ENTITY_TYPES.index(EntityType.PROJECT)]
        return CanonicalHeartbeat(
            time=heartbeat.time,
            context=context,
            label=self.aliases.label_for(user_id, project),
        )


def matches(entry: CanonicalHeartbeat, filters: Optional[Filters]) -> bool:
    """True when the entry satisfies every non-empty filter field."""
    if filters is None:
        return True
    for name, expected in filters.items():
        if name == "label":
            if entry.label != expected:
                return False
        elif entry.value_of(EntityType(name)) != expected:
            return False
    return True


def split_entries(
    entries: Sequence[CanonicalHeartbeat],
    segments: Sequence[tuple[datetime, datetime]],
) -> list[list[CanonicalHeartbeat]]:
    """Distribute time-ordered entries over ordered ``[from, to)`` segments."""
    starts = [seg_start for seg_start, _ in segments]
    buckets: list[list[CanonicalHeartbeat]] = [[] for _ in segments]
    for entry in entries:
        index = bisect_right(starts, entry.time) - 1
        if index >= 0 and entry.time < segments[index][1]:
            buckets[index].append(entry)
    return buckets


def collapse_spans(
    entries: Iterable[CanonicalHeartbeat], idle_timeout: timedelta
) -> list[Span]:
    """Collapse time-ordered entries into spans of continuous activity."""
    spans: list[Span] = []
    current: Optional[Span] = None
    for entry in entries:
        if current is None:
            current = Span(entry.context, entry.label, entry.time, entry.time)
            continue
        gap = entry.time - current.end
        if gap > idle_timeout:
            spans.append(current)
            current = Span(entry.context, entry.label, entry.time, entry.time)
        elif entry.context != current.context:
            current.end = entry.time
            spans.append(current)
            current = Span(entry.context, entry.label, entry.time, entry.time)
        else:
            current.end = entry.time
    if current is not None:
        spans.append(current)
    return spans


def aggregate(
    user_id: str,
    start: datetime,
    end: datetime,
    spans: Sequence[Span],
    max_span_duration: Optional[timedelta] = None,
) -> Summary:
    totals: dict[str, defaultdict[str, timedelta]] = {
        entity_type.category: defaultdict(timedelta)
        for entity_type in (*HEARTBEAT_ENTITY_TYPES, EntityType.LABEL)
    }
    total = timedelta(0)
    for span in spans:
        duration = span.duration(max_span_duration)
        if duration <= timedelta(0):
            continue
        total += duration
        for index, entity_type in enumerate(HEARTBEAT_ENTITY_TYPES):
            key = span.context[index] or UNKNOWN_KEY
            totals[entity_type.category][key] += duration
        if span.label:
            totals[EntityType.LABEL.category][span.label] += duration

    summary = Summary(user_id=user_id, from_time=start, to_time=end, total=total)
    for category, per_key in totals.items():
        summary.set_items(category, sorted_items(per_key))
    return summary


def _order_key(heartbeat: Heartbeat) -> tuple[datetime, int]:
    return heartbeat.time, heartbeat.id if heartbeat.id is not None else 0
