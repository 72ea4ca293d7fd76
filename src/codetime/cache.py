"""Day-aligned summary cache with single-flight builds.

A requested range is cut at the user's local midnights. Whole days are
served from persisted fragments when one exists for the same filter
fingerprint; every other segment is built by the ``SummaryBuilder``. Whole
days that had to be built are written back. Partial days at the edges of a
range are never persisted.

Missing segments are grouped into runs of adjacent days; each run is read
from the heartbeat store with one scan and split per day afterwards.

Builds run in the thread of the caller that asked first. Only one build per
(user, day, fingerprint) runs at a time: later callers wait on the owner's
future, and their timeout starts once the owner starts that build. A
segment the owner gave up on before starting is built by whoever still
waits for it.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections import defaultdict
from concurrent.futures import CancelledError, Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable, NamedTuple, Optional, Sequence
from zoneinfo import ZoneInfo

from .builder import SummaryBuilder
from .config import StatsSettings
from .db import database_connection, from_db_time, to_db_time, transaction
from .errors import BuildTimeoutError, StorageError
from .intervals import split_at_midnights
from .models import (
    SUMMARY_CATEGORIES,
    CachedSummaryFragment,
    Filters,
    Summary,
    sorted_items,
)

logger = logging.getLogger(__name__)

_UTC = ZoneInfo("UTC")
_BUILD_ATTEMPTS = 2


class FragmentKey(NamedTuple):
    user_id: str
    from_time: datetime
    to_time: datetime
    fingerprint: str


class FragmentStore:
    """Persist cached summary fragments in the ``summary_fragments`` table."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)

    def get(self, key: FragmentKey) -> Optional[CachedSummaryFragment]:
        rows = self._fetch_all(
            """
            SELECT user_id, from_time, to_time, fingerprint, payload
            FROM summary_fragments
            WHERE user_id = ? AND from_time = ? AND to_time = ? AND fingerprint = ?
            """,
            (key.user_id, to_db_time(key.from_time), to_db_time(key.to_time), key.fingerprint),
        )
        return _row_to_fragment(rows[0]) if rows else None

    def get_within(
        self, user_id: str, start: datetime, end: datetime, fingerprint: str
    ) -> dict[tuple[datetime, datetime], CachedSummaryFragment]:
        rows = self._fetch_all(
            """
            SELECT user_id, from_time, to_time, fingerprint, payload
            FROM summary_fragments
            WHERE user_id = ? AND fingerprint = ? AND from_time >= ? AND to_time <= ?
            ORDER BY from_time
            """,
            (user_id, fingerprint, to_db_time(start), to_db_time(end)),
        )
        fragments = (_row_to_fragment(row) for row in rows)
        return {(fragment.from_time, fragment.to_time): fragment for fragment in fragments}

    def put_many(self, fragments: Sequence[CachedSummaryFragment]) -> None:
        """Write all fragments in one transaction."""
        updated_at = to_db_time(datetime.now(timezone.utc))
        rows = [
            (
                fragment.user_id,
                to_db_time(fragment.from_time),
                to_db_time(fragment.to_time),
                fragment.fingerprint,
                json.dumps(fragment.summary.to_dict(), sort_keys=True),
                updated_at,
            )
            for fragment in fragments
        ]
        try:
            with database_connection(self.db_path) as conn:
                with transaction(conn):
                    conn.executemany(
                        """
                        INSERT OR REPLACE INTO summary_fragments (
                            user_id,
                            from_time,
                            to_time,
                            fingerprint,
                            payload,
                            updated_at
                        ) VALUES (?, ?, ?, ?, ?, ?)
                        """,
                        rows,
                    )
        except sqlite3.Error as exc:
            raise StorageError("failed to write summary fragments") from exc

    def delete(self, key: FragmentKey) -> int:
        return self._execute(
            """
            DELETE FROM summary_fragments
            WHERE user_id = ? AND from_time = ? AND to_time = ? AND fingerprint = ?
            """,
            (key.user_id, to_db_time(key.from_time), to_db_time(key.to_time), key.fingerprint),
        )

    def delete_containing(self, user_id: str, timestamps: Iterable[datetime]) -> int:
        """Drop every fragment of ``user_id`` whose range holds one of the instants."""
        deleted = 0
        for instant in sorted({to_db_time(value) for value in timestamps}):
            deleted += self._execute(
                """
                DELETE FROM summary_fragments
                WHERE user_id = ? AND from_time <= ? AND to_time > ?
                """,
                (user_id, instant, instant),
            )
        return deleted

    def delete_user(self, user_id: str) -> int:
        return self._execute("DELETE FROM summary_fragments WHERE user_id = ?", (user_id,))

    def count(self, user_id: Optional[str] = None) -> int:
        if user_id is None:
            rows = self._fetch_all("SELECT COUNT(*) AS n FROM summary_fragments", ())
        else:
            rows = self._fetch_all(
                "SELECT COUNT(*) AS n FROM summary_fragments WHERE user_id = ?", (user_id,)
            )
        return int(rows[0]["n"])

    def _execute(self, sql: str, params: Sequence[object]) -> int:
        try:
            with database_connection(self.db_path) as conn:
                return conn.execute(sql, params).rowcount
        except sqlite3.Error as exc:
            raise StorageError("failed to write summary fragment") from exc

    def _fetch_all(self, sql: str, params: Sequence[object]) -> list[sqlite3.Row]:
        try:
            with database_connection(self.db_path) as conn:
                return list(conn.execute(sql, params))
        except sqlite3.Error as exc:
            raise StorageError("failed to read summary fragments") from exc


@dataclass(slots=True)
class _InFlight:
    future: Future = field(default_factory=Future)
    started: threading.Event = field(default_factory=threading.Event)
    waiters: int = 0


@dataclass(slots=True)
class _UserState:
    lock: threading.Lock = field(default_factory=threading.Lock)
    generation: int = 0
    stale: bool = False


class _Pending(NamedTuple):
    key: FragmentKey
    whole_day: bool
    entry: _InFlight


class SummaryCache:
    """Serve summaries from day fragments, building only what is missing."""

    def __init__(
        self,
        builder: SummaryBuilder,
        fragments: FragmentStore,
        settings: Optional[StatsSettings] = None,
    ) -> None:
        self.builder = builder
        self.fragments = fragments
        self.settings = settings or StatsSettings()
        self._lock = threading.Lock()
        self._inflight: dict[FragmentKey, _InFlight] = {}
        self._users: dict[str, _UserState] = {}

    def get_or_build(
        self,
        user_id: str,
        start: datetime,
        end: datetime,
        filters: Optional[Filters] = None,
        recompute: bool = False,
        tz: Optional[ZoneInfo] = None,
    ) -> Summary:
        start = start.astimezone(timezone.utc)
        end = end.astimezone(timezone.utc)
        fingerprint = filters.fingerprint() if filters is not None else ""
        segments = split_at_midnights(start, end, tz or _UTC)
        state = self._user_state(user_id)
        self._purge_if_stale(user_id, state)

        cached = {} if recompute else self.fragments.get_within(user_id, start, end, fingerprint)
        parts: list[Summary] = []
        owned: list[_Pending] = []
        joined: list[_Pending] = []
        with self._lock:
            generation = state.generation
            for seg_start, seg_end, whole_day in segments:
                fragment = cached.get((seg_start, seg_end)) if whole_day else None
                if fragment is not None:
                    parts.append(fragment.summary)
                    continue
                key = FragmentKey(user_id, seg_start, seg_end, fingerprint)
                entry = self._inflight.get(key)
                if entry is not None:
                    entry.waiters += 1
                    joined.append(_Pending(key, whole_day, entry))
                else:
                    entry = _InFlight()
                    self._inflight[key] = entry
                    owned.append(_Pending(key, whole_day, entry))
        logger.debug(
            "Summary for %s: %d segments, %d cached, %d to build, %d joined.",
            user_id,
            len(segments),
            len(parts),
            len(owned),
            len(joined),
        )

        try:
            for run in _contiguous_runs(owned):
                parts.extend(self._build_run(user_id, run, filters, generation))
        finally:
            self._settle(owned)
        for item in joined:
            parts.append(self._wait_or_take_over(user_id, item, filters, generation))

        return merge_summaries(user_id, start, end, parts)

    def invalidate(self, user_id: str, timestamps: Iterable[datetime]) -> int:
        """Evict fragments that contain any of ``timestamps``."""
        state = self._user_state(user_id)
        with state.lock:
            state.generation += 1
            try:
                deleted = self.fragments.delete_containing(user_id, timestamps)
            except StorageError:
                state.stale = True
                logger.exception("Failed to evict fragments for %s; purging on next read.", user_id)
                return 0
        if deleted:
            logger.debug("Evicted %d fragments for %s after new heartbeats.", deleted, user_id)
        return deleted

    def invalidate_user(self, user_id: str) -> int:
        state = self._user_state(user_id)
        with state.lock:
            state.generation += 1
            try:
                deleted = self.fragments.delete_user(user_id)
            except StorageError:
                state.stale = True
                logger.exception("Failed to evict fragments for %s; purging on next read.", user_id)
                return 0
        logger.debug("Evicted all %d fragments for %s.", deleted, user_id)
        return deleted

    def _user_state(self, user_id: str) -> _UserState:
        with self._lock:
            return self._users.setdefault(user_id, _UserState())

    def _purge_if_stale(self, user_id: str, state: _UserState) -> None:
        with state.lock:
            if not state.stale:
                return
            deleted = self.fragments.delete_user(user_id)
            state.stale = False
            state.generation += 1
        logger.info("Purged %d fragments for %s after a failed eviction.", deleted, user_id)

    def _build_run(
        self,
        user_id: str,
        run: Sequence[_Pending],
        filters: Optional[Filters],
        generation: int,
    ) -> list[Summary]:
        for item in run:
            item.entry.future.set_running_or_notify_cancel()
            item.entry.started.set()
        try:
            summaries = self._build_with_retry(user_id, run, filters, generation)
        except Exception as exc:
            for item in run:
                item.entry.future.set_exception(exc)
            raise
        for item, summary in zip(run, summaries):
            item.entry.future.set_result(summary)
        return summaries

    def _build_with_retry(
        self,
        user_id: str,
        run: Sequence[_Pending],
        filters: Optional[Filters],
        generation: int,
    ) -> list[Summary]:
        segments = [(item.key.from_time, item.key.to_time) for item in run]
        whole_days = [item.key for item in run if item.whole_day]
        last_error: Optional[StorageError] = None
        for attempt in range(1, _BUILD_ATTEMPTS + 1):
            try:
                summaries = self.builder.build_segments(user_id, segments, filters)
                self._persist(
                    user_id,
                    [
                        (item.key, summary)
                        for item, summary in zip(run, summaries)
                        if item.whole_day
                    ],
                    generation,
                )
                return summaries
            except StorageError as exc:
                last_error = exc
                logger.warning(
                    "Summary build for %s [%s, %s) failed (attempt %d/%d).",
                    user_id,
                    segments[0][0].isoformat(),
                    segments[-1][1].isoformat(),
                    attempt,
                    _BUILD_ATTEMPTS,
                    exc_info=True,
                )
                self._evict(whole_days)
        raise StorageError("failed to build summary") from last_error

    def _settle(self, owned: Sequence[_Pending]) -> None:
        """Detach owned entries; runs that never started are cancelled."""
        with self._lock:
            for item in owned:
                if self._inflight.get(item.key) is item.entry:
                    del self._inflight[item.key]
                if item.entry.future.cancel():
                    logger.debug(
                        "Abandoned build for %s [%s, %s).",
                        item.key.user_id,
                        item.key.from_time.isoformat(),
                        item.key.to_time.isoformat(),
                    )
                item.entry.started.set()

    def _wait_or_take_over(
        self,
        user_id: str,
        item: _Pending,
        filters: Optional[Filters],
        generation: int,
    ) -> Summary:
        entry = item.entry
        while True:
            # The timeout only covers the build itself, not the owner's earlier runs.
            entry.started.wait()
            try:
                return entry.future.result(timeout=self.settings.build_timeout.total_seconds())
            except FutureTimeoutError as exc:
                raise BuildTimeoutError("summary build timed out") from exc
            except CancelledError:
                logger.debug("Build for %s was abandoned by its owner.", user_id)
            with self._lock:
                current = self._inflight.get(item.key)
                if current is not None:
                    current.waiters += 1
                    entry = current
                    continue
                mine = _Pending(item.key, item.whole_day, _InFlight())
                self._inflight[item.key] = mine.entry
            try:
                return self._build_run(user_id, [mine], filters, generation)[0]
            finally:
                self._settle([mine])

    def _persist(
        self,
        user_id: str,
        built: Sequence[tuple[FragmentKey, Summary]],
        generation: int,
    ) -> None:
        if not built:
            return
        state = self._user_state(user_id)
        with state.lock:
            if state.generation != generation:
                logger.debug("Dropping fragments for %s built before an eviction.", user_id)
                return
            self.fragments.put_many(
                [
                    CachedSummaryFragment(
                        user_id=key.user_id,
                        from_time=key.from_time,
                        to_time=key.to_time,
                        fingerprint=key.fingerprint,
                        summary=summary,
                    )
                    for key, summary in built
                ]
            )

    def _evict(self, keys: Iterable[FragmentKey]) -> None:
        for key in keys:
            try:
                self.fragments.delete(key)
            except StorageError:
                logger.exception("Failed to evict fragment for %s.", key.user_id)


def _contiguous_runs(owned: Sequence[_Pending]) -> list[list[_Pending]]:
    """Group time-ordered segments into runs with no gap between them."""
    runs: list[list[_Pending]] = []
    for item in owned:
        if runs and runs[-1][-1].key.to_time == item.key.from_time:
            runs[-1].append(item)
        else:
            runs.append([item])
    return runs


def merge_summaries(
    user_id: str, start: datetime, end: datetime, parts: Sequence[Summary]
) -> Summary:
    """Sum per-key durations across fragments and re-sort every category."""
    merged = Summary(user_id=user_id, from_time=start, to_time=end)
    for category in SUMMARY_CATEGORIES:
        totals: defaultdict[str, timedelta] = defaultdict(timedelta)
        for part in parts:
            for item in part.items(category):
                totals[item.key] += item.total
        merged.set_items(category, sorted_items(totals))
    merged.total = sum((part.total for part in parts), timedelta(0))
    return merged


def _row_to_fragment(row: sqlite3.Row) -> CachedSummaryFragment:
    return CachedSummaryFragment(
        user_id=row["user_id"],
        from_time=from_db_time(row["from_time"]),
        to_time=from_db_time(row["to_time"]),
        fingerprint=row["fingerprint"],
        summary=Summary.from_dict(json.loads(row["payload"])),
    )
