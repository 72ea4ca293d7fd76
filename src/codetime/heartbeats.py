"""Append-only heartbeat store backed by SQLite."""

from __future__ import annotations

import logging
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable, Optional, Sequence

from .db import database_connection, from_db_time, to_db_time, transaction
from .errors import StorageError
from .models import CountByUser, EntityType, Heartbeat, TimeByUser

logger = logging.getLogger(__name__)

# Called with (user_id, timestamps) after heartbeats were committed.
InsertListener = Callable[[str, list[datetime]], None]

_COLUMNS = (
    "user_id",
    "time",
    "entity",
    "entity_type",
    "project",
    "language",
    "editor",
    "operating_system",
    "machine",
    "is_write",
    "origin",
    "branch",
    "category",
)

_SELECT = f"SELECT id, {', '.join(_COLUMNS)} FROM heartbeats"

_ENTITY_COLUMNS = {
    EntityType.PROJECT: "project",
    EntityType.LANGUAGE: "language",
    EntityType.EDITOR: "editor",
    EntityType.OPERATING_SYSTEM: "operating_system",
    EntityType.MACHINE: "machine",
    EntityType.ENTITY: "entity",
}


class HeartbeatStore:
    """Durable per-user heartbeat timeline.

    Every method opens its own connection, so a store instance can be shared
    between request threads. All SQLite failures surface as ``StorageError``.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self._listeners: list[InsertListener] = []
        self._listeners_lock = threading.Lock()

    def add_listener(self, listener: InsertListener) -> None:
        with self._listeners_lock:
            self._listeners.append(listener)

    def insert(self, heartbeat: Heartbeat) -> None:
        self.insert_batch([heartbeat])

    def insert_batch(self, heartbeats: Sequence[Heartbeat]) -> None:
        if not heartbeats:
            return
        placeholders = ", ".join("?" for _ in _COLUMNS)
        try:
            with database_connection(self.db_path) as conn:
                with transaction(conn):
                    conn.executemany(
                        f"INSERT INTO heartbeats ({', '.join(_COLUMNS)}) VALUES ({placeholders})",
                        [_to_row(heartbeat) for heartbeat in heartbeats],
                    )
        except sqlite3.Error as exc:
            raise StorageError("failed to insert heartbeats") from exc
        logger.debug("Inserted %d heartbeats.", len(heartbeats))
        self._notify(heartbeats)

    def count(self) -> int:
        row = self._fetch_one("SELECT COUNT(*) AS n FROM heartbeats", ())
        return int(row["n"])

    def count_by_user(self, user_id: str) -> int:
        row = self._fetch_one(
            "SELECT COUNT(*) AS n FROM heartbeats WHERE user_id = ?", (user_id,)
        )
        return int(row["n"])

    def count_by_users(self, user_ids: Iterable[str]) -> list[CountByUser]:
        ids = list(dict.fromkeys(user_ids))
        if not ids:
            return []
        placeholders = ", ".join("?" for _ in ids)
        rows = self._fetch_all(
            f"""
            SELECT user_id, COUNT(*) AS n
            FROM heartbeats
            WHERE user_id IN ({placeholders})
            GROUP BY user_id
            """,
            ids,
        )
        counts = {row["user_id"]: int(row["n"]) for row in rows}
        return [CountByUser(user_id=user_id, count=counts.get(user_id, 0)) for user_id in ids]

    def get_all_within(self, start: datetime, end: datetime, user_id: str) -> list[Heartbeat]:
        """Heartbeats of ``user_id`` with ``start <= time < end``, oldest first."""
        rows = self._fetch_all(
            f"""
            {_SELECT}
            WHERE user_id = ? AND time >= ? AND time < ?
            ORDER BY time, id
            """,
            (user_id, to_db_time(start), to_db_time(end)),
        )
        return [_from_row(row) for row in rows]

    def get_first_by_users(self) -> list[TimeByUser]:
        rows = self._fetch_all(
            "SELECT user_id, MIN(time) AS first FROM heartbeats GROUP BY user_id ORDER BY user_id",
            (),
        )
        return [TimeByUser(user_id=row["user_id"], time=from_db_time(row["first"])) for row in rows]

    def get_first_by_user(self, user_id: str) -> Optional[datetime]:
        row = self._fetch_one(
            "SELECT MIN(time) AS first FROM heartbeats WHERE user_id = ?", (user_id,)
        )
        return from_db_time(row["first"]) if row["first"] else None

    def get_latest_by_user(self, user_id: str) -> Optional[Heartbeat]:
        row = self._fetch_one(
            f"{_SELECT} WHERE user_id = ? ORDER BY time DESC, id DESC LIMIT 1",
            (user_id,),
        )
        return _from_row(row) if row else None

    def get_latest_by_origin_and_user(self, origin: str, user_id: str) -> Optional[Heartbeat]:
        row = self._fetch_one(
            f"{_SELECT} WHERE user_id = ? AND origin = ? ORDER BY time DESC, id DESC LIMIT 1",
            (user_id, origin),
        )
        return _from_row(row) if row else None

    def get_entity_set_by_user(self, entity_type: EntityType, user_id: str) -> list[str]:
        """Distinct raw values the user has sent for ``entity_type``."""
        column = _ENTITY_COLUMNS.get(EntityType.parse(entity_type))
        if column is None:
            raise ValueError(f"{entity_type} is not stored on heartbeats")
        rows = self._fetch_all(
            f"""
            SELECT DISTINCT {column} AS value
            FROM heartbeats
            WHERE user_id = ? AND {column} IS NOT NULL AND {column} != ''
            ORDER BY value
            """,
            (user_id,),
        )
        return [row["value"] for row in rows]

    def delete_before(self, cutoff: datetime) -> int:
        try:
            with database_connection(self.db_path) as conn:
                cur = conn.execute(
                    "DELETE FROM heartbeats WHERE time < ?", (to_db_time(cutoff),)
                )
        except sqlite3.Error as exc:
            raise StorageError("failed to delete heartbeats") from exc
        logger.info("Deleted %d heartbeats older than %s.", cur.rowcount, cutoff.isoformat())
        return cur.rowcount

    def _fetch_all(self, sql: str, params: Sequence[object]) -> list[sqlite3.Row]:
        try:
            with database_connection(self.db_path) as conn:
                return list(conn.execute(sql, params))
        except sqlite3.Error as exc:
            raise StorageError("failed to query heartbeats") from exc

    def _fetch_one(self, sql: str, params: Sequence[object]) -> Optional[sqlite3.Row]:
        try:
            with database_connection(self.db_path) as conn:
                return conn.execute(sql, params).fetchone()
        except sqlite3.Error as exc:
            raise StorageError("failed to query heartbeats") from exc

    def _notify(self, heartbeats: Sequence[Heartbeat]) -> None:
        by_user: dict[str, list[datetime]] = {}
        for heartbeat in heartbeats:
            by_user.setdefault(heartbeat.user_id, []).append(heartbeat.time)
        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            for user_id, timestamps in by_user.items():
                try:
                    listener(user_id, timestamps)
                except Exception:
                    logger.exception("Heartbeat listener failed for user %s.", user_id)


def _to_row(heartbeat: Heartbeat) -> tuple[object, ...]:
    return (
        heartbeat.user_id,
        to_db_time(heartbeat.time),
        heartbeat.entity,
        heartbeat.entity_type,
        heartbeat.project,
        heartbeat.language,
        heartbeat.editor,
        heartbeat.operating_system,
        heartbeat.machine,
        1 if heartbeat.is_write else 0,
        heartbeat.origin,
        heartbeat.branch,
        heartbeat.category,
    )


def _from_row(row: sqlite3.Row) -> Heartbeat:
    return Heartbeat(
        id=row["id"],
        user_id=row["user_id"],
        time=from_db_time(row["time"]),
        entity=row["entity"],
        entity_type=row["entity_type"],
        project=row["project"],
        language=row["language"],
        editor=row["editor"],
        operating_system=row["operating_system"],
        machine=row["machine"],
        is_write=bool(row["is_write"]),
        origin=row["origin"],
        branch=row["branch"],
        category=row["category"],
    )
