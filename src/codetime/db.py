"""SQLite database layer shared by the heartbeat, user, alias and fragment stores."""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator


DATETIME_FMT = "%Y-%m-%d %H:%M:%S.%f"


def open_database(path: Path, *, check_same_thread: bool = True) -> sqlite3.Connection:
    """Open (and initialize) the SQLite database."""
    conn = sqlite3.connect(
        path,
        isolation_level=None,
        check_same_thread=check_same_thread,
        timeout=10.0,
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode = WAL;")
    enable_foreign_keys(conn)
    initialize_schema(conn)
    return conn


@contextmanager
def database_connection(
    path: Path, *, check_same_thread: bool = True
) -> Iterator[sqlite3.Connection]:
    conn = open_database(path, check_same_thread=check_same_thread)
    try:
        yield conn
    finally:
        conn.close()


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Group several statements into one atomic write."""
    conn.execute("BEGIN IMMEDIATE;")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK;")
        raise
    else:
        conn.execute("COMMIT;")


def enable_foreign_keys(conn: sqlite3.Connection) -> None:
    conn.execute("PRAGMA foreign_keys = ON;")


def initialize_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS heartbeats (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            time TEXT NOT NULL,
            entity TEXT NOT NULL,
            entity_type TEXT NOT NULL DEFAULT 'file',
            project TEXT,
            language TEXT,
            editor TEXT,
            operating_system TEXT,
            machine TEXT,
            is_write INTEGER NOT NULL DEFAULT 0,
            origin TEXT,
            branch TEXT,
            category TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_heartbeats_user_time
            ON heartbeats(user_id, time);
        CREATE INDEX IF NOT EXISTS idx_heartbeats_time
            ON heartbeats(time);

        CREATE TABLE IF NOT EXISTS users (
            id TEXT PRIMARY KEY,
            timezone TEXT NOT NULL DEFAULT 'UTC',
            share_projects INTEGER NOT NULL DEFAULT 0,
            share_languages INTEGER NOT NULL DEFAULT 0,
            share_editors INTEGER NOT NULL DEFAULT 0,
            share_operating_systems INTEGER NOT NULL DEFAULT 0,
            share_machines INTEGER NOT NULL DEFAULT 0,
            share_data_max_days INTEGER NOT NULL DEFAULT 0
        );

        CREATE TABLE IF NOT EXISTS aliases (
            id INTEGER PRIMARY KEY,
            user_id TEXT NOT NULL,
            entity_type TEXT NOT NULL,
            key TEXT NOT NULL,
            value TEXT NOT NULL,
            UNIQUE (user_id, entity_type, value)
        );

        CREATE TABLE IF NOT EXISTS project_labels (
            id INTEGER PRIMARY KEY,
            user_id TEXT NOT NULL,
            project_key TEXT NOT NULL,
            label TEXT NOT NULL,
            UNIQUE (user_id, project_key)
        );

        CREATE TABLE IF NOT EXISTS summary_fragments (
            user_id TEXT NOT NULL,
            from_time TEXT NOT NULL,
            to_time TEXT NOT NULL,
            fingerprint TEXT NOT NULL DEFAULT '',
            payload TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (user_id, from_time, to_time, fingerprint)
        );
        """
    )


def to_db_time(value: datetime) -> str:
    """Format an instant as naive UTC text; naive input is taken as UTC."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime(DATETIME_FMT)


def from_db_time(value: str) -> datetime:
    return datetime.strptime(value, DATETIME_FMT).replace(tzinfo=timezone.utc)
