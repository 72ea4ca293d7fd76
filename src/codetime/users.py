"""Lookup of the users owning heartbeat timelines."""

from __future__ import annotations

import sqlite3
from pathlib import Path

from .db import database_connection
from .errors import NotFoundError, StorageError
from .models import User


class UserStore:
    """Read and upsert user records, including their sharing preferences."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)

    def get_user(self, user_id: str) -> User:
        try:
            with database_connection(self.db_path) as conn:
                row = conn.execute(
                    """
                    SELECT
                        id,
                        timezone,
                        share_projects,
                        share_languages,
                        share_editors,
                        share_operating_systems,
                        share_machines,
                        share_data_max_days
                    FROM users
                    WHERE id = ?
                    """,
                    (user_id,),
                ).fetchone()
        except sqlite3.Error as exc:
            raise StorageError("failed to load user") from exc
        if row is None:
            raise NotFoundError(f"No user found for id={user_id}")
        return User(
            id=row["id"],
            timezone=row["timezone"],
            share_projects=bool(row["share_projects"]),
            share_languages=bool(row["share_languages"]),
            share_editors=bool(row["share_editors"]),
            share_operating_systems=bool(row["share_operating_systems"]),
            share_machines=bool(row["share_machines"]),
            share_data_max_days=int(row["share_data_max_days"]),
        )

    def upsert_user(self, user: User) -> None:
        try:
            with database_connection(self.db_path) as conn:
                conn.execute(
                    """
                    INSERT INTO users (
                        id,
                        timezone,
                        share_projects,
                        share_languages,
                        share_editors,
                        share_operating_systems,
                        share_machines,
                        share_data_max_days
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        timezone = excluded.timezone,
                        share_projects = excluded.share_projects,
                        share_languages = excluded.share_languages,
                        share_editors = excluded.share_editors,
                        share_operating_systems = excluded.share_operating_systems,
                        share_machines = excluded.share_machines,
                        share_data_max_days = excluded.share_data_max_days
                    """,
                    (
                        user.id,
                        user.timezone,
                        int(user.share_projects),
                        int(user.share_languages),
                        int(user.share_editors),
                        int(user.share_operating_systems),
                        int(user.share_machines),
                        user.share_data_max_days,
                    ),
                )
        except sqlite3.Error as exc:
            raise StorageError("failed to save user") from exc
