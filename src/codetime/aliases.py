"""Per-user alias rules and project labels."""

from __future__ import annotations

import logging
import sqlite3
import threading
from pathlib import Path
from typing import Callable, Optional, Sequence

from .db import database_connection
from .errors import StorageError
from .models import Alias, EntityType, ProjectLabel

logger = logging.getLogger(__name__)

# Called with the user id whose aliases or labels changed.
ChangeListener = Callable[[str], None]

_AliasLookup = dict[tuple[EntityType, str], str]
_LabelLookup = dict[str, str]


class AliasResolver:
    """Maps raw entity names onto the canonical names a user configured.

    Rules are loaded per user on first use and held in plain dicts, so every
    lookup after that is a single dict access.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self._lock = threading.Lock()
        self._aliases: dict[str, _AliasLookup] = {}
        self._labels: dict[str, _LabelLookup] = {}
        self._versions: dict[str, int] = {}
        self._listeners: list[ChangeListener] = []

    def add_listener(self, listener: ChangeListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def canonicalize(
        self, user_id: str, entity_type: EntityType | str, raw_name: Optional[str]
    ) -> Optional[str]:
        if not raw_name:
            return raw_name
        lookup = self._alias_lookup(user_id)
        return lookup.get((EntityType.parse(entity_type), raw_name), raw_name)

    def label_for(self, user_id: str, project: Optional[str]) -> Optional[str]:
        if not project:
            return None
        return self._label_lookup(user_id).get(project)

    def list_aliases(self, user_id: str) -> list[Alias]:
        rows = self._fetch_all(
            "SELECT entity_type, key, value FROM aliases WHERE user_id = ? ORDER BY entity_type, key, value",
            (user_id,),
        )
        return [
            Alias(
                user_id=user_id,
                entity_type=EntityType(row["entity_type"]),
                key=row["key"],
                value=row["value"],
            )
            for row in rows
        ]

    def add_alias(
        self, user_id: str, entity_type: EntityType | str, key: str, value: str
    ) -> Alias:
        kind = EntityType.parse(entity_type)
        key = key.strip()
        value = value.strip()
        if not key or not value:
            raise ValueError("alias key and value are required")
        if key == value:
            raise ValueError("alias value must differ from its key")
        self._execute(
            """
            INSERT INTO aliases (user_id, entity_type, key, value)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(user_id, entity_type, value) DO UPDATE SET key = excluded.key
            """,
            (user_id, kind.value, key, value),
        )
        self._changed(user_id)
        return Alias(user_id=user_id, entity_type=kind, key=key, value=value)

    def delete_alias(self, user_id: str, entity_type: EntityType | str, value: str) -> None:
        self._execute(
            "DELETE FROM aliases WHERE user_id = ? AND entity_type = ? AND value = ?",
            (user_id, EntityType.parse(entity_type).value, value),
        )
        self._changed(user_id)

    def list_labels(self, user_id: str) -> list[ProjectLabel]:
        rows = self._fetch_all(
            "SELECT project_key, label FROM project_labels WHERE user_id = ? ORDER BY project_key, label",
            (user_id,),
        )
        return [
            ProjectLabel(user_id=user_id, project_key=row["project_key"], label=row["label"])
            for row in rows
        ]

    def add_label(self, user_id: str, project_key: str, label: str) -> ProjectLabel:
        project_key = project_key.strip()
        label = label.strip()
        if not project_key or not label:
            raise ValueError("project and label are required")
        self._execute(
            """
            INSERT INTO project_labels (user_id, project_key, label)
            VALUES (?, ?, ?)
            ON CONFLICT(user_id, project_key) DO UPDATE SET label = excluded.label
            """,
            (user_id, project_key, label),
        )
        self._changed(user_id)
        return ProjectLabel(user_id=user_id, project_key=project_key, label=label)

    def delete_label(self, user_id: str, project_key: str) -> None:
        self._execute(
            "DELETE FROM project_labels WHERE user_id = ? AND project_key = ?",
            (user_id, project_key),
        )
        self._changed(user_id)

    def _alias_lookup(self, user_id: str) -> _AliasLookup:
        with self._lock:
            lookup = self._aliases.get(user_id)
            version = self._versions.get(user_id, 0)
        if lookup is not None:
            return lookup
        lookup = {
            (alias.entity_type, alias.value): alias.key for alias in self.list_aliases(user_id)
        }
        with self._lock:
            # A change while loading makes this copy stale; the next lookup reloads.
            if self._versions.get(user_id, 0) == version:
                self._aliases[user_id] = lookup
        return lookup

    def _label_lookup(self, user_id: str) -> _LabelLookup:
        with self._lock:
            lookup = self._labels.get(user_id)
            version = self._versions.get(user_id, 0)
        if lookup is not None:
            return lookup
        lookup = {label.project_key: label.label for label in self.list_labels(user_id)}
        with self._lock:
            if self._versions.get(user_id, 0) == version:
                self._labels[user_id] = lookup
        return lookup

    def _changed(self, user_id: str) -> None:
        with self._lock:
            self._versions[user_id] = self._versions.get(user_id, 0) + 1
            self._aliases.pop(user_id, None)
            self._labels.pop(user_id, None)
            listeners = list(self._listeners)
        logger.debug("Alias rules changed for user %s.", user_id)
        for listener in listeners:
            try:
                listener(user_id)
            except Exception:
                logger.exception("Alias listener failed for user %s.", user_id)

    def _execute(self, sql: str, params: Sequence[object]) -> None:
        try:
            with database_connection(self.db_path) as conn:
                conn.execute(sql, params)
        except sqlite3.Error as exc:
            raise StorageError("failed to update alias rules") from exc

    def _fetch_all(self, sql: str, params: Sequence[object]) -> list[sqlite3.Row]:
        try:
            with database_connection(self.db_path) as conn:
                return list(conn.execute(sql, params))
        except sqlite3.Error as exc:
            raise StorageError("failed to load alias rules") from exc
