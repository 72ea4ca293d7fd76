"""Domain models for heartbeats and summaries."""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Iterable, Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

UNKNOWN_KEY = "unknown"
_MICROSECOND = timedelta(microseconds=1)


class EntityType(str, Enum):
    """Kinds of entity a summary groups durations by."""

    PROJECT = "project"
    LANGUAGE = "language"
    EDITOR = "editor"
    OPERATING_SYSTEM = "operating_system"
    MACHINE = "machine"
    LABEL = "label"
    ENTITY = "entity"

    @property
    def category(self) -> str:
        """Name of the summary category holding this entity type."""
        return _CATEGORY_NAMES[self]

    @classmethod
    def parse(cls, value: "str | EntityType") -> "EntityType":
        if isinstance(value, EntityType):
            return value
        try:
            return cls(value)
        except ValueError:
            for member in cls:
                if member.category == value:
                    return member
            raise


_CATEGORY_NAMES = {
    EntityType.PROJECT: "projects",
    EntityType.LANGUAGE: "languages",
    EntityType.EDITOR: "editors",
    EntityType.OPERATING_SYSTEM: "operating_systems",
    EntityType.MACHINE: "machines",
    EntityType.LABEL: "labels",
    EntityType.ENTITY: "entities",
}

# Entity types carried directly on a heartbeat, in attribution order.
HEARTBEAT_ENTITY_TYPES = (
    EntityType.PROJECT,
    EntityType.LANGUAGE,
    EntityType.EDITOR,
    EntityType.OPERATING_SYSTEM,
    EntityType.MACHINE,
    EntityType.ENTITY,
)

SUMMARY_CATEGORIES = tuple(_CATEGORY_NAMES.values())


@dataclass(slots=True, frozen=True)
class Heartbeat:
    """A single timestamped unit of coding activity."""

    user_id: str
    time: datetime
    entity: str
    entity_type: str = "file"
    project: Optional[str] = None
    language: Optional[str] = None
    editor: Optional[str] = None
    operating_system: Optional[str] = None
    machine: Optional[str] = None
    is_write: bool = False
    origin: Optional[str] = None
    branch: Optional[str] = None
    category: Optional[str] = None
    id: Optional[int] = None

    def value_of(self, entity_type: EntityType) -> Optional[str]:
        return getattr(self, entity_type.value)


@dataclass(slots=True)
class User:
    """The owner of a heartbeat timeline and their sharing preferences."""

    id: str
    timezone: str = "UTC"
    share_projects: bool = False
    share_languages: bool = False
    share_editors: bool = False
    share_operating_systems: bool = False
    share_machines: bool = False
    share_data_max_days: int = 0

    def tz(self) -> ZoneInfo:
        try:
            return ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("Unknown timezone %r for user %s; using UTC.", self.timezone, self.id)
            return ZoneInfo("UTC")


@dataclass(slots=True, frozen=True)
class Alias:
    """Maps a raw entity name (value) onto a canonical name (key)."""

    user_id: str
    entity_type: EntityType
    key: str
    value: str


@dataclass(slots=True, frozen=True)
class ProjectLabel:
    user_id: str
    project_key: str
    label: str


@dataclass(slots=True, frozen=True)
class Filters:
    """Optional equality predicates on canonical entity names."""

    project: Optional[str] = None
    language: Optional[str] = None
    editor: Optional[str] = None
    operating_system: Optional[str] = None
    machine: Optional[str] = None
    label: Optional[str] = None

    def items(self) -> list[tuple[str, str]]:
        values = (
            ("editor", self.editor),
            ("label", self.label),
            ("language", self.language),
            ("machine", self.machine),
            ("operating_system", self.operating_system),
            ("project", self.project),
        )
        return [(name, value) for name, value in values if value]

    def is_empty(self) -> bool:
        return not self.items()

    def fingerprint(self) -> str:
        """Stable key for this combination of filters; empty when unfiltered."""
        items = self.items()
        if not items:
            return ""
        raw = json.dumps(dict(items), sort_keys=True)
        return hashlib.sha1(raw.encode("utf-8")).hexdigest()

    def to_dict(self) -> dict[str, str]:
        return dict(self.items())


@dataclass(slots=True, frozen=True)
class SummaryItem:
    key: str
    total: timedelta


@dataclass(slots=True)
class Summary:
    """Aggregated durations per category over ``[from_time, to_time)``."""

    user_id: str
    from_time: datetime
    to_time: datetime
    projects: list[SummaryItem] = field(default_factory=list)
    languages: list[SummaryItem] = field(default_factory=list)
    editors: list[SummaryItem] = field(default_factory=list)
    operating_systems: list[SummaryItem] = field(default_factory=list)
    machines: list[SummaryItem] = field(default_factory=list)
    labels: list[SummaryItem] = field(default_factory=list)
    entities: list[SummaryItem] = field(default_factory=list)
    total: timedelta = timedelta(0)

    def items(self, category: str) -> list[SummaryItem]:
        if category not in SUMMARY_CATEGORIES:
            raise KeyError(category)
        return getattr(self, category)

    def set_items(self, category: str, items: list[SummaryItem]) -> None:
        if category not in SUMMARY_CATEGORIES:
            raise KeyError(category)
        setattr(self, category, items)

    def category_total(self, category: str) -> timedelta:
        return sum((item.total for item in self.items(category)), timedelta(0))

    def is_empty(self) -> bool:
        return self.total == timedelta(0) and not any(
            self.items(category) for category in SUMMARY_CATEGORIES
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize with integer microsecond durations so round trips are exact."""
        payload: dict[str, Any] = {
            "user_id": self.user_id,
            "from": self.from_time.isoformat(),
            "to": self.to_time.isoformat(),
            "total_us": self.total // _MICROSECOND,
        }
        for category in SUMMARY_CATEGORIES:
            payload[category] = [
                [item.key, item.total // _MICROSECOND] for item in self.items(category)
            ]
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Summary":
        summary = cls(
            user_id=payload["user_id"],
            from_time=datetime.fromisoformat(payload["from"]),
            to_time=datetime.fromisoformat(payload["to"]),
            total=timedelta(microseconds=payload["total_us"]),
        )
        for category in SUMMARY_CATEGORIES:
            summary.set_items(
                category,
                [
                    SummaryItem(key=key, total=timedelta(microseconds=micros))
                    for key, micros in payload.get(category, [])
                ],
            )
        return summary


@dataclass(slots=True, frozen=True)
class CachedSummaryFragment:
    """A day-aligned partial summary as persisted by the cache."""

    user_id: str
    from_time: datetime
    to_time: datetime
    fingerprint: str
    summary: Summary


@dataclass(slots=True, frozen=True)
class CountByUser:
    user_id: str
    count: int


@dataclass(slots=True, frozen=True)
class TimeByUser:
    user_id: str
    time: datetime


def sorted_items(totals: Mapping[str, timedelta]) -> list[SummaryItem]:
    """Order items by descending duration, then ascending key."""
    ordered = sorted(totals.items(), key=lambda item: (-item[1], item[0]))
    return [SummaryItem(key=key, total=total) for key, total in ordered]


def sum_durations(values: Iterable[timedelta]) -> timedelta:
    return sum(values, timedelta(0))
