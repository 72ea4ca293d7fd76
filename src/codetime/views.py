"""Wire shapes returned by the stats and heartbeat endpoints."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from .models import SUMMARY_CATEGORIES, Filters, Heartbeat, Summary, SummaryItem


class SummaryItemView(BaseModel):
    name: str
    total_seconds: float
    percent: float
    digital: str
    text: str
    hours: int
    minutes: int


class StatsData(BaseModel):
    user_id: str
    range: str
    start: str
    end: str
    timezone: str
    total_seconds: float
    daily_average: float
    human_readable_total: str
    human_readable_daily_average: str
    days_including_holidays: int
    projects: list[SummaryItemView] = Field(default_factory=list)
    languages: list[SummaryItemView] = Field(default_factory=list)
    editors: list[SummaryItemView] = Field(default_factory=list)
    operating_systems: list[SummaryItemView] = Field(default_factory=list)
    machines: list[SummaryItemView] = Field(default_factory=list)
    labels: list[SummaryItemView] = Field(default_factory=list)
    entities: list[SummaryItemView] = Field(default_factory=list)
    filters: dict[str, str] = Field(default_factory=dict)


class StatsViewModel(BaseModel):
    data: StatsData

    @classmethod
    def from_summary(
        cls,
        summary: Summary,
        *,
        range_name: str,
        timezone_name: str,
        filters: Optional[Filters] = None,
    ) -> "StatsViewModel":
        total_seconds = summary.total.total_seconds()
        days = max(1, _days_between(summary.from_time, summary.to_time))
        daily_average = total_seconds / days
        categories = {category: _category_view(summary, category) for category in SUMMARY_CATEGORIES}
        data = StatsData(
            user_id=summary.user_id,
            range=range_name,
            start=isoformat_utc(summary.from_time),
            end=isoformat_utc(summary.to_time),
            timezone=timezone_name,
            total_seconds=total_seconds,
            daily_average=daily_average,
            human_readable_total=human_readable(total_seconds),
            human_readable_daily_average=human_readable(daily_average),
            days_including_holidays=days,
            filters=filters.to_dict() if filters is not None else {},
            **categories,
        )
        return cls(data=data)


class HeartbeatEntry(BaseModel):
    id: Optional[int] = None
    user_id: str
    entity: str
    type: str
    category: Optional[str] = None
    time: float
    project: Optional[str] = None
    branch: Optional[str] = None
    language: Optional[str] = None
    editor: Optional[str] = None
    operating_system: Optional[str] = None
    machine: Optional[str] = None
    origin: Optional[str] = None
    is_write: bool = False

    @classmethod
    def from_heartbeat(cls, heartbeat: Heartbeat) -> "HeartbeatEntry":
        return cls(
            id=heartbeat.id,
            user_id=heartbeat.user_id,
            entity=heartbeat.entity,
            type=heartbeat.entity_type,
            category=heartbeat.category,
            time=heartbeat.time.timestamp(),
            project=heartbeat.project,
            branch=heartbeat.branch,
            language=heartbeat.language,
            editor=heartbeat.editor,
            operating_system=heartbeat.operating_system,
            machine=heartbeat.machine,
            origin=heartbeat.origin,
            is_write=heartbeat.is_write,
        )


class HeartbeatsResult(BaseModel):
    data: list[HeartbeatEntry]
    start: str
    end: str
    timezone: str


class HeartbeatPayload(BaseModel):
    """A heartbeat as sent by an editor plugin."""

    entity: str
    type: str = "file"
    time: float
    project: Optional[str] = None
    language: Optional[str] = None
    editor: Optional[str] = None
    operating_system: Optional[str] = None
    machine: Optional[str] = None
    branch: Optional[str] = None
    category: Optional[str] = None
    is_write: bool = False
    origin: Optional[str] = None

    model_config = ConfigDict(extra="ignore")

    def to_heartbeat(self, user_id: str) -> Heartbeat:
        return Heartbeat(
            user_id=user_id,
            time=datetime.fromtimestamp(self.time, tz=timezone.utc),
            entity=self.entity,
            entity_type=self.type,
            project=self.project,
            language=self.language,
            editor=self.editor,
            operating_system=self.operating_system,
            machine=self.machine,
            is_write=self.is_write,
            origin=self.origin,
            branch=self.branch,
            category=self.category,
        )


def isoformat_utc(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def human_readable(seconds: float) -> str:
    total_minutes = int(seconds // 60)
    hours, minutes = divmod(total_minutes, 60)
    hour_part = f"{hours} hr" if hours == 1 else f"{hours} hrs"
    minute_part = f"{minutes} min" if minutes == 1 else f"{minutes} mins"
    if hours:
        return f"{hour_part} {minute_part}"
    return minute_part


def _category_view(summary: Summary, category: str) -> list[SummaryItemView]:
    including_others = summary.category_total(category)
    return [_item_view(item, including_others) for item in summary.items(category)]


def _item_view(item: SummaryItem, including_others: timedelta) -> SummaryItemView:
    seconds = item.total.total_seconds()
    total = including_others.total_seconds()
    hours, remainder = divmod(int(seconds), 3600)
    minutes = remainder // 60
    return SummaryItemView(
        name=item.key,
        total_seconds=seconds,
        percent=round(seconds / total * 100, 2) if total else 0.0,
        digital=f"{hours}:{minutes:02d}",
        text=human_readable(seconds),
        hours=hours,
        minutes=minutes,
    )


def _days_between(start: datetime, end: datetime) -> int:
    return -(-(end - start) // timedelta(days=1))
