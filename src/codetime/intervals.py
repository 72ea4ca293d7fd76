"""Resolve named or explicit ranges into half-open UTC intervals.

Named ranges are computed against "now" in the user's timezone, so that
``today`` for a user in Asia/Tokyo runs from Tokyo midnight to Tokyo midnight
no matter where the server runs. Every result is a ``(from, to)`` pair of
UTC-aware datetimes with ``to`` exclusive.
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .config import StatsSettings
from .errors import InvalidRangeError

DEFAULT_RANGE = "last_7_days"
DATE_FMT = "%Y-%m-%d"

_TOKEN_ALIASES = {
    "7_days": "last_7_days",
    "14_days": "last_14_days",
    "30_days": "last_30_days",
    "6_months": "last_6_months",
    "12_months": "last_12_months",
    "all_time": "any",
}

_ROLLING_DAYS = {
    "last_7_days": 7,
    "last_14_days": 14,
    "last_30_days": 30,
}

_ROLLING_MONTHS = {
    "last_6_months": 6,
    "last_12_months": 12,
}

NAMED_RANGES = (
    "today",
    "yesterday",
    "week",
    "month",
    "year",
    "last_year",
    "any",
    *_ROLLING_DAYS,
    *_ROLLING_MONTHS,
    *_TOKEN_ALIASES,
)

Interval = tuple[datetime, datetime]


class IntervalResolver:
    """Turn range tokens into concrete instants for a given timezone."""

    def __init__(self, settings: Optional[StatsSettings] = None) -> None:
        self.settings = settings or StatsSettings()

    def resolve(
        self,
        token: Optional[str],
        tz: ZoneInfo | str | None,
        *,
        now: Optional[datetime] = None,
        earliest: Optional[datetime] = None,
    ) -> Interval:
        zone = self.zone(tz)
        current = (now or datetime.now(timezone.utc)).astimezone(zone)
        key = (token or DEFAULT_RANGE).strip().lower()
        key = _TOKEN_ALIASES.get(key, key)

        today = current.date()
        start: datetime
        end: datetime
        if key == "today":
            start, end = midnight(today, zone), midnight(today + timedelta(days=1), zone)
        elif key == "yesterday":
            start, end = midnight(today - timedelta(days=1), zone), midnight(today, zone)
        elif key == "week":
            monday = today - timedelta(days=today.weekday())
            start, end = midnight(monday, zone), midnight(today + timedelta(days=1), zone)
        elif key == "month":
            start = midnight(today.replace(day=1), zone)
            end = midnight(today + timedelta(days=1), zone)
        elif key == "year":
            start = midnight(today.replace(month=1, day=1), zone)
            end = midnight(today + timedelta(days=1), zone)
        elif key == "last_year":
            start = midnight(date(today.year - 1, 1, 1), zone)
            end = midnight(date(today.year, 1, 1), zone)
        elif key in _ROLLING_DAYS:
            start, end = current - timedelta(days=_ROLLING_DAYS[key]), current
        elif key in _ROLLING_MONTHS:
            start, end = shift_months(current, -_ROLLING_MONTHS[key]), current
        elif key == "any":
            # No history yet: the range is empty.
            start, end = (earliest or current), current
        else:
            return self._resolve_explicit(key, zone)

        start, end = _utc(start), _utc(end)
        return min(start, end), end

    def resolve_dates(
        self,
        start: str | date,
        end: str | date | None,
        tz: ZoneInfo | str | None,
    ) -> Interval:
        """Resolve inclusive local dates into ``[start 00:00, day after end 00:00)``."""
        zone = self.zone(tz)
        first = parse_date(start) if isinstance(start, str) else start
        last = first if end is None else (parse_date(end) if isinstance(end, str) else end)
        if last < first:
            raise InvalidRangeError("end date must be on or after start date")
        return _utc(midnight(first, zone)), _utc(midnight(last + timedelta(days=1), zone))

    def zone(self, tz: ZoneInfo | str | None) -> ZoneInfo:
        if isinstance(tz, ZoneInfo):
            return tz
        name = tz or self.settings.default_timezone
        try:
            return ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise InvalidRangeError(f"unknown timezone {name!r}") from exc

    def _resolve_explicit(self, key: str, zone: ZoneInfo) -> Interval:
        if ".." in key:
            first, _, last = key.partition("..")
            return self.resolve_dates(first, last, zone)
        return self.resolve_dates(key, None, zone)


def parse_date(value: str) -> date:
    try:
        return datetime.strptime(value.strip(), DATE_FMT).date()
    except ValueError as exc:
        raise InvalidRangeError(f"invalid range {value!r}") from exc


def midnight(day: date, zone: ZoneInfo) -> datetime:
    return datetime.combine(day, time(), tzinfo=zone)


def shift_months(value: datetime, months: int) -> datetime:
    index = value.year * 12 + (value.month - 1) + months
    year, month = divmod(index, 12)
    month += 1
    day = min(value.day, _days_in_month(year, month))
    return value.replace(year=year, month=month, day=day)


def split_at_midnights(
    start: datetime, end: datetime, zone: ZoneInfo
) -> list[tuple[datetime, datetime, bool]]:
    """Cut ``[start, end)`` at local midnights.

    Returns ``(from, to, whole_day)`` segments in UTC; ``whole_day`` is true
    when the segment runs exactly from one local midnight to the next.
    """
    segments: list[tuple[datetime, datetime, bool]] = []
    if end <= start:
        return segments
    cursor = start
    while cursor < end:
        local_day = cursor.astimezone(zone).date()
        day_start = _utc(midnight(local_day, zone))
        day_end = _utc(midnight(local_day + timedelta(days=1), zone))
        segment_end = min(day_end, end)
        segments.append((cursor, segment_end, cursor == day_start and segment_end == day_end))
        cursor = segment_end
    return segments


def _days_in_month(year: int, month: int) -> int:
    if month == 12:
        return 31
    return (date(year, month + 1, 1) - date(year, month, 1)).days


def _utc(value: datetime) -> datetime:
    return value.astimezone(timezone.utc)
