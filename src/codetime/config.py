"""Configuration models and helpers for the stats engine."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta


@dataclass(slots=True)
class StatsSettings:
    """Runtime configuration threaded through resolvers, builder and cache."""

    idle_timeout: timedelta = timedelta(minutes=5)
    max_span_duration: timedelta = timedelta(hours=12)
    build_timeout: timedelta = timedelta(seconds=30)
    retention: timedelta = timedelta(days=365)
    default_timezone: str = "UTC"

    @classmethod
    def from_intervals(
        cls,
        idle_minutes: float,
        max_span_hours: float | None = None,
        build_timeout_seconds: float | None = None,
        retention_days: float | None = None,
    ) -> "StatsSettings":
        defaults = cls()
        max_span = (
            timedelta(hours=max_span_hours)
            if max_span_hours is not None
            else defaults.max_span_duration
        )
        build_timeout = (
            timedelta(seconds=build_timeout_seconds)
            if build_timeout_seconds is not None
            else defaults.build_timeout
        )
        retention = (
            timedelta(days=retention_days)
            if retention_days is not None
            else defaults.retention
        )
        return cls(
            idle_timeout=timedelta(minutes=idle_minutes),
            max_span_duration=max(max_span, timedelta(minutes=idle_minutes)),
            build_timeout=build_timeout,
            retention=retention,
        )
