"""Simple reporting utilities for CLI output."""

from __future__ import annotations

from typing import Optional

from .models import Filters
from .service import StatsService
from .views import StatsData, SummaryItemView

_SECTIONS = (
    ("Projects", "projects"),
    ("Languages", "languages"),
    ("Editors", "editors"),
    ("Operating systems", "operating_systems"),
    ("Machines", "machines"),
    ("Labels", "labels"),
)


class SummaryPrinter:
    """Render human-readable stats in the console."""

    def __init__(self, service: StatsService, top: int = 5) -> None:
        self.service = service
        self.top = top

    def print_stats(
        self,
        user_id: str,
        range_token: Optional[str] = None,
        filters: Optional[Filters] = None,
        recompute: bool = False,
    ) -> None:
        stats = self.service.get_stats(
            user_id,
            range_token,
            filters,
            requesting_user_id=user_id,
            recompute=recompute,
        )
        data = stats.data
        if not data.total_seconds:
            print("No activity recorded for the selected range.")
            return

        print(f"Summary for {data.user_id} ({data.range})")
        print("-" * 40)
        print(f"From:          {data.start}")
        print(f"To:            {data.end}")
        print(f"Timezone:      {data.timezone}")
        print(f"Total time:    {format_duration(data.total_seconds)}")
        print(f"Daily average: {format_duration(data.daily_average)}")
        if data.filters:
            applied = ", ".join(f"{name}={value}" for name, value in data.filters.items())
            print(f"Filters:       {applied}")

        for title, category in _SECTIONS:
            items = top_items(data, category, self.top)
            if not items:
                continue
            print()
            print(f"{title}:")
            for item in items:
                print(
                    f"  {item.name[:30]:<30} {format_duration(item.total_seconds)} {item.percent:6.2f}%"
                )


def top_items(data: StatsData, category: str, limit: int) -> list[SummaryItemView]:
    return list(getattr(data, category))[:limit]


def format_duration(seconds: float) -> str:
    total_seconds = int(round(seconds))
    hours, remainder = divmod(total_seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"
