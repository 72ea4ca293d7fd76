"""Apply an owner's sharing preferences to summaries requested by others."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta
from typing import Optional

from .errors import RangeTooBroadError
from .models import Summary, User

# Summary categories and the owner flag that must be set to expose them.
# Labels and entities reveal project names, so they follow the projects flag.
SHARE_FLAGS = {
    "projects": "share_projects",
    "languages": "share_languages",
    "editors": "share_editors",
    "operating_systems": "share_operating_systems",
    "machines": "share_machines",
    "labels": "share_projects",
    "entities": "share_projects",
}


def is_owner(requesting_user_id: Optional[str], owner: User) -> bool:
    return requesting_user_id is not None and requesting_user_id == owner.id


def check_sharing_window(
    start: datetime,
    requesting_user_id: Optional[str],
    owner: User,
    now: datetime,
) -> None:
    """Reject ranges reaching further back than the owner shares with others.

    A negative ``share_data_max_days`` means no limit.
    """
    if is_owner(requesting_user_id, owner) or owner.share_data_max_days < 0:
        return
    earliest = now - timedelta(days=owner.share_data_max_days)
    if start < earliest:
        raise RangeTooBroadError("requested time range too broad")


def apply_sharing(
    summary: Summary, requesting_user_id: Optional[str], owner: User
) -> Summary:
    """Return a copy of ``summary`` with unshared categories emptied."""
    if is_owner(requesting_user_id, owner):
        return summary
    redacted = replace(summary)
    for category, flag in SHARE_FLAGS.items():
        if not getattr(owner, flag):
            redacted.set_items(category, [])
        else:
            redacted.set_items(category, list(summary.items(category)))
    return redacted
