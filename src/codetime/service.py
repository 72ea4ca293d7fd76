"""Entry points used by the web app and CLI.

``StatsService`` wires the stores, resolvers, builder and cache together and
exposes the two read operations collaborators call (``get_stats`` and
``get_heartbeats``) plus ingestion and retention pruning.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional

from .aliases import AliasResolver
from .builder import SummaryBuilder
from .cache import FragmentStore, SummaryCache
from .config import StatsSettings
from .errors import BadDateError, ForbiddenError, InvalidRangeError, NotFoundError
from .heartbeats import HeartbeatStore
from .intervals import DEFAULT_RANGE, IntervalResolver, parse_date
from .models import Filters, Heartbeat, User
from .normalization import normalize_heartbeat, parse_user_agent
from .sharing import apply_sharing, check_sharing_window, is_owner
from .users import UserStore
from .views import HeartbeatEntry, HeartbeatsResult, StatsViewModel, isoformat_utc

logger = logging.getLogger(__name__)

CURRENT_USER = "current"
_OPEN_ENDED_RANGES = ("any", "all_time")


class StatsService:
    def __init__(
        self,
        *,
        heartbeats: HeartbeatStore,
        users: UserStore,
        aliases: AliasResolver,
        cache: SummaryCache,
        intervals: IntervalResolver,
        settings: StatsSettings,
    ) -> None:
        self.heartbeats = heartbeats
        self.users = users
        self.aliases = aliases
        self.cache = cache
        self.intervals = intervals
        self.settings = settings
        heartbeats.add_listener(cache.invalidate)
        aliases.add_listener(cache.invalidate_user)

    @classmethod
    def from_path(
        cls,
        db_path: Path,
        settings: Optional[StatsSettings] = None,
    ) -> "StatsService":
        """Build a service whose components all share one SQLite database."""
        resolved = settings or StatsSettings()
        heartbeats = HeartbeatStore(db_path)
        aliases = AliasResolver(db_path)
        builder = SummaryBuilder(heartbeats, aliases, resolved)
        return cls(
            heartbeats=heartbeats,
            users=UserStore(db_path),
            aliases=aliases,
            cache=SummaryCache(builder, FragmentStore(db_path), resolved),
            intervals=IntervalResolver(resolved),
            settings=resolved,
        )

    def get_stats(
        self,
        user_id: str,
        range_token: Optional[str] = None,
        filters: Optional[Filters] = None,
        *,
        requesting_user_id: Optional[str] = None,
        recompute: bool = False,
        now: Optional[datetime] = None,
    ) -> StatsViewModel:
        owner = self._resolve_user(user_id, requesting_user_id)
        now = now or datetime.now(timezone.utc)
        token = (range_token or DEFAULT_RANGE).strip().lower()
        zone = owner.tz()

        earliest = None
        if token in _OPEN_ENDED_RANGES:
            earliest = self.heartbeats.get_first_by_user(owner.id)
        start, end = self.intervals.resolve(token, zone, now=now, earliest=earliest)
        check_sharing_window(start, requesting_user_id, owner, now)

        owner_request = is_owner(requesting_user_id, owner)
        summary = self.cache.get_or_build(
            owner.id,
            start,
            end,
            filters,
            recompute=recompute and owner_request,
            tz=zone,
        )
        summary = apply_sharing(summary, requesting_user_id, owner)
        return StatsViewModel.from_summary(
            summary,
            range_name=token,
            timezone_name=zone.key,
            filters=filters,
        )

    def get_heartbeats(
        self,
        user_id: str,
        date: Optional[str],
        *,
        requesting_user_id: Optional[str] = None,
    ) -> HeartbeatsResult:
        owner = self._resolve_user(user_id, requesting_user_id)
        if not is_owner(requesting_user_id, owner):
            raise ForbiddenError("heartbeats are only visible to their owner")
        try:
            day = parse_date(date or "")
        except InvalidRangeError as exc:
            raise BadDateError("bad date") from exc

        zone = owner.tz()
        start, end = self.intervals.resolve_dates(day, None, zone)
        heartbeats = self.heartbeats.get_all_within(start, end, owner.id)
        return HeartbeatsResult(
            data=[HeartbeatEntry.from_heartbeat(heartbeat) for heartbeat in heartbeats],
            start=isoformat_utc(start),
            end=isoformat_utc(end),
            timezone=zone.key,
        )

    def ingest(
        self,
        user_id: str,
        heartbeats: Iterable[Heartbeat],
        *,
        user_agent: Optional[str] = None,
    ) -> int:
        """Normalize and store heartbeats; fragments covering them are evicted."""
        owner = self.users.get_user(user_id)
        agent_os, agent_editor = parse_user_agent(user_agent)
        prepared = []
        for heartbeat in heartbeats:
            normalized = normalize_heartbeat(replace(heartbeat, user_id=owner.id, id=None))
            if normalized.operating_system is None and agent_os:
                normalized = replace(normalized, operating_system=agent_os)
            if normalized.editor is None and agent_editor:
                normalized = replace(normalized, editor=agent_editor)
            prepared.append(normalized)
        self.heartbeats.insert_batch(prepared)
        logger.info("Stored %d heartbeats for %s.", len(prepared), owner.id)
        return len(prepared)

    def prune(self, now: Optional[datetime] = None) -> int:
        """Delete heartbeats older than the configured retention."""
        cutoff = (now or datetime.now(timezone.utc)) - self.settings.retention
        return self.heartbeats.delete_before(cutoff)

    def register_user(self, user: User) -> User:
        self.users.upsert_user(user)
        return user

    def _resolve_user(self, user_id: str, requesting_user_id: Optional[str]) -> User:
        if user_id == CURRENT_USER:
            if requesting_user_id is None:
                raise NotFoundError("no current user")
            user_id = requesting_user_id
        return self.users.get_user(user_id)
