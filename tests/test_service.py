"""Tests for the stats service entry points."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from codetime.errors import (
    BadDateError,
    ForbiddenError,
    NotFoundError,
    RangeTooBroadError,
    StorageError,
)
from codetime.models import Filters, User

from conftest import make_heartbeat, utc

NOW = utc(2024, 3, 10, 12)
USER_AGENT = (
    "wakatime/13.0.7 (Linux-5.4.0-x86_64-with-glibc2.29) "
    "Python3.8.0.final.0 vscode/1.42.1 vscode-wakatime/4.0.0"
)


def _ingest_morning(service, user_id: str = "alice") -> None:
    service.ingest(
        user_id,
        [
            make_heartbeat(utc(2024, 3, 10, 9, 0)),
            make_heartbeat(utc(2024, 3, 10, 9, 4)),
            make_heartbeat(utc(2024, 3, 10, 9, 5)),
        ],
    )


class TestGetStats:
    """Stats for the owner."""

    def test_owner_stats(self, service):
        _ingest_morning(service)
        stats = service.get_stats("alice", "today", requesting_user_id="alice", now=NOW)
        data = stats.data
        assert data.user_id == "alice"
        assert data.range == "today"
        assert data.timezone == "UTC"
        assert data.start == "2024-03-10T00:00:00Z"
        assert data.end == "2024-03-11T00:00:00Z"
        assert data.total_seconds == 300
        assert data.human_readable_total == "5 mins"
        assert data.days_including_holidays == 1
        assert [item.name for item in data.projects] == ["app"]
        assert data.projects[0].percent == 100.0
        assert data.projects[0].digital == "0:05"

    def test_current_user(self, service):
        _ingest_morning(service)
        stats = service.get_stats("current", "today", requesting_user_id="alice", now=NOW)
        assert stats.data.user_id == "alice"
        assert stats.data.total_seconds == 300

    def test_current_user_requires_principal(self, service):
        with pytest.raises(NotFoundError):
            service.get_stats("current", "today", now=NOW)

    def test_unknown_user(self, service):
        with pytest.raises(NotFoundError):
            service.get_stats("nobody", "today", requesting_user_id="nobody", now=NOW)

    def test_today_follows_user_timezone(self, service):
        service.register_user(User(id="kenji", timezone="Asia/Tokyo"))
        service.ingest(
            "kenji",
            [
                # 23:00 on the 9th in Tokyo.
                make_heartbeat(utc(2024, 3, 9, 14, 0)),
                make_heartbeat(utc(2024, 3, 9, 14, 3)),
                # 01:00 on the 10th in Tokyo.
                make_heartbeat(utc(2024, 3, 9, 16, 0)),
                make_heartbeat(utc(2024, 3, 9, 16, 4)),
            ],
        )
        stats = service.get_stats("kenji", "today", requesting_user_id="kenji", now=utc(2024, 3, 10, 2))
        assert stats.data.timezone == "Asia/Tokyo"
        assert stats.data.start == "2024-03-09T15:00:00Z"
        assert stats.data.total_seconds == 240

    def test_any_starts_at_first_heartbeat(self, service):
        service.ingest("alice", [make_heartbeat(utc(2024, 3, 1, 9)), make_heartbeat(utc(2024, 3, 1, 9, 1))])
        stats = service.get_stats("alice", "any", requesting_user_id="alice", now=NOW)
        assert stats.data.start == "2024-03-01T09:00:00Z"
        assert stats.data.total_seconds == 60
        assert stats.data.days_including_holidays == 10

    def test_any_without_heartbeats_builds_nothing(self, service):
        builder = MagicMock(wraps=service.cache.builder)
        service.cache.builder = builder
        stats = service.get_stats("alice", "any", requesting_user_id="alice", now=NOW)
        assert stats.data.total_seconds == 0
        builder.build_segments.assert_not_called()
        assert service.cache.fragments.count("alice") == 0

    def test_filters_are_echoed(self, service):
        _ingest_morning(service)
        stats = service.get_stats(
            "alice", "today", Filters(project="app"), requesting_user_id="alice", now=NOW
        )
        assert stats.data.filters == {"project": "app"}
        assert stats.data.total_seconds == 300

    def test_new_heartbeats_show_up(self, service):
        _ingest_morning(service)
        assert service.get_stats("alice", "today", requesting_user_id="alice", now=NOW).data.total_seconds == 300
        service.ingest("alice", [make_heartbeat(utc(2024, 3, 10, 9, 8))])
        assert service.get_stats("alice", "today", requesting_user_id="alice", now=NOW).data.total_seconds == 480

    def test_alias_change_shows_up(self, service):
        _ingest_morning(service)
        service.get_stats("alice", "today", requesting_user_id="alice", now=NOW)
        service.aliases.add_alias("alice", "project", "main-app", "app")
        stats = service.get_stats("alice", "today", requesting_user_id="alice", now=NOW)
        assert [item.name for item in stats.data.projects] == ["main-app"]


class TestSharing:
    """Requests by anyone but the owner."""

    def test_anonymous_sees_shared_categories_only(self, service):
        service.register_user(User(id="bob", share_languages=True, share_data_max_days=-1))
        _ingest_morning(service, "bob")
        data = service.get_stats("bob", "today", now=NOW).data
        assert data.total_seconds == 300
        assert data.projects == []
        assert data.entities == []
        assert [item.name for item in data.languages] == ["Python"]

    def test_window_limits_others(self, service):
        service.register_user(User(id="bob", share_languages=True, share_data_max_days=1))
        service.get_stats("bob", "today", requesting_user_id="alice", now=NOW)
        with pytest.raises(RangeTooBroadError):
            service.get_stats("bob", "last_7_days", requesting_user_id="alice", now=NOW)

    def test_recompute_is_ignored_for_others(self, service):
        service.register_user(User(id="bob", share_data_max_days=-1))
        with patch.object(
            service.cache, "get_or_build", wraps=service.cache.get_or_build
        ) as get_or_build:
            service.get_stats("bob", "today", requesting_user_id="alice", recompute=True, now=NOW)
            assert get_or_build.call_args.kwargs["recompute"] is False
            service.get_stats("bob", "today", requesting_user_id="bob", recompute=True, now=NOW)
            assert get_or_build.call_args.kwargs["recompute"] is True


class TestGetHeartbeats:
    def test_owner_lists_day(self, service):
        _ingest_morning(service)
        result = service.get_heartbeats("alice", "2024-03-10", requesting_user_id="alice")
        assert len(result.data) == 3
        assert result.start == "2024-03-10T00:00:00Z"
        assert result.end == "2024-03-11T00:00:00Z"
        assert result.timezone == "UTC"
        assert result.data[0].time == utc(2024, 3, 10, 9).timestamp()

    def test_other_users_are_forbidden(self, service):
        with pytest.raises(ForbiddenError):
            service.get_heartbeats("alice", "2024-03-10", requesting_user_id="bob")

    @pytest.mark.parametrize("date", [None, "", "10.03.2024", "2024-02-30"])
    def test_bad_date(self, service, date):
        with pytest.raises(BadDateError):
            service.get_heartbeats("alice", date, requesting_user_id="alice")


class TestIngest:
    def test_unknown_user_is_rejected(self, service):
        with pytest.raises(NotFoundError):
            service.ingest("nobody", [make_heartbeat(utc(2024, 3, 10, 9))])

    def test_user_agent_fills_missing_fields(self, service):
        service.ingest(
            "alice",
            [make_heartbeat(utc(2024, 3, 10, 9), editor=None, operating_system=None)],
            user_agent=USER_AGENT,
        )
        (heartbeat,) = service.heartbeats.get_all_within(utc(2024, 3, 10), utc(2024, 3, 11), "alice")
        assert heartbeat.editor == "vscode"
        assert heartbeat.operating_system == "Linux"

    def test_heartbeats_are_normalized_and_owned(self, service):
        count = service.ingest(
            "alice",
            [
                make_heartbeat(
                    utc(2024, 3, 10, 9),
                    user_id="mallory",
                    entity="file://C:\\src\\main.py",
                    project="  my   app ",
                )
            ],
        )
        assert count == 1
        (heartbeat,) = service.heartbeats.get_all_within(utc(2024, 3, 10), utc(2024, 3, 11), "alice")
        assert heartbeat.user_id == "alice"
        assert heartbeat.entity == "C:/src/main.py"
        assert heartbeat.project == "my app"

    def test_prune(self, service):
        service.ingest(
            "alice",
            [make_heartbeat(utc(2022, 1, 1)), make_heartbeat(utc(2024, 3, 1))],
        )
        assert service.prune(now=NOW) == 1
        assert service.heartbeats.count() == 1

    def test_ingest_survives_failed_eviction(self, service):
        _ingest_morning(service)
        assert service.get_stats("alice", "today", requesting_user_id="alice", now=NOW).data.total_seconds == 300
        with patch.object(
            service.cache.fragments, "delete_containing", side_effect=StorageError("locked")
        ):
            assert service.ingest("alice", [make_heartbeat(utc(2024, 3, 10, 9, 8))]) == 1
        stats = service.get_stats("alice", "today", requesting_user_id="alice", now=NOW)
        assert stats.data.total_seconds == 480
