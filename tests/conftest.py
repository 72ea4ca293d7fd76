"""Shared fixtures for codetime tests."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import pytest

from codetime.aliases import AliasResolver
from codetime.config import StatsSettings
from codetime.heartbeats import HeartbeatStore
from codetime.models import Heartbeat, User
from codetime.service import StatsService
from codetime.users import UserStore


def utc(year: int, month: int, day: int, hour: int = 0, minute: int = 0, second: int = 0) -> datetime:
    return datetime(year, month, day, hour, minute, second, tzinfo=timezone.utc)


def make_heartbeat(
    when: datetime,
    user_id: str = "alice",
    entity: str = "/src/app/main.py",
    project: str | None = "app",
    language: str | None = "Python",
    editor: str | None = "vscode",
    operating_system: str | None = "Linux",
    machine: str | None = "laptop",
    **kwargs,
) -> Heartbeat:
    """Create a test heartbeat."""
    return Heartbeat(
        user_id=user_id,
        time=when,
        entity=entity,
        project=project,
        language=language,
        editor=editor,
        operating_system=operating_system,
        machine=machine,
        **kwargs,
    )


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "heartbeats.sqlite3"


@pytest.fixture
def settings() -> StatsSettings:
    return StatsSettings()


@pytest.fixture
def store(db_path: Path) -> HeartbeatStore:
    return HeartbeatStore(db_path)


@pytest.fixture
def aliases(db_path: Path) -> AliasResolver:
    return AliasResolver(db_path)


@pytest.fixture
def users(db_path: Path) -> UserStore:
    users = UserStore(db_path)
    users.upsert_user(User(id="alice", timezone="UTC"))
    return users


@pytest.fixture
def service(db_path: Path, settings: StatsSettings, users: UserStore) -> StatsService:
    return StatsService.from_path(db_path, settings)
