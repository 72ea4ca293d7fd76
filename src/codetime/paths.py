"""Locations of the codetime database and data directory."""

from __future__ import annotations

import os
from pathlib import Path

from platformdirs import PlatformDirs


APP_NAME = "codetime"
DB_FILENAME = "heartbeats.sqlite3"
# Overrides the platform default, e.g. for containers or shared volumes.
DB_PATH_ENV = "CODETIME_DB_PATH"


def get_data_dir() -> Path:
    """Return (and create) the per-user data directory."""
    path = PlatformDirs(appname=APP_NAME, appauthor=False).user_data_path
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_db_path() -> Path:
    override = os.environ.get(DB_PATH_ENV)
    if override:
        path = Path(override).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        return path
    return get_data_dir() / DB_FILENAME
