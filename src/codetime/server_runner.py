"""Run the stats API under uvicorn."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import uvicorn

from .config import StatsSettings
from .paths import get_db_path
from .webapp import create_app

logger = logging.getLogger(__name__)


def run_server(
    *,
    host: str = "127.0.0.1",
    port: int = 3000,
    db_path: Optional[Path] = None,
    settings: Optional[StatsSettings] = None,
    log_level: str = "info",
) -> None:
    resolved_db_path = db_path or get_db_path()
    resolved_settings = settings or StatsSettings()
    app = create_app(db_path=resolved_db_path, settings=resolved_settings)

    logger.info(
        "Serving stats for %s on http://%s:%d (idle timeout %s, build timeout %s).",
        resolved_db_path,
        host,
        port,
        resolved_settings.idle_timeout,
        resolved_settings.build_timeout,
    )
    logging.getLogger("uvicorn.error").setLevel(log_level.upper())
    uvicorn.run(app, host=host, port=port, log_level=log_level)
