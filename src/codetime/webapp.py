"""FastAPI application exposing stats and heartbeats over HTTP."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware

from .config import StatsSettings
from .errors import (
    CodetimeError,
    ForbiddenError,
    InvalidRangeError,
    NotFoundError,
    StorageError,
)
from .models import Filters
from .paths import get_db_path
from .service import CURRENT_USER, StatsService
from .views import HeartbeatPayload, HeartbeatsResult, StatsViewModel

logger = logging.getLogger(__name__)

# Authentication lives outside this app; the resolver maps a request onto
# the id of the authenticated user, or None for anonymous requests.
PrincipalResolver = Callable[[Request], Optional[str]]


def _anonymous(request: Request) -> Optional[str]:
    return None


def create_app(
    *,
    db_path: Optional[Path] = None,
    settings: Optional[StatsSettings] = None,
    service: Optional[StatsService] = None,
    principal_resolver: Optional[PrincipalResolver] = None,
) -> FastAPI:
    """Instantiate the FastAPI application."""
    resolved_db_path = Path(db_path or get_db_path())
    resolved_settings = settings or StatsSettings()
    stats_service = service or StatsService.from_path(resolved_db_path, resolved_settings)
    resolve_principal = principal_resolver or _anonymous

    app = FastAPI(title="codetime", version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.db_path = resolved_db_path
    app.state.stats_service = stats_service

    @app.on_event("startup")
    async def _startup() -> None:
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s %(levelname)s %(name)s %(message)s",
        )

    @app.get("/api/status")
    def status(request: Request) -> Dict[str, Any]:
        return {
            "database_path": str(request.app.state.db_path),
            "idle_minutes": stats_service.settings.idle_timeout.total_seconds() / 60.0,
            "retention_days": stats_service.settings.retention.days,
        }

    @app.get("/api/v1/users/{user}/stats", response_model=StatsViewModel)
    @app.get("/api/v1/users/{user}/stats/{range_token}", response_model=StatsViewModel)
    def stats(
        request: Request,
        user: str,
        range_token: Optional[str] = None,
        project: Optional[str] = Query(default=None, description="Project to filter by."),
        language: Optional[str] = Query(default=None, description="Language to filter by."),
        editor: Optional[str] = Query(default=None, description="Editor to filter by."),
        operating_system: Optional[str] = Query(default=None, description="OS to filter by."),
        machine: Optional[str] = Query(default=None, description="Machine to filter by."),
        label: Optional[str] = Query(default=None, description="Project label to filter by."),
        recompute: bool = Query(default=False, description="Ignore cached summaries."),
    ) -> StatsViewModel:
        filters = Filters(
            project=project,
            language=language,
            editor=editor,
            operating_system=operating_system,
            machine=machine,
            label=label,
        )
        try:
            return stats_service.get_stats(
                user,
                range_token,
                filters,
                requesting_user_id=resolve_principal(request),
                recompute=recompute,
            )
        except CodetimeError as exc:
            raise _to_http_error(exc) from exc

    @app.get("/api/v1/users/{user}/heartbeats", response_model=HeartbeatsResult)
    def heartbeats(
        request: Request,
        user: str,
        date: Optional[str] = Query(default=None, description="Date in YYYY-MM-DD format."),
    ) -> HeartbeatsResult:
        principal = _require_principal(resolve_principal(request))
        try:
            return stats_service.get_heartbeats(user, date, requesting_user_id=principal)
        except CodetimeError as exc:
            raise _to_http_error(exc) from exc

    @app.post("/api/v1/users/{user}/heartbeats", status_code=201)
    def post_heartbeats(
        request: Request,
        user: str,
        payload: Union[HeartbeatPayload, list[HeartbeatPayload]],
    ) -> Dict[str, Any]:
        principal = _require_principal(resolve_principal(request))
        target = principal if user == CURRENT_USER else user
        if target != principal:
            raise HTTPException(status_code=403, detail="forbidden")
        items = payload if isinstance(payload, list) else [payload]
        try:
            accepted = stats_service.ingest(
                target,
                [item.to_heartbeat(target) for item in items],
                user_agent=request.headers.get("user-agent"),
            )
        except CodetimeError as exc:
            raise _to_http_error(exc) from exc
        return {"accepted": accepted}

    return app


def _require_principal(principal: Optional[str]) -> str:
    if principal is None:
        raise HTTPException(status_code=401, detail="unauthorized")
    return principal


def _to_http_error(exc: CodetimeError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail="user not found")
    if isinstance(exc, InvalidRangeError):
        return HTTPException(status_code=400, detail=str(exc) or "invalid range")
    if isinstance(exc, ForbiddenError):
        return HTTPException(status_code=403, detail=str(exc) or "forbidden")
    if isinstance(exc, StorageError):
        logger.exception("Storage failure while serving request.")
        return HTTPException(status_code=500, detail="internal server error")
    logger.exception("Unexpected error while serving request.")
    return HTTPException(status_code=500, detail="internal server error")
