"""API route handlers for the Pitboard web API."""

from __future__ import annotations

import logging
import math
import sqlite3

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from pitboard import jobs
from pitboard.ingestion.errors import FatalError
from pitboard.storage.connection import get_connection
from pitboard.web.deps import require_trigger_secret
from pitboard.web.models import (
    PipelineRunListResponse,
    ResyncRequest,
    RunSummaryResponse,
    SourceListResponse,
)
from pitboard.web.queries import list_pipeline_runs, list_sources

logger = logging.getLogger(__name__)

router = APIRouter()
health_router = APIRouter()


@health_router.get("/health")
def health(request: Request) -> JSONResponse:
    """Check database connectivity and return health status."""
    database_path = request.app.state.config.database_path
    try:
        with get_connection(database_path) as conn:
            conn.execute("SELECT 1")
        return JSONResponse({"status": "healthy", "database": "ok"})
    except (sqlite3.Error, OSError) as exc:
        logger.warning("Health check failed: %s", exc)
        return JSONResponse(
            {"status": "unhealthy", "database": "error", "detail": str(exc)},
            status_code=503,
        )


@router.post(
    "/runs",
    response_model=RunSummaryResponse,
    dependencies=[Depends(require_trigger_secret)],
)
def trigger_run(
    request: Request,
    days: int | None = Query(None, ge=0, le=365),
    date: str | None = Query(None),
    dry_run: bool = Query(False),
) -> RunSummaryResponse:
    """Run all active sources now: incremental, or a backfill via days/date."""
    config = request.app.state.config
    try:
        mode = jobs.resolve_mode(config, days=days, day=date)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    try:
        summary = jobs.run_ingestion(config, mode=mode, dry_run=dry_run)
    except FatalError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return RunSummaryResponse(**summary.to_dict())


@router.post(
    "/sources/{source_id}/resync",
    response_model=RunSummaryResponse,
    dependencies=[Depends(require_trigger_secret)],
)
def resync_source(
    request: Request,
    source_id: str,
    body: ResyncRequest | None = None,
) -> RunSummaryResponse:
    """Backfill one source over the last ``days_back`` days."""
    config = request.app.state.config
    body = body or ResyncRequest()
    try:
        summary = jobs.run_source_resync(
            config, source_id, days_back=body.days_back, dry_run=body.dry_run
        )
    except KeyError as exc:
        raise HTTPException(status_code=404, detail="Source not found") from exc
    except FatalError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return RunSummaryResponse(**summary.to_dict())


@router.get("/sources", response_model=SourceListResponse)
def sources(request: Request, active_only: bool = False) -> SourceListResponse:
    database_path = request.app.state.config.database_path
    rows = list_sources(database_path, active_only=active_only)
    return SourceListResponse(sources=rows, total=len(rows))


@router.get("/runs", response_model=PipelineRunListResponse)
def runs(
    request: Request,
    run_type: str | None = None,
    page: int = Query(1, ge=1),
    per_page: int = Query(50, ge=1, le=100),
) -> PipelineRunListResponse:
    database_path = request.app.state.config.database_path
    rows, total = list_pipeline_runs(
        database_path, run_type=run_type, page=page, per_page=per_page,
    )
    pages = math.ceil(total / per_page) if total else 0
    return PipelineRunListResponse(
        runs=rows,
        total=total,
        page=page,
        per_page=per_page,
        pages=pages,
    )
