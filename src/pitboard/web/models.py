"""Pydantic v2 request and response models for the Pitboard web API."""

from __future__ import annotations

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------------
class ResyncRequest(BaseModel):
    days_back: int | None = Field(None, ge=0, le=365)
    dry_run: bool = False


class SourceRunSummary(BaseModel):
    source_id: str
    status: str
    new: int
    duplicate: int
    out_of_range: int
    ineligible: int
    errors: int
    date_defaulted: int
    pruned: int
    early_stopped: bool
    checkpoint_advanced: bool
    stage: str | None = None
    error: str | None = None
    duration_seconds: float


class RunSummaryResponse(BaseModel):
    mode: str
    window_start: str
    window_end: str
    started_at: str
    duration_seconds: float
    dry_run: bool
    totals: dict[str, int]
    sources: list[SourceRunSummary]


# ---------------------------------------------------------------------------
# Sources
# ---------------------------------------------------------------------------
class SourceInfo(BaseModel):
    id: str
    name: str
    kind: str
    endpoint: str
    content_type: str
    is_active: bool
    retention_days: int | None
    last_seen_item_id: str | None
    last_fetched_at: str | None
    consecutive_failures: int
    last_error: str | None
    last_failed_at: str | None
    last_succeeded_at: str | None
    item_count: int


class SourceListResponse(BaseModel):
    sources: list[SourceInfo]
    total: int


# ---------------------------------------------------------------------------
# Pipeline runs
# ---------------------------------------------------------------------------
class PipelineRun(BaseModel):
    id: str
    run_type: str
    mode: str
    started_at: str
    finished_at: str
    status: str
    result: dict
    error: str | None


class PipelineRunListResponse(BaseModel):
    runs: list[PipelineRun]
    total: int
    page: int
    per_page: int
    pages: int
