"""Job functions — scheduled ingestion, manual triggers, and run bookkeeping."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import uuid
from datetime import date, datetime, timezone
from pathlib import Path

import httpx

import pitboard.ingestion  # noqa: F401  — triggers adapter registration
from pitboard.config import Config
from pitboard.ingestion.checkpoint import CheckpointWriter
from pitboard.ingestion.errors import FatalError
from pitboard.ingestion.feed_adapter import USER_AGENT
from pitboard.ingestion.images import ImageChain
from pitboard.ingestion.normalize import Normalizer
from pitboard.ingestion.pipeline import (
    STATUS_ERROR,
    STATUS_NOT_MODIFIED,
    STATUS_OK,
    SourcePipeline,
)
from pitboard.ingestion.registry import build_adapters
from pitboard.ingestion.scheduler import FetchScheduler, RunSummary
from pitboard.ingestion.sources import SourceRegistry
from pitboard.ingestion.window import RunMode
from pitboard.storage.connection import get_connection
from pitboard.storage.content import ContentStore

logger = logging.getLogger(__name__)


def _record_run(
    database_path: str,
    run_type: str,
    mode: str,
    started_at: str,
    result: dict,
    error: str | None = None,
) -> None:
    """Insert a pipeline run record into the pipeline_runs table."""
    finished_at = datetime.now(timezone.utc).isoformat()
    status = "error" if error else "success"
    with get_connection(database_path) as conn:
        conn.execute(
            "INSERT INTO pipeline_runs "
            "(id, run_type, mode, started_at, finished_at, status, result, error) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                str(uuid.uuid4()),
                run_type,
                mode,
                started_at,
                finished_at,
                status,
                json.dumps(result),
                error,
            ),
        )


def _record_source_failure(database_path: str, source_id: str, error_msg: str) -> int:
    """Record a source fetch failure. Returns updated consecutive_failures count."""
    now = datetime.now(timezone.utc).isoformat()
    with get_connection(database_path) as conn:
        conn.execute(
            "INSERT INTO source_errors "
            "(source_id, consecutive_failures, last_error, last_failed_at) "
            "VALUES (?, 1, ?, ?) "
            "ON CONFLICT(source_id) DO UPDATE SET "
            "consecutive_failures = consecutive_failures + 1, "
            "last_error = ?, last_failed_at = ?",
            (source_id, error_msg, now, error_msg, now),
        )
        row = conn.execute(
            "SELECT consecutive_failures FROM source_errors WHERE source_id = ?",
            (source_id,),
        ).fetchone()
    return row["consecutive_failures"] if row else 1


def _record_source_success(database_path: str, source_id: str) -> None:
    """Reset consecutive failure count for a source after a successful fetch."""
    now = datetime.now(timezone.utc).isoformat()
    with get_connection(database_path) as conn:
        conn.execute(
            "INSERT INTO source_errors "
            "(source_id, consecutive_failures, last_succeeded_at) "
            "VALUES (?, 0, ?) "
            "ON CONFLICT(source_id) DO UPDATE SET "
            "consecutive_failures = 0, last_succeeded_at = ?",
            (source_id, now, now),
        )


def _track_source_health(config: Config, summary: RunSummary) -> None:
    """Update per-source failure streaks and alert once a streak hits the threshold."""
    for source in summary.sources:
        if source.status == STATUS_ERROR:
            consecutive = _record_source_failure(
                config.database_path, source.source_id, source.error or "unknown error"
            )
            if consecutive >= config.source_failure_alert_threshold:
                logger.error(
                    "[ALERT] Source '%s' has failed %d consecutive run(s): %s",
                    source.source_id, consecutive, source.error,
                )
        elif source.status in (STATUS_OK, STATUS_NOT_MODIFIED):
            _record_source_success(config.database_path, source.source_id)


def _sync_sources(config: Config, registry: SourceRegistry) -> None:
    """Load the source catalogue file into the registry when it exists."""
    path = Path(config.sources_config_path)
    if not path.is_file():
        logger.debug("No source catalogue at %s; using registry as-is", path)
        return
    try:
        count = registry.sync_from_file(path)
    except (OSError, ValueError, sqlite3.Error):
        logger.exception("Source catalogue %s rejected; using registry as-is", path)
        return
    logger.info("Synced %d sources from %s", count, path)


def resolve_mode(
    config: Config, days: int | None = None, day: str | date | None = None
) -> RunMode:
    """Choose the run mode for a trigger.

    ``days`` requests a backfill over the last N days, ``day`` a backfill of
    one calendar day (ISO date), and neither the normal incremental run.
    Raises ValueError for conflicting or malformed arguments.
    """
    if days is not None and day is not None:
        raise ValueError("Specify either days or date, not both")
    if days is not None:
        return RunMode.backfill_days(days, config.run_timezone)
    if day is not None:
        if isinstance(day, str):
            day = date.fromisoformat(day)
        return RunMode.backfill_date(day, config.run_timezone)
    return RunMode.incremental(config.incremental_days_back, config.run_timezone)


def build_scheduler(config: Config, client: httpx.Client) -> FetchScheduler:
    """Wire registry, adapters, normalizer, store and pipeline for one run."""
    registry = SourceRegistry(config.database_path)
    store = ContentStore(config.database_path)
    pipeline = SourcePipeline(
        adapters=build_adapters(config, client),
        normalizer=Normalizer(ImageChain(), excerpt_length=config.excerpt_length),
        store=store,
        checkpoints=CheckpointWriter(registry),
        upsert_batch_size=config.upsert_batch_size,
        backfill_batch_size=config.backfill_batch_size,
    )
    return FetchScheduler(registry, pipeline, max_workers=config.max_concurrent_sources)


def _http_client() -> httpx.Client:
    return httpx.Client(headers={"User-Agent": USER_AGENT})


def run_ingestion(
    config: Config,
    mode: RunMode | None = None,
    cancel_event: threading.Event | None = None,
    dry_run: bool = False,
) -> RunSummary:
    """Run every active source once and record the run.

    Raises FatalError when the source registry cannot be read; the failed
    run is still recorded.
    """
    mode = mode or resolve_mode(config)
    started_at = datetime.now(timezone.utc).isoformat()

    registry = SourceRegistry(config.database_path)
    _sync_sources(config, registry)

    try:
        with _http_client() as client:
            summary = build_scheduler(config, client).run_once(
                mode, cancel_event=cancel_event, dry_run=dry_run
            )
    except FatalError as exc:
        logger.error("Ingestion aborted: %s", exc)
        try:
            _record_run(
                config.database_path, "ingestion", mode.name, started_at,
                mode.describe(), error=str(exc),
            )
        except sqlite3.Error:
            logger.exception("Could not record aborted run")
        raise

    try:
        _record_run(config.database_path, "ingestion", mode.name, started_at, summary.to_dict())
        if not dry_run:
            _track_source_health(config, summary)
    except sqlite3.Error:
        logger.exception("Could not record ingestion run; summary still returned")
    return summary


def run_source_resync(
    config: Config,
    source_id: str,
    days_back: int | None = None,
    dry_run: bool = False,
) -> RunSummary:
    """Backfill a single source over the last ``days_back`` days.

    Raises KeyError for an unknown source id and FatalError when the
    registry cannot be read.
    """
    if days_back is None:
        days_back = config.default_backfill_days
    mode = RunMode.backfill_days(days_back, config.run_timezone)
    started_at = datetime.now(timezone.utc).isoformat()

    with _http_client() as client:
        summary = build_scheduler(config, client).run_source(source_id, mode, dry_run=dry_run)

    try:
        _record_run(config.database_path, "resync", mode.name, started_at, summary.to_dict())
    except sqlite3.Error:
        logger.exception("Could not record resync run; summary still returned")
    return summary


def scheduled_ingestion(config: Config, cancel_event: threading.Event | None = None) -> None:
    """Interval job entry point. Never raises."""
    try:
        run_ingestion(config, cancel_event=cancel_event)
    except FatalError:
        # Already logged and recorded; the next interval retries.
        pass
    except Exception:
        logger.exception("Scheduled ingestion failed")
