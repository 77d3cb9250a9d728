"""Fetch scheduler — fan active sources out to a bounded worker pool."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from pitboard.ingestion.pipeline import (
    STATUS_CANCELLED,
    STATUS_ERROR,
    STATUS_NOT_MODIFIED,
    SourceSummary,
)

if TYPE_CHECKING:
    from pitboard.ingestion.pipeline import SourcePipeline
    from pitboard.ingestion.sources import SourceConfig, SourceRegistry
    from pitboard.ingestion.window import RunMode

logger = logging.getLogger(__name__)


@dataclass
class RunSummary:
    """Aggregate of every source processed by one scheduler run."""

    mode: RunMode
    started_at: str
    sources: list[SourceSummary] = field(default_factory=list)
    duration_seconds: float = 0.0
    dry_run: bool = False

    def totals(self) -> dict[str, int]:
        totals = {
            "sources": len(self.sources),
            "new": 0,
            "duplicate": 0,
            "out_of_range": 0,
            "ineligible": 0,
            "errors": 0,
            "date_defaulted": 0,
            "not_modified": 0,
            "failed_sources": 0,
            "cancelled_sources": 0,
        }
        for summary in self.sources:
            totals["new"] += summary.new
            totals["duplicate"] += summary.duplicate
            totals["out_of_range"] += summary.out_of_range
            totals["ineligible"] += summary.ineligible
            totals["errors"] += summary.errors
            totals["date_defaulted"] += summary.date_defaulted
            if summary.status == STATUS_NOT_MODIFIED:
                totals["not_modified"] += 1
            elif summary.status == STATUS_ERROR:
                totals["failed_sources"] += 1
            elif summary.status == STATUS_CANCELLED:
                totals["cancelled_sources"] += 1
        return totals

    def to_dict(self) -> dict:
        return {
            **self.mode.describe(),
            "started_at": self.started_at,
            "duration_seconds": self.duration_seconds,
            "dry_run": self.dry_run,
            "totals": self.totals(),
            "sources": [summary.to_dict() for summary in self.sources],
        }


class FetchScheduler:
    """Runs the per-source pipeline for every active source.

    At most ``max_workers`` sources are in flight at once. One source's
    failure never affects another; the only error that escapes a run is a
    FatalError raised while reading the source registry.
    """

    def __init__(
        self,
        registry: SourceRegistry,
        pipeline: SourcePipeline,
        max_workers: int = 4,
    ) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self._registry = registry
        self._pipeline = pipeline
        self._max_workers = max_workers

    def run_once(
        self,
        mode: RunMode,
        cancel_event: threading.Event | None = None,
        dry_run: bool = False,
    ) -> RunSummary:
        """Ingest every active source once under ``mode``."""
        sources = self._registry.list_active_sources()
        return self._run(sources, mode, cancel_event, dry_run)

    def run_source(
        self,
        source_id: str,
        mode: RunMode,
        dry_run: bool = False,
    ) -> RunSummary:
        """Ingest a single source, active or not. Raises KeyError if unknown."""
        source = self._registry.get_source(source_id)
        if source is None:
            raise KeyError(source_id)
        return self._run([source], mode, None, dry_run)

    def _run(
        self,
        sources: list[SourceConfig],
        mode: RunMode,
        cancel_event: threading.Event | None,
        dry_run: bool,
    ) -> RunSummary:
        run = RunSummary(
            mode=mode,
            started_at=datetime.now(timezone.utc).isoformat(),
            dry_run=dry_run,
        )
        started = time.monotonic()
        logger.info(
            "Run starting: %d sources, mode=%s, window=%s..%s%s",
            len(sources), mode.name,
            mode.window.start.isoformat(), mode.window.end.isoformat(),
            " (dry run)" if dry_run else "",
        )

        results: dict[str, SourceSummary] = {}
        if sources:
            workers = min(self._max_workers, len(sources))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="ingest") as pool:
                futures = {
                    pool.submit(self._run_one, source, mode, cancel_event, dry_run): source
                    for source in sources
                }
                for future in as_completed(futures):
                    source = futures[future]
                    results[source.id] = future.result()

        # Report in registry order regardless of completion order
        run.sources = [results[source.id] for source in sources]
        run.duration_seconds = round(time.monotonic() - started, 3)

        totals = run.totals()
        logger.info(
            "Run complete in %.1fs: %d new, %d duplicate, %d failed sources",
            run.duration_seconds, totals["new"], totals["duplicate"], totals["failed_sources"],
        )
        return run

    def _run_one(
        self,
        source: SourceConfig,
        mode: RunMode,
        cancel_event: threading.Event | None,
        dry_run: bool,
    ) -> SourceSummary:
        if cancel_event is not None and cancel_event.is_set():
            return SourceSummary(source_id=source.id, status=STATUS_CANCELLED)
        try:
            return self._pipeline.run(source, mode, cancel_event=cancel_event, dry_run=dry_run)
        except Exception as exc:
            logger.exception("%s: pipeline raised", source.id)
            return SourceSummary(
                source_id=source.id,
                status=STATUS_ERROR,
                error=f"{type(exc).__name__}: {exc}",
            )
