"""Per-source ingestion job: fetch, normalize, diff, persist, checkpoint.

One :class:`SourcePipeline.run` call moves a single source through

    fetching -> (not_modified | normalizing) -> persisting -> checkpointing

and always returns a :class:`SourceSummary`. Failures are recorded on the
summary with the stage they occurred in; nothing escapes to the caller.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Callable

from pitboard.ingestion.dedup import UpsertEngine, compute_identity_key
from pitboard.ingestion.errors import IngestionError

if TYPE_CHECKING:
    from pitboard.ingestion.adapter import SourceAdapter
    from pitboard.ingestion.checkpoint import CheckpointWriter
    from pitboard.ingestion.normalize import ContentItem, Normalizer
    from pitboard.ingestion.sources import SourceConfig
    from pitboard.ingestion.window import RunMode
    from pitboard.storage.content import ContentStore

logger = logging.getLogger(__name__)

STATUS_OK = "ok"
STATUS_NOT_MODIFIED = "not_modified"
STATUS_PARTIAL = "partial"
STATUS_CANCELLED = "cancelled"
STATUS_ERROR = "error"


@dataclass
class SourceSummary:
    """Outcome of one source within a run."""

    source_id: str
    status: str = "pending"
    new: int = 0
    duplicate: int = 0
    out_of_range: int = 0
    ineligible: int = 0
    errors: int = 0
    date_defaulted: int = 0
    pruned: int = 0
    early_stopped: bool = False
    checkpoint_advanced: bool = False
    stage: str | None = None
    error: str | None = None
    duration_seconds: float = 0.0

    @property
    def failed(self) -> bool:
        return self.status == STATUS_ERROR

    def to_dict(self) -> dict:
        return asdict(self)


class SourcePipeline:
    """Runs one source through the ingestion stages.

    Instances are shared across worker threads. All per-run state lives on
    the stack of :meth:`run`.
    """

    def __init__(
        self,
        adapters: dict[str, SourceAdapter],
        normalizer: Normalizer,
        store: ContentStore,
        checkpoints: CheckpointWriter,
        upsert_batch_size: int = 10,
        backfill_batch_size: int = 20,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._adapters = adapters
        self._normalizer = normalizer
        self._store = store
        self._checkpoints = checkpoints
        self._incremental_engine = UpsertEngine(store, upsert_batch_size)
        self._backfill_engine = UpsertEngine(store, backfill_batch_size)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def run(
        self,
        source: SourceConfig,
        mode: RunMode,
        cancel_event: threading.Event | None = None,
        dry_run: bool = False,
    ) -> SourceSummary:
        summary = SourceSummary(source_id=source.id)
        started = time.monotonic()
        stage = "fetching"
        try:
            adapter = self._adapters.get(source.kind)
            if adapter is None:
                raise IngestionError(f"No adapter registered for kind '{source.kind}'")

            logger.debug("%s: fetching (%s)", source.id, mode.name)
            result = adapter.fetch(source, mode)
            if result.not_modified:
                summary.status = STATUS_NOT_MODIFIED
                return summary
            summary.ineligible += result.dropped

            stage = "normalizing"
            candidates = self._collect(source, mode, adapter, result.entries, summary)

            stage = "persisting"
            engine = self._backfill_engine if mode.is_backfill else self._incremental_engine
            outcome = engine.persist(
                candidates,
                classify=mode.is_backfill or dry_run,
                dry_run=dry_run,
                should_stop=cancel_event.is_set if cancel_event is not None else None,
            )
            summary.new += outcome.new
            summary.duplicate += outcome.duplicate
            summary.errors += outcome.errors

            if outcome.cancelled:
                summary.status = STATUS_CANCELLED
                return summary
            if not outcome.complete:
                summary.status = STATUS_PARTIAL
                summary.error = f"{outcome.failed_batches} batch(es) failed to persist"
                logger.warning("%s: %s; checkpoint not advanced", source.id, summary.error)
                return summary

            if not dry_run:
                stage = "checkpointing"
                if result.newest_item_id is not None and outcome.written:
                    # Resume from the newest item actually stored.
                    result = replace(result, newest_item_id=outcome.written[0].identity_key)
                advanced = self._checkpoints.advance(source, mode, result)
                summary.checkpoint_advanced = advanced is not None

                if source.retention_days and not mode.is_backfill:
                    stage = "pruning"
                    cutoff = self._clock() - timedelta(days=source.retention_days)
                    summary.pruned = self._store.prune_source(source.id, cutoff.isoformat())

            summary.status = STATUS_OK
        except IngestionError as exc:
            summary.status = STATUS_ERROR
            summary.stage = stage
            summary.error = f"{type(exc).__name__}: {exc}"
            logger.warning("%s: failed while %s: %s", source.id, stage, exc)
        except Exception as exc:
            summary.status = STATUS_ERROR
            summary.stage = stage
            summary.error = f"{type(exc).__name__}: {exc}"
            logger.exception("%s: unexpected failure while %s", source.id, stage)
        finally:
            summary.duration_seconds = round(time.monotonic() - started, 3)

        logger.info(
            "%s: %s (new=%d, duplicate=%d, out_of_range=%d, errors=%d)",
            source.id, summary.status, summary.new, summary.duplicate,
            summary.out_of_range, summary.errors,
        )
        return summary

    def _collect(
        self,
        source: SourceConfig,
        mode: RunMode,
        adapter: SourceAdapter,
        entries: list,
        summary: SourceSummary,
    ) -> list[ContentItem]:
        """Filter and normalize entries in upstream order."""
        early_stop = adapter.early_stop_on_duplicate and not mode.is_backfill
        seen: set[str] = set()
        candidates: list[ContentItem] = []

        for position, entry in enumerate(entries):
            if not entry.eligible:
                summary.ineligible += 1
                continue

            published, _ = self._normalizer.published_at(entry)
            if not mode.window.contains(published):
                summary.out_of_range += 1
                continue

            key = compute_identity_key(entry, source)
            if early_stop and key not in seen and self._store.exists(key):
                # Newest-first upstream: everything after this is already stored
                summary.duplicate += 1
                summary.early_stopped = True
                logger.debug(
                    "%s: stored entry at position %d; stopping scan", source.id, position
                )
                break
            seen.add(key)

            try:
                item = self._normalizer.normalize(entry, source, identity_key=key)
            except Exception:
                summary.errors += 1
                logger.exception("%s: failed to normalize entry %r", source.id, key)
                continue
            if item.date_defaulted:
                summary.date_defaulted += 1
            candidates.append(item)

        return candidates
