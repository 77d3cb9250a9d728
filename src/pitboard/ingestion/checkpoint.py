"""Checkpoint writer — advance a source's resumption state after a clean run."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Callable

from pitboard.ingestion.sources import Checkpoint

if TYPE_CHECKING:
    from pitboard.ingestion.adapter import FetchResult
    from pitboard.ingestion.sources import SourceConfig, SourceRegistry
    from pitboard.ingestion.window import RunMode

logger = logging.getLogger(__name__)


class CheckpointWriter:
    """Moves a source's checkpoint forward.

    Callers invoke :meth:`advance` only once every batch for the source has
    been written. Backfill runs never touch the checkpoint.
    """

    def __init__(
        self,
        registry: SourceRegistry,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._registry = registry
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def next_checkpoint(self, source: SourceConfig, result: FetchResult) -> Checkpoint:
        """Compute the checkpoint that follows a successful fetch."""
        previous = source.checkpoint
        return Checkpoint(
            conditional_token=result.conditional_token,
            last_seen_item_id=result.newest_item_id or previous.last_seen_item_id,
            last_fetched_at=self._clock().isoformat(),
        )

    def advance(
        self, source: SourceConfig, mode: RunMode, result: FetchResult
    ) -> Checkpoint | None:
        """Persist the next checkpoint. Returns None when skipped for backfill.

        Raises PersistenceError if the registry write fails.
        """
        if mode.is_backfill:
            logger.debug("%s: backfill run; checkpoint left untouched", source.id)
            return None
        checkpoint = self.next_checkpoint(source, result)
        self._registry.update_checkpoint(source.id, checkpoint)
        logger.debug(
            "%s: checkpoint advanced (last_seen=%s, etag=%s)",
            source.id,
            checkpoint.last_seen_item_id,
            checkpoint.conditional_token.etag if checkpoint.conditional_token else None,
        )
        return checkpoint
