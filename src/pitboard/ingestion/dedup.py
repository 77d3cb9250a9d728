"""Identity keys and the deduplicating, idempotent upsert engine."""

from __future__ import annotations

import hashlib
import logging
import re
import sqlite3
import unicodedata
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable

if TYPE_CHECKING:
    from pitboard.ingestion.normalize import ContentItem, RawEntry
    from pitboard.ingestion.sources import SourceConfig
    from pitboard.storage.content import ContentStore

logger = logging.getLogger(__name__)


def _normalize_text(text: str) -> str:
    """Normalize text for stable hashing.

    - Unicode NFC normalization
    - Lowercase
    - Collapse all whitespace (spaces, tabs, newlines) to single spaces
    - Strip leading/trailing whitespace
    """
    text = unicodedata.normalize("NFC", text)
    text = text.lower()
    text = re.sub(r"\s+", " ", text)
    return text.strip()


def compute_identity_key(entry: RawEntry, source: SourceConfig) -> str:
    """Compute the stable deduplication key for an upstream entry.

    Explicit upstream identifier first, then the canonical entry URL (https,
    entities decoded), then a SHA-256 composite of source id and title.
    Sources flagged as prone to title collisions (recurring episode names)
    also fold in the raw publish date. Fields are joined with a null byte
    separator to avoid ambiguous concatenations.
    """
    if entry.item_id and entry.item_id.strip():
        return entry.item_id.strip()
    # normalize imports this module, so import lazily.
    from pitboard.ingestion.normalize import normalize_url

    canonical_url = normalize_url(entry.url)
    if canonical_url:
        return canonical_url

    parts = [source.id, _normalize_text(entry.title or "")]
    if source.title_collision_prone:
        parts.append((entry.published or "").strip())
    combined = "\0".join(parts)
    digest = hashlib.sha256(combined.encode("utf-8")).hexdigest()
    return f"{source.id}:{digest}"


@dataclass
class PersistOutcome:
    """Counts from one call to :meth:`UpsertEngine.persist`."""

    new: int = 0
    duplicate: int = 0
    errors: int = 0
    failed_batches: int = 0
    cancelled: bool = False
    written: list[ContentItem] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        """True when every batch was written."""
        return self.failed_batches == 0 and not self.cancelled


def collapse_by_key(items: list[ContentItem]) -> tuple[list[ContentItem], int]:
    """Keep one item per identity key, at the first position with the last values.

    Returns the collapsed list and how many repeats were folded in.
    """
    by_key: dict[str, ContentItem] = {}
    for item in items:
        by_key[item.identity_key] = item
    return list(by_key.values()), len(items) - len(by_key)


class UpsertEngine:
    """Writes normalized items into the content store in bounded batches.

    Every write is an identity-keyed upsert, so re-ingesting a key refreshes
    the stored record instead of creating a second one. With ``classify``
    the engine first looks up which keys already exist, in one batched query,
    so the new/duplicate counts are exact. Without it every written item is
    counted as new.
    """

    def __init__(self, store: ContentStore, batch_size: int = 10) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self._store = store
        self._batch_size = batch_size

    @property
    def batch_size(self) -> int:
        return self._batch_size

    def persist(
        self,
        items: list[ContentItem],
        classify: bool = False,
        dry_run: bool = False,
        should_stop: Callable[[], bool] | None = None,
    ) -> PersistOutcome:
        outcome = PersistOutcome()
        unique, repeats = collapse_by_key(items)
        outcome.duplicate += repeats
        if not unique:
            return outcome

        existing: set[str] = set()
        if classify:
            try:
                existing = self._store.existing_keys(item.identity_key for item in unique)
            except sqlite3.Error:
                logger.exception("Existing-key lookup failed; counting all as new")

        for start in range(0, len(unique), self._batch_size):
            if should_stop is not None and should_stop():
                outcome.cancelled = True
                logger.info("Cancellation requested; stopping before batch at %d", start)
                break

            batch = unique[start : start + self._batch_size]
            if not dry_run:
                try:
                    self._store.upsert_many(batch)
                except sqlite3.Error:
                    logger.exception(
                        "Upsert batch of %d items failed (first key %s)",
                        len(batch), batch[0].identity_key,
                    )
                    outcome.errors += len(batch)
                    outcome.failed_batches += 1
                    continue

            for item in batch:
                if item.identity_key in existing:
                    outcome.duplicate += 1
                else:
                    outcome.new += 1
            outcome.written.extend(batch)

        return outcome
