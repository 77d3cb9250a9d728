"""Content store — identity-keyed reads and idempotent writes of content items."""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Iterable

from pitboard.storage.connection import get_connection

if TYPE_CHECKING:
    from pitboard.ingestion.normalize import ContentItem

logger = logging.getLogger(__name__)

# Stay well under SQLite's bound-parameter limit for IN (...) lookups.
_LOOKUP_CHUNK = 500

_UPSERT_SQL = (
    "INSERT INTO content_items "
    "(identity_key, source_id, content_type, title, excerpt, author, published_at, "
    "canonical_url, media_url, image_url, image_source, ingested_at, updated_at) "
    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
    "ON CONFLICT(identity_key) DO UPDATE SET "
    "source_id = excluded.source_id, content_type = excluded.content_type, "
    "title = excluded.title, excerpt = excluded.excerpt, author = excluded.author, "
    "published_at = excluded.published_at, canonical_url = excluded.canonical_url, "
    "media_url = excluded.media_url, image_url = excluded.image_url, "
    "image_source = excluded.image_source, updated_at = excluded.updated_at"
)


class ContentStore:
    """SQLite-backed content store. The only shared mutable resource in a run."""

    def __init__(self, database_path: str) -> None:
        self._database_path = database_path

    def exists(self, identity_key: str) -> bool:
        with get_connection(self._database_path) as conn:
            row = conn.execute(
                "SELECT 1 FROM content_items WHERE identity_key = ?", (identity_key,)
            ).fetchone()
        return row is not None

    def existing_keys(self, identity_keys: Iterable[str]) -> set[str]:
        """Return the subset of keys already stored."""
        keys = list(dict.fromkeys(identity_keys))
        found: set[str] = set()
        if not keys:
            return found
        with get_connection(self._database_path) as conn:
            for start in range(0, len(keys), _LOOKUP_CHUNK):
                chunk = keys[start : start + _LOOKUP_CHUNK]
                placeholders = ", ".join("?" for _ in chunk)
                rows = conn.execute(
                    f"SELECT identity_key FROM content_items "  # noqa: S608
                    f"WHERE identity_key IN ({placeholders})",
                    chunk,
                ).fetchall()
                found.update(row["identity_key"] for row in rows)
        return found

    def upsert_many(self, items: list[ContentItem]) -> None:
        """Insert or refresh items in one transaction. Raises sqlite3.Error on failure."""
        now = datetime.now(timezone.utc).isoformat()
        with get_connection(self._database_path) as conn:
            conn.executemany(
                _UPSERT_SQL,
                [
                    (
                        item.identity_key,
                        item.source_id,
                        item.content_type,
                        item.title,
                        item.excerpt,
                        item.author,
                        item.published_at,
                        item.canonical_url,
                        item.media_url,
                        item.image_url,
                        item.image_source,
                        now,
                        now,
                    )
                    for item in items
                ],
            )

    def get(self, identity_key: str) -> dict | None:
        with get_connection(self._database_path) as conn:
            row = conn.execute(
                "SELECT * FROM content_items WHERE identity_key = ?", (identity_key,)
            ).fetchone()
        return dict(row) if row is not None else None

    def count(self, source_id: str | None = None) -> int:
        with get_connection(self._database_path) as conn:
            if source_id is None:
                row = conn.execute("SELECT COUNT(*) FROM content_items").fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) FROM content_items WHERE source_id = ?", (source_id,)
                ).fetchone()
        return row[0]

    def prune_source(self, source_id: str, published_before: str) -> int:
        """Delete a source's items published before the cutoff. Returns rows removed."""
        try:
            with get_connection(self._database_path) as conn:
                cursor = conn.execute(
                    "DELETE FROM content_items WHERE source_id = ? AND published_at < ?",
                    (source_id, published_before),
                )
        except sqlite3.Error:
            logger.exception("Retention prune failed for %s", source_id)
            return 0
        if cursor.rowcount:
            logger.info(
                "Pruned %d items older than %s from %s",
                cursor.rowcount, published_before, source_id,
            )
        return cursor.rowcount
