"""Source registry — registered sources and their resumption checkpoints."""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from pitboard.ingestion.errors import FatalError, PersistenceError
from pitboard.storage.connection import get_connection

logger = logging.getLogger(__name__)

SOURCE_KINDS = frozenset({"feed", "paged_api"})
CONTENT_TYPES = frozenset({"article", "podcast", "video", "social"})


@dataclass(frozen=True)
class ConditionalToken:
    """Freshness markers returned by an upstream for conditional re-fetch."""

    etag: str | None = None
    last_modified: str | None = None

    def headers(self) -> dict[str, str]:
        """Return the conditional request headers for this token."""
        headers: dict[str, str] = {}
        if self.etag:
            headers["If-None-Match"] = self.etag
        if self.last_modified:
            headers["If-Modified-Since"] = self.last_modified
        return headers

    def __bool__(self) -> bool:
        return bool(self.etag or self.last_modified)


@dataclass(frozen=True)
class Checkpoint:
    """Per-source resumption state."""

    conditional_token: ConditionalToken | None = None
    last_seen_item_id: str | None = None
    last_fetched_at: str | None = None


@dataclass(frozen=True)
class SourceConfig:
    """A registered upstream source."""

    id: str
    name: str
    kind: str
    endpoint: str
    content_type: str = "article"
    default_image: str | None = None
    is_active: bool = True
    title_collision_prone: bool = False
    retention_days: int | None = None
    checkpoint: Checkpoint = field(default_factory=Checkpoint)


def _row_to_source(row: sqlite3.Row) -> SourceConfig:
    token = None
    if row["etag"] or row["last_modified"]:
        token = ConditionalToken(etag=row["etag"], last_modified=row["last_modified"])
    return SourceConfig(
        id=row["id"],
        name=row["name"],
        kind=row["kind"],
        endpoint=row["endpoint"],
        content_type=row["content_type"],
        default_image=row["default_image"],
        is_active=bool(row["is_active"]),
        title_collision_prone=bool(row["title_collision_prone"]),
        retention_days=row["retention_days"],
        checkpoint=Checkpoint(
            conditional_token=token,
            last_seen_item_id=row["last_seen_item_id"],
            last_fetched_at=row["last_fetched_at"],
        ),
    )


def _validate_source_definition(data: dict) -> list[str]:
    """Validate one source definition from the catalogue file. Returns a list of errors."""
    errors: list[str] = []
    for key in ("id", "kind", "endpoint"):
        value = data.get(key)
        if not isinstance(value, str) or not value.strip():
            errors.append(f"{key} is required and must be a non-empty string")
    kind = data.get("kind")
    if isinstance(kind, str) and kind and kind not in SOURCE_KINDS:
        errors.append(
            f"kind '{kind}' is not valid; must be one of: {', '.join(sorted(SOURCE_KINDS))}"
        )
    content_type = data.get("content_type", "article")
    if content_type not in CONTENT_TYPES:
        errors.append(
            f"content_type '{content_type}' is not valid; "
            f"must be one of: {', '.join(sorted(CONTENT_TYPES))}"
        )
    retention = data.get("retention_days")
    if retention is not None and (not isinstance(retention, int) or retention <= 0):
        errors.append("retention_days must be a positive integer")
    return errors


class SourceRegistry:
    """Thin accessor over the ``sources`` table.

    Holds no business logic. Checkpoint columns are only ever written through
    :meth:`update_checkpoint`; definition updates leave them untouched.
    """

    def __init__(self, database_path: str) -> None:
        self._database_path = database_path

    def list_active_sources(self) -> list[SourceConfig]:
        """Return every active source. Raises FatalError if the registry is unreadable."""
        try:
            with get_connection(self._database_path) as conn:
                rows = conn.execute(
                    "SELECT * FROM sources WHERE is_active = 1 ORDER BY id"
                ).fetchall()
        except sqlite3.Error as exc:
            raise FatalError(f"Source registry unreadable: {exc}") from exc
        return [_row_to_source(row) for row in rows]

    def list_sources(self) -> list[SourceConfig]:
        """Return every registered source, active or not."""
        try:
            with get_connection(self._database_path) as conn:
                rows = conn.execute("SELECT * FROM sources ORDER BY id").fetchall()
        except sqlite3.Error as exc:
            raise FatalError(f"Source registry unreadable: {exc}") from exc
        return [_row_to_source(row) for row in rows]

    def get_source(self, source_id: str) -> SourceConfig | None:
        """Look up a source by id. Returns None if not registered."""
        try:
            with get_connection(self._database_path) as conn:
                row = conn.execute(
                    "SELECT * FROM sources WHERE id = ?", (source_id,)
                ).fetchone()
        except sqlite3.Error as exc:
            raise FatalError(f"Source registry unreadable: {exc}") from exc
        return _row_to_source(row) if row is not None else None

    def get_checkpoint(self, source_id: str) -> Checkpoint:
        """Return the stored checkpoint for a source. Raises KeyError if unknown."""
        source = self.get_source(source_id)
        if source is None:
            raise KeyError(source_id)
        return source.checkpoint

    def update_checkpoint(self, source_id: str, checkpoint: Checkpoint) -> None:
        """Persist a source's checkpoint. Raises PersistenceError on write failure."""
        token = checkpoint.conditional_token or ConditionalToken()
        now = datetime.now(timezone.utc).isoformat()
        try:
            with get_connection(self._database_path) as conn:
                cursor = conn.execute(
                    "UPDATE sources SET etag = ?, last_modified = ?, "
                    "last_seen_item_id = ?, last_fetched_at = ?, updated_at = ? "
                    "WHERE id = ?",
                    (
                        token.etag,
                        token.last_modified,
                        checkpoint.last_seen_item_id,
                        checkpoint.last_fetched_at,
                        now,
                        source_id,
                    ),
                )
        except sqlite3.Error as exc:
            raise PersistenceError(f"Checkpoint write failed for {source_id}: {exc}") from exc
        if cursor.rowcount == 0:
            raise KeyError(source_id)

    def upsert_source(self, source: SourceConfig) -> None:
        """Insert or update a source definition, keeping any stored checkpoint."""
        now = datetime.now(timezone.utc).isoformat()
        with get_connection(self._database_path) as conn:
            conn.execute(
                "INSERT INTO sources "
                "(id, name, kind, endpoint, content_type, default_image, is_active, "
                "title_collision_prone, retention_days, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(id) DO UPDATE SET "
                "name = excluded.name, kind = excluded.kind, "
                "endpoint = excluded.endpoint, content_type = excluded.content_type, "
                "default_image = excluded.default_image, is_active = excluded.is_active, "
                "title_collision_prone = excluded.title_collision_prone, "
                "retention_days = excluded.retention_days, updated_at = excluded.updated_at",
                (
                    source.id,
                    source.name,
                    source.kind,
                    source.endpoint,
                    source.content_type,
                    source.default_image,
                    int(source.is_active),
                    int(source.title_collision_prone),
                    source.retention_days,
                    now,
                    now,
                ),
            )

    def sync_from_file(self, path: str | Path) -> int:
        """Register every source listed in a JSON catalogue file.

        Expected format:
        {
            "sources": [
                {"id": "...", "kind": "feed", "endpoint": "...", "name": "...",
                 "content_type": "article", "default_image": "...",
                 "is_active": true, "title_collision_prone": false,
                 "retention_days": null},
                ...
            ]
        }

        Raises ValueError if any definition is invalid; nothing is written in
        that case. Returns the number of sources registered.
        """
        with open(path) as f:
            data = json.load(f)

        definitions = data.get("sources", [])
        problems: list[str] = []
        for index, definition in enumerate(definitions):
            for error in _validate_source_definition(definition):
                problems.append(f"sources[{index}]: {error}")
        if problems:
            raise ValueError(f"Invalid source catalogue: {'; '.join(problems)}")

        for definition in definitions:
            self.upsert_source(
                SourceConfig(
                    id=definition["id"],
                    name=definition.get("name") or definition["id"],
                    kind=definition["kind"],
                    endpoint=definition["endpoint"],
                    content_type=definition.get("content_type", "article"),
                    default_image=definition.get("default_image"),
                    is_active=bool(definition.get("is_active", True)),
                    title_collision_prone=bool(definition.get("title_collision_prone", False)),
                    retention_days=definition.get("retention_days"),
                )
            )
        logger.info("Registered %d sources from %s", len(definitions), path)
        return len(definitions)
