"""Database schema definition and initialization."""

from __future__ import annotations

import logging
import sqlite3

from pitboard.storage.connection import get_connection

logger = logging.getLogger(__name__)

_SCHEMA_SQL = """\
-- Registered sources and their resumption checkpoints
CREATE TABLE IF NOT EXISTS sources (
    id                      TEXT PRIMARY KEY,
    name                    TEXT NOT NULL,
    kind                    TEXT NOT NULL CHECK (kind IN ('feed', 'paged_api')),
    endpoint                TEXT NOT NULL,
    content_type            TEXT NOT NULL DEFAULT 'article' CHECK (content_type IN (
                                'article', 'podcast', 'video', 'social'
                            )),
    default_image           TEXT,
    is_active               INTEGER NOT NULL DEFAULT 1,
    title_collision_prone   INTEGER NOT NULL DEFAULT 0,
    retention_days          INTEGER,
    etag                    TEXT,
    last_modified           TEXT,
    last_seen_item_id       TEXT,
    last_fetched_at         TEXT,
    created_at              TEXT NOT NULL,
    updated_at              TEXT NOT NULL
);

-- Canonical content records, one per identity key
CREATE TABLE IF NOT EXISTS content_items (
    identity_key    TEXT PRIMARY KEY,
    source_id       TEXT NOT NULL,
    content_type    TEXT NOT NULL,
    title           TEXT NOT NULL,
    excerpt         TEXT NOT NULL DEFAULT '',
    author          TEXT,
    published_at    TEXT NOT NULL,
    canonical_url   TEXT,
    media_url       TEXT,
    image_url       TEXT,
    image_source    TEXT NOT NULL DEFAULT 'none',
    ingested_at     TEXT NOT NULL,
    updated_at      TEXT NOT NULL
);

-- Scheduler run tracking
CREATE TABLE IF NOT EXISTS pipeline_runs (
    id          TEXT PRIMARY KEY,
    run_type    TEXT NOT NULL CHECK (run_type IN ('ingestion', 'resync')),
    mode        TEXT NOT NULL CHECK (mode IN ('incremental', 'backfill')),
    started_at  TEXT NOT NULL,
    finished_at TEXT NOT NULL,
    status      TEXT NOT NULL CHECK (status IN ('success', 'error')),
    result      TEXT NOT NULL,   -- JSON
    error       TEXT
);

-- Consecutive fetch failures per source
CREATE TABLE IF NOT EXISTS source_errors (
    source_id               TEXT PRIMARY KEY,
    consecutive_failures    INTEGER NOT NULL DEFAULT 0,
    last_error              TEXT,
    last_failed_at          TEXT,
    last_succeeded_at       TEXT
);

-- Indexes: content_items
CREATE INDEX IF NOT EXISTS idx_content_items_source_id ON content_items(source_id);
CREATE INDEX IF NOT EXISTS idx_content_items_published_at ON content_items(published_at);
CREATE INDEX IF NOT EXISTS idx_content_items_content_type ON content_items(content_type);

-- Indexes: sources
CREATE INDEX IF NOT EXISTS idx_sources_is_active ON sources(is_active);

-- Indexes: pipeline_runs
CREATE INDEX IF NOT EXISTS idx_pipeline_runs_started_at ON pipeline_runs(started_at);
"""


def _migrate_sources_add_retention(conn: sqlite3.Connection) -> None:
    """Add retention_days column to a sources table created before rolling windows."""
    try:
        conn.execute("ALTER TABLE sources ADD COLUMN retention_days INTEGER")
    except sqlite3.OperationalError:
        pass  # Column already exists


def init_db(database_path: str) -> None:
    """Create all tables and indexes if they do not already exist."""
    with get_connection(database_path) as conn:
        conn.executescript(_SCHEMA_SQL)
        _migrate_sources_add_retention(conn)
    logger.info("Database initialized at %s", database_path)
