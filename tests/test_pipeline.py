"""Tests for pitboard.ingestion.pipeline — the per-source ingestion job."""

from __future__ import annotations

import sqlite3
import threading
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from pitboard.ingestion.adapter import FetchResult, SourceAdapter
from pitboard.ingestion.checkpoint import CheckpointWriter
from pitboard.ingestion.errors import TransportError
from pitboard.ingestion.feed_adapter import FeedAdapter
from pitboard.ingestion.images import ImageChain
from pitboard.ingestion.normalize import ContentItem, Normalizer, RawEntry
from pitboard.ingestion.pipeline import SourcePipeline
from pitboard.ingestion.sources import Checkpoint, ConditionalToken, SourceConfig, SourceRegistry
from pitboard.ingestion.window import RunMode
from pitboard.storage.content import ContentStore
from pitboard.storage.schema import init_db

NOW = datetime(2025, 6, 15, 12, 0, tzinfo=timezone.utc)
INCREMENTAL = RunMode.incremental(1, now=NOW)
BACKFILL = RunMode.backfill_days(7, now=NOW)


class _StaticAdapter(SourceAdapter):
    """Returns a fixed FetchResult (or raises) and counts calls."""

    early_stop_on_duplicate = True

    def __init__(self, result: FetchResult | Exception):
        self._result = result
        self.calls = 0

    @property
    def name(self) -> str:
        return "feed"

    @classmethod
    def from_config(cls, config, client):
        return cls(FetchResult())

    def fetch(self, source, mode):
        self.calls += 1
        if isinstance(self._result, Exception):
            raise self._result
        return self._result


def _entry(index: int, **overrides) -> RawEntry:
    values = {
        "item_id": f"e{index}",
        "title": f"Entry {index}",
        "url": f"https://moto.example/{index}",
        "published": f"2025-06-15T{10 - index:02d}:00:00Z",
        "summary": f"<p>Body {index}</p>",
    }
    values.update(overrides)
    return RawEntry(**values)


def _seed(store: ContentStore, key: str, published_at: str = "2025-06-15T05:00:00+00:00"):
    store.upsert_many([
        ContentItem(
            identity_key=key,
            source_id="moto",
            content_type="article",
            title=f"Stored {key}",
            excerpt="",
            published_at=published_at,
            canonical_url=None,
            media_url=None,
            image_url=None,
            image_source="none",
        )
    ])


@pytest.fixture()
def db_path(tmp_path):
    path = str(tmp_path / "test.db")
    init_db(path)
    return path


@pytest.fixture()
def registry(db_path):
    registry = SourceRegistry(db_path)
    registry.upsert_source(
        SourceConfig(id="moto", name="Moto", kind="feed", endpoint="https://moto.example/feed")
    )
    return registry


@pytest.fixture()
def store(db_path):
    return ContentStore(db_path)


def _pipeline(registry, store, adapter, **kwargs) -> SourcePipeline:
    return SourcePipeline(
        adapters={"feed": adapter},
        normalizer=Normalizer(ImageChain(), clock=lambda: NOW),
        store=store,
        checkpoints=CheckpointWriter(registry, clock=lambda: NOW),
        clock=lambda: NOW,
        **kwargs,
    )


def _run(registry, store, adapter, mode=INCREMENTAL, **run_kwargs):
    source = registry.get_source("moto")
    return _pipeline(registry, store, adapter).run(source, mode, **run_kwargs)


class TestIncremental:
    def test_persists_and_advances_checkpoint(self, registry, store):
        adapter = _StaticAdapter(FetchResult(
            entries=[_entry(0), _entry(1), _entry(2)],
            conditional_token=ConditionalToken(etag='"v1"'),
        ))

        summary = _run(registry, store, adapter)

        assert summary.status == "ok"
        assert summary.new == 3
        assert store.count("moto") == 3
        assert summary.checkpoint_advanced
        checkpoint = registry.get_checkpoint("moto")
        assert checkpoint.conditional_token == ConditionalToken(etag='"v1"')
        assert checkpoint.last_fetched_at == NOW.isoformat()

    def test_rerun_is_idempotent(self, registry, store):
        adapter = _StaticAdapter(FetchResult(entries=[_entry(0), _entry(1), _entry(2)]))
        _run(registry, store, adapter)
        before = {key: store.get(key)["title"] for key in ("e0", "e1", "e2")}

        summary = _run(registry, store, adapter)

        assert summary.status == "ok"
        assert summary.new == 0
        assert store.count() == 3
        assert {key: store.get(key)["title"] for key in before} == before

    def test_stops_at_first_stored_entry(self, registry, store):
        _seed(store, "e2")
        entries = [_entry(i) for i in range(5)]

        summary = _run(registry, store, _StaticAdapter(FetchResult(entries=entries)))

        assert summary.new == 2
        assert summary.duplicate == 1
        assert summary.early_stopped
        assert store.exists("e0") and store.exists("e1")
        assert not store.exists("e3")
        assert not store.exists("e4")

    def test_out_of_window_entries_skipped_and_counted(self, registry, store):
        window = INCREMENTAL.window
        entries = [
            _entry(0, published=(window.end + timedelta(microseconds=1)).isoformat()),
            _entry(1, published=window.end.isoformat()),
            _entry(2, published=window.start.isoformat()),
            _entry(3, published=(window.start - timedelta(microseconds=1)).isoformat()),
            _entry(4, published="2025-06-15T09:00:00Z"),
        ]

        summary = _run(registry, store, _StaticAdapter(FetchResult(entries=entries)))

        assert summary.out_of_range == 2
        assert summary.new == 3
        assert not store.exists("e0")
        assert store.exists("e1") and store.exists("e2")
        assert not store.exists("e3")
        # Scanning continues past out-of-range entries
        assert store.exists("e4")

    def test_last_seen_is_newest_stored_entry(self, registry, store):
        entries = [
            _entry(0, published="2025-06-01T10:00:00Z"),
            _entry(1),
            _entry(2),
        ]
        adapter = _StaticAdapter(FetchResult(entries=entries, newest_item_id="e0"))

        summary = _run(registry, store, adapter)

        assert summary.out_of_range == 1
        assert not store.exists("e0")
        assert registry.get_checkpoint("moto").last_seen_item_id == "e1"

    def test_last_seen_kept_from_adapter_when_nothing_stored(self, registry, store):
        adapter = _StaticAdapter(FetchResult(entries=[], newest_item_id="e9", dropped=1))
        _run(registry, store, adapter)
        assert registry.get_checkpoint("moto").last_seen_item_id == "e9"

    def test_missing_date_defaults_to_ingestion_time(self, registry, store):
        entries = [_entry(0, published=None)]
        summary = _run(registry, store, _StaticAdapter(FetchResult(entries=entries)))
        assert summary.date_defaulted == 1
        assert store.get("e0")["published_at"] == NOW.isoformat()

    def test_ineligible_entries_counted(self, registry, store):
        entries = [_entry(0), _entry(1, eligible=False)]
        summary = _run(registry, store, _StaticAdapter(FetchResult(entries=entries, dropped=2)))
        assert summary.ineligible == 3
        assert summary.new == 1


class TestBackfill:
    def test_persists_everything_in_window_and_keeps_checkpoint(self, registry, store):
        registry.update_checkpoint("moto", Checkpoint(last_seen_item_id="keep-me"))
        _seed(store, "e2")
        entries = [_entry(i) for i in range(5)]

        summary = _run(registry, store, _StaticAdapter(FetchResult(entries=entries)), BACKFILL)

        assert summary.status == "ok"
        assert summary.new == 4
        assert summary.duplicate == 1
        assert not summary.early_stopped
        assert all(store.exists(f"e{i}") for i in range(5))
        assert not summary.checkpoint_advanced
        assert registry.get_checkpoint("moto") == Checkpoint(last_seen_item_id="keep-me")

    def test_refreshes_existing_records(self, registry, store):
        _seed(store, "e0")
        _run(registry, store, _StaticAdapter(FetchResult(entries=[_entry(0)])), BACKFILL)
        assert store.get("e0")["title"] == "Entry 0"


class TestFailures:
    def test_transport_error_recorded(self, registry, store):
        adapter = _StaticAdapter(TransportError("Timed out after 15s"))

        summary = _run(registry, store, adapter)

        assert summary.status == "error"
        assert summary.stage == "fetching"
        assert "TransportError" in summary.error
        assert registry.get_checkpoint("moto") == Checkpoint()

    def test_not_modified_touches_nothing(self, registry, store):
        before = Checkpoint(
            conditional_token=ConditionalToken(etag='"v1"'),
            last_fetched_at="2025-06-15T11:00:00+00:00",
        )
        registry.update_checkpoint("moto", before)

        summary = _run(registry, store, _StaticAdapter(FetchResult(not_modified=True)))

        assert summary.status == "not_modified"
        assert registry.get_checkpoint("moto") == before

    def test_failed_batch_blocks_checkpoint(self, registry, store):
        def broken(batch):
            raise sqlite3.OperationalError("disk I/O error")

        store.upsert_many = broken
        summary = _run(registry, store, _StaticAdapter(FetchResult(
            entries=[_entry(0)], conditional_token=ConditionalToken(etag='"v2"'),
        )))

        assert summary.status == "partial"
        assert summary.errors == 1
        assert registry.get_checkpoint("moto") == Checkpoint()

    def test_unknown_kind(self, registry, store):
        source = SourceConfig(id="x", name="X", kind="paged_api", endpoint="UU")
        summary = _pipeline(registry, store, _StaticAdapter(FetchResult())).run(source, INCREMENTAL)
        assert summary.status == "error"
        assert "No adapter" in summary.error

    def test_unexpected_exception_is_contained(self, registry, store):
        summary = _run(registry, store, _StaticAdapter(RuntimeError("bug")))
        assert summary.status == "error"
        assert "RuntimeError" in summary.error


class TestRunOptions:
    def test_dry_run_writes_nothing(self, registry, store):
        summary = _run(
            registry, store, _StaticAdapter(FetchResult(entries=[_entry(0), _entry(1)])),
            dry_run=True,
        )
        assert summary.new == 2
        assert store.count() == 0
        assert registry.get_checkpoint("moto") == Checkpoint()

    def test_dry_run_still_classifies_duplicates(self, registry, store):
        _seed(store, "e1")
        summary = _run(
            registry, store, _StaticAdapter(FetchResult(entries=[_entry(0), _entry(1)])),
            mode=BACKFILL, dry_run=True,
        )
        assert (summary.new, summary.duplicate) == (1, 1)
        assert store.count() == 1

    def test_cancelled_before_first_batch(self, registry, store):
        event = threading.Event()
        event.set()
        summary = _run(
            registry, store, _StaticAdapter(FetchResult(entries=[_entry(0)])),
            cancel_event=event,
        )
        assert summary.status == "cancelled"
        assert store.count() == 0
        assert registry.get_checkpoint("moto") == Checkpoint()

    def test_retention_prunes_old_items(self, registry, store):
        registry.upsert_source(SourceConfig(
            id="moto", name="Moto", kind="feed", endpoint="https://moto.example/feed",
            retention_days=30,
        ))
        _seed(store, "ancient", published_at="2025-01-01T00:00:00+00:00")

        summary = _run(registry, store, _StaticAdapter(FetchResult(entries=[_entry(0)])))

        assert summary.pruned == 1
        assert not store.exists("ancient")
        assert store.exists("e0")


class TestWithFeedTransport:
    FEED = b"""<?xml version="1.0"?>
<rss version="2.0"><channel><title>Moto</title>
  <item><title>Second</title><guid>g2</guid><link>https://m/2</link>
    <pubDate>Sun, 15 Jun 2025 10:00:00 GMT</pubDate></item>
  <item><title>First</title><guid>g1</guid><link>https://m/1</link>
    <pubDate>Sun, 15 Jun 2025 09:00:00 GMT</pubDate></item>
</channel></rss>"""

    def test_second_run_is_conditional_and_not_modified(self, registry, store):
        def handler(request):
            if request.headers.get("if-none-match") == '"v1"':
                return httpx.Response(304)
            return httpx.Response(200, content=self.FEED, headers={"ETag": '"v1"'})

        client = httpx.Client(transport=httpx.MockTransport(handler))
        adapter = FeedAdapter(client, clock=lambda: NOW)

        first = _run(registry, store, adapter)
        second = _run(registry, store, adapter)

        assert first.status == "ok"
        assert first.new == 2
        assert second.status == "not_modified"
        assert store.count() == 2
