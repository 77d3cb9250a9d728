"""Tests for pitboard.ingestion.listing_adapter — paged listing API transport."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import httpx
import pytest

from pitboard.ingestion.errors import TransportError
from pitboard.ingestion.listing_adapter import (
    DETAIL_CHUNK_SIZE,
    DetailPage,
    ListingPage,
    PagedListingAdapter,
    Unrecognized,
    UpstreamError,
    parse_detail_response,
    parse_listing_response,
)
from pitboard.ingestion.sources import Checkpoint, SourceConfig
from pitboard.ingestion.window import RunMode

NOW = datetime(2025, 6, 15, 12, 0, tzinfo=timezone.utc)
INCREMENTAL = RunMode.incremental(1, now=NOW)
BACKFILL = RunMode.backfill_days(30, now=NOW)


def _listing_item(video_id: str, published: str) -> dict:
    return {
        "snippet": {"publishedAt": published, "title": f"Video {video_id}"},
        "contentDetails": {"videoId": video_id, "videoPublishedAt": published},
    }


def _detail_item(video_id: str, embeddable: bool = True) -> dict:
    return {
        "id": video_id,
        "snippet": {
            "title": f"Video {video_id}",
            "description": f"Description for {video_id}",
            "publishedAt": "2025-06-15T09:00:00Z",
            "channelTitle": "MX Channel",
            "thumbnails": {
                "default": {"url": f"https://i.ytimg.com/vi/{video_id}/default.jpg"},
                "high": {"url": f"https://i.ytimg.com/vi/{video_id}/hqdefault.jpg"},
            },
        },
        "status": {"embeddable": embeddable},
    }


class _FakeApi:
    """Serves listing pages and detail lookups; records every request."""

    def __init__(self, pages: list[list[dict]], details: dict[str, dict] | None = None):
        self.pages = pages
        self.details = details or {}
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        params = request.url.params
        if request.url.path.endswith("/playlistItems"):
            index = int(params.get("pageToken") or 0)
            body = {"items": self.pages[index]}
            if index + 1 < len(self.pages):
                body["nextPageToken"] = str(index + 1)
            return httpx.Response(200, json=body)
        if request.url.path.endswith("/videos"):
            ids = params["id"].split(",")
            return httpx.Response(
                200, json={"items": [self.details[i] for i in ids if i in self.details]}
            )
        return httpx.Response(404)

    def calls_to(self, endpoint: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith(endpoint)]


def _adapter(api, **kwargs) -> PagedListingAdapter:
    client = httpx.Client(transport=httpx.MockTransport(api))
    kwargs.setdefault("api_key", "test-key")
    return PagedListingAdapter(client, base_url="https://api.example/v3", **kwargs)


def _source(last_seen: str | None = None) -> SourceConfig:
    return SourceConfig(
        id="mx-videos",
        name="MX Videos",
        kind="paged_api",
        endpoint="UU-uploads",
        content_type="video",
        checkpoint=Checkpoint(last_seen_item_id=last_seen),
    )


class TestParseResponses:
    def test_listing_page(self):
        result = parse_listing_response(
            {"items": [_listing_item("a", "2025-06-15T08:00:00Z")], "nextPageToken": "p2"}
        )
        assert isinstance(result, ListingPage)
        assert result.items[0].item_id == "a"
        assert result.next_page_token == "p2"

    def test_listing_resource_id_variant(self):
        result = parse_listing_response(
            {"items": [{"snippet": {"resourceId": {"videoId": "b"}, "publishedAt": "x"}}]}
        )
        assert result.items[0].item_id == "b"
        assert result.items[0].published == "x"

    def test_upstream_error(self):
        result = parse_listing_response({"error": {"code": 403, "message": "quotaExceeded"}})
        assert result == UpstreamError(message="quotaExceeded", code=403)

    def test_unrecognized_shape(self):
        assert isinstance(parse_listing_response({"unexpected": True}), Unrecognized)
        assert isinstance(parse_listing_response(None), Unrecognized)
        assert isinstance(parse_detail_response([1, 2, 3]), Unrecognized)

    def test_detail_page_thumbnail_preference(self):
        result = parse_detail_response({"items": [_detail_item("a")]})
        assert isinstance(result, DetailPage)
        assert result.items[0].thumbnail_url.endswith("/hqdefault.jpg")

    def test_detail_missing_status_is_not_embeddable(self):
        result = parse_detail_response({"items": [{"id": "a"}]})
        assert result.items[0].status.embeddable is False


class TestListIds:
    def test_stops_at_cutoff(self):
        api = _FakeApi([[
            _listing_item("new", "2025-06-15T08:00:00Z"),
            _listing_item("yesterday", "2025-06-14T08:00:00Z"),
            _listing_item("old", "2025-06-01T08:00:00Z"),
            _listing_item("older", "2025-05-01T08:00:00Z"),
        ]])
        ids = _adapter(api).list_ids("UU-uploads", INCREMENTAL, None)
        assert [i for i, _ in ids] == ["new", "yesterday"]

    def test_item_at_cutoff_is_included(self):
        start = INCREMENTAL.window.start
        api = _FakeApi([[
            _listing_item("on-boundary", start.isoformat()),
            _listing_item("just-before", (start - timedelta(microseconds=1)).isoformat()),
        ]])
        ids = _adapter(api).list_ids("UU-uploads", INCREMENTAL, None)
        assert [i for i, _ in ids] == ["on-boundary"]

    def test_stops_at_last_seen(self):
        api = _FakeApi([[
            _listing_item("c", "2025-06-15T10:00:00Z"),
            _listing_item("b", "2025-06-15T09:00:00Z"),
            _listing_item("a", "2025-06-15T08:00:00Z"),
        ]])
        ids = _adapter(api).list_ids("UU-uploads", INCREMENTAL, "b")
        assert [i for i, _ in ids] == ["c"]

    def test_follows_pages(self):
        api = _FakeApi([
            [_listing_item("p1", "2025-06-15T10:00:00Z")],
            [_listing_item("p2", "2025-06-15T09:00:00Z")],
        ])
        ids = _adapter(api).list_ids("UU-uploads", INCREMENTAL, None)
        assert [i for i, _ in ids] == ["p1", "p2"]
        assert len(api.calls_to("/playlistItems")) == 2

    def test_item_cap(self):
        api = _FakeApi([[_listing_item(f"v{i}", "2025-06-15T10:00:00Z") for i in range(10)]])
        ids = _adapter(api, max_items=3).list_ids("UU-uploads", INCREMENTAL, None)
        assert len(ids) == 3

    def test_page_cap(self):
        pages = [[_listing_item(f"v{i}", "2025-06-15T10:00:00Z")] for i in range(5)]
        api = _FakeApi(pages)
        ids = _adapter(api, max_pages=2).list_ids("UU-uploads", INCREMENTAL, None)
        assert len(ids) == 2
        assert len(api.calls_to("/playlistItems")) == 2

    def test_sends_key_and_page_size(self):
        api = _FakeApi([[]])
        _adapter(api, page_size=500).list_ids("UU-uploads", INCREMENTAL, None)
        params = api.requests[0].url.params
        assert params["key"] == "test-key"
        assert params["playlistId"] == "UU-uploads"
        assert params["maxResults"] == "50"
        assert "pageToken" not in params

    def test_upstream_error_is_transport_error(self):
        def handler(request):
            return httpx.Response(200, json={"error": {"code": 403, "message": "quota"}})

        with pytest.raises(TransportError, match="quota"):
            _adapter(handler).list_ids("UU-uploads", INCREMENTAL, None)

    def test_unrecognized_page_yields_no_items(self):
        ids = _adapter(lambda r: httpx.Response(200, json={"weird": 1})).list_ids(
            "UU-uploads", INCREMENTAL, None
        )
        assert ids == []


class TestFetch:
    def test_builds_entries_and_drops_ineligible(self):
        api = _FakeApi(
            [[
                _listing_item("v3", "2025-06-15T10:00:00Z"),
                _listing_item("v2", "2025-06-15T09:00:00Z"),
                _listing_item("v1", "2025-06-15T08:00:00Z"),
            ]],
            details={"v3": _detail_item("v3"), "v2": _detail_item("v2", embeddable=False)},
        )

        result = _adapter(api).fetch(_source(), INCREMENTAL)

        assert [e.item_id for e in result.entries] == ["v3"]
        assert result.dropped == 2
        assert result.newest_item_id == "v3"
        entry = result.entries[0]
        assert entry.url == "https://www.youtube.com/watch?v=v3"
        assert entry.author == "MX Channel"
        assert entry.media_content[0].url == "https://www.youtube.com/embed/v3"
        assert entry.media_thumbnails[0].url.endswith("/v3/hqdefault.jpg")

    def test_details_requested_in_chunks(self):
        count = DETAIL_CHUNK_SIZE + 5
        listing = [_listing_item(f"v{i}", "2025-06-15T10:00:00Z") for i in range(count)]
        api = _FakeApi([listing], details={f"v{i}": _detail_item(f"v{i}") for i in range(count)})

        result = _adapter(api, max_items=500).fetch(_source(), INCREMENTAL)

        assert len(result.entries) == count
        sizes = [len(r.url.params["id"].split(",")) for r in api.calls_to("/videos")]
        assert sizes == [DETAIL_CHUNK_SIZE, 5]

    def test_backfill_ignores_last_seen(self):
        api = _FakeApi(
            [[
                _listing_item("b", "2025-06-15T09:00:00Z"),
                _listing_item("a", "2025-06-15T08:00:00Z"),
            ]],
            details={"a": _detail_item("a"), "b": _detail_item("b")},
        )
        result = _adapter(api).fetch(_source(last_seen="b"), BACKFILL)
        assert [e.item_id for e in result.entries] == ["b", "a"]

    def test_unrecognized_details_leave_no_resume_point(self):
        def handler(request):
            if request.url.path.endswith("/playlistItems"):
                return httpx.Response(200, json={"items": [
                    _listing_item("v2", "2025-06-15T10:00:00Z"),
                    _listing_item("v1", "2025-06-15T09:00:00Z"),
                ]})
            return httpx.Response(200, json={"unexpected": "shape"})

        result = _adapter(handler).fetch(_source(), INCREMENTAL)

        assert result.entries == []
        assert result.dropped == 2
        assert result.newest_item_id is None

    def test_resume_point_skips_items_without_details(self):
        api = _FakeApi(
            [[
                _listing_item("v2", "2025-06-15T10:00:00Z"),
                _listing_item("v1", "2025-06-15T09:00:00Z"),
            ]],
            details={"v1": _detail_item("v1")},
        )
        result = _adapter(api).fetch(_source(), INCREMENTAL)
        assert [e.item_id for e in result.entries] == ["v1"]
        assert result.newest_item_id == "v1"

    def test_nothing_new_skips_detail_call(self):
        api = _FakeApi([[_listing_item("a", "2025-06-15T08:00:00Z")]])
        result = _adapter(api).fetch(_source(last_seen="a"), INCREMENTAL)
        assert result.entries == []
        assert api.calls_to("/videos") == []

    def test_missing_credential(self):
        with pytest.raises(TransportError, match="credential"):
            _adapter(_FakeApi([[]]), api_key=None).fetch(_source(), INCREMENTAL)

    def test_http_failure(self):
        with pytest.raises(TransportError, match="HTTP 500"):
            _adapter(lambda r: httpx.Response(500)).fetch(_source(), INCREMENTAL)

    def test_timeout(self):
        def handler(request):
            raise httpx.ConnectTimeout("slow", request=request)

        with pytest.raises(TransportError, match="Timed out"):
            _adapter(handler).fetch(_source(), INCREMENTAL)
