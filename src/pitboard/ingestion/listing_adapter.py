"""Paged listing API transport adapter (video uploads playlists).

Pages through a newest-first listing, then enriches the surviving ids with
a batched detail call. Upstream JSON is validated into a small tagged union
(:class:`ListingPage` / :class:`DetailPage` / :class:`UpstreamError` /
:class:`Unrecognized`); shapes that fail validation are treated as "no
items" rather than crashing the run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from pitboard.ingestion.adapter import FetchResult, SourceAdapter
from pitboard.ingestion.errors import TransportError
from pitboard.ingestion.normalize import MediaRef, RawEntry, parse_date

if TYPE_CHECKING:
    from pitboard.config import Config
    from pitboard.ingestion.sources import SourceConfig
    from pitboard.ingestion.window import RunMode

logger = logging.getLogger(__name__)

DETAIL_CHUNK_SIZE = 50
MAX_PAGE_SIZE = 50
WATCH_URL = "https://www.youtube.com/watch?v={}"
EMBED_URL = "https://www.youtube.com/embed/{}"
_THUMBNAIL_PREFERENCE = ("maxres", "standard", "high", "medium", "default")


# ---------------------------------------------------------------------------
# Upstream shapes
# ---------------------------------------------------------------------------
class _Upstream(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class _ResourceId(_Upstream):
    video_id: str | None = Field(None, alias="videoId")


class _ListingSnippet(_Upstream):
    published_at: str | None = Field(None, alias="publishedAt")
    title: str | None = None
    resource_id: _ResourceId | None = Field(None, alias="resourceId")


class _ListingDetails(_Upstream):
    video_id: str | None = Field(None, alias="videoId")
    video_published_at: str | None = Field(None, alias="videoPublishedAt")


class ListingItem(_Upstream):
    snippet: _ListingSnippet | None = None
    content_details: _ListingDetails | None = Field(None, alias="contentDetails")

    @property
    def item_id(self) -> str | None:
        # Two envelope variants: id under contentDetails, or under snippet.resourceId
        if self.content_details and self.content_details.video_id:
            return self.content_details.video_id
        if self.snippet and self.snippet.resource_id:
            return self.snippet.resource_id.video_id
        return None

    @property
    def published(self) -> str | None:
        if self.content_details and self.content_details.video_published_at:
            return self.content_details.video_published_at
        return self.snippet.published_at if self.snippet else None


class _ListingEnvelope(_Upstream):
    items: list[ListingItem]
    next_page_token: str | None = Field(None, alias="nextPageToken")


class _Thumbnail(_Upstream):
    url: str | None = None


class _DetailSnippet(_Upstream):
    title: str | None = None
    description: str | None = None
    published_at: str | None = Field(None, alias="publishedAt")
    channel_title: str | None = Field(None, alias="channelTitle")
    thumbnails: dict[str, _Thumbnail] = Field(default_factory=dict)


class _DetailStatus(_Upstream):
    embeddable: bool = False


class DetailItem(_Upstream):
    id: str
    snippet: _DetailSnippet = Field(default_factory=_DetailSnippet)
    status: _DetailStatus = Field(default_factory=_DetailStatus)

    @property
    def thumbnail_url(self) -> str | None:
        for size in _THUMBNAIL_PREFERENCE:
            thumb = self.snippet.thumbnails.get(size)
            if thumb and thumb.url:
                return thumb.url
        return None


class _DetailEnvelope(_Upstream):
    items: list[DetailItem]


class _ErrorBody(_Upstream):
    code: int | None = None
    message: str = "unknown upstream error"


class _ErrorEnvelope(_Upstream):
    error: _ErrorBody


@dataclass(frozen=True)
class ListingPage:
    items: list[ListingItem] = field(default_factory=list)
    next_page_token: str | None = None


@dataclass(frozen=True)
class DetailPage:
    items: list[DetailItem] = field(default_factory=list)


@dataclass(frozen=True)
class UpstreamError:
    message: str
    code: int | None = None


@dataclass(frozen=True)
class Unrecognized:
    reason: str


def _parse_error(payload: Any) -> UpstreamError | None:
    if isinstance(payload, dict) and "error" in payload:
        try:
            body = _ErrorEnvelope.model_validate(payload).error
        except ValidationError:
            return UpstreamError(message=str(payload["error"]))
        return UpstreamError(message=body.message, code=body.code)
    return None


def parse_listing_response(payload: Any) -> ListingPage | UpstreamError | Unrecognized:
    """Validate a listing response body. Never raises."""
    error = _parse_error(payload)
    if error is not None:
        return error
    try:
        envelope = _ListingEnvelope.model_validate(payload)
    except ValidationError as exc:
        return Unrecognized(reason=f"listing response failed validation: {exc.error_count()} errors")
    return ListingPage(items=envelope.items, next_page_token=envelope.next_page_token or None)


def parse_detail_response(payload: Any) -> DetailPage | UpstreamError | Unrecognized:
    """Validate a detail response body. Never raises."""
    error = _parse_error(payload)
    if error is not None:
        return error
    try:
        envelope = _DetailEnvelope.model_validate(payload)
    except ValidationError as exc:
        return Unrecognized(reason=f"detail response failed validation: {exc.error_count()} errors")
    return DetailPage(items=envelope.items)


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------
class PagedListingAdapter(SourceAdapter):
    """Adapter for a newest-first paged listing API plus a batched detail call."""

    def __init__(
        self,
        client: httpx.Client,
        api_key: str | None,
        base_url: str = "https://www.googleapis.com/youtube/v3",
        timeout: float = 15.0,
        page_size: int = MAX_PAGE_SIZE,
        max_items: int = 200,
        max_pages: int = 10,
    ) -> None:
        self._client = client
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._page_size = max(1, min(page_size, MAX_PAGE_SIZE))
        self._max_items = max_items
        self._max_pages = max_pages

    @property
    def name(self) -> str:
        return "paged_api"

    @classmethod
    def from_config(cls, config: Config, client: httpx.Client) -> PagedListingAdapter:
        return cls(
            client,
            api_key=config.listing_api_key,
            base_url=config.listing_api_base_url,
            timeout=config.fetch_timeout_seconds,
            page_size=config.listing_page_size,
            max_items=config.listing_max_items,
            max_pages=config.listing_max_pages,
        )

    def _call(self, endpoint: str, params: dict[str, Any]) -> Any:
        url = f"{self._base_url}/{endpoint}"
        query = {k: v for k, v in params.items() if v is not None}
        query["key"] = self._api_key
        try:
            response = self._client.get(url, params=query, timeout=self._timeout)
        except httpx.TimeoutException as exc:
            raise TransportError(f"Timed out after {self._timeout}s calling {endpoint}") from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"Failed to call {endpoint}: {exc}") from exc

        try:
            payload = response.json()
        except ValueError:
            payload = None

        if not response.is_success:
            error = _parse_error(payload)
            detail = error.message if error else response.reason_phrase
            raise TransportError(f"HTTP {response.status_code} from {endpoint}: {detail}")
        return payload

    def list_ids(
        self, listing_id: str, mode: RunMode, last_seen_item_id: str | None
    ) -> list[tuple[str, str | None]]:
        """Page newest-first, returning (id, published) pairs that survive the stop rules.

        Stops at the first item older than the window start, at the last
        recorded item (incremental only), or at the item/page safety caps.
        """
        cutoff = mode.window.start
        collected: list[tuple[str, str | None]] = []
        page_token: str | None = None

        for page_number in range(1, self._max_pages + 1):
            result = parse_listing_response(
                self._call(
                    "playlistItems",
                    {
                        "part": "contentDetails,snippet",
                        "playlistId": listing_id,
                        "maxResults": self._page_size,
                        "pageToken": page_token,
                    },
                )
            )
            if isinstance(result, UpstreamError):
                raise TransportError(f"Listing error for {listing_id}: {result.message}")
            if isinstance(result, Unrecognized):
                logger.warning("%s: %s; treating as no items", listing_id, result.reason)
                return collected

            for item in result.items:
                item_id = item.item_id
                if not item_id:
                    continue
                published = parse_date(item.published)
                if published is not None and published < cutoff:
                    logger.debug("%s: reached cutoff at %s", listing_id, item_id)
                    return collected
                if last_seen_item_id and item_id == last_seen_item_id:
                    logger.debug("%s: reached last seen item %s", listing_id, item_id)
                    return collected
                collected.append((item_id, item.published))
                if len(collected) >= self._max_items:
                    logger.warning(
                        "%s: item cap %d reached; stopping pagination",
                        listing_id, self._max_items,
                    )
                    return collected

            page_token = result.next_page_token
            if not page_token:
                return collected
            logger.debug("%s: page %d done, continuing", listing_id, page_number)

        logger.warning("%s: page cap %d reached; stopping pagination", listing_id, self._max_pages)
        return collected

    def fetch_details(self, ids: list[str]) -> dict[str, DetailItem]:
        """Fetch full metadata for ids in fixed-size chunks."""
        details: dict[str, DetailItem] = {}
        for start in range(0, len(ids), DETAIL_CHUNK_SIZE):
            chunk = ids[start : start + DETAIL_CHUNK_SIZE]
            result = parse_detail_response(
                self._call(
                    "videos",
                    {"part": "snippet,contentDetails,status", "id": ",".join(chunk)},
                )
            )
            if isinstance(result, UpstreamError):
                raise TransportError(f"Detail error: {result.message}")
            if isinstance(result, Unrecognized):
                logger.warning("%s; treating chunk as no items", result.reason)
                continue
            for item in result.items:
                details[item.id] = item
        return details

    def fetch(self, source: SourceConfig, mode: RunMode) -> FetchResult:
        if not self._api_key:
            raise TransportError("No listing API credential configured")

        last_seen = None if mode.is_backfill else source.checkpoint.last_seen_item_id
        listed = self.list_ids(source.endpoint, mode, last_seen)
        if not listed:
            return FetchResult()

        details = self.fetch_details([item_id for item_id, _ in listed])
        entries: list[RawEntry] = []
        dropped = 0
        for item_id, listed_published in listed:
            detail = details.get(item_id)
            if detail is None or not detail.status.embeddable:
                dropped += 1
                continue
            thumbnail = detail.thumbnail_url
            entries.append(
                RawEntry(
                    title=detail.snippet.title,
                    item_id=item_id,
                    url=WATCH_URL.format(item_id),
                    published=detail.snippet.published_at or listed_published,
                    summary=detail.snippet.description or "",
                    author=detail.snippet.channel_title,
                    media_content=(
                        MediaRef(url=EMBED_URL.format(item_id), type="text/html", medium="video"),
                    ),
                    media_thumbnails=(MediaRef(url=thumbnail),) if thumbnail else (),
                    eligible=True,
                )
            )

        if dropped:
            logger.info("%s: dropped %d ineligible items", source.id, dropped)
        # Items that never came back from the detail call must stay ahead of
        # the checkpoint so the next run lists them again.
        newest = next((item_id for item_id, _ in listed if item_id in details), None)
        return FetchResult(entries=entries, newest_item_id=newest, dropped=dropped)
