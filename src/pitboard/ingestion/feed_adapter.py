"""Syndication feed (RSS/Atom/podcast) transport adapter."""

from __future__ import annotations

import logging
import xml.sax
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Callable

import feedparser
import httpx

from pitboard.ingestion.adapter import FetchResult, SourceAdapter
from pitboard.ingestion.errors import ParseError, TransportError
from pitboard.ingestion.normalize import MediaRef, RawEntry, parse_date
from pitboard.ingestion.sources import ConditionalToken

if TYPE_CHECKING:
    from pitboard.config import Config
    from pitboard.ingestion.sources import SourceConfig
    from pitboard.ingestion.window import RunMode

logger = logging.getLogger(__name__)

USER_AGENT = "Pitboard Aggregator/1.0"


def _published_string(entry: dict) -> str | None:
    """Pick the entry's publish timestamp as a string the normalizer can parse."""
    raw = entry.get("published") or entry.get("updated")
    if raw and parse_date(raw) is not None:
        return raw
    # feedparser understands more date formats than we do; use its tuple
    parsed = entry.get("published_parsed") or entry.get("updated_parsed")
    if parsed:
        try:
            return datetime(*parsed[:6], tzinfo=timezone.utc).isoformat()
        except (TypeError, ValueError):
            pass
    return raw


def _refs(items: list | None, url_key: str = "url") -> tuple[MediaRef, ...]:
    refs: list[MediaRef] = []
    for item in items or []:
        url = item.get(url_key) or item.get("url") or item.get("href")
        if url:
            refs.append(MediaRef(url=url, type=item.get("type"), medium=item.get("medium")))
    return tuple(refs)


def _entry_to_raw(entry: dict, feed_image: str | None) -> RawEntry:
    content = ""
    if entry.get("content"):
        content = entry["content"][0].get("value", "") or ""
    image = entry.get("image")
    itunes_image = image.get("href") if isinstance(image, dict) else None
    return RawEntry(
        title=entry.get("title"),
        item_id=entry.get("id"),
        url=entry.get("link"),
        published=_published_string(entry),
        summary=entry.get("summary", "") or "",
        content=content,
        author=entry.get("author"),
        enclosures=_refs(entry.get("enclosures"), url_key="href"),
        media_content=_refs(entry.get("media_content")),
        media_thumbnails=_refs(entry.get("media_thumbnail")),
        itunes_image=itunes_image,
        feed_image=feed_image,
    )


def parse_feed(document: bytes | str) -> list[RawEntry]:
    """Parse a syndication document into RawEntries in document order.

    Raises ParseError for documents that are not well-formed XML or are not
    recognizable as a feed. A malformed document is rejected whole rather
    than partially ingested.
    """
    parsed = feedparser.parse(document)
    exc = parsed.get("bozo_exception")
    if parsed.get("bozo") and isinstance(exc, xml.sax.SAXException):
        raise ParseError(f"Malformed feed document: {exc}")
    if not parsed.get("version") and not parsed.entries:
        raise ParseError("Document is not a recognizable syndication feed")

    feed_image = None
    image = parsed.feed.get("image")
    if isinstance(image, dict):
        feed_image = image.get("href") or image.get("url")

    return [_entry_to_raw(entry, feed_image) for entry in parsed.entries]


class FeedAdapter(SourceAdapter):
    """Adapter for RSS, Atom, and podcast feeds with conditional GET."""

    early_stop_on_duplicate = True

    def __init__(
        self,
        client: httpx.Client,
        timeout: float = 15.0,
        conditional_max_age_hours: int = 12,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._client = client
        self._timeout = timeout
        self._conditional_max_age = timedelta(hours=conditional_max_age_hours)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def name(self) -> str:
        return "feed"

    @classmethod
    def from_config(cls, config: Config, client: httpx.Client) -> FeedAdapter:
        return cls(
            client,
            timeout=config.fetch_timeout_seconds,
            conditional_max_age_hours=config.conditional_max_age_hours,
        )

    def conditional_headers(self, source: SourceConfig, mode: RunMode) -> dict[str, str]:
        """Freshness headers for an incremental fetch, or none at all.

        Backfill always fetches in full. Incremental runs also fetch in full
        when the last successful fetch is older than the configured age, so a
        stuck upstream validator cannot hide new content indefinitely.
        """
        if mode.is_backfill:
            return {}
        checkpoint = source.checkpoint
        token = checkpoint.conditional_token
        if not token:
            return {}
        last_fetched = parse_date(checkpoint.last_fetched_at)
        if last_fetched is None or self._clock() - last_fetched > self._conditional_max_age:
            logger.info("%s: conditional token is stale; forcing full fetch", source.id)
            return {}
        return token.headers()

    def fetch(self, source: SourceConfig, mode: RunMode) -> FetchResult:
        conditional = self.conditional_headers(source, mode)
        headers = {"User-Agent": USER_AGENT, **conditional}

        try:
            response = self._client.get(
                source.endpoint,
                headers=headers,
                timeout=self._timeout,
                follow_redirects=True,
            )
        except httpx.TimeoutException as exc:
            raise TransportError(
                f"Timed out after {self._timeout}s fetching {source.endpoint}"
            ) from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"Failed to fetch {source.endpoint}: {exc}") from exc

        if response.status_code == 304:
            if conditional:
                logger.info("%s: not modified", source.id)
                return FetchResult(not_modified=True)
            raise TransportError(f"Unexpected 304 from {source.endpoint} on a full fetch")
        if not response.is_success:
            raise TransportError(f"HTTP {response.status_code} from {source.endpoint}")

        entries = parse_feed(response.content)
        token = ConditionalToken(
            etag=response.headers.get("etag"),
            last_modified=response.headers.get("last-modified"),
        )
        logger.debug("%s: parsed %d entries", source.id, len(entries))
        return FetchResult(entries=entries, conditional_token=token or None)
