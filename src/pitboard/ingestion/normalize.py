"""Content normalizer — turn raw upstream entries into canonical ContentItems."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from html import unescape
from typing import TYPE_CHECKING, Callable
from urllib.parse import urljoin, urlparse

from pitboard.ingestion.dedup import compute_identity_key

if TYPE_CHECKING:
    from pitboard.ingestion.images import ImageChain
    from pitboard.ingestion.sources import SourceConfig

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 300
DEFAULT_EXCERPT_LENGTH = 200
ELLIPSIS = "..."

_IMG_TAG_RE = re.compile(r"<img[^>]*>", re.IGNORECASE)
_HTML_TAG_RE = re.compile(r"<[^>]+>")
_WHITESPACE_RE = re.compile(r"\s+")
_MEDIA_EXT = r"\.(?:mp3|m4a|aac|ogg|oga|wav|mp4|m4v|mov|webm)"
_MEDIA_URL_RE = re.compile(
    r"https?://[^\s\"'<>]+" + _MEDIA_EXT + r"(?:\?[^\s\"'<>]*)?", re.IGNORECASE
)
_MEDIA_PATH_RE = re.compile(_MEDIA_EXT + r"(?:$|\?)", re.IGNORECASE)
_PLAYABLE_PREFIXES = ("audio/", "video/")


@dataclass(frozen=True)
class MediaRef:
    """A structured media reference on an entry (enclosure, media:content, ...)."""

    url: str
    type: str | None = None
    medium: str | None = None


@dataclass(frozen=True)
class RawEntry:
    """Semi-parsed upstream item emitted by a transport adapter. Never persisted."""

    title: str | None = None
    item_id: str | None = None
    url: str | None = None
    published: str | None = None
    summary: str = ""
    content: str = ""
    author: str | None = None
    enclosures: tuple[MediaRef, ...] = ()
    media_content: tuple[MediaRef, ...] = ()
    media_thumbnails: tuple[MediaRef, ...] = ()
    itunes_image: str | None = None
    feed_image: str | None = None
    eligible: bool = True


@dataclass(frozen=True)
class ContentItem:
    """Canonical persisted record."""

    identity_key: str
    source_id: str
    content_type: str
    title: str
    excerpt: str
    published_at: str
    canonical_url: str | None
    media_url: str | None
    image_url: str | None
    image_source: str
    author: str | None = None
    date_defaulted: bool = False


def parse_date(value: str | None) -> datetime | None:
    """Parse an RFC 2822 or ISO 8601 timestamp into an aware UTC datetime.

    Returns None when the value is missing or unparsable.
    """
    if not value or not value.strip():
        return None
    value = value.strip()
    parsed: datetime | None = None
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        parsed = None
    if parsed is None:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def clean_excerpt(html: str | None, limit: int = DEFAULT_EXCERPT_LENGTH) -> str:
    """Strip markup, decode entities, collapse whitespace, and bound the length.

    Truncated excerpts end with an ellipsis and never exceed ``limit``.
    """
    if not html:
        return ""
    text = _IMG_TAG_RE.sub("", html)
    text = _HTML_TAG_RE.sub(" ", text)
    text = unescape(text).replace("\xa0", " ")
    text = _WHITESPACE_RE.sub(" ", text).strip()
    if len(text) <= limit:
        return text
    return text[: max(limit - len(ELLIPSIS), 0)].rstrip() + ELLIPSIS


def normalize_url(url: str | None, base_url: str | None = None) -> str | None:
    """Decode entity-escaped URLs, upgrade to https, and resolve relative paths."""
    if not url:
        return None
    url = unescape(str(url)).strip()
    if not url:
        return None
    if url.startswith("data:"):
        return url
    if url.startswith("//"):
        url = "https:" + url
    elif url.startswith("http://"):
        url = "https://" + url[len("http://"):]
    elif not urlparse(url).scheme:
        if not base_url:
            return url
        url = urljoin(normalize_url(base_url) or base_url, url)
    return url


def _is_playable(ref: MediaRef) -> bool:
    if ref.type and ref.type.lower().startswith(_PLAYABLE_PREFIXES):
        return True
    return (ref.medium or "").lower() in ("audio", "video")


def extract_media_url(entry: RawEntry) -> str | None:
    """Find the entry's audio/video URL.

    Explicit fields win, in order: typed enclosures, media:content, untyped
    enclosures with a media file extension, a link that is itself a media
    file. Falls back to scanning the body text for a media file URL.
    """
    for ref in entry.enclosures:
        if _is_playable(ref):
            return normalize_url(ref.url, entry.url)
    for ref in entry.media_content:
        if _is_playable(ref):
            return normalize_url(ref.url, entry.url)
    for ref in entry.enclosures:
        if not ref.type and _MEDIA_PATH_RE.search(ref.url):
            return normalize_url(ref.url, entry.url)
    if entry.url and _MEDIA_PATH_RE.search(entry.url):
        return normalize_url(entry.url)
    match = _MEDIA_URL_RE.search(f"{entry.summary} {entry.content}")
    if match:
        return normalize_url(match.group(0), entry.url)
    return None


class Normalizer:
    """Converts RawEntry objects into ContentItems for one source at a time.

    The image chain and clock are injected so each run (and each test) owns
    its own instances.
    """

    def __init__(
        self,
        image_chain: ImageChain,
        excerpt_length: int = DEFAULT_EXCERPT_LENGTH,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._image_chain = image_chain
        self._excerpt_length = excerpt_length
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def published_at(self, entry: RawEntry) -> tuple[datetime, bool]:
        """Return the entry's publish time, or ingestion time when absent.

        The second element reports whether the default was substituted.
        """
        parsed = parse_date(entry.published)
        if parsed is None:
            return self._clock(), True
        return parsed, False

    def normalize(
        self,
        entry: RawEntry,
        source: SourceConfig,
        identity_key: str | None = None,
    ) -> ContentItem:
        published, defaulted = self.published_at(entry)
        if defaulted:
            logger.debug(
                "No usable publish date on %r from %s; using ingestion time",
                entry.title, source.id,
            )

        canonical_url = normalize_url(entry.url)
        choice = self._image_chain.select(entry, source)
        image_url = normalize_url(choice.url, canonical_url) if choice.url else None

        if source.content_type in ("podcast", "video"):
            media_url = extract_media_url(entry)
        else:
            media_url = image_url

        title = unescape(entry.title or "").strip() or "Untitled"
        author = (entry.author or "").strip() or None
        if author is None and source.content_type == "article":
            author = "Staff Writer"

        return ContentItem(
            identity_key=identity_key or compute_identity_key(entry, source),
            source_id=source.id,
            content_type=source.content_type,
            title=title[:MAX_TITLE_LENGTH],
            excerpt=clean_excerpt(entry.summary or entry.content, self._excerpt_length),
            published_at=published.isoformat(),
            canonical_url=canonical_url,
            media_url=media_url,
            image_url=image_url,
            image_source=choice.tag,
            author=author,
            date_defaulted=defaulted,
        )
