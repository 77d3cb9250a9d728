"""Main-image selection — an ordered chain of independent extraction strategies.

Each strategy answers one question ("is there an image of this kind?") and
returns an :class:`ImageChoice` or None. :class:`ImageChain` asks them in
order and stops at the first answer. The ``tag`` on every choice records
which strategy produced it so downstream consumers can tell a real article
image from a generic fallback.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pitboard.ingestion.normalize import MediaRef, RawEntry
    from pitboard.ingestion.sources import SourceConfig

NO_IMAGE_TAG = "none"
FALLBACK_TAG = "feed-logo-fallback"

# Candidates scoring at or below this are never selected.
REJECTION_FLOOR = -1000
# Scores above this mark a confident content-image pick.
MAIN_IMAGE_THRESHOLD = 50

_IMG_SRC_RE = re.compile(r"<img[^>]+src=[\"']([^\"']+)[\"'][^>]*>", re.IGNORECASE)
_BARE_IMAGE_URL_RE = re.compile(
    r"https?://[^\"'\s<>]+\.(?:jpg|jpeg|png|webp|gif)(?:\?[^\"'\s<>]*)?", re.IGNORECASE
)
_IMAGE_PATH_RE = re.compile(r"\.(?:jpg|jpeg|png|webp|gif|avif)(?:$|\?)", re.IGNORECASE)
_YEAR_MONTH_RE = re.compile(r"/20\d{2}/\d{2}/")
_THUMBNAIL_NAME_RE = re.compile(r"[-_](thumb|thumbnail|tiny|mini|small|xs)[-_.\d]", re.IGNORECASE)
_BANNER_DIMENSIONS_RE = re.compile(r"\d{3,4}x\d{2,3}")
_ICON_DIMENSIONS_RE = re.compile(r"[-_/](1x1|16x16|32x32|48x48|64x64|88x31|80x15)[-_.]")
_SOCIAL_RE = re.compile(r"facebook|twitter|instagram|youtube|linkedin|pinterest")
_GENERIC_ALT_RE = re.compile(r"alt=[\"'][^\"']*(?:logo|icon|banner|avatar)", re.IGNORECASE)
_ALT_TEXT_RE = re.compile(r"alt=[\"']([^\"']+)[\"']", re.IGNORECASE)

_DENY_SUBSTRINGS = (
    "favicon", "fav-", "fav.", "icon-", "/icon", "icons/", ".ico",
    "logo", "badge", "avatar",
    "banner", "advertisement", "sponsor",
    "button", "widget", "tracking", "pixel",
    "spacer", "blank", "clear", "transparent",
    "share", "social", "facebook", "twitter", "instagram", "youtube",
    "newsletter", "subscribe", "email", "rss",
    "1x1", "16x16", "32x32", "48x48", "64x64", "88x31", "80x15",
    "s.w.org/images/core/emoji",
    "980x250", "728x90", "300x250",
    "-ad-", "_ad_", "/ad/",
)

_CONTENT_PATH_MARKERS = (
    "wp-content/uploads/", "/uploads/", "/content/", "/images/",
    "/media/", "/assets/", "/files/", "/photos/",
)


@dataclass(frozen=True)
class ImageChoice:
    url: str | None
    tag: str


def is_denied_image_url(url: str) -> bool:
    """True when the URL looks like chrome rather than an article image.

    Covers icons, logos, ads, tracking pixels, social buttons, thumbnails,
    banner dimensions, and data URIs.
    """
    if url.startswith("data:"):
        return True
    lowered = url.lower()
    if any(pattern in lowered for pattern in _DENY_SUBSTRINGS):
        return True
    if _THUMBNAIL_NAME_RE.search(lowered) and "-scaled" not in lowered:
        return True
    return bool(_BANNER_DIMENSIONS_RE.search(lowered))


def has_content_path(url: str) -> bool:
    """True when the URL path suggests an article-specific upload."""
    return any(marker in url for marker in _CONTENT_PATH_MARKERS) or bool(
        _YEAR_MONTH_RE.search(url)
    )


def score_image(full_tag: str, url: str) -> int:
    """Score an ``<img>`` candidate. Higher is more likely the article image."""
    score = 0
    lowered = url.lower()

    if "favicon" in lowered:
        score -= 1000
    if "icon" in lowered:
        score -= 500
    if "logo" in lowered:
        score -= 300
    if "badge" in lowered:
        score -= 300
    if "avatar" in lowered:
        score -= 300
    if "banner" in lowered and "article" not in lowered:
        score -= 200
    if "advertisement" in lowered or "sponsor" in lowered:
        score -= 500
    if "button" in lowered:
        score -= 400
    if "widget" in lowered:
        score -= 400
    if "tracking" in lowered or "pixel" in lowered:
        score -= 1000
    if "spacer" in lowered or "blank" in lowered or "clear" in lowered:
        score -= 800
    if "transparent" in lowered:
        score -= 800
    if _SOCIAL_RE.search(lowered):
        score -= 400
    if "newsletter" in lowered or "subscribe" in lowered:
        score -= 300
    if "email" in lowered or "rss" in lowered:
        score -= 300
    if _ICON_DIMENSIONS_RE.search(lowered):
        score -= 1000
    if _THUMBNAIL_NAME_RE.search(lowered) and "-scaled" not in lowered:
        score -= 200
    if url.startswith("data:"):
        score -= 1000

    if "wp-content/uploads/" in url:
        score += 50
    elif "/uploads/" in url:
        score += 30
    if "/content/" in url or "/images/" in url:
        score += 30
    if "/media/" in url or "/assets/" in url:
        score += 30
    if "/files/" in url or "/photos/" in url:
        score += 20
    if _YEAR_MONTH_RE.search(url):
        score += 40

    if 'class="wp-post-image"' in full_tag:
        score += 100
    if "featured" in full_tag:
        score += 80
    if "attachment-" in full_tag:
        score += 60
    if "size-" in full_tag:
        score += 40
    if "aligncenter" in full_tag or "alignnone" in full_tag:
        score += 20
    if re.search(r'class="[^"]*article', full_tag, re.IGNORECASE):
        score += 50
    if re.search(r'class="[^"]*content', full_tag, re.IGNORECASE):
        score += 30
    if re.search(r'class="[^"]*post', full_tag, re.IGNORECASE):
        score += 40

    alt = _ALT_TEXT_RE.search(full_tag)
    if alt and alt.group(1).strip() and not _GENERIC_ALT_RE.search(full_tag):
        score += 20

    return score


class ImageStrategy(ABC):
    """One rule for finding an entry's main image."""

    @abstractmethod
    def try_extract(self, entry: RawEntry, source: SourceConfig) -> ImageChoice | None:
        """Return a choice, or None to let the next strategy try."""


def _is_image_ref(ref: MediaRef) -> bool:
    if ref.medium:
        return ref.medium.lower() == "image"
    if ref.type:
        return ref.type.lower().startswith("image/")
    return bool(_IMAGE_PATH_RE.search(ref.url))


class StructuredImageStrategy(ImageStrategy):
    """Explicit image fields: media:content, media:thumbnail, itunes:image, enclosure."""

    def try_extract(self, entry: RawEntry, source: SourceConfig) -> ImageChoice | None:
        for ref in entry.media_content:
            if ref.url and _is_image_ref(ref):
                return ImageChoice(ref.url, "media:content")
        for ref in entry.media_thumbnails:
            if ref.url:
                return ImageChoice(ref.url, "media:thumbnail")
        if entry.itunes_image:
            return ImageChoice(entry.itunes_image, "itunes:image")
        for ref in entry.enclosures:
            if ref.url and ref.type and ref.type.lower().startswith("image/"):
                return ImageChoice(ref.url, "enclosure")
        return None


class SummaryFirstImageStrategy(ImageStrategy):
    """First non-denied ``<img>`` in the short-form body.

    Syndicated summaries put the lead image first, so no scoring is done.
    """

    def try_extract(self, entry: RawEntry, source: SourceConfig) -> ImageChoice | None:
        for match in _IMG_SRC_RE.finditer(entry.summary or ""):
            url = match.group(1)
            if is_denied_image_url(url):
                continue
            tag = (
                "description-content-image"
                if has_content_path(url)
                else "description-first-image"
            )
            return ImageChoice(url, tag)
        return None


class ScoredContentImageStrategy(ImageStrategy):
    """Highest-scoring ``<img>`` in the long-form body."""

    def try_extract(self, entry: RawEntry, source: SourceConfig) -> ImageChoice | None:
        best_url: str | None = None
        best_score = REJECTION_FLOOR
        for match in _IMG_SRC_RE.finditer(entry.content or ""):
            url = match.group(1)
            score = score_image(match.group(0), url)
            # Strict comparison keeps the earliest candidate on ties.
            if score > best_score:
                best_url, best_score = url, score
        if best_url is None:
            return None
        tag = "content-main-image" if best_score > MAIN_IMAGE_THRESHOLD else "content-first-image"
        return ImageChoice(best_url, tag)


class BareImageUrlStrategy(ImageStrategy):
    """Any image-file URL in the combined body text, tagged or not."""

    def try_extract(self, entry: RawEntry, source: SourceConfig) -> ImageChoice | None:
        combined = f"{entry.summary or ''} {entry.content or ''}"
        for match in _BARE_IMAGE_URL_RE.finditer(combined):
            url = match.group(0)
            if not is_denied_image_url(url):
                return ImageChoice(url, "content-url-image")
        return None


class SourceDefaultImageStrategy(ImageStrategy):
    """The feed's own image, else the source's configured default."""

    def try_extract(self, entry: RawEntry, source: SourceConfig) -> ImageChoice | None:
        url = entry.feed_image or source.default_image
        if url:
            return ImageChoice(url, FALLBACK_TAG)
        return None


def default_strategies() -> list[ImageStrategy]:
    return [
        StructuredImageStrategy(),
        SummaryFirstImageStrategy(),
        ScoredContentImageStrategy(),
        BareImageUrlStrategy(),
        SourceDefaultImageStrategy(),
    ]


class ImageChain:
    """Ordered strategies; the first to answer wins."""

    def __init__(self, strategies: list[ImageStrategy] | None = None) -> None:
        self._strategies = strategies if strategies is not None else default_strategies()

    @property
    def strategies(self) -> list[ImageStrategy]:
        return list(self._strategies)

    def select(self, entry: RawEntry, source: SourceConfig) -> ImageChoice:
        for strategy in self._strategies:
            choice = strategy.try_extract(entry, source)
            if choice is not None and choice.url:
                return choice
        return ImageChoice(None, NO_IMAGE_TAG)
