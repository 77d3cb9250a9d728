"""Tests for pitboard.ingestion.images — the main-image strategy chain."""

from __future__ import annotations

import pytest

from pitboard.ingestion.images import (
    FALLBACK_TAG,
    NO_IMAGE_TAG,
    BareImageUrlStrategy,
    ImageChain,
    ImageChoice,
    ImageStrategy,
    ScoredContentImageStrategy,
    StructuredImageStrategy,
    SummaryFirstImageStrategy,
    is_denied_image_url,
    score_image,
)
from pitboard.ingestion.normalize import MediaRef, RawEntry
from pitboard.ingestion.sources import SourceConfig

SOURCE = SourceConfig(id="s", name="S", kind="feed", endpoint="https://s/feed")


def _img(src: str, extra: str = "") -> str:
    return f'<img src="{src}" {extra}>'


class TestDenyList:
    @pytest.mark.parametrize("url", [
        "https://site.com/favicon.png",
        "https://site.com/assets/logo-dark.png",
        "https://ads.site.com/banner-728x90.jpg",
        "https://site.com/pixel.gif",
        "https://s.w.org/images/core/emoji/14.0.0/72x72/1f3c1.png",
        "https://site.com/uploads/photo-thumb-1.jpg",
        "data:image/gif;base64,R0lGODlhAQABAAAAACw=",
    ])
    def test_denied(self, url):
        assert is_denied_image_url(url)

    def test_scaled_thumbnail_allowed(self):
        assert not is_denied_image_url("https://site.com/uploads/photo-thumb-scaled.jpg")

    def test_article_image_allowed(self):
        assert not is_denied_image_url("https://site.com/wp-content/uploads/2025/06/holeshot.jpg")


class TestScoreImage:
    def test_upload_path_beats_favicon(self):
        favicon = "https://site.com/favicon.ico"
        upload = "https://site.com/wp-content/uploads/2025/06/a.jpg"
        assert score_image(_img(upload), upload) > score_image(_img(favicon), favicon)

    def test_featured_class_bonus(self):
        url = "https://site.com/p/a.jpg"
        featured = score_image(_img(url, 'class="wp-post-image"'), url)
        assert featured - score_image(_img(url), url) >= 100

    def test_tracking_pixel_rejected(self):
        url = "https://track.site.com/1x1.gif"
        assert score_image(_img(url), url) <= -1000


class TestStrategies:
    def test_structured_prefers_media_content_image(self):
        entry = RawEntry(
            media_content=(
                MediaRef("https://cdn/clip.mp4", type="video/mp4"),
                MediaRef("https://cdn/hero.jpg", medium="image"),
            ),
            media_thumbnails=(MediaRef("https://cdn/thumb.jpg"),),
        )
        assert StructuredImageStrategy().try_extract(entry, SOURCE) == ImageChoice(
            "https://cdn/hero.jpg", "media:content"
        )

    def test_structured_image_enclosure(self):
        entry = RawEntry(enclosures=(MediaRef("https://cdn/e.jpg", type="image/jpeg"),))
        assert StructuredImageStrategy().try_extract(entry, SOURCE).tag == "enclosure"

    def test_structured_ignores_audio_enclosure(self):
        entry = RawEntry(enclosures=(MediaRef("https://cdn/e.mp3", type="audio/mpeg"),))
        assert StructuredImageStrategy().try_extract(entry, SOURCE) is None

    def test_summary_first_skips_denied(self):
        entry = RawEntry(summary=_img("https://s/logo.png") + _img("https://s/uploads/a.jpg"))
        choice = SummaryFirstImageStrategy().try_extract(entry, SOURCE)
        assert choice == ImageChoice("https://s/uploads/a.jpg", "description-content-image")

    def test_summary_first_plain_path(self):
        entry = RawEntry(summary=_img("https://s/p/a.jpg"))
        assert SummaryFirstImageStrategy().try_extract(entry, SOURCE).tag == (
            "description-first-image"
        )

    def test_scored_content_picks_highest(self):
        entry = RawEntry(content=(
            _img("https://s/favicon.png")
            + _img("https://s/p/plain.jpg")
            + _img("https://s/wp-content/uploads/2025/06/main.jpg", 'class="wp-post-image"')
        ))
        choice = ScoredContentImageStrategy().try_extract(entry, SOURCE)
        assert choice == ImageChoice(
            "https://s/wp-content/uploads/2025/06/main.jpg", "content-main-image"
        )

    def test_scored_content_low_confidence_tag(self):
        entry = RawEntry(content=_img("https://s/p/plain.jpg"))
        assert ScoredContentImageStrategy().try_extract(entry, SOURCE).tag == (
            "content-first-image"
        )

    def test_scored_content_ties_keep_earliest(self):
        entry = RawEntry(content=_img("https://s/p/one.jpg") + _img("https://s/p/two.jpg"))
        assert ScoredContentImageStrategy().try_extract(entry, SOURCE).url == "https://s/p/one.jpg"

    def test_scored_content_only_rejected_candidates(self):
        entry = RawEntry(content=_img("https://s/favicon.ico"))
        assert ScoredContentImageStrategy().try_extract(entry, SOURCE) is None

    def test_bare_url(self):
        entry = RawEntry(content="See https://s/uploads/shot.png for details")
        assert BareImageUrlStrategy().try_extract(entry, SOURCE) == ImageChoice(
            "https://s/uploads/shot.png", "content-url-image"
        )


class TestImageChain:
    def test_tracking_pixel_only_falls_through_to_source_default(self):
        entry = RawEntry(content=_img("https://track.site.com/1x1.gif"))
        source = SourceConfig(
            id="s", name="S", kind="feed", endpoint="https://s/feed",
            default_image="https://s/default.png",
        )
        assert ImageChain().select(entry, source) == ImageChoice(
            "https://s/default.png", FALLBACK_TAG
        )

    def test_feed_image_preferred_over_source_default(self):
        entry = RawEntry(feed_image="https://s/channel.png")
        source = SourceConfig(
            id="s", name="S", kind="feed", endpoint="https://s/feed",
            default_image="https://s/default.png",
        )
        assert ImageChain().select(entry, source).url == "https://s/channel.png"

    def test_nothing_found(self):
        assert ImageChain().select(RawEntry(), SOURCE) == ImageChoice(None, NO_IMAGE_TAG)

    def test_order_is_respected(self):
        entry = RawEntry(
            summary=_img("https://s/p/summary.jpg"),
            media_thumbnails=(MediaRef("https://s/thumbnail-field.jpg"),),
        )
        assert ImageChain().select(entry, SOURCE).tag == "media:thumbnail"

    def test_custom_strategies(self):
        class _Always(ImageStrategy):
            def try_extract(self, entry, source):
                return ImageChoice("https://fixed/x.jpg", "fixed")

        chain = ImageChain([_Always()])
        assert chain.select(RawEntry(), SOURCE).tag == "fixed"
        assert len(chain.strategies) == 1
