"""Ingestion pipeline — source fetching, normalization, and deduplication."""

from pitboard.ingestion.feed_adapter import FeedAdapter
from pitboard.ingestion.listing_adapter import PagedListingAdapter
from pitboard.ingestion.registry import register_adapter

register_adapter("feed", FeedAdapter)
register_adapter("paged_api", PagedListingAdapter)
