"""Configuration loading and validation."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


@dataclass(frozen=True)
class Config:
    """Application configuration. All values sourced from environment variables."""

    # Required
    database_path: str

    # Optional — Upstream
    listing_api_key: str | None = None
    listing_api_base_url: str = "https://www.googleapis.com/youtube/v3"
    sources_config_path: str = "./config/sources.json"
    fetch_timeout_seconds: int = 15
    conditional_max_age_hours: int = 12

    # Optional — Ingestion
    fetch_interval_minutes: int = 60
    upsert_batch_size: int = 10
    backfill_batch_size: int = 20
    default_backfill_days: int = 7
    incremental_days_back: int = 1
    listing_page_size: int = 50
    listing_max_items: int = 200
    listing_max_pages: int = 10
    max_concurrent_sources: int = 4
    excerpt_length: int = 200
    run_timezone: str = "UTC"
    source_failure_alert_threshold: int = 3

    # Optional — Trigger surface
    trigger_secret: str | None = None
    web_host: str = "0.0.0.0"
    web_port: int = 8080

    # Optional — Application
    log_level: str = "INFO"
    log_format: str = "json"
    app_env: str = "production"


_REQUIRED_VARS = [
    "DATABASE_PATH",
]


def load_config(env_path: str | Path | None = None) -> Config:
    """Load configuration from environment variables.

    Loads a .env file if present (for local development), then validates
    that all required variables are set. Raises ValueError listing any
    missing variables.
    """
    load_dotenv(dotenv_path=env_path)

    missing = [var for var in _REQUIRED_VARS if not os.environ.get(var)]
    if missing:
        raise ValueError(
            f"Missing required environment variables: {', '.join(missing)}"
        )

    return Config(
        # Required
        database_path=os.environ["DATABASE_PATH"],
        # Optional — Upstream
        listing_api_key=os.environ.get("LISTING_API_KEY") or None,
        listing_api_base_url=os.environ.get(
            "LISTING_API_BASE_URL", "https://www.googleapis.com/youtube/v3"
        ),
        sources_config_path=os.environ.get("SOURCES_CONFIG_PATH", "./config/sources.json"),
        fetch_timeout_seconds=int(os.environ.get("FETCH_TIMEOUT_SECONDS", "15")),
        conditional_max_age_hours=int(os.environ.get("CONDITIONAL_MAX_AGE_HOURS", "12")),
        # Optional — Ingestion
        fetch_interval_minutes=int(os.environ.get("FETCH_INTERVAL_MINUTES", "60")),
        upsert_batch_size=int(os.environ.get("UPSERT_BATCH_SIZE", "10")),
        backfill_batch_size=int(os.environ.get("BACKFILL_BATCH_SIZE", "20")),
        default_backfill_days=int(os.environ.get("DEFAULT_BACKFILL_DAYS", "7")),
        incremental_days_back=int(os.environ.get("INCREMENTAL_DAYS_BACK", "1")),
        listing_page_size=int(os.environ.get("LISTING_PAGE_SIZE", "50")),
        listing_max_items=int(os.environ.get("LISTING_MAX_ITEMS", "200")),
        listing_max_pages=int(os.environ.get("LISTING_MAX_PAGES", "10")),
        max_concurrent_sources=int(os.environ.get("MAX_CONCURRENT_SOURCES", "4")),
        excerpt_length=int(os.environ.get("EXCERPT_LENGTH", "200")),
        run_timezone=os.environ.get("RUN_TIMEZONE", "UTC"),
        source_failure_alert_threshold=int(
            os.environ.get("SOURCE_FAILURE_ALERT_THRESHOLD", "3")
        ),
        # Optional — Trigger surface
        trigger_secret=os.environ.get("TRIGGER_SECRET") or None,
        web_host=os.environ.get("WEB_HOST", "0.0.0.0"),
        web_port=int(os.environ.get("WEB_PORT", "8080")),
        # Optional — Application
        log_level=os.environ.get("LOG_LEVEL", "INFO"),
        log_format=os.environ.get("LOG_FORMAT", "json"),
        app_env=os.environ.get("APP_ENV", "production"),
    )
