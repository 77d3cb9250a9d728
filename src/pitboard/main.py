"""Application entry point — runs scheduler + web server in a single process."""

from __future__ import annotations

import json
import logging
import sys
import threading
from contextlib import asynccontextmanager

import uvicorn
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from pitboard.config import load_config
from pitboard.jobs import scheduled_ingestion
from pitboard.storage import init_db
from pitboard.web.app import create_app

logger = logging.getLogger("pitboard")


def _setup_logging(log_level: str, log_format: str) -> None:
    """Configure root logger based on config."""
    level = getattr(logging, log_level.upper(), logging.INFO)

    if log_format == "json":
        formatter = logging.Formatter(
            json.dumps(
                {
                    "time": "%(asctime)s",
                    "level": "%(levelname)s",
                    "logger": "%(name)s",
                    "thread": "%(threadName)s",
                    "message": "%(message)s",
                }
            )
        )
    else:
        formatter = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s (%(threadName)s): %(message)s"
        )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(level)
    root.addHandler(handler)
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))


def _build_scheduler(config, stop_event: threading.Event) -> BackgroundScheduler:
    """Create a BackgroundScheduler with the interval ingestion job."""
    scheduler = BackgroundScheduler(timezone=config.run_timezone)
    scheduler.add_job(
        scheduled_ingestion,
        trigger=IntervalTrigger(minutes=config.fetch_interval_minutes),
        args=[config, stop_event],
        id="ingestion",
        name="Incremental ingestion",
        max_instances=1,
        coalesce=True,
    )
    return scheduler


def main() -> None:
    """Load config, set up logging, and start scheduler + web server."""
    config = load_config()

    _setup_logging(config.log_level, config.log_format)

    logger.info(
        "Pitboard starting (env=%s, db=%s, interval=%dm, workers=%d)",
        config.app_env,
        config.database_path,
        config.fetch_interval_minutes,
        config.max_concurrent_sources,
    )

    init_db(config.database_path)

    stop_event = threading.Event()
    scheduler = _build_scheduler(config, stop_event)

    def _initial_ingestion():
        """Run ingestion once at startup in a background thread."""
        logger.info("Running initial ingestion")
        scheduled_ingestion(config, stop_event)

    @asynccontextmanager
    async def lifespan(app):
        logger.info("Scheduler starting")
        scheduler.start()
        # Run initial ingestion in background so web server is available immediately
        threading.Thread(target=_initial_ingestion, daemon=True).start()
        yield
        logger.info("Scheduler shutting down")
        # In-flight runs finish their current batch and stop
        stop_event.set()
        scheduler.shutdown(wait=False)

    app = create_app(config, lifespan=lifespan)

    uvicorn.run(app, host=config.web_host, port=config.web_port)


if __name__ == "__main__":
    main()
