"""FastAPI application factory for the Pitboard trigger and status API."""

from __future__ import annotations

from fastapi import FastAPI

from pitboard.config import Config
from pitboard.web.routes import health_router, router


def create_app(config: Config, lifespan=None) -> FastAPI:
    """Build and return a configured FastAPI application."""
    app = FastAPI(title="Pitboard", docs_url="/api/docs", lifespan=lifespan)
    app.state.config = config
    app.include_router(health_router)
    app.include_router(router, prefix="/api/v1")
    return app
