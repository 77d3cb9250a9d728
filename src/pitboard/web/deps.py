"""Request dependencies for the web API: read-only DB access and trigger auth."""

from __future__ import annotations

import hmac
import sqlite3
from contextlib import contextmanager
from typing import Generator

from fastapi import Header, HTTPException, Request


@contextmanager
def get_readonly_connection(database_path: str) -> Generator[sqlite3.Connection, None, None]:
    """Open a read-only SQLite connection.

    Uses URI mode to enforce read-only access, with query_only as a second
    guard, so listing endpoints can never write while an ingestion run is
    in progress. Yields the connection and closes on exit.
    """
    conn = sqlite3.connect(f"file:{database_path}?mode=ro", uri=True, timeout=30.0)
    conn.execute("PRAGMA query_only=ON")
    conn.row_factory = sqlite3.Row
    try:
        yield conn
    finally:
        conn.close()


def require_trigger_secret(
    request: Request, authorization: str | None = Header(None)
) -> None:
    """Reject trigger calls without the configured bearer secret.

    When no secret is configured the trigger surface is open.
    """
    secret = request.app.state.config.trigger_secret
    if not secret:
        return
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(token.strip(), secret):
        raise HTTPException(status_code=401, detail="Unauthorized")
