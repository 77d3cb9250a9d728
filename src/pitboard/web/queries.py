"""Read-only query functions for the web API."""

from __future__ import annotations

import json

from pitboard.web.deps import get_readonly_connection


# ---------------------------------------------------------------------------
# list_sources
# ---------------------------------------------------------------------------
def list_sources(database_path: str, active_only: bool = False) -> list[dict]:
    """Return registered sources with checkpoint and failure-streak state."""
    where = "WHERE s.is_active = 1 " if active_only else ""
    with get_readonly_connection(database_path) as conn:
        rows = conn.execute(
            "SELECT s.id, s.name, s.kind, s.endpoint, s.content_type, s.is_active, "
            "s.retention_days, s.last_seen_item_id, s.last_fetched_at, "
            "COALESCE(e.consecutive_failures, 0) AS consecutive_failures, "
            "e.last_error, e.last_failed_at, e.last_succeeded_at, "
            "(SELECT COUNT(*) FROM content_items c WHERE c.source_id = s.id) AS item_count "
            "FROM sources s LEFT JOIN source_errors e ON e.source_id = s.id "
            f"{where}ORDER BY s.id",
        ).fetchall()

    return [
        {
            "id": r["id"],
            "name": r["name"],
            "kind": r["kind"],
            "endpoint": r["endpoint"],
            "content_type": r["content_type"],
            "is_active": bool(r["is_active"]),
            "retention_days": r["retention_days"],
            "last_seen_item_id": r["last_seen_item_id"],
            "last_fetched_at": r["last_fetched_at"],
            "consecutive_failures": r["consecutive_failures"],
            "last_error": r["last_error"],
            "last_failed_at": r["last_failed_at"],
            "last_succeeded_at": r["last_succeeded_at"],
            "item_count": r["item_count"],
        }
        for r in rows
    ]


# ---------------------------------------------------------------------------
# list_pipeline_runs
# ---------------------------------------------------------------------------
def list_pipeline_runs(
    database_path: str,
    run_type: str | None = None,
    page: int = 1,
    per_page: int = 50,
) -> tuple[list[dict], int]:
    """Return a paginated list of pipeline runs, newest first."""
    offset = (page - 1) * per_page
    where = ""
    params: list = []
    if run_type:
        where = "WHERE run_type = ? "
        params.append(run_type)

    with get_readonly_connection(database_path) as conn:
        total = conn.execute(
            f"SELECT COUNT(*) FROM pipeline_runs {where}", params
        ).fetchone()[0]

        rows = conn.execute(
            "SELECT id, run_type, mode, started_at, finished_at, status, result, error "
            f"FROM pipeline_runs {where}ORDER BY started_at DESC LIMIT ? OFFSET ?",
            [*params, per_page, offset],
        ).fetchall()

    runs = []
    for r in rows:
        runs.append({
            "id": r["id"],
            "run_type": r["run_type"],
            "mode": r["mode"],
            "started_at": r["started_at"],
            "finished_at": r["finished_at"],
            "status": r["status"],
            "result": json.loads(r["result"]),
            "error": r["error"],
        })

    return runs, total
