from __future__ import annotations

import logging
import os
import sqlite3
from datetime import datetime, timezone

from fastapi import Depends, FastAPI, HTTPException, Request
from pydantic import BaseModel

from .config import Config, ConfigError, load_config
from .db import connect_db
from .health import build_health_summary
from .orchestrator import Orchestrator
from .storage import get_source, list_source_runs, list_sources, set_source_active
from .utils import configure_logging, log_event

app = FastAPI(title="feedwarden Admin API")


class IngestRequest(BaseModel):
    source_ids: list[str] | None = None
    dry_run: bool = False


class SourceActiveRequest(BaseModel):
    is_active: bool


def _require_admin_token(request: Request) -> None:
    token = os.environ.get("FW_ADMIN_TOKEN")
    if not token:
        return
    if request.headers.get("X-Admin-Token") != token:
        raise HTTPException(status_code=401, detail="unauthorized")


@app.get("/")
def root() -> dict[str, str]:
    return {"service": "feedwarden Admin API"}


@app.get("/health")
def health() -> dict[str, object]:
    return {
        "ok": True,
        "version": _get_version(),
        "time": datetime.now(tz=timezone.utc).isoformat(),
    }


@app.post("/ingest", dependencies=[Depends(_require_admin_token)])
def ingest(payload: IngestRequest) -> dict[str, object]:
    """Run one ingestion pass synchronously and return its aggregate report.

    Per-source failures are part of the report; only a run that cannot start
    at all is answered with a 500.
    """
    logger = logging.getLogger("feedwarden.admin")
    try:
        config = load_config()
        conn = connect_db(config.paths.state_db)
        orchestrator = _build_orchestrator(conn, config)
        report = orchestrator.run(payload.source_ids or None, dry_run=payload.dry_run)
    except (ConfigError, sqlite3.Error, OSError) as exc:
        log_event(logger, logging.ERROR, "ingest_failed", error=str(exc))
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    log_event(
        logger,
        logging.INFO,
        "ingest_triggered",
        run_id=report.run_id,
        sources=len(report.sources),
        dry_run=payload.dry_run,
    )
    return report.to_dict()


@app.get("/sources/health")
def sources_health() -> list[dict[str, object]]:
    conn = _get_conn()
    rows = []
    for source in list_sources(conn):
        runs = list_source_runs(conn, source.id, limit=1)
        last_run = runs[0] if runs else None
        rows.append(
            {
                "id": source.id,
                "name": source.name,
                "is_active": source.is_active,
                "priority": source.priority,
                "needs_review": source.needs_review,
                "review_reason": source.review_reason,
                "zero_fetch_streak": source.zero_fetch_streak,
                "last_fetched_at": source.last_fetched_at,
                "last_error": source.last_error,
                "last_run_stats": source.last_run_stats or {},
                "last_run_state": last_run["state"] if last_run else None,
                "last_run_duration_ms": last_run["duration_ms"] if last_run else None,
            }
        )
    return rows


@app.get("/health/summary")
def health_summary(top_n: int | None = None, window_hours: int | None = None) -> dict[str, object]:
    config = _get_config()
    conn = connect_db(config.paths.state_db)
    return build_health_summary(
        conn,
        top_n=top_n or config.health.top_n,
        window_hours=window_hours or config.health.window_hours,
    )


@app.put("/sources/{source_id}/active", dependencies=[Depends(_require_admin_token)])
def sources_set_active(source_id: str, payload: SourceActiveRequest) -> dict[str, object]:
    conn = _get_conn()
    if not set_source_active(conn, source_id, payload.is_active):
        raise HTTPException(status_code=404, detail="source not found")
    source = get_source(conn, source_id)
    log_event(
        logging.getLogger("feedwarden.admin"),
        logging.INFO,
        "source_active_set",
        source_id=source_id,
        is_active=payload.is_active,
    )
    return {
        "id": source_id,
        "is_active": source.is_active if source else payload.is_active,
        "needs_review": source.needs_review if source else False,
    }


def _build_orchestrator(conn: sqlite3.Connection, config: Config) -> Orchestrator:
    return Orchestrator(conn, config, logger=logging.getLogger("feedwarden.orchestrator"))


def _setup_logging() -> None:
    configure_logging("feedwarden.admin")


_setup_logging()


def _get_version() -> str:
    try:
        from importlib.metadata import version

        return version("feedwarden")
    except Exception:  # noqa: BLE001
        return "unknown"


def _get_config() -> Config:
    try:
        return load_config()
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _get_conn() -> sqlite3.Connection:
    return connect_db(_get_config().paths.state_db)
