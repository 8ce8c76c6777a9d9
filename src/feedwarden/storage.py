from __future__ import annotations

import json
import sqlite3
from typing import Any, Iterable

from .config import SourceDefinition
from .models import (
    Admission,
    Attachment,
    CrawlConfig,
    Document,
    DocumentStatus,
    Source,
    SourceKind,
)
from .utils import isoformat_utc, json_dumps, parse_iso, utc_now_iso

AUDIT_ADMIT = "ADMIT"
AUDIT_PUSH_GATE = "PUSH_GATE"
AUDIT_PUSH = "PUSH"
AUDIT_STOP_LOSS = "STOP_LOSS"
PUSH_RESULT_PUSHED = "PUSHED"
PUSH_RESULT_ERROR = "ERROR"

_SOURCE_COLUMNS = """
    id, name, kind, url, crawl_config_json, is_active, priority, fetch_interval_minutes,
    last_fetched_at, last_error, last_run_stats_json, needs_review, review_reason,
    zero_fetch_streak
"""

_DOCUMENT_COLUMNS = """
    id, source_id, url, canonical_url, title, published_at, observed_at, raw_text,
    status, digest_json, skip_reason, attachments_json, pushed_at, push_error, push_attempts
"""

RETRYABLE_STATUSES = (DocumentStatus.PENDING.value, DocumentStatus.APPROVED.value)


def upsert_source(conn: sqlite3.Connection, definition: SourceDefinition) -> str:
    """Insert or update a source keyed by its root URL.

    Returns ``"created"`` or ``"updated"``. The active flag of an existing
    source is left alone so imports never undo a quarantine.
    """
    now = utc_now_iso()
    row = conn.execute("SELECT id FROM sources WHERE url = ?", (definition.url,)).fetchone()
    crawl_json = json_dumps(definition.crawl.to_dict())
    if row:
        conn.execute(
            """
            UPDATE sources
            SET name = ?, kind = ?, crawl_config_json = ?, priority = ?,
                fetch_interval_minutes = ?, updated_at = ?
            WHERE id = ?
            """,
            (
                definition.name,
                definition.kind.value,
                crawl_json,
                definition.priority,
                definition.fetch_interval_minutes,
                now,
                row[0],
            ),
        )
        conn.commit()
        return "updated"
    existing = conn.execute("SELECT url FROM sources WHERE id = ?", (definition.id,)).fetchone()
    if existing:
        raise ValueError(f"source id {definition.id} already used by {existing[0]}")
    conn.execute(
        """
        INSERT INTO sources
            (id, name, kind, url, crawl_config_json, is_active, priority,
             fetch_interval_minutes, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            definition.id,
            definition.name,
            definition.kind.value,
            definition.url,
            crawl_json,
            1 if definition.is_active else 0,
            definition.priority,
            definition.fetch_interval_minutes,
            now,
            now,
        ),
    )
    conn.commit()
    return "created"


def set_source_active(conn: sqlite3.Connection, source_id: str, active: bool) -> bool:
    cursor = conn.execute(
        """
        UPDATE sources
        SET is_active = ?, needs_review = CASE WHEN ? = 1 THEN 0 ELSE needs_review END,
            zero_fetch_streak = CASE WHEN ? = 1 THEN 0 ELSE zero_fetch_streak END,
            updated_at = ?
        WHERE id = ?
        """,
        (1 if active else 0, 1 if active else 0, 1 if active else 0, utc_now_iso(), source_id),
    )
    conn.commit()
    return cursor.rowcount > 0


def get_source(conn: sqlite3.Connection, source_id: str) -> Source | None:
    row = conn.execute(
        f"SELECT {_SOURCE_COLUMNS} FROM sources WHERE id = ?", (source_id,)
    ).fetchone()
    return _row_to_source(row) if row else None


def list_sources(conn: sqlite3.Connection, active_only: bool = False) -> list[Source]:
    sql = f"SELECT {_SOURCE_COLUMNS} FROM sources"
    if active_only:
        sql += " WHERE is_active = 1"
    sql += " ORDER BY priority DESC, id"
    return [_row_to_source(row) for row in conn.execute(sql).fetchall()]


def list_due_sources(
    conn: sqlite3.Connection,
    now_iso: str,
    source_ids: Iterable[str] | None = None,
) -> list[Source]:
    """Active sources whose fetch interval has elapsed, highest priority first.

    Naming ``source_ids`` restricts the selection to those sources and skips
    the interval check.
    """
    now = parse_iso(now_iso)
    wanted = set(source_ids) if source_ids else None
    due: list[Source] = []
    for source in list_sources(conn, active_only=True):
        if wanted is not None:
            if source.id in wanted:
                due.append(source)
            continue
        if source.last_fetched_at is None:
            due.append(source)
            continue
        elapsed = now - parse_iso(source.last_fetched_at)
        if elapsed.total_seconds() >= source.fetch_interval_minutes * 60:
            due.append(source)
    return due


def update_source_after_run(
    conn: sqlite3.Connection,
    source_id: str,
    *,
    last_fetched_at: str,
    last_error: str | None,
    stats: dict[str, int],
    is_active: bool,
    needs_review: bool,
    review_reason: str | None,
    zero_fetch_streak: int,
) -> None:
    conn.execute(
        """
        UPDATE sources
        SET last_fetched_at = ?, last_error = ?, last_run_stats_json = ?, is_active = ?,
            needs_review = ?, review_reason = ?, zero_fetch_streak = ?, updated_at = ?
        WHERE id = ?
        """,
        (
            last_fetched_at,
            last_error,
            json_dumps(stats),
            1 if is_active else 0,
            1 if needs_review else 0,
            review_reason,
            zero_fetch_streak,
            utc_now_iso(),
            source_id,
        ),
    )
    conn.commit()


def load_canonical_urls(conn: sqlite3.Connection, source_id: str) -> set[str]:
    rows = conn.execute(
        "SELECT canonical_url FROM documents WHERE source_id = ?", (source_id,)
    ).fetchall()
    return {row[0] for row in rows}


def insert_document(conn: sqlite3.Connection, source_id: str, admission: Admission) -> int | None:
    """Persist an admitted or too-old document; returns None if it already exists."""
    candidate = admission.candidate
    now = utc_now_iso()
    status = admission.status or DocumentStatus.PENDING
    cursor = conn.execute(
        """
        INSERT OR IGNORE INTO documents
            (source_id, url, canonical_url, title, published_at, observed_at, raw_text,
             status, skip_reason, attachments_json, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            source_id,
            candidate.url,
            admission.canonical_url,
            candidate.title,
            isoformat_utc(candidate.published_at),
            isoformat_utc(candidate.observed_at),
            candidate.raw_text,
            status.value,
            admission.skip_reason,
            json_dumps([{"name": a.name, "url": a.url} for a in candidate.attachments]),
            now,
            now,
        ),
    )
    conn.commit()
    if cursor.rowcount == 0:
        return None
    return int(cursor.lastrowid)


def get_document(conn: sqlite3.Connection, document_id: int) -> Document | None:
    row = conn.execute(
        f"SELECT {_DOCUMENT_COLUMNS} FROM documents WHERE id = ?", (document_id,)
    ).fetchone()
    return _row_to_document(row) if row else None


def list_documents(
    conn: sqlite3.Connection,
    source_id: str | None = None,
    status: DocumentStatus | None = None,
    limit: int = 100,
) -> list[Document]:
    clauses = []
    params: list[Any] = []
    if source_id:
        clauses.append("source_id = ?")
        params.append(source_id)
    if status:
        clauses.append("status = ?")
        params.append(status.value)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    params.append(limit)
    rows = conn.execute(
        f"SELECT {_DOCUMENT_COLUMNS} FROM documents {where} ORDER BY id DESC LIMIT ?",
        params,
    ).fetchall()
    return [_row_to_document(row) for row in rows]


def list_retry_documents(conn: sqlite3.Connection, source_id: str) -> list[Document]:
    """Documents whose last delivery failed and that are still pushable."""
    rows = conn.execute(
        f"""
        SELECT {_DOCUMENT_COLUMNS} FROM documents
        WHERE source_id = ? AND pushed_at IS NULL AND push_error IS NOT NULL
          AND status IN (?, ?)
        ORDER BY id
        """,
        (source_id, *RETRYABLE_STATUSES),
    ).fetchall()
    return [_row_to_document(row) for row in rows]


def mark_document_pushed(conn: sqlite3.Connection, document_id: int, pushed_at: str) -> None:
    conn.execute(
        """
        UPDATE documents
        SET pushed_at = ?, push_error = NULL, push_attempts = push_attempts + 1, updated_at = ?
        WHERE id = ?
        """,
        (pushed_at, utc_now_iso(), document_id),
    )
    conn.commit()


def mark_document_push_failed(conn: sqlite3.Connection, document_id: int, reason: str) -> None:
    conn.execute(
        """
        UPDATE documents
        SET push_error = ?, push_attempts = push_attempts + 1, updated_at = ?
        WHERE id = ?
        """,
        (reason, utc_now_iso(), document_id),
    )
    conn.commit()


def update_document_digest(conn: sqlite3.Connection, document_id: int, digest: dict[str, Any]) -> None:
    conn.execute(
        "UPDATE documents SET digest_json = ?, updated_at = ? WHERE id = ?",
        (json_dumps(digest), utc_now_iso(), document_id),
    )
    conn.commit()


def list_documents_missing_digest(conn: sqlite3.Connection, limit: int = 20) -> list[Document]:
    rows = conn.execute(
        f"""
        SELECT {_DOCUMENT_COLUMNS} FROM documents
        WHERE digest_json IS NULL AND status IN (?, ?)
        ORDER BY id DESC
        LIMIT ?
        """,
        (*RETRYABLE_STATUSES, limit),
    ).fetchall()
    return [_row_to_document(row) for row in rows]


def insert_audit(
    conn: sqlite3.Connection,
    *,
    action: str,
    result: str,
    reviewer: str,
    document_id: int | None = None,
    source_id: str | None = None,
    reason: str | None = None,
    is_important: bool = False,
    before: dict[str, Any] | None = None,
    after: dict[str, Any] | None = None,
    created_at: str | None = None,
) -> int:
    cursor = conn.execute(
        """
        INSERT INTO audit_logs
            (document_id, source_id, action, result, reason, reviewer, is_important,
             before_json, after_json, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            document_id,
            source_id,
            action,
            result,
            reason,
            reviewer,
            1 if is_important else 0,
            json_dumps(before) if before is not None else None,
            json_dumps(after) if after is not None else None,
            created_at or utc_now_iso(),
        ),
    )
    conn.commit()
    return int(cursor.lastrowid)


def list_audits(
    conn: sqlite3.Connection,
    *,
    source_id: str | None = None,
    action: str | None = None,
    limit: int = 200,
) -> list[dict[str, Any]]:
    clauses = []
    params: list[Any] = []
    if source_id:
        clauses.append("source_id = ?")
        params.append(source_id)
    if action:
        clauses.append("action = ?")
        params.append(action)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    params.append(limit)
    rows = conn.execute(
        f"""
        SELECT id, document_id, source_id, action, result, reason, reviewer, is_important,
               before_json, after_json, created_at
        FROM audit_logs {where}
        ORDER BY id
        LIMIT ?
        """,
        params,
    ).fetchall()
    return [
        {
            "id": row[0],
            "document_id": row[1],
            "source_id": row[2],
            "action": row[3],
            "result": row[4],
            "reason": row[5],
            "reviewer": row[6],
            "is_important": bool(row[7]),
            "before": json.loads(row[8]) if row[8] else None,
            "after": json.loads(row[9]) if row[9] else None,
            "created_at": row[10],
        }
        for row in rows
    ]


def count_recent_pushes(conn: sqlite3.Connection, source_id: str, since_iso: str) -> int:
    row = conn.execute(
        """
        SELECT COUNT(*) FROM audit_logs
        WHERE source_id = ? AND action = ? AND result = ? AND created_at >= ?
        """,
        (source_id, AUDIT_PUSH, PUSH_RESULT_PUSHED, since_iso),
    ).fetchone()
    return int(row[0]) if row else 0


def record_source_run(
    conn: sqlite3.Connection,
    *,
    source_id: str,
    run_id: str,
    started_at: str,
    finished_at: str,
    state: str,
    error: str | None,
    stats: dict[str, int],
    duration_ms: int,
) -> None:
    conn.execute(
        """
        INSERT INTO source_runs
            (source_id, run_id, started_at, finished_at, state, error, stats_json, duration_ms)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (source_id, run_id, started_at, finished_at, state, error, json_dumps(stats), duration_ms),
    )
    conn.commit()


def list_source_runs(conn: sqlite3.Connection, source_id: str, limit: int = 20) -> list[dict[str, Any]]:
    rows = conn.execute(
        """
        SELECT run_id, started_at, finished_at, state, error, stats_json, duration_ms
        FROM source_runs
        WHERE source_id = ?
        ORDER BY id DESC
        LIMIT ?
        """,
        (source_id, limit),
    ).fetchall()
    return [
        {
            "run_id": row[0],
            "started_at": row[1],
            "finished_at": row[2],
            "state": row[3],
            "error": row[4],
            "stats": json.loads(row[5]) if row[5] else {},
            "duration_ms": row[6],
        }
        for row in rows
    ]


def count_source_run_errors_since(conn: sqlite3.Connection, since_iso: str) -> dict[str, int]:
    counts: dict[str, int] = {}
    rows = conn.execute(
        "SELECT source_id, stats_json FROM source_runs WHERE finished_at >= ?",
        (since_iso,),
    ).fetchall()
    for source_id, stats_json in rows:
        stats = json.loads(stats_json) if stats_json else {}
        counts[source_id] = counts.get(source_id, 0) + int(stats.get("errors", 0))
    return counts


def count_documents_by_status_since(conn: sqlite3.Connection, since_iso: str) -> dict[str, int]:
    rows = conn.execute(
        "SELECT status, COUNT(*) FROM documents WHERE created_at >= ? GROUP BY status",
        (since_iso,),
    ).fetchall()
    return {row[0]: int(row[1]) for row in rows}


def count_audit_results_since(conn: sqlite3.Connection, action: str, since_iso: str) -> dict[str, int]:
    rows = conn.execute(
        """
        SELECT result, COUNT(*) FROM audit_logs
        WHERE action = ? AND created_at >= ?
        GROUP BY result
        """,
        (action, since_iso),
    ).fetchall()
    return {row[0]: int(row[1]) for row in rows}


def count_table(conn: sqlite3.Connection, table: str) -> int:
    row = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()
    return int(row[0]) if row else 0


def document_snapshot(document: Document) -> dict[str, Any]:
    return {
        "id": document.id,
        "status": document.status.value,
        "canonical_url": document.canonical_url,
        "skip_reason": document.skip_reason,
        "pushed_at": document.pushed_at,
        "push_error": document.push_error,
    }


def source_snapshot(source: Source) -> dict[str, Any]:
    return {
        "is_active": source.is_active,
        "last_error": source.last_error,
        "needs_review": source.needs_review,
        "zero_fetch_streak": source.zero_fetch_streak,
    }


def _row_to_source(row: tuple) -> Source:
    crawl_data = json.loads(row[4]) if row[4] else {}
    return Source(
        id=row[0],
        name=row[1],
        kind=SourceKind(row[2]),
        url=row[3],
        crawl=CrawlConfig.from_dict(crawl_data),
        is_active=bool(row[5]),
        priority=int(row[6]),
        fetch_interval_minutes=int(row[7]),
        last_fetched_at=row[8],
        last_error=row[9],
        last_run_stats=json.loads(row[10]) if row[10] else None,
        needs_review=bool(row[11]),
        review_reason=row[12],
        zero_fetch_streak=int(row[13] or 0),
    )


def _row_to_document(row: tuple) -> Document:
    attachments = json.loads(row[11]) if row[11] else []
    return Document(
        id=int(row[0]),
        source_id=row[1],
        url=row[2],
        canonical_url=row[3],
        title=row[4],
        published_at=row[5],
        observed_at=row[6],
        raw_text=row[7],
        status=DocumentStatus(row[8]),
        digest=json.loads(row[9]) if row[9] else None,
        skip_reason=row[10],
        attachments=tuple(Attachment(name=item["name"], url=item["url"]) for item in attachments),
        pushed_at=row[12],
        push_error=row[13],
        push_attempts=int(row[14] or 0),
    )
