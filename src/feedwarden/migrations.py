from __future__ import annotations

import logging
import sqlite3
from typing import Callable

from .utils import utc_now_iso

Migration = Callable[[sqlite3.Connection], None]


def apply_migrations(conn: sqlite3.Connection) -> None:
    logger = logging.getLogger("feedwarden.migrations")
    conn.execute("BEGIN IMMEDIATE")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version TEXT PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )
    applied = {
        row[0]
        for row in conn.execute("SELECT version FROM schema_migrations").fetchall()
    }
    try:
        for version, migration in _get_migrations():
            if version in applied:
                logger.debug("migration_skipped version=%s", version)
                continue
            migration(conn)
            conn.execute(
                "INSERT OR IGNORE INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                (version, utc_now_iso()),
            )
            logger.info("migration_applied version=%s", version)
        conn.commit()
    except Exception:
        conn.rollback()
        raise


def applied_versions(conn: sqlite3.Connection) -> list[str]:
    if not _table_exists(conn, "schema_migrations"):
        return []
    rows = conn.execute("SELECT version FROM schema_migrations ORDER BY version").fetchall()
    return [row[0] for row in rows]


def _migration_initial_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS sources (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            kind TEXT NOT NULL,
            url TEXT NOT NULL UNIQUE,
            crawl_config_json TEXT NOT NULL DEFAULT '{}',
            is_active INTEGER NOT NULL DEFAULT 1,
            priority INTEGER NOT NULL DEFAULT 0,
            fetch_interval_minutes INTEGER NOT NULL DEFAULT 60,
            last_fetched_at TEXT NULL,
            last_error TEXT NULL,
            last_run_stats_json TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS documents (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            source_id TEXT NOT NULL REFERENCES sources(id),
            url TEXT NOT NULL,
            canonical_url TEXT NOT NULL,
            title TEXT NOT NULL,
            published_at TEXT NULL,
            observed_at TEXT NOT NULL,
            raw_text TEXT NOT NULL,
            status TEXT NOT NULL,
            digest_json TEXT NULL,
            skip_reason TEXT NULL,
            attachments_json TEXT NOT NULL DEFAULT '[]',
            pushed_at TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE(source_id, canonical_url)
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_documents_status ON documents(status, created_at)"
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS audit_logs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            document_id INTEGER NULL REFERENCES documents(id),
            source_id TEXT NULL,
            action TEXT NOT NULL,
            result TEXT NOT NULL,
            reason TEXT NULL,
            reviewer TEXT NOT NULL,
            is_important INTEGER NOT NULL DEFAULT 0,
            before_json TEXT NULL,
            after_json TEXT NULL,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_audit_logs_source_action ON audit_logs(source_id, action, created_at)"
    )


def _migration_source_runs(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS source_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            source_id TEXT NOT NULL REFERENCES sources(id),
            run_id TEXT NOT NULL,
            started_at TEXT NOT NULL,
            finished_at TEXT NOT NULL,
            state TEXT NOT NULL,
            error TEXT NULL,
            stats_json TEXT NOT NULL,
            duration_ms INTEGER NOT NULL DEFAULT 0
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_source_runs_source_time ON source_runs(source_id, finished_at)"
    )


def _migration_source_review_fields(conn: sqlite3.Connection) -> None:
    _add_columns(
        conn,
        "sources",
        {
            "needs_review": "INTEGER NOT NULL DEFAULT 0",
            "review_reason": "TEXT NULL",
            "zero_fetch_streak": "INTEGER NOT NULL DEFAULT 0",
        },
    )


def _migration_document_push_tracking(conn: sqlite3.Connection) -> None:
    _add_columns(
        conn,
        "documents",
        {
            "push_error": "TEXT NULL",
            "push_attempts": "INTEGER NOT NULL DEFAULT 0",
        },
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_documents_push_retry ON documents(source_id, pushed_at, push_error)"
    )


def _add_columns(conn: sqlite3.Connection, table: str, columns: dict[str, str]) -> None:
    if not _table_exists(conn, table):
        return
    existing = _table_columns(conn, table)
    for column, definition in columns.items():
        if column in existing:
            continue
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")


def _table_exists(conn: sqlite3.Connection, table: str) -> bool:
    row = conn.execute(
        "SELECT name FROM sqlite_master WHERE type = 'table' AND name = ?", (table,)
    ).fetchone()
    return row is not None


def _table_columns(conn: sqlite3.Connection, table: str) -> set[str]:
    return {row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}


def _get_migrations() -> list[tuple[str, Migration]]:
    return [
        ("001_initial_schema", _migration_initial_schema),
        ("002_source_runs", _migration_source_runs),
        ("003_source_review_fields", _migration_source_review_fields),
        ("004_document_push_tracking", _migration_document_push_tracking),
    ]
