from __future__ import annotations

import sqlite3
from datetime import datetime, timedelta
from typing import Any

from .storage import (
    AUDIT_PUSH,
    count_audit_results_since,
    count_documents_by_status_since,
    count_source_run_errors_since,
    list_sources,
)
from .utils import utc_now


def build_health_summary(
    conn: sqlite3.Connection,
    *,
    top_n: int = 5,
    window_hours: int = 24,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Summarize source health from last-run snapshots and recent history.

    Top error sources are ordered by last-run errors (descending), then by
    the oldest last fetch so long-stale sources surface first.
    """
    now = now or utc_now()
    since = (now - timedelta(hours=window_hours)).isoformat()
    sources = list_sources(conn)
    recent_errors = count_source_run_errors_since(conn, since)

    rows: list[dict[str, Any]] = []
    for source in sources:
        stats = source.last_run_stats or {}
        rows.append(
            {
                "source_id": source.id,
                "name": source.name,
                "is_active": source.is_active,
                "needs_review": source.needs_review,
                "review_reason": source.review_reason,
                "last_fetched_at": source.last_fetched_at,
                "last_error": source.last_error,
                "last_run": stats,
                "errors_in_window": recent_errors.get(source.id, 0),
            }
        )

    erroring = [row for row in rows if int(row["last_run"].get("errors", 0)) > 0]
    erroring.sort(key=lambda row: (-int(row["last_run"].get("errors", 0)), row["last_fetched_at"] or ""))

    totals: dict[str, int] = {}
    for row in rows:
        for key, value in row["last_run"].items():
            totals[key] = totals.get(key, 0) + int(value)

    return {
        "generated_at": now.isoformat(),
        "window_hours": window_hours,
        "sources": {
            "total": len(sources),
            "active": sum(1 for source in sources if source.is_active),
            "disabled": sum(1 for source in sources if not source.is_active),
            "needs_review": sum(1 for source in sources if source.needs_review),
        },
        "last_run_totals": totals,
        "top_errors": erroring[:top_n],
        "documents": count_documents_by_status_since(conn, since),
        "pushes": count_audit_results_since(conn, AUDIT_PUSH, since),
        "per_source": rows,
    }


def render_health_text(summary: dict[str, Any]) -> str:
    counts = summary["sources"]
    lines = [
        f"**Source health** ({summary['generated_at'][:16].replace('T', ' ')} UTC)",
        f"sources: {counts['total']} total, {counts['active']} active, "
        f"{counts['disabled']} disabled, {counts['needs_review']} need review",
    ]
    totals = summary["last_run_totals"]
    if totals:
        lines.append(
            "last runs: "
            + ", ".join(f"{key}={totals[key]}" for key in sorted(totals))
        )
    documents = summary["documents"]
    if documents:
        lines.append(
            f"documents ({summary['window_hours']}h): "
            + ", ".join(f"{key}={documents[key]}" for key in sorted(documents))
        )
    pushes = summary["pushes"]
    if pushes:
        lines.append(
            f"pushes ({summary['window_hours']}h): "
            + ", ".join(f"{key}={pushes[key]}" for key in sorted(pushes))
        )
    top = summary["top_errors"]
    if top:
        lines.append("")
        lines.append(f"Top {len(top)} erroring sources:")
        for row in top:
            errors = row["last_run"].get("errors", 0)
            lines.append(f"- {row['name']} ({row['source_id']}) errors={errors} last_error={row['last_error'] or '-'}")
    else:
        lines.append("No erroring sources.")
    return "\n".join(lines)
