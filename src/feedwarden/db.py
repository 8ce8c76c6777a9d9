from __future__ import annotations

import os
import sqlite3

from .migrations import apply_migrations


def connect_db(path: str) -> sqlite3.Connection:
    """Open the state database at ``path`` and bring its schema up to date."""
    if path != ":memory:":
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
    conn = sqlite3.connect(path, check_same_thread=False)
    if path != ":memory:":
        conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA synchronous=NORMAL")
    conn.execute("PRAGMA busy_timeout=5000")
    conn.execute("PRAGMA foreign_keys=ON")
    apply_migrations(conn)
    return conn
