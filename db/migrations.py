"""SQLite migrations for stream token storage."""

from __future__ import annotations

import sqlite3


def ensure_stream_tokens_table(conn: sqlite3.Connection) -> None:
    """Ensure the stream token table and its indexes exist."""
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS stream_tokens (
            token_hash TEXT PRIMARY KEY,
            id TEXT NOT NULL,
            user_id TEXT NOT NULL,
            video_url TEXT NOT NULL,
            format_id TEXT NOT NULL,
            title TEXT,
            platform TEXT,
            issued_at REAL NOT NULL,
            expires_at REAL NOT NULL,
            usage_count INTEGER NOT NULL DEFAULT 0,
            rate_limit_count INTEGER NOT NULL DEFAULT 0,
            last_access REAL,
            used INTEGER NOT NULL DEFAULT 0,
            used_at REAL,
            revoked INTEGER NOT NULL DEFAULT 0,
            revoked_at REAL,
            ip_address TEXT,
            user_agent TEXT,
            resumable INTEGER NOT NULL DEFAULT 0
        )
        """
    )
    cur.execute(
        "CREATE INDEX IF NOT EXISTS idx_stream_tokens_user "
        "ON stream_tokens (user_id, expires_at)"
    )
    cur.execute(
        "CREATE INDEX IF NOT EXISTS idx_stream_tokens_expires_at "
        "ON stream_tokens (expires_at)"
    )
    conn.commit()
