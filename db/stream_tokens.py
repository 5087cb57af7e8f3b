"""Write-through SQLite persistence for stream tokens (hashes only)."""

from __future__ import annotations

import sqlite3

from db.migrations import ensure_stream_tokens_table
from engine.stream_tokens import StreamToken

_COLUMNS = (
    "token_hash",
    "id",
    "user_id",
    "video_url",
    "format_id",
    "title",
    "platform",
    "issued_at",
    "expires_at",
    "usage_count",
    "rate_limit_count",
    "last_access",
    "used",
    "used_at",
    "revoked",
    "revoked_at",
    "ip_address",
    "user_agent",
    "resumable",
)

_BOOL_COLUMNS = {"used", "revoked", "resumable"}


def _row_to_token(row: sqlite3.Row) -> StreamToken:
    values = {}
    for column in _COLUMNS:
        value = row[column]
        values[column] = bool(value) if column in _BOOL_COLUMNS else value
    return StreamToken(**values)


def _token_to_row(token: StreamToken) -> tuple:
    row = []
    for column in _COLUMNS:
        value = getattr(token, column)
        row.append(int(value) if column in _BOOL_COLUMNS else value)
    return tuple(row)


class StreamTokenStore:
    def __init__(self, db_path: str) -> None:
        self.db_path = db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=30)
        conn.row_factory = sqlite3.Row
        ensure_stream_tokens_table(conn)
        return conn

    def ensure_schema(self) -> None:
        conn = self._connect()
        conn.close()

    def upsert(self, token: StreamToken) -> None:
        placeholders = ", ".join("?" for _ in _COLUMNS)
        updates = ", ".join(f"{column}=excluded.{column}" for column in _COLUMNS if column != "token_hash")
        conn = self._connect()
        try:
            conn.execute(
                f"""
                INSERT INTO stream_tokens ({", ".join(_COLUMNS)})
                VALUES ({placeholders})
                ON CONFLICT(token_hash) DO UPDATE SET {updates}
                """,
                _token_to_row(token),
            )
            conn.commit()
        finally:
            conn.close()

    def get(self, token_hash: str) -> StreamToken | None:
        conn = self._connect()
        try:
            cur = conn.execute("SELECT * FROM stream_tokens WHERE token_hash=?", (token_hash,))
            row = cur.fetchone()
            return _row_to_token(row) if row else None
        finally:
            conn.close()

    def load_active(self, now: float) -> list[StreamToken]:
        """Tokens that are still usable at ``now``."""
        conn = self._connect()
        try:
            cur = conn.execute(
                """
                SELECT * FROM stream_tokens
                WHERE expires_at > ? AND used=0 AND revoked=0
                ORDER BY issued_at ASC
                """,
                (now,),
            )
            return [_row_to_token(row) for row in cur.fetchall()]
        finally:
            conn.close()

    def delete_many(self, token_hashes) -> int:
        hashes = [h for h in token_hashes if h]
        if not hashes:
            return 0
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            cur.executemany("DELETE FROM stream_tokens WHERE token_hash=?", [(h,) for h in hashes])
            conn.commit()
            return cur.rowcount if cur.rowcount is not None else len(hashes)
        finally:
            conn.close()
