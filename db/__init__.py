"""Database helpers for Streamgate."""

from db.stream_tokens import StreamTokenStore

__all__ = ["StreamTokenStore"]
