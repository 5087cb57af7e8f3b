"""Application settings constants."""

from __future__ import annotations

# Container extensions that may be handed out as stream formats.
SUPPORTED_FORMAT_EXTS = ("mp4", "webm", "mkv", "avi", "mov", "m4a", "mp3", "wav")

# Stream tokens are 32 random bytes rendered as hex.
STREAM_TOKEN_BYTES = 32
STREAM_TOKEN_LENGTH = STREAM_TOKEN_BYTES * 2

DEFAULT_TOKEN_TTL_MINUTES = 30
MAX_TOKEN_TTL_MINUTES = 24 * 60
MAX_ACTIVE_TOKENS_PER_USER = 5
MAX_TOKEN_ACCESSES = 100

MAX_URL_LENGTH = 2000
MAX_FORMAT_ID_LENGTH = 50
MAX_TITLE_LENGTH = 200

# Relay chunk size for the streaming proxy.
STREAM_CHUNK_SIZE = 64 * 1024

# Health thresholds.
ACTIVE_STREAMS_WARNING = 10
ERROR_RATE_WARNING = 0.05
ERROR_RATE_CRITICAL = 0.10
QUEUE_DEPTH_WARNING_RATIO = 0.8
