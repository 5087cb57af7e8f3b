import logging
import math
import threading
import time
import zlib
from collections import deque
from dataclasses import dataclass

from engine.errors import RateLimited

logger = logging.getLogger(__name__)

_STRIPES = 16

LIMIT_TOKEN_CREATE = "token_create"
LIMIT_STREAM_TOKEN = "stream_token"
LIMIT_STREAM_IP = "stream_ip"


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after: float
    reset_at: float


class SlidingWindowLimiter:
    """Per-key sliding window over the timestamps of accepted requests.

    Keys are spread across lock stripes so unrelated callers do not contend.
    """

    def __init__(self, limit, window_seconds, *, clock=None, stripes=_STRIPES):
        self.limit = int(limit)
        self.window = float(window_seconds)
        self.clock = clock or time.monotonic
        self._stripes = [(threading.Lock(), {}) for _ in range(max(1, stripes))]

    def _stripe(self, key):
        idx = zlib.crc32(str(key).encode("utf-8")) % len(self._stripes)
        return self._stripes[idx]

    def _prune(self, hits, now):
        cutoff = now - self.window
        while hits and hits[0] <= cutoff:
            hits.popleft()

    def _decision(self, hits, now, allowed):
        remaining = max(0, self.limit - len(hits))
        reset_at = (hits[0] + self.window) if hits else now
        retry_after = 0.0 if allowed else max(0.0, reset_at - now)
        return RateDecision(
            allowed=allowed,
            limit=self.limit,
            remaining=remaining,
            retry_after=retry_after,
            reset_at=reset_at,
        )

    def try_acquire(self, key):
        now = self.clock()
        lock, buckets = self._stripe(key)
        with lock:
            hits = buckets.get(key)
            if hits is None:
                hits = buckets[key] = deque()
            self._prune(hits, now)
            if len(hits) >= self.limit:
                return self._decision(hits, now, False)
            hits.append(now)
            return self._decision(hits, now, True)

    def refund(self, key):
        """Give back the most recent unit taken for ``key``."""
        lock, buckets = self._stripe(key)
        with lock:
            hits = buckets.get(key)
            if hits:
                hits.pop()
                if not hits:
                    del buckets[key]

    def peek(self, key):
        now = self.clock()
        lock, buckets = self._stripe(key)
        with lock:
            hits = buckets.get(key) or deque()
            self._prune(hits, now)
            return self._decision(hits, now, len(hits) < self.limit)

    def cleanup(self):
        now = self.clock()
        removed = 0
        for lock, buckets in self._stripes:
            with lock:
                for key in list(buckets):
                    hits = buckets[key]
                    self._prune(hits, now)
                    if not hits:
                        del buckets[key]
                        removed += 1
        return removed

    def key_count(self):
        total = 0
        for lock, buckets in self._stripes:
            with lock:
                total += len(buckets)
        return total


def _limiter_from_config(cfg, name, default_limit, default_window, clock):
    entry = (cfg or {}).get(name) or {}
    return SlidingWindowLimiter(
        entry.get("limit", default_limit),
        entry.get("window_seconds", default_window),
        clock=clock,
    )


class RateLimiter:
    """Token issuance per user, and streaming per token and per client IP."""

    def __init__(self, config=None, *, clock=None):
        cfg = (config or {}).get("rate_limits") or {}
        self.limiters = {
            LIMIT_TOKEN_CREATE: _limiter_from_config(cfg, LIMIT_TOKEN_CREATE, 20, 3600, clock),
            LIMIT_STREAM_TOKEN: _limiter_from_config(cfg, LIMIT_STREAM_TOKEN, 30, 60, clock),
            LIMIT_STREAM_IP: _limiter_from_config(cfg, LIMIT_STREAM_IP, 60, 60, clock),
        }

    def _enforce(self, name, key, message):
        decision = self.limiters[name].try_acquire(key)
        if not decision.allowed:
            logger.info("Rate limit hit: limiter=%s", name)
            raise RateLimited(
                message,
                retry_after=max(1, math.ceil(decision.retry_after)),
                limit=decision.limit,
                remaining=0,
            )
        return decision

    def check_token_create(self, user_id):
        return self._enforce(LIMIT_TOKEN_CREATE, str(user_id), "Too many stream token requests. Please try again later.")

    def refund_token_create(self, user_id):
        self.limiters[LIMIT_TOKEN_CREATE].refund(str(user_id))

    def check_stream(self, token_key, client_ip):
        """Acquire both streaming limiters; a rejection by the second refunds the first."""
        self._enforce(LIMIT_STREAM_IP, client_ip or "unknown", "Too many stream requests from this address.")
        try:
            return self._enforce(LIMIT_STREAM_TOKEN, token_key, "Too many requests for this stream token.")
        except RateLimited:
            self.limiters[LIMIT_STREAM_IP].refund(client_ip or "unknown")
            raise

    def refund_stream(self, token_key, client_ip):
        self.limiters[LIMIT_STREAM_TOKEN].refund(token_key)
        self.limiters[LIMIT_STREAM_IP].refund(client_ip or "unknown")

    def cleanup(self):
        return sum(limiter.cleanup() for limiter in self.limiters.values())

    def stats(self):
        return {
            name: {"limit": limiter.limit, "window_seconds": limiter.window, "keys": limiter.key_count()}
            for name, limiter in self.limiters.items()
        }
