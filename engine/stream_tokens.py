"""Short-lived, single-purpose stream tokens.

A token value is 32 random bytes rendered as 64 hex characters. It is handed
to the caller exactly once; the manager keeps only its sha256 hash. Tokens
are bound to one URL, one format id and one owner.
"""

from __future__ import annotations

import hashlib
import logging
import re
import secrets
import threading
import time
from dataclasses import dataclass, replace
from typing import Optional
from uuid import uuid4

from config.settings import STREAM_TOKEN_BYTES, STREAM_TOKEN_LENGTH
from engine.errors import AuthorizationError, NotFoundError, TokenQuotaExceeded, ValidationError
from engine.extractor import detect_platform
from engine.logging_setup import log_event, redact_token

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(rf"^[0-9a-f]{{{STREAM_TOKEN_LENGTH}}}$", re.IGNORECASE)


@dataclass(frozen=True)
class ClientInfo:
    ip: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class StreamToken:
    token_hash: str
    id: str
    user_id: str
    video_url: str
    format_id: str
    issued_at: float
    expires_at: float
    title: Optional[str] = None
    platform: Optional[str] = None
    usage_count: int = 0
    rate_limit_count: int = 0
    last_access: Optional[float] = None
    used: bool = False
    used_at: Optional[float] = None
    revoked: bool = False
    revoked_at: Optional[float] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    resumable: bool = False
    claimed: bool = False

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def is_valid(self, now: float) -> bool:
        return not self.revoked and not self.used and not self.is_expired(now)

    def fingerprint_matches(self, ip: Optional[str], user_agent: Optional[str] = None, *, check_user_agent: bool = False) -> bool:
        if self.ip_address and ip and self.ip_address != ip:
            return False
        if check_user_agent and self.user_agent and user_agent and self.user_agent != user_agent:
            return False
        return True

    def closed_at(self) -> float:
        return self.used_at or self.revoked_at or self.expires_at

    def to_public_dict(self) -> dict:
        return {
            "id": self.id,
            "videoUrl": self.video_url,
            "formatId": self.format_id,
            "title": self.title,
            "issuedAt": self.issued_at,
            "expiresAt": self.expires_at,
            "usageCount": self.usage_count,
            "lastAccess": self.last_access,
            "used": self.used,
            "revoked": self.revoked,
            "resumable": self.resumable,
        }


def is_valid_format(value) -> bool:
    return isinstance(value, str) and bool(_TOKEN_RE.match(value))


def hash_token(value: str) -> str:
    return hashlib.sha256(value.lower().encode("ascii")).hexdigest()


def generate_token_value() -> str:
    return secrets.token_hex(STREAM_TOKEN_BYTES)


class StreamTokenManager:
    def __init__(self, config=None, *, store=None, clock=None, metrics=None):
        cfg = (config or {}).get("tokens") or {}
        self.default_ttl_minutes = float(cfg.get("ttl_minutes", 30))
        self.max_ttl_minutes = float(cfg.get("max_ttl_minutes", 1440))
        self.max_active_per_user = int(cfg.get("max_active_per_user", 5))
        self.max_accesses = int(cfg.get("max_accesses", 100))
        self.bind_ip = bool(cfg.get("bind_ip", False))
        self.bind_ip_platforms = frozenset(cfg.get("bind_ip_platforms") or ())
        self.audit_retention_seconds = float(cfg.get("audit_retention_hours", 24)) * 3600
        self.store = store
        self.clock = clock or time.time
        self.metrics = metrics
        self._tokens: dict[str, StreamToken] = {}
        self._expired_counted: set[str] = set()
        self._expired_total = 0
        self._lock = threading.Lock()

    def load(self) -> int:
        """Load unexpired tokens from the durable store, if one is attached."""
        if self.store is None:
            return 0
        now = self.clock()
        loaded = self.store.load_active(now)
        with self._lock:
            for token in loaded:
                token.claimed = False
                self._tokens[token.token_hash] = token
        logger.info("Loaded %s stream tokens from store", len(loaded))
        return len(loaded)

    def _persist(self, token: StreamToken) -> None:
        if self.store is not None:
            self.store.upsert(token)

    def _requires_ip_binding(self, token: StreamToken) -> bool:
        if not token.ip_address:
            return False
        return self.bind_ip or (token.platform in self.bind_ip_platforms)

    def _active_for_user(self, user_id: str, now: float) -> list[StreamToken]:
        return [t for t in self._tokens.values() if t.user_id == user_id and t.is_valid(now)]

    def create(
        self,
        user_id,
        url,
        format_id,
        ttl_minutes=None,
        client: Optional[ClientInfo] = None,
        *,
        title=None,
        resumable=False,
    ):
        """Issue a token; returns ``(token_value, StreamToken)``."""
        if not user_id:
            raise ValidationError("user_id is required")
        if not url or not format_id:
            raise ValidationError("url and format_id are required")
        ttl = self.default_ttl_minutes if ttl_minutes is None else ttl_minutes
        try:
            ttl = float(ttl)
        except (TypeError, ValueError):
            raise ValidationError("ttl_minutes must be a number") from None
        if ttl <= 0:
            raise ValidationError("ttl_minutes must be positive")
        ttl = min(ttl, self.max_ttl_minutes)
        client = client or ClientInfo()
        value = generate_token_value()
        now = self.clock()
        token = StreamToken(
            token_hash=hash_token(value),
            id=uuid4().hex,
            user_id=str(user_id),
            video_url=url,
            format_id=str(format_id),
            title=title,
            platform=detect_platform(url),
            issued_at=now,
            expires_at=now + ttl * 60,
            ip_address=client.ip,
            user_agent=client.user_agent,
            resumable=bool(resumable),
        )
        with self._lock:
            active = self._active_for_user(token.user_id, now)
            if len(active) >= self.max_active_per_user:
                soonest = min(t.expires_at for t in active)
                raise TokenQuotaExceeded(
                    f"Maximum of {self.max_active_per_user} active stream tokens reached",
                    retry_after=max(1, int(soonest - now) + 1),
                    limit=self.max_active_per_user,
                )
            self._tokens[token.token_hash] = token
            self._persist(token)
            issued = replace(token)
        if self.metrics is not None:
            self.metrics.token_issued()
        log_event(
            logging.INFO,
            "stream_token_created",
            logger=logger,
            token=redact_token(value),
            token_id=token.id,
            user_id=token.user_id,
            format_id=token.format_id,
            expires_at=token.expires_at,
        )
        return value, issued

    def _lookup(self, value) -> StreamToken:
        if not is_valid_format(value):
            raise AuthorizationError("Invalid stream token", code="token_invalid")
        token = self._tokens.get(hash_token(value))
        if token is None:
            raise AuthorizationError("Invalid stream token", code="token_invalid")
        return token

    def _check(self, token: StreamToken, client: Optional[ClientInfo], now: float) -> None:
        if token.revoked:
            raise AuthorizationError("Stream token has been revoked", code="token_revoked")
        if token.used:
            raise AuthorizationError("Stream token has already been used", code="token_used")
        if token.is_expired(now):
            raise AuthorizationError("Stream token has expired", code="token_expired")
        if token.rate_limit_count >= self.max_accesses:
            raise AuthorizationError("Stream token access limit reached", code="token_access_limit")
        if self._requires_ip_binding(token) and not token.fingerprint_matches((client or ClientInfo()).ip):
            raise AuthorizationError("Stream token is bound to another client", code="token_ip_mismatch")

    def _touch(self, token: StreamToken, now: float) -> None:
        token.usage_count += 1
        token.rate_limit_count += 1
        token.last_access = now

    def validate(self, value, client: Optional[ClientInfo] = None) -> StreamToken:
        now = self.clock()
        with self._lock:
            token = self._lookup(value)
            self._check(token, client, now)
            self._touch(token, now)
            self._persist(token)
            return replace(token)

    def claim(self, value, client: Optional[ClientInfo] = None) -> StreamToken:
        """Validate and reserve the token for one streaming session."""
        now = self.clock()
        with self._lock:
            token = self._lookup(value)
            self._check(token, client, now)
            if token.claimed and not token.resumable:
                raise AuthorizationError("Stream token is already in use", code="token_in_use")
            self._touch(token, now)
            if not token.resumable:
                token.claimed = True
            self._persist(token)
            return replace(token)

    def release(self, value) -> None:
        with self._lock:
            token = self._tokens.get(hash_token(value)) if is_valid_format(value) else None
            if token is not None:
                token.claimed = False

    def mark_used(self, value) -> bool:
        """Consume the token. Returns False if it was already consumed."""
        now = self.clock()
        with self._lock:
            token = self._tokens.get(hash_token(value)) if is_valid_format(value) else None
            if token is None or token.used:
                return False
            token.used = True
            token.used_at = now
            token.claimed = False
            self._persist(token)
        if self.metrics is not None:
            self.metrics.token_used()
        log_event(logging.INFO, "stream_token_used", logger=logger, token=redact_token(value))
        return True

    def refresh(self, value, extra_minutes, *, user_id=None) -> StreamToken:
        try:
            extra = float(extra_minutes)
        except (TypeError, ValueError):
            raise ValidationError("extra_minutes must be a number") from None
        if extra < 1 or extra > self.max_ttl_minutes:
            raise ValidationError(f"extra_minutes must be between 1 and {int(self.max_ttl_minutes)}")
        now = self.clock()
        with self._lock:
            token = self._owned(value, user_id)
            if not token.is_valid(now):
                raise AuthorizationError("Only valid, unused tokens can be refreshed", code="token_not_refreshable")
            token.expires_at = max(token.expires_at, now + extra * 60)
            self._persist(token)
            return replace(token)

    def _owned(self, value, user_id) -> StreamToken:
        token = self._tokens.get(hash_token(value)) if is_valid_format(value) else None
        if token is None or (user_id is not None and token.user_id != str(user_id)):
            raise NotFoundError("Stream token not found", code="token_not_found")
        return token

    def get_for_owner(self, value, user_id) -> StreamToken:
        with self._lock:
            return replace(self._owned(value, user_id))

    def revoke(self, value, *, user_id=None) -> bool:
        now = self.clock()
        with self._lock:
            token = self._owned(value, user_id)
            if token.revoked:
                return False
            token.revoked = True
            token.revoked_at = now
            self._persist(token)
        log_event(logging.INFO, "stream_token_revoked", logger=logger, token=redact_token(value))
        return True

    def revoke_user(self, user_id) -> int:
        now = self.clock()
        count = 0
        with self._lock:
            for token in self._tokens.values():
                if token.user_id == str(user_id) and not token.revoked and not token.used:
                    token.revoked = True
                    token.revoked_at = now
                    self._persist(token)
                    count += 1
        if count:
            log_event(logging.INFO, "stream_tokens_revoked_for_user", logger=logger, user_id=user_id, count=count)
        return count

    def list_active(self, user_id) -> list[StreamToken]:
        now = self.clock()
        with self._lock:
            active = self._active_for_user(str(user_id), now)
            return sorted((replace(t) for t in active), key=lambda t: t.issued_at)

    def sweep(self, now=None) -> dict:
        """Count newly expired tokens and drop records past audit retention."""
        now = self.clock() if now is None else now
        newly_expired = 0
        removed = []
        with self._lock:
            for token_hash, token in list(self._tokens.items()):
                if token.is_expired(now) and token_hash not in self._expired_counted and not token.used and not token.revoked:
                    self._expired_counted.add(token_hash)
                    newly_expired += 1
                if not token.is_valid(now) and now - token.closed_at() >= self.audit_retention_seconds:
                    del self._tokens[token_hash]
                    self._expired_counted.discard(token_hash)
                    removed.append(token_hash)
            self._expired_total += newly_expired
        if self.store is not None and removed:
            self.store.delete_many(removed)
        if self.metrics is not None and newly_expired:
            self.metrics.tokens_swept(newly_expired)
        if newly_expired or removed:
            log_event(logging.INFO, "stream_tokens_swept", logger=logger, expired=newly_expired, removed=len(removed))
        return {"expired": newly_expired, "removed": len(removed)}

    def statistics(self) -> dict:
        now = self.clock()
        with self._lock:
            tokens = list(self._tokens.values())
            expired_total = self._expired_total
        active = sum(1 for t in tokens if t.is_valid(now))
        used = sum(1 for t in tokens if t.used)
        revoked = sum(1 for t in tokens if t.revoked)
        expired = sum(1 for t in tokens if t.is_expired(now) and not t.used and not t.revoked)
        average = (sum(t.usage_count for t in tokens) / len(tokens)) if tokens else 0.0
        return {
            "total": len(tokens),
            "active": active,
            "expired": expired,
            "used": used,
            "revoked": revoked,
            "expired_swept_total": expired_total,
            "average_access_count": round(average, 2),
        }
