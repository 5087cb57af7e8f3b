"""Server-managed cookie file used by the authenticated extraction pass."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

from engine.paths import resolve_dir

logger = logging.getLogger(__name__)

MAX_COOKIE_FILE_BYTES = 5 * 1024 * 1024

_KNOWN_COOKIE_DOMAINS = (
    "youtube.com",
    "tiktok.com",
    "facebook.com",
    "instagram.com",
    "twitter.com",
    "x.com",
    "twitch.tv",
    "vimeo.com",
    "dailymotion.com",
)


@dataclass(frozen=True)
class CookieFileCheck:
    valid: bool
    error: str | None = None
    cookie_count: int = 0
    platforms: tuple[str, ...] = field(default_factory=tuple)


def validate_cookie_text(text: str) -> CookieFileCheck:
    """Check that ``text`` looks like a Netscape cookie jar."""
    lines = [line for line in (text or "").splitlines() if line.strip() and not line.startswith("#")]
    if not lines:
        return CookieFileCheck(valid=False, error="Cookie file contains no cookies")
    invalid = [line for line in lines if len(line.split("\t")) < 6]
    if invalid:
        return CookieFileCheck(valid=False, error=f"Invalid cookie format in {len(invalid)} lines")
    platforms = []
    for domain in _KNOWN_COOKIE_DOMAINS:
        if any(domain in line.split("\t", 1)[0] for line in lines):
            platforms.append(domain)
    return CookieFileCheck(valid=True, cookie_count=len(lines), platforms=tuple(platforms))


class CookieStore:
    def __init__(self, cookies_dir, config=None):
        self.cookies_dir = str(cookies_dir)
        cfg = (config or {}).get("cookies") if isinstance(config, dict) else None
        self.config = cfg if isinstance(cfg, dict) else {}

    @property
    def enabled(self) -> bool:
        return bool(self.config.get("enabled", True))

    def resolve(self) -> str | None:
        """Return the cookie file path when enabled, present and well formed."""
        if not self.enabled:
            return None
        cookie_value = self.config.get("path")
        if not cookie_value:
            return None
        try:
            resolved = resolve_dir(cookie_value, self.cookies_dir)
        except ValueError as exc:
            logger.error("Invalid cookies path: %s", exc)
            return None
        if not os.path.isfile(resolved):
            logger.info("Cookie file not found: %s", resolved)
            return None
        check = self.check(resolved)
        if not check.valid:
            logger.warning("Cookie file rejected: %s (%s)", resolved, check.error)
            return None
        return resolved

    def check(self, path) -> CookieFileCheck:
        try:
            size = os.path.getsize(path)
        except OSError as exc:
            return CookieFileCheck(valid=False, error=f"Cookie file not accessible: {exc}")
        if size > MAX_COOKIE_FILE_BYTES:
            return CookieFileCheck(valid=False, error="Cookie file exceeds 5MB")
        with open(path, "r", encoding="utf-8", errors="replace") as handle:
            return validate_cookie_text(handle.read())

    def status(self) -> dict:
        path = self.resolve()
        return {"enabled": self.enabled, "available": bool(path)}
