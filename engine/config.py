import copy
import json
import logging
import os

from config.settings import (
    DEFAULT_TOKEN_TTL_MINUTES,
    MAX_ACTIVE_TOKENS_PER_USER,
    MAX_TOKEN_ACCESSES,
    MAX_TOKEN_TTL_MINUTES,
    STREAM_CHUNK_SIZE,
)

DESKTOP_USER_AGENTS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
)

MOBILE_USER_AGENTS = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1",
    "Mozilla/5.0 (Linux; Android 14; Pixel 8) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Mobile Safari/537.36",
)

ALTERNATE_USER_AGENTS = {
    "youtube": "Mozilla/5.0 (compatible; Googlebot/2.1; +http://www.google.com/bot.html)",
    "tiktok": "TikTok 26.2.0 rv:262018 (iPhone; iOS 14.4.2; en_US) Cronet",
}

ERROR_KINDS = (
    "auth_required",
    "video_unavailable",
    "private_video",
    "rate_limited",
    "network_error",
    "timeout",
    "unknown",
)

DEFAULT_CONFIG = {
    "ytdlp_command": ["yt-dlp"],
    "locale": "en",
    "extraction": {
        "attempt_timeout_seconds": 45,
        "socket_timeout_seconds": 20,
        "kill_grace_seconds": 3.0,
    },
    "fallback": {
        "max_attempts": 3,
        "total_budget_seconds": 90,
        "retryable_kinds": ["network_error", "timeout", "rate_limited"],
        "advance_kinds": ["auth_required"],
    },
    # Extra classification rules, checked before the built-in table:
    # [{"pattern": "some text", "kind": "rate_limited", "regex": false}]
    "error_patterns": [],
    "user_agents": {
        "desktop": list(DESKTOP_USER_AGENTS),
        "mobile": list(MOBILE_USER_AGENTS),
    },
    "cookies": {
        "enabled": True,
        "path": "cookies.txt",
    },
    "queues": {
        "analysis": {
            "workers": 5,
            "max_size": 100,
            "retention_seconds": 24 * 3600,
            "failed_retention_seconds": 7 * 24 * 3600,
        },
        "stream_tracking": {
            "workers": 3,
            "max_size": 100,
            "retention_seconds": 3600,
            "failed_retention_seconds": 24 * 3600,
        },
    },
    "dedup_window_seconds": 60,
    "analysis_cache_seconds": 600,
    "tokens": {
        "ttl_minutes": DEFAULT_TOKEN_TTL_MINUTES,
        "max_ttl_minutes": MAX_TOKEN_TTL_MINUTES,
        "max_active_per_user": MAX_ACTIVE_TOKENS_PER_USER,
        "max_accesses": MAX_TOKEN_ACCESSES,
        "bind_ip": False,
        "bind_ip_platforms": [],
        "audit_retention_hours": 24,
        "persist": False,
    },
    "rate_limits": {
        "token_create": {"limit": 20, "window_seconds": 3600},
        "stream_token": {"limit": 30, "window_seconds": 60},
        "stream_ip": {"limit": 60, "window_seconds": 60},
    },
    "streaming": {
        "chunk_size": STREAM_CHUNK_SIZE,
        "grace_seconds": 3.0,
        "connect_timeout_seconds": 15,
        "read_timeout_seconds": 60,
        "max_duration_seconds": 30 * 60,
    },
    "housekeeping": {
        "token_sweep_minutes": 5,
        "job_cleanup_minutes": 10,
        "snapshot_minutes": 1,
    },
    "performance": {
        "error_window_seconds": 15 * 60,
        "history_size": 24 * 60,
    },
}


def merge_config(base, overrides):
    merged = copy.deepcopy(base)
    if not isinstance(overrides, dict):
        return merged
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_config(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def load_config(path):
    """Read the JSON config at ``path`` and merge it over the defaults.

    A missing file yields the defaults; a malformed one raises ``ValueError``.
    """
    if not path or not os.path.exists(path):
        if path:
            logging.info("Config file not found, using defaults: %s", path)
        return merge_config(DEFAULT_CONFIG, {})
    with open(path, "r", encoding="utf-8") as f:
        try:
            raw = json.load(f)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Invalid config JSON in {path}: {exc}") from exc
    return merge_config(DEFAULT_CONFIG, raw)


def _positive_number(value):
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0


def validate_config(config):
    errors = []
    if not isinstance(config, dict):
        return ["config must be a JSON object"]

    command = config.get("ytdlp_command")
    if not isinstance(command, list) or not command or not all(isinstance(p, str) and p for p in command):
        errors.append("ytdlp_command must be a non-empty list of strings")

    fallback = config.get("fallback") or {}
    if not isinstance(fallback.get("max_attempts"), int) or fallback.get("max_attempts", 0) < 1:
        errors.append("fallback.max_attempts must be an integer >= 1")
    if not _positive_number(fallback.get("total_budget_seconds")):
        errors.append("fallback.total_budget_seconds must be a positive number")
    for field in ("retryable_kinds", "advance_kinds"):
        kinds = fallback.get(field)
        if not isinstance(kinds, list):
            errors.append(f"fallback.{field} must be a list")
            continue
        for kind in kinds:
            if kind not in ERROR_KINDS:
                errors.append(f"fallback.{field} has unknown kind '{kind}'")

    patterns = config.get("error_patterns")
    if not isinstance(patterns, list):
        errors.append("error_patterns must be a list")
    else:
        for idx, rule in enumerate(patterns):
            if not isinstance(rule, dict) or not isinstance(rule.get("pattern"), str) or not rule.get("pattern"):
                errors.append(f"error_patterns[{idx}] must have a non-empty pattern")
                continue
            if rule.get("kind") not in ERROR_KINDS:
                errors.append(f"error_patterns[{idx}].kind must be one of {', '.join(ERROR_KINDS)}")

    extraction = config.get("extraction") or {}
    if not _positive_number(extraction.get("attempt_timeout_seconds")):
        errors.append("extraction.attempt_timeout_seconds must be a positive number")

    queues = config.get("queues")
    if not isinstance(queues, dict):
        errors.append("queues must be an object")
    else:
        for name, qcfg in queues.items():
            if not isinstance(qcfg, dict):
                errors.append(f"queues.{name} must be an object")
                continue
            workers = qcfg.get("workers")
            if not isinstance(workers, int) or workers < 1:
                errors.append(f"queues.{name}.workers must be an integer >= 1")
            max_size = qcfg.get("max_size")
            if not isinstance(max_size, int) or max_size < 1:
                errors.append(f"queues.{name}.max_size must be an integer >= 1")

    tokens = config.get("tokens") or {}
    ttl = tokens.get("ttl_minutes")
    if not _positive_number(ttl):
        errors.append("tokens.ttl_minutes must be a positive number")
    elif _positive_number(tokens.get("max_ttl_minutes")) and ttl > tokens["max_ttl_minutes"]:
        errors.append("tokens.ttl_minutes must not exceed tokens.max_ttl_minutes")
    if not isinstance(tokens.get("max_active_per_user"), int) or tokens.get("max_active_per_user", 0) < 1:
        errors.append("tokens.max_active_per_user must be an integer >= 1")

    limits = config.get("rate_limits")
    if not isinstance(limits, dict):
        errors.append("rate_limits must be an object")
    else:
        for name in ("token_create", "stream_token", "stream_ip"):
            entry = limits.get(name)
            if not isinstance(entry, dict):
                errors.append(f"rate_limits.{name} must be an object")
                continue
            if not isinstance(entry.get("limit"), int) or entry.get("limit", 0) < 1:
                errors.append(f"rate_limits.{name}.limit must be an integer >= 1")
            if not _positive_number(entry.get("window_seconds")):
                errors.append(f"rate_limits.{name}.window_seconds must be a positive number")

    streaming = config.get("streaming") or {}
    chunk = streaming.get("chunk_size")
    if not isinstance(chunk, int) or chunk < 1024:
        errors.append("streaming.chunk_size must be an integer >= 1024")

    if config.get("locale") not in (None, "en", "vi"):
        errors.append("locale must be 'en' or 'vi'")

    return errors
