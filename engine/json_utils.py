"""JSON helpers that never fail on odd values (datetimes, sets, NaN, bytes)."""

from __future__ import annotations

import dataclasses
import json
import logging
import math
from datetime import date, datetime
from enum import Enum
from pathlib import Path


def safe_json(value):
    """Return a JSON-compatible copy of ``value``."""
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            return None
        return value
    if isinstance(value, Enum):
        return safe_json(value.value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return safe_json(dataclasses.asdict(value))
    if isinstance(value, dict):
        return {str(k): safe_json(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [safe_json(v) for v in value]
    return str(value)


def safe_json_dumps(value, **kwargs):
    kwargs.setdefault("ensure_ascii", False)
    return json.dumps(safe_json(value), **kwargs)


def json_sanity_check():
    # Fails loudly at worker start if serialization is broken.
    sample = {"ts": datetime(2020, 1, 1), "nan": float("nan"), "items": {1, 2}}
    try:
        json.loads(safe_json_dumps(sample, sort_keys=True))
    except (TypeError, ValueError):
        logging.exception("json_sanity_check_failed")
        raise
