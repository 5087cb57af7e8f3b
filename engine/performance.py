"""In-process counters for streams, jobs, tokens and the analysis cache.

Only this module mutates its counters. Queue depths and token totals are
read on demand through registered provider callables.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from datetime import datetime, timezone

from config.settings import (
    ACTIVE_STREAMS_WARNING,
    ERROR_RATE_CRITICAL,
    ERROR_RATE_WARNING,
    QUEUE_DEPTH_WARNING_RATIO,
)

logger = logging.getLogger(__name__)

STATUS_HEALTHY = "healthy"
STATUS_WARNING = "warning"
STATUS_CRITICAL = "critical"

_FAILED_OUTCOMES = ("failed", "interrupted")


def _worst(statuses):
    if STATUS_CRITICAL in statuses:
        return STATUS_CRITICAL
    if STATUS_WARNING in statuses:
        return STATUS_WARNING
    return STATUS_HEALTHY


class PerformanceAggregator:
    def __init__(self, config=None, *, clock=None):
        cfg = (config or {}).get("performance") or {}
        self.error_window = float(cfg.get("error_window_seconds", 900))
        self.clock = clock or time.time
        self._lock = threading.Lock()
        self._active = {}
        self._finished = deque(maxlen=10000)
        self._history = deque(maxlen=int(cfg.get("history_size", 1440)))
        self._totals = {
            "streams_started": 0,
            "streams_completed": 0,
            "streams_interrupted": 0,
            "streams_failed": 0,
            "bytes_sent": 0,
            "stream_duration_total": 0.0,
            "tokens_issued": 0,
            "tokens_used": 0,
            "tokens_expired": 0,
            "cache_hits": 0,
            "cache_misses": 0,
        }
        self._jobs = {}
        self._queue_provider = None
        self._token_provider = None

    def register_queue_provider(self, provider):
        self._queue_provider = provider

    def register_token_provider(self, provider):
        self._token_provider = provider

    # --- write API -----------------------------------------------------

    def stream_started(self, stream_id, user_id=None):
        with self._lock:
            self._active[stream_id] = {"user_id": user_id, "started_at": self.clock(), "bytes": 0}
            self._totals["streams_started"] += 1

    def stream_progress(self, stream_id, nbytes):
        with self._lock:
            entry = self._active.get(stream_id)
            if entry is not None:
                entry["bytes"] += int(nbytes)

    def stream_finished(self, stream_id, outcome, nbytes=0, error=None):
        now = self.clock()
        with self._lock:
            entry = self._active.pop(stream_id, None)
            started_at = entry["started_at"] if entry else now
            duration = max(0.0, now - started_at)
            self._finished.append((now, outcome, duration))
            self._totals[f"streams_{outcome}"] = self._totals.get(f"streams_{outcome}", 0) + 1
            self._totals["bytes_sent"] += int(nbytes or 0)
            self._totals["stream_duration_total"] += duration
        if outcome in _FAILED_OUTCOMES and error:
            logger.info("Stream %s ended %s: %s", stream_id, outcome, error)

    def _job_counters(self, queue_name):
        counters = self._jobs.get(queue_name)
        if counters is None:
            counters = self._jobs[queue_name] = {"enqueued": 0, "started": 0, "succeeded": 0, "failed": 0}
        return counters

    def job_enqueued(self, queue_name):
        with self._lock:
            self._job_counters(queue_name)["enqueued"] += 1

    def job_started(self, queue_name):
        with self._lock:
            self._job_counters(queue_name)["started"] += 1

    def job_finished(self, queue_name, *, success=True):
        with self._lock:
            self._job_counters(queue_name)["succeeded" if success else "failed"] += 1

    def token_issued(self):
        with self._lock:
            self._totals["tokens_issued"] += 1

    def token_used(self):
        with self._lock:
            self._totals["tokens_used"] += 1

    def tokens_swept(self, count):
        with self._lock:
            self._totals["tokens_expired"] += int(count)

    def cache_hit(self):
        with self._lock:
            self._totals["cache_hits"] += 1

    def cache_miss(self):
        with self._lock:
            self._totals["cache_misses"] += 1

    # --- read API ------------------------------------------------------

    def error_rate(self, now=None):
        now = self.clock() if now is None else now
        cutoff = now - self.error_window
        with self._lock:
            recent = [outcome for finished_at, outcome, _ in self._finished if finished_at >= cutoff]
        if not recent:
            return 0.0
        failures = sum(1 for outcome in recent if outcome in _FAILED_OUTCOMES)
        return failures / len(recent)

    def _queue_depths(self):
        if self._queue_provider is None:
            return {}
        try:
            return dict(self._queue_provider())
        except Exception:
            logger.exception("Queue depth provider failed")
            return {}

    def _token_counts(self):
        if self._token_provider is None:
            return {}
        try:
            return dict(self._token_provider())
        except Exception:
            logger.exception("Token statistics provider failed")
            return {}

    def current_metrics(self):
        now = self.clock()
        error_rate = self.error_rate(now)
        with self._lock:
            totals = dict(self._totals)
            active = len(self._active)
            jobs = {name: dict(values) for name, values in self._jobs.items()}
        finished = totals["streams_completed"] + totals["streams_interrupted"] + totals["streams_failed"]
        lookups = totals["cache_hits"] + totals["cache_misses"]
        depths = self._queue_depths()
        return {
            "timestamp": now,
            "active_streams": active,
            "total_streams": totals["streams_started"],
            "completed_streams": totals["streams_completed"],
            "interrupted_streams": totals["streams_interrupted"],
            "failed_streams": totals["streams_failed"],
            "bytes_sent": totals["bytes_sent"],
            "average_stream_duration": (totals["stream_duration_total"] / finished) if finished else 0.0,
            "error_rate": round(error_rate, 4),
            "cache_hit_rate": (totals["cache_hits"] / lookups) if lookups else 0.0,
            "queues": {name: {"depth": depth, "capacity": capacity} for name, (depth, capacity) in depths.items()},
            "jobs": jobs,
            "tokens": {
                "issued": totals["tokens_issued"],
                "used": totals["tokens_used"],
                "expired": totals["tokens_expired"],
                **self._token_counts(),
            },
        }

    def snapshot(self):
        metrics = self.current_metrics()
        with self._lock:
            self._history.append(metrics)
        return metrics

    def history(self, hours=1.0):
        cutoff = self.clock() - float(hours) * 3600
        with self._lock:
            return [entry for entry in self._history if entry["timestamp"] >= cutoff]

    def health(self):
        metrics = self.current_metrics()
        active = metrics["active_streams"]
        rate = metrics["error_rate"]
        if rate > ERROR_RATE_CRITICAL:
            rate_status = STATUS_CRITICAL
        elif rate > ERROR_RATE_WARNING:
            rate_status = STATUS_WARNING
        else:
            rate_status = STATUS_HEALTHY
        checks = {
            "active_streams": {
                "status": STATUS_WARNING if active > ACTIVE_STREAMS_WARNING else STATUS_HEALTHY,
                "count": active,
            },
            "error_rate": {"status": rate_status, "rate": rate},
        }
        for name, queue_info in metrics["queues"].items():
            depth = queue_info["depth"]
            capacity = queue_info["capacity"] or 1
            checks[f"queue_{name}"] = {
                "status": STATUS_WARNING if depth > capacity * QUEUE_DEPTH_WARNING_RATIO else STATUS_HEALTHY,
                "depth": depth,
                "capacity": capacity,
            }
        return {
            "status": _worst([check["status"] for check in checks.values()]),
            "timestamp": datetime.fromtimestamp(metrics["timestamp"], tz=timezone.utc).isoformat(),
            "checks": checks,
        }
