import logging
import queue
import threading
import time
from dataclasses import dataclass, field, replace
from typing import Optional
from uuid import uuid4

from engine.errors import ExtractionFailed, QueueFullError, StreamgateError, ValidationError
from engine.extractor import CancelledError
from engine.logging_setup import log_event

logger = logging.getLogger(__name__)

JOB_STATUS_QUEUED = "queued"
JOB_STATUS_RUNNING = "running"
JOB_STATUS_COMPLETED = "completed"
JOB_STATUS_FAILED = "failed"

TERMINAL_STATUSES = (JOB_STATUS_COMPLETED, JOB_STATUS_FAILED)

# The HTTP surface reports a running job as "processing".
PUBLIC_STATUS_LABELS = {
    JOB_STATUS_QUEUED: "queued",
    JOB_STATUS_RUNNING: "processing",
    JOB_STATUS_COMPLETED: "completed",
    JOB_STATUS_FAILED: "failed",
}

QUEUE_ANALYSIS = "analysis"
QUEUE_STREAM_TRACKING = "stream_tracking"

PROGRESS_CLAIMED = 10
PROGRESS_DONE = 100

_STATE_ORDER = {
    JOB_STATUS_QUEUED: 0,
    JOB_STATUS_RUNNING: 1,
    JOB_STATUS_COMPLETED: 2,
    JOB_STATUS_FAILED: 2,
}

_SHUTDOWN = object()


@dataclass
class AnalysisJob:
    id: str
    queue: str
    user_id: str
    url: str
    request_id: str
    payload: dict = field(default_factory=dict)
    state: str = JOB_STATUS_QUEUED
    progress: int = 0
    result: Optional[dict] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    created_at: float = 0.0
    started_at: Optional[float] = None
    finished_at: Optional[float] = None

    @property
    def is_terminal(self):
        return self.state in TERMINAL_STATUSES

    @property
    def public_status(self):
        return PUBLIC_STATUS_LABELS.get(self.state, self.state)


@dataclass(frozen=True)
class QueueSettings:
    name: str
    workers: int
    max_size: int
    retention_seconds: float
    failed_retention_seconds: float


class JobContext:
    """Handed to a handler while its job runs."""

    def __init__(self, job_queue, job):
        self._queue = job_queue
        self.job = job

    def report_progress(self, progress):
        self._queue._update_progress(self.job.id, progress)

    def cancel_check(self):
        return self._queue.stop_event.is_set()


def _queue_settings(name, cfg):
    cfg = cfg or {}
    return QueueSettings(
        name=name,
        workers=max(1, int(cfg.get("workers", 1))),
        max_size=max(1, int(cfg.get("max_size", 100))),
        retention_seconds=float(cfg.get("retention_seconds", 3600)),
        failed_retention_seconds=float(cfg.get("failed_retention_seconds", cfg.get("retention_seconds", 3600))),
    )


class JobQueue:
    """Named in-memory queues, each drained by a bounded pool of worker threads."""

    def __init__(self, config=None, *, clock=None, stop_event=None, metrics=None):
        cfg = config or {}
        queues_cfg = cfg.get("queues") or {}
        names = list(queues_cfg) or [QUEUE_ANALYSIS, QUEUE_STREAM_TRACKING]
        self.settings = {name: _queue_settings(name, queues_cfg.get(name)) for name in names}
        self.dedup_window = float(cfg.get("dedup_window_seconds", 60))
        self.cache_ttl = float(cfg.get("analysis_cache_seconds", 600))
        self.clock = clock or time.time
        self.stop_event = stop_event or threading.Event()
        self.metrics = metrics
        self._queues = {name: queue.Queue(maxsize=s.max_size) for name, s in self.settings.items()}
        self._handlers = {}
        self._jobs = {}
        self._by_request = {}
        self._dedup = {}
        self._analysis_cache = {}
        self._counters = {name: {"enqueued": 0, "deduplicated": 0, "rejected": 0, "completed": 0, "failed": 0} for name in self.settings}
        self._lock = threading.Lock()
        self._threads = []
        self._started = False

    def register_handler(self, queue_name, handler):
        if queue_name not in self.settings:
            raise ValueError(f"unknown queue: {queue_name}")
        self._handlers[queue_name] = handler

    def start(self):
        with self._lock:
            if self._started:
                return
            self._started = True
        for name, settings in self.settings.items():
            for idx in range(settings.workers):
                thread = threading.Thread(
                    target=self._worker,
                    args=(name,),
                    name=f"{name}-worker-{idx}",
                    daemon=True,
                )
                thread.start()
                self._threads.append(thread)
        log_event(
            logging.INFO,
            "job_queue_started",
            logger=logger,
            workers={name: s.workers for name, s in self.settings.items()},
        )

    def enqueue(self, queue_name, user_id, url, payload=None, *, request_id=None, dedup=True):
        """Queue a job and return its id.

        A repeat of ``(queue, user, url)`` inside the dedup window returns the
        id of the job that is still pending or running.
        """
        if queue_name not in self._queues:
            raise ValidationError(f"Unknown queue: {queue_name}")
        if self.stop_event.is_set():
            raise QueueFullError("Job queue is shutting down")
        now = self.clock()
        key = (queue_name, str(user_id), url)
        with self._lock:
            existing_id = self._dedup.get(key)
            existing = self._jobs.get(existing_id) if existing_id else None
            if dedup and existing and not existing.is_terminal and now - existing.created_at < self.dedup_window:
                self._counters[queue_name]["deduplicated"] += 1
                return existing.id
            job = AnalysisJob(
                id=uuid4().hex,
                queue=queue_name,
                user_id=str(user_id),
                url=url,
                request_id=request_id or uuid4().hex,
                payload=dict(payload or {}),
                created_at=now,
            )
            try:
                self._queues[queue_name].put_nowait(job.id)
            except queue.Full:
                self._counters[queue_name]["rejected"] += 1
                raise QueueFullError(f"Queue '{queue_name}' is full") from None
            self._jobs[job.id] = job
            self._by_request[job.request_id] = job.id
            if dedup:
                self._dedup[key] = job.id
            self._counters[queue_name]["enqueued"] += 1
        if self.metrics is not None:
            self.metrics.job_enqueued(queue_name)
        log_event(
            logging.INFO,
            "job_enqueued",
            logger=logger,
            job_id=job.id,
            queue=queue_name,
            user_id=job.user_id,
            request_id=job.request_id,
        )
        return job.id

    def get_status(self, job_id):
        with self._lock:
            job = self._jobs.get(job_id)
            return replace(job) if job else None

    def find_by_request(self, request_id):
        with self._lock:
            job_id = self._by_request.get(request_id)
            job = self._jobs.get(job_id) if job_id else None
            return replace(job) if job else None

    def cached_analysis(self, url, *, now=None):
        now = self.clock() if now is None else now
        with self._lock:
            entry = self._analysis_cache.get(url)
            if entry and entry[0] > now:
                result = entry[1]
            else:
                result = None
                if entry:
                    self._analysis_cache.pop(url, None)
        if self.metrics is not None:
            if result is None:
                self.metrics.cache_miss()
            else:
                self.metrics.cache_hit()
        return result

    def cache_analysis(self, url, result, *, now=None):
        now = self.clock() if now is None else now
        with self._lock:
            self._analysis_cache[url] = (now + self.cache_ttl, result)

    def cleanup(self, now=None):
        """Drop terminal jobs older than their queue's retention window."""
        now = self.clock() if now is None else now
        removed = 0
        with self._lock:
            for job_id, job in list(self._jobs.items()):
                if not job.is_terminal:
                    continue
                settings = self.settings[job.queue]
                retention = (
                    settings.failed_retention_seconds
                    if job.state == JOB_STATUS_FAILED
                    else settings.retention_seconds
                )
                finished = job.finished_at if job.finished_at is not None else job.created_at
                if now - finished < retention:
                    continue
                del self._jobs[job_id]
                if self._by_request.get(job.request_id) == job_id:
                    del self._by_request[job.request_id]
                removed += 1
            for key, job_id in list(self._dedup.items()):
                if job_id not in self._jobs:
                    del self._dedup[key]
            for url, (expires_at, _) in list(self._analysis_cache.items()):
                if expires_at <= now:
                    del self._analysis_cache[url]
        if removed:
            log_event(logging.INFO, "jobs_cleaned", logger=logger, removed=removed)
        return removed

    def stats(self):
        with self._lock:
            by_state = {name: {state: 0 for state in _STATE_ORDER} for name in self.settings}
            for job in self._jobs.values():
                by_state[job.queue][job.state] += 1
            counters = {name: dict(values) for name, values in self._counters.items()}
            cache_size = len(self._analysis_cache)
        stats = {}
        for name, settings in self.settings.items():
            stats[name] = {
                "depth": self._queues[name].qsize(),
                "max_size": settings.max_size,
                "workers": settings.workers,
                "queued": by_state[name][JOB_STATUS_QUEUED],
                "running": by_state[name][JOB_STATUS_RUNNING],
                "completed": by_state[name][JOB_STATUS_COMPLETED],
                "failed": by_state[name][JOB_STATUS_FAILED],
                "totals": counters[name],
            }
        stats["analysis_cache_size"] = cache_size
        return stats

    def depths(self):
        return {name: (self._queues[name].qsize(), s.max_size) for name, s in self.settings.items()}

    def shutdown(self, timeout=5.0):
        """Stop workers, fail whatever is still queued and wait for the pool."""
        self.stop_event.set()
        drained = []
        for name, q in self._queues.items():
            while True:
                try:
                    item = q.get_nowait()
                except queue.Empty:
                    break
                if item is not _SHUTDOWN:
                    drained.append(item)
            for _ in range(self.settings[name].workers):
                try:
                    q.put_nowait(_SHUTDOWN)
                except queue.Full:
                    break
        for job_id in drained:
            cancelled = self._finish(job_id, JOB_STATUS_FAILED, error="Job cancelled by shutdown", error_kind="cancelled")
            if cancelled is not None and self.metrics is not None:
                self.metrics.job_finished(cancelled.queue, success=False)
        deadline = time.monotonic() + max(0.0, timeout)
        for thread in self._threads:
            thread.join(timeout=max(0.0, deadline - time.monotonic()))
        alive = [t.name for t in self._threads if t.is_alive()]
        if alive:
            logger.warning("Job queue workers still running after shutdown: %s", alive)
        log_event(logging.INFO, "job_queue_stopped", logger=logger, cancelled=len(drained))

    # --- worker side ---------------------------------------------------

    def _worker(self, queue_name):
        q = self._queues[queue_name]
        while not self.stop_event.is_set():
            try:
                item = q.get(timeout=0.5)
            except queue.Empty:
                continue
            if item is _SHUTDOWN:
                return
            try:
                self._run_job(queue_name, item)
            except Exception:
                logger.exception("Unhandled error running job %s", item)

    def _claim(self, job_id):
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.state != JOB_STATUS_QUEUED:
                return None
            job.state = JOB_STATUS_RUNNING
            job.started_at = self.clock()
            job.progress = max(job.progress, PROGRESS_CLAIMED)
            return replace(job)

    def _update_progress(self, job_id, progress):
        try:
            value = int(progress)
        except (TypeError, ValueError):
            return
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.state != JOB_STATUS_RUNNING:
                return
            job.progress = max(job.progress, min(value, PROGRESS_DONE - 1))

    def _finish(self, job_id, state, *, result=None, error=None, error_kind=None):
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.is_terminal:
                return None
            job.state = state
            job.finished_at = self.clock()
            if state == JOB_STATUS_COMPLETED:
                job.progress = PROGRESS_DONE
                job.result = result
            else:
                job.error = error
                job.error_kind = error_kind
            self._counters[job.queue][state] += 1
            return replace(job)

    def _run_job(self, queue_name, job_id):
        job = self._claim(job_id)
        if job is None:
            return
        handler = self._handlers.get(queue_name)
        if self.metrics is not None:
            self.metrics.job_started(queue_name)
        log_event(logging.INFO, "job_started", logger=logger, job_id=job.id, queue=queue_name)
        state = JOB_STATUS_FAILED
        try:
            if handler is None:
                raise StreamgateError(f"No handler registered for queue '{queue_name}'")
            result = handler(job, JobContext(self, job))
            self._finish(job.id, JOB_STATUS_COMPLETED, result=result)
            state = JOB_STATUS_COMPLETED
        except CancelledError:
            self._finish(job.id, JOB_STATUS_FAILED, error="Job cancelled", error_kind="cancelled")
        except ExtractionFailed as exc:
            self._finish(job.id, JOB_STATUS_FAILED, error=exc.message, error_kind=exc.kind)
        except StreamgateError as exc:
            self._finish(job.id, JOB_STATUS_FAILED, error=exc.message, error_kind=exc.code)
        except Exception:
            logger.exception("Job %s failed with an unexpected error", job.id)
            self._finish(job.id, JOB_STATUS_FAILED, error="Internal error", error_kind="internal_error")
        finally:
            if self.metrics is not None:
                self.metrics.job_finished(queue_name, success=state == JOB_STATUS_COMPLETED)
        log_event(logging.INFO, "job_finished", logger=logger, job_id=job.id, queue=queue_name, state=state)
