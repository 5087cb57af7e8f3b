import logging
import re
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config.settings import MAX_FORMAT_ID_LENGTH, MAX_TITLE_LENGTH, MAX_URL_LENGTH
from db.stream_tokens import StreamTokenStore
from engine.config import load_config, validate_config
from engine.cookies import CookieStore
from engine.errors import ValidationError
from engine.extractor import FormatExtractor, detect_platform, is_http_url
from engine.fallback import FallbackController
from engine.job_queue import QUEUE_ANALYSIS, QUEUE_STREAM_TRACKING, JobQueue
from engine.logging_setup import log_event
from engine.performance import PerformanceAggregator
from engine.rate_limit import RateLimiter
from engine.stream_tokens import StreamTokenManager, hash_token, is_valid_format
from engine.streaming import StreamingProxy

logger = logging.getLogger(__name__)

TOKEN_SWEEP_JOB_ID = "token_sweep"
JOB_CLEANUP_JOB_ID = "job_cleanup"
SNAPSHOT_JOB_ID = "metrics_snapshot"

RECENT_ISSUANCE_LIMIT = 200

PROGRESS_EXTRACTED = 50
PROGRESS_FILTERED = 80

_FORMAT_ID_RE = re.compile(r"^[A-Za-z0-9_.+\-/]+$")


@dataclass
class ServiceStatus:
    started_at: str | None = None
    running: bool = False
    last_housekeeping_at: str | None = None
    last_housekeeping: dict = field(default_factory=dict)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)


def utc_now():
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def validate_video_url(url):
    if not isinstance(url, str) or not url.strip():
        raise ValidationError("A video URL is required", code="url_required")
    url = url.strip()
    if len(url) > MAX_URL_LENGTH:
        raise ValidationError(f"URL must be at most {MAX_URL_LENGTH} characters", code="url_too_long")
    if not is_http_url(url):
        raise ValidationError("URL must be an http(s) URL", code="url_invalid")
    return url


def validate_format_id(format_id):
    if not isinstance(format_id, str) or not format_id.strip():
        raise ValidationError("A format id is required", code="format_required")
    format_id = format_id.strip()
    if len(format_id) > MAX_FORMAT_ID_LENGTH or not _FORMAT_ID_RE.match(format_id):
        raise ValidationError("Invalid format id", code="format_invalid")
    return format_id


def validate_title(title):
    if title is None:
        return None
    if not isinstance(title, str):
        raise ValidationError("Title must be a string", code="title_invalid")
    title = title.strip()
    if len(title) > MAX_TITLE_LENGTH:
        raise ValidationError(f"Title must be at most {MAX_TITLE_LENGTH} characters", code="title_too_long")
    return title or None


class StreamgateServices:
    """Owns every component and its lifecycle; the HTTP layer only delegates."""

    def __init__(self, config, paths, *, http=None, runner=None, clock=None):
        self.config = config
        self.paths = paths
        self.status = ServiceStatus()
        self.stop_event = threading.Event()
        self.metrics = PerformanceAggregator(config)
        self.cookies = CookieStore(paths.cookies_dir, config)
        self.extractor = FormatExtractor(config, self.cookies, runner=runner)
        self.fallback = FallbackController(self.extractor, config)
        token_cfg = config.get("tokens") or {}
        store = StreamTokenStore(paths.db_path) if token_cfg.get("persist") else None
        self.tokens = StreamTokenManager(config, store=store, clock=clock, metrics=self.metrics)
        self.rate_limiter = RateLimiter(config)
        self.jobs = JobQueue(config, clock=clock, stop_event=self.stop_event, metrics=self.metrics)
        self.proxy = StreamingProxy(self.fallback, self.tokens, config, metrics=self.metrics, http=http)
        self.scheduler = None
        self._issuances = deque(maxlen=RECENT_ISSUANCE_LIMIT)
        self._issuances_lock = threading.Lock()
        self.jobs.register_handler(QUEUE_ANALYSIS, self._run_analysis)
        self.jobs.register_handler(QUEUE_STREAM_TRACKING, self._track_stream)
        self.metrics.register_queue_provider(self.jobs.depths)
        self.metrics.register_token_provider(self.tokens.statistics)

    def start(self, *, scheduler=True):
        if self.tokens.store is not None:
            self.tokens.store.ensure_schema()
            self.tokens.load()
        self.jobs.start()
        if scheduler:
            self.scheduler = BackgroundScheduler(timezone="UTC")
            self._schedule_housekeeping(self.scheduler)
            self.scheduler.start()
        with self.status.lock:
            self.status.started_at = utc_now()
            self.status.running = True
        log_event(logging.INFO, "services_started", logger=logger, cookies=self.cookies.status())

    def stop(self, timeout=5.0):
        if self.scheduler is not None:
            self.scheduler.shutdown(wait=False)
            self.scheduler = None
        self.jobs.shutdown(timeout=timeout)
        with self.status.lock:
            self.status.running = False
        log_event(logging.INFO, "services_stopped", logger=logger)

    def _schedule_housekeeping(self, scheduler):
        housekeeping = self.config.get("housekeeping") or {}
        jobs = (
            (self.sweep_tokens, housekeeping.get("token_sweep_minutes", 5), TOKEN_SWEEP_JOB_ID),
            (self.cleanup_jobs, housekeeping.get("job_cleanup_minutes", 10), JOB_CLEANUP_JOB_ID),
            (self.metrics.snapshot, housekeeping.get("snapshot_minutes", 1), SNAPSHOT_JOB_ID),
        )
        for func, minutes, job_id in jobs:
            scheduler.add_job(
                func,
                trigger=IntervalTrigger(minutes=float(minutes)),
                id=job_id,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
                misfire_grace_time=30,
            )

    def sweep_tokens(self):
        return self.tokens.sweep()

    def cleanup_jobs(self):
        return {"jobs_removed": self.jobs.cleanup(), "limiter_keys_removed": self.rate_limiter.cleanup()}

    def run_housekeeping(self):
        result = {"tokens": self.sweep_tokens(), **self.cleanup_jobs()}
        with self.status.lock:
            self.status.last_housekeeping_at = utc_now()
            self.status.last_housekeeping = result
        return result

    # --- analysis ------------------------------------------------------

    def _analyze(self, url, *, cancel_check=None, progress=None):
        result = self.fallback.run(url, cancel_check=cancel_check)
        if progress:
            progress(PROGRESS_EXTRACTED)
        metadata = result.metadata.with_formats(result.metadata.supported_formats())
        if progress:
            progress(PROGRESS_FILTERED)
        payload = {
            "platform": detect_platform(url),
            "strategy": result.strategy.name,
            "attempts": [attempt.to_dict() for attempt in result.attempts],
            **metadata.to_public_dict(),
        }
        self.jobs.cache_analysis(url, payload)
        return payload

    def _run_analysis(self, job, context):
        cached = self.jobs.cached_analysis(job.url)
        if cached is not None:
            return cached
        return self._analyze(job.url, cancel_check=context.cancel_check, progress=context.report_progress)

    def _track_stream(self, job, context):
        record = {
            "token_id": job.payload.get("token_id"),
            "user_id": job.user_id,
            "format_id": job.payload.get("format_id"),
            "expires_at": job.payload.get("expires_at"),
            "recorded_at": utc_now(),
        }
        with self._issuances_lock:
            self._issuances.append(record)
        log_event(logging.INFO, "stream_token_tracked", logger=logger, **record)
        return record

    def recent_issuances(self, limit=50):
        """Newest-first issuance records written by the stream-tracking queue."""
        with self._issuances_lock:
            records = list(self._issuances)
        return [dict(record) for record in reversed(records)][:limit]

    def submit_analysis(self, user_id, url):
        url = validate_video_url(url)
        job_id = self.jobs.enqueue(QUEUE_ANALYSIS, user_id, url, {"url": url})
        return self.jobs.get_status(job_id)

    def analysis_for(self, url):
        """Cached analysis for ``url``, running the ladder inline on a miss."""
        cached = self.jobs.cached_analysis(url)
        if cached is not None:
            return cached
        return self._analyze(url)

    # --- tokens --------------------------------------------------------

    def issue_token(self, user_id, url, format_id, client=None, *, title=None, ttl_minutes=None, resumable=False):
        url = validate_video_url(url)
        format_id = validate_format_id(format_id)
        title = validate_title(title)
        self.rate_limiter.check_token_create(user_id)
        try:
            analysis = self.analysis_for(url)
            known = {fmt["format_id"] for fmt in analysis.get("formats") or []}
            if format_id not in known:
                raise ValidationError("The requested format is not available for this video", code="format_unavailable")
            value, token = self.tokens.create(
                user_id,
                url,
                format_id,
                ttl_minutes,
                client,
                title=title or analysis.get("title"),
                resumable=resumable,
            )
        except Exception:
            self.rate_limiter.refund_token_create(user_id)
            raise
        try:
            self.jobs.enqueue(
                QUEUE_STREAM_TRACKING,
                user_id,
                url,
                {"token_id": token.id, "format_id": format_id, "expires_at": token.expires_at},
                request_id=f"track-{token.id}",
                dedup=False,
            )
        except Exception:
            logger.warning("Stream tracking job not queued for token_id=%s", token.id, exc_info=True)
        return value, token

    # --- streaming -----------------------------------------------------

    def open_stream(self, token_value, client=None, *, range_header=None, disconnect_check=None):
        ip = client.ip if client is not None else None
        rate_key = hash_token(token_value) if is_valid_format(token_value) else "invalid"
        self.rate_limiter.check_stream(rate_key, ip)
        try:
            return self.proxy.open(token_value, client, range_header=range_header, disconnect_check=disconnect_check)
        except Exception:
            # Failed validations and upstream failures do not count against the quota.
            self.rate_limiter.refund_stream(rate_key, ip)
            raise

    def status_snapshot(self):
        with self.status.lock:
            return {
                "started_at": self.status.started_at,
                "running": self.status.running,
                "last_housekeeping_at": self.status.last_housekeeping_at,
                "last_housekeeping": dict(self.status.last_housekeeping),
            }


def build_services(config_path, paths, **kwargs):
    """Load and validate the config at ``config_path`` and build the services."""
    config = load_config(config_path)
    errors = validate_config(config)
    if errors:
        raise ValueError("Invalid configuration: " + "; ".join(errors))
    return StreamgateServices(config, paths, **kwargs)

