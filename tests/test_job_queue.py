import threading

import pytest

from engine.errors import ExtractionFailed, QueueFullError, ValidationError
from engine.extractor import CancelledError
from engine.job_queue import QUEUE_ANALYSIS, QUEUE_STREAM_TRACKING, JobQueue
from engine.performance import PerformanceAggregator

URL = "https://www.youtube.com/watch?v=abc"


def _config(workers=1, max_size=10):
    return {
        "queues": {
            QUEUE_ANALYSIS: {
                "workers": workers,
                "max_size": max_size,
                "retention_seconds": 100,
                "failed_retention_seconds": 1000,
            },
            QUEUE_STREAM_TRACKING: {"workers": 1, "max_size": max_size, "retention_seconds": 10},
        },
        "dedup_window_seconds": 60,
        "analysis_cache_seconds": 600,
    }


@pytest.fixture
def jobs(clock):
    queue = JobQueue(_config(), clock=clock)
    yield queue
    queue.shutdown(timeout=2)


def test_duplicate_request_returns_pending_job(jobs, clock):
    first = jobs.enqueue(QUEUE_ANALYSIS, "u1", URL)
    assert jobs.enqueue(QUEUE_ANALYSIS, "u1", URL) == first
    assert jobs.enqueue(QUEUE_ANALYSIS, "u2", URL) != first
    assert jobs.enqueue(QUEUE_ANALYSIS, "u1", URL, dedup=False) != first
    clock.advance(61)
    assert jobs.enqueue(QUEUE_ANALYSIS, "u1", URL) != first
    assert jobs.stats()[QUEUE_ANALYSIS]["totals"]["deduplicated"] == 1


def test_unknown_queue_rejected(jobs):
    with pytest.raises(ValidationError):
        jobs.enqueue("nope", "u1", URL)


def test_full_queue_rejects(clock):
    jobs = JobQueue(_config(max_size=2), clock=clock)
    jobs.enqueue(QUEUE_ANALYSIS, "u1", URL + "1")
    jobs.enqueue(QUEUE_ANALYSIS, "u1", URL + "2")
    with pytest.raises(QueueFullError) as excinfo:
        jobs.enqueue(QUEUE_ANALYSIS, "u1", URL + "3")
    assert excinfo.value.http_status == 503
    assert jobs.stats()[QUEUE_ANALYSIS]["totals"]["rejected"] == 1
    assert jobs.depths()[QUEUE_ANALYSIS] == (2, 2)


def test_job_lifecycle_and_progress(jobs, wait_until):
    entered = threading.Event()
    release = threading.Event()
    seen = []

    def handler(job, context):
        entered.set()
        context.report_progress(60)
        context.report_progress(30)
        seen.append(jobs.get_status(job.id).progress)
        release.wait(5)
        return {"title": "done", "url": job.url}

    jobs.register_handler(QUEUE_ANALYSIS, handler)
    job_id = jobs.enqueue(QUEUE_ANALYSIS, "u1", URL, request_id="req-1")
    assert jobs.get_status(job_id).public_status == "queued"
    jobs.start()
    assert entered.wait(5)
    running = wait_until(lambda: jobs.get_status(job_id).progress >= 60 and jobs.get_status(job_id))
    assert running.public_status == "processing"
    release.set()
    done = wait_until(lambda: (jobs.get_status(job_id).is_terminal and jobs.get_status(job_id)))
    assert done.state == "completed"
    assert done.progress == 100
    assert done.result == {"title": "done", "url": URL}
    assert seen == [60]
    assert jobs.find_by_request("req-1").id == job_id


def test_status_is_a_copy(jobs):
    job_id = jobs.enqueue(QUEUE_ANALYSIS, "u1", URL)
    snapshot = jobs.get_status(job_id)
    snapshot.state = "completed"
    assert jobs.get_status(job_id).state == "queued"


@pytest.mark.parametrize(
    "error,kind",
    [
        (ExtractionFailed("private_video", "Private video"), "private_video"),
        (CancelledError("stop"), "cancelled"),
        (ValidationError("bad"), "validation_failed"),
        (RuntimeError("boom"), "internal_error"),
    ],
)
def test_handler_errors_fail_the_job(jobs, wait_until, error, kind):
    def handler(job, context):
        raise error

    jobs.register_handler(QUEUE_ANALYSIS, handler)
    job_id = jobs.enqueue(QUEUE_ANALYSIS, "u1", URL)
    jobs.start()
    job = wait_until(lambda: jobs.get_status(job_id).is_terminal and jobs.get_status(job_id))
    assert job.state == "failed"
    assert job.error_kind == kind
    assert job.result is None


def test_finished_job_does_not_block_new_request(jobs, wait_until):
    jobs.register_handler(QUEUE_ANALYSIS, lambda job, context: {"ok": True})
    jobs.start()
    first = jobs.enqueue(QUEUE_ANALYSIS, "u1", URL)
    wait_until(lambda: jobs.get_status(first).is_terminal)
    assert jobs.enqueue(QUEUE_ANALYSIS, "u1", URL) != first


def test_cleanup_uses_per_state_retention(jobs, clock, wait_until):
    def handler(job, context):
        if job.payload.get("fail"):
            raise ExtractionFailed("video_unavailable", "gone")
        return {"ok": True}

    jobs.register_handler(QUEUE_ANALYSIS, handler)
    jobs.start()
    ok_id = jobs.enqueue(QUEUE_ANALYSIS, "u1", URL, request_id="ok")
    failed_id = jobs.enqueue(QUEUE_ANALYSIS, "u1", URL + "x", {"fail": True}, request_id="bad")
    wait_until(lambda: jobs.get_status(ok_id).is_terminal and jobs.get_status(failed_id).is_terminal)

    clock.advance(99)
    assert jobs.cleanup() == 0
    clock.advance(2)
    assert jobs.cleanup() == 1
    assert jobs.get_status(ok_id) is None
    assert jobs.find_by_request("ok") is None
    assert jobs.get_status(failed_id).state == "failed"
    clock.advance(1000)
    assert jobs.cleanup() == 1
    assert jobs.get_status(failed_id) is None


def test_analysis_cache_expires_and_counts(clock):
    metrics = PerformanceAggregator(clock=clock)
    jobs = JobQueue(_config(), clock=clock, metrics=metrics)
    assert jobs.cached_analysis(URL) is None
    jobs.cache_analysis(URL, {"title": "t"})
    assert jobs.cached_analysis(URL) == {"title": "t"}
    clock.advance(601)
    assert jobs.cached_analysis(URL) is None
    assert metrics.current_metrics()["cache_hit_rate"] == pytest.approx(1 / 3)


def test_shutdown_fails_queued_jobs(clock):
    metrics = PerformanceAggregator(clock=clock)
    jobs = JobQueue(_config(), clock=clock, metrics=metrics)
    job_id = jobs.enqueue(QUEUE_ANALYSIS, "u1", URL)
    jobs.shutdown(timeout=1)
    job = jobs.get_status(job_id)
    assert job.state == "failed"
    assert job.error_kind == "cancelled"
    counters = metrics.current_metrics()["jobs"][QUEUE_ANALYSIS]
    assert counters == {"enqueued": 1, "started": 0, "succeeded": 0, "failed": 1}
    with pytest.raises(QueueFullError):
        jobs.enqueue(QUEUE_ANALYSIS, "u1", URL + "2")


def test_workers_bounded_per_queue(clock, wait_until):
    jobs = JobQueue(_config(workers=2), clock=clock)
    running = []
    peak = []
    lock = threading.Lock()
    gate = threading.Event()

    def handler(job, context):
        with lock:
            running.append(job.id)
            peak.append(len(running))
        gate.wait(5)
        with lock:
            running.remove(job.id)
        return {}

    jobs.register_handler(QUEUE_ANALYSIS, handler)
    ids = [jobs.enqueue(QUEUE_ANALYSIS, "u1", f"{URL}&n={i}") for i in range(5)]
    jobs.start()
    try:
        wait_until(lambda: len(running) == 2)
        assert jobs.stats()[QUEUE_ANALYSIS]["running"] == 2
        gate.set()
        wait_until(lambda: all(jobs.get_status(job_id).is_terminal for job_id in ids))
        assert max(peak) == 2
    finally:
        gate.set()
        jobs.shutdown(timeout=2)
