import json

import pytest

from engine.config import DEFAULT_CONFIG, merge_config
from engine.core import (
    JOB_CLEANUP_JOB_ID,
    SNAPSHOT_JOB_ID,
    TOKEN_SWEEP_JOB_ID,
    StreamgateServices,
    build_services,
    validate_format_id,
    validate_title,
    validate_video_url,
)
from engine.errors import AuthorizationError, ValidationError
from engine.extractor import ToolResult
from engine.job_queue import QUEUE_STREAM_TRACKING
from engine.rate_limit import LIMIT_STREAM_IP
from engine.stream_tokens import ClientInfo

URL = "https://www.youtube.com/watch?v=dQw4w9WgXcQ"


def _runner(info):
    def run(argv, *, timeout, cancel_check=None, grace_sec=3.0):
        return ToolResult(returncode=0, stdout=json.dumps(info), stderr="")

    return run


@pytest.fixture
def services(engine_paths, sample_info):
    built = StreamgateServices(merge_config(DEFAULT_CONFIG, {}), engine_paths, runner=_runner(sample_info))
    yield built
    built.stop(timeout=2)


def test_input_validation():
    assert validate_video_url("  https://vimeo.com/1 ") == "https://vimeo.com/1"
    for bad in ("", None, "javascript:alert(1)", "https://" + "a" * 2001):
        with pytest.raises(ValidationError):
            validate_video_url(bad)
    assert validate_format_id("137+140") == "137+140"
    for bad in ("", "a b", "x" * 51, "18;rm"):
        with pytest.raises(ValidationError):
            validate_format_id(bad)
    assert validate_title("  ") is None
    with pytest.raises(ValidationError):
        validate_title("t" * 201)


def test_scheduler_registers_housekeeping(services):
    services.start()
    job_ids = {job.id for job in services.scheduler.get_jobs()}
    assert job_ids == {TOKEN_SWEEP_JOB_ID, JOB_CLEANUP_JOB_ID, SNAPSHOT_JOB_ID}
    assert services.status_snapshot()["running"] is True
    services.stop(timeout=2)
    assert services.scheduler is None
    assert services.status_snapshot()["running"] is False


def test_issue_token_records_tracking_job(services, wait_until):
    services.start(scheduler=False)
    value, token = services.issue_token("alice", URL, "18", ClientInfo(ip="10.0.0.1"))
    assert token.title.startswith("Never Gonna")
    job = wait_until(lambda: services.jobs.find_by_request(f"track-{token.id}"))
    assert job.queue == QUEUE_STREAM_TRACKING
    done = wait_until(lambda: services.jobs.find_by_request(f"track-{token.id}").is_terminal and services.jobs.find_by_request(f"track-{token.id}"))
    assert done.result["token_id"] == token.id
    assert value not in json.dumps(done.result)
    assert services.recent_issuances() == [done.result]


def test_housekeeping_reports(services):
    result = services.run_housekeeping()
    assert set(result) == {"tokens", "jobs_removed", "limiter_keys_removed"}
    assert services.status_snapshot()["last_housekeeping"] == result


def test_tokens_survive_restart_when_persisted(engine_paths, sample_info):
    config = merge_config(DEFAULT_CONFIG, {"tokens": {"persist": True}})
    first = StreamgateServices(config, engine_paths, runner=_runner(sample_info))
    first.start(scheduler=False)
    value, _ = first.issue_token("alice", URL, "18")
    first.stop(timeout=2)

    second = StreamgateServices(config, engine_paths, runner=_runner(sample_info))
    second.start(scheduler=False)
    try:
        assert second.tokens.validate(value).user_id == "alice"
    finally:
        second.stop(timeout=2)


def test_build_services_rejects_invalid_config(tmp_path, engine_paths):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"fallback": {"max_attempts": 0}}), encoding="utf-8")
    with pytest.raises(ValueError) as excinfo:
        build_services(str(path), engine_paths)
    assert "fallback.max_attempts" in str(excinfo.value)


def test_analysis_is_cached_per_url(engine_paths, sample_info):
    calls = []
    run = _runner(sample_info)

    def counting(argv, **kwargs):
        calls.append(argv)
        return run(argv, **kwargs)

    services = StreamgateServices(merge_config(DEFAULT_CONFIG, {}), engine_paths, runner=counting)
    try:
        first = services.analysis_for(URL)
        second = services.analysis_for(URL)
        assert second == first
        assert len(calls) == 1
        metrics = services.metrics.current_metrics()
        assert metrics["cache_hit_rate"] == 0.5
    finally:
        services.stop(timeout=2)


def test_rejected_tokens_are_refunded(engine_paths, sample_info):
    config = merge_config(DEFAULT_CONFIG, {"rate_limits": {"stream_ip": {"limit": 3, "window_seconds": 60}}})
    services = StreamgateServices(config, engine_paths, runner=_runner(sample_info))
    client = ClientInfo(ip="10.0.0.9")
    try:
        for _ in range(4):
            with pytest.raises(AuthorizationError):
                services.open_stream("b" * 64, client)
        assert services.rate_limiter.limiters[LIMIT_STREAM_IP].peek("10.0.0.9").remaining == 3
    finally:
        services.stop(timeout=2)
