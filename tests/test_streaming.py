import time

import pytest
import requests

from engine.errors import AuthorizationError, ExtractionFailed, UpstreamInterrupted, ValidationError
from engine.extractor import DEFAULT_STRATEGY, CancelledError, FormatExtractor, VideoFormat, VideoMetadata
from engine.fallback import FallbackResult
from engine.performance import PerformanceAggregator
from engine.stream_tokens import ClientInfo, StreamTokenManager
from engine.streaming import (
    MODE_DIRECT,
    MODE_PIPE,
    StreamingProxy,
    content_disposition,
    content_type_for,
    sanitize_filename,
    select_mode,
)

URL = "https://www.youtube.com/watch?v=dQw4w9WgXcQ"


class StubFallback:
    def __init__(self, extractor, metadata):
        self.extractor = extractor
        self.metadata = metadata
        self.error = None
        self.runs = 0

    def run(self, url, *, cancel_check=None):
        self.runs += 1
        if cancel_check is not None and cancel_check():
            raise CancelledError("extraction cancelled")
        if self.error is not None:
            raise self.error
        return FallbackResult(metadata=self.metadata, strategy=DEFAULT_STRATEGY, attempts=())


class FakeResponse:
    def __init__(self, chunks=(b"abc", b"def"), status_code=200, headers=None, fail_mid_stream=False):
        self.chunks = list(chunks)
        self.status_code = status_code
        self.headers = headers or {}
        self.fail_mid_stream = fail_mid_stream
        self.closed = False

    def iter_content(self, chunk_size=None):
        for chunk in self.chunks:
            yield chunk
        if self.fail_mid_stream:
            raise requests.ConnectionError("Connection reset by peer")

    def close(self):
        self.closed = True


class FakeHttp:
    def __init__(self, response=None):
        self.response = response or FakeResponse()
        self.calls = []

    def get(self, url, headers=None, stream=False, timeout=None):
        self.calls.append({"url": url, "headers": dict(headers or {}), "stream": stream, "timeout": timeout})
        if isinstance(self.response, Exception):
            raise self.response
        return self.response


class Harness:
    def __init__(self, config, sample_info, clock):
        self.metrics = PerformanceAggregator(config)
        self.tokens = StreamTokenManager(config, metrics=self.metrics, clock=clock)
        self.extractor = FormatExtractor(config)
        self.fallback = StubFallback(self.extractor, VideoMetadata.from_info(sample_info))
        self.http = FakeHttp()
        self.proxy = StreamingProxy(self.fallback, self.tokens, config, metrics=self.metrics, http=self.http)

    def token(self, format_id="18", **kwargs):
        value, _ = self.tokens.create("u1", URL, format_id, **kwargs)
        return value


@pytest.fixture
def harness(make_config, fake_ytdlp, sample_info, clock):
    config = make_config(ytdlp_command=fake_ytdlp.command, streaming={"grace_seconds": 1})
    return Harness(config, sample_info, clock)


def test_helpers():
    assert content_type_for("MP4") == "video/mp4"
    assert content_type_for("m4a") == "audio/mp4"
    assert content_type_for("flv") == "application/octet-stream"
    assert sanitize_filename("Hello, World! / 2024") == "Hello_World_2024"
    assert sanitize_filename("!!!") == "video"
    assert len(sanitize_filename("a" * 300)) == 100
    header = content_disposition("Tiếng_Việt.mp4")
    assert header.startswith('attachment; filename="Ting_Vit.mp4"')
    assert "filename*=UTF-8''Ti%E1%BA%BFng_Vi%E1%BB%87t.mp4" in header


def test_select_mode(sample_info):
    metadata = VideoMetadata.from_info(sample_info)
    assert select_mode(metadata.find_format("18")) == MODE_DIRECT
    assert select_mode(metadata.find_format("140")) == MODE_DIRECT
    assert select_mode(metadata.find_format("137")) == MODE_PIPE
    assert select_mode(metadata.find_format("hls-720")) == MODE_PIPE
    assert select_mode(VideoFormat(format_id="x", ext="mp4", has_video=True, has_audio=True)) == MODE_PIPE


def test_direct_stream_completes_and_consumes_token(harness):
    harness.http.response = FakeResponse(headers={"Content-Length": "6", "Accept-Ranges": "bytes"})
    value = harness.token(title="My Clip")
    session = harness.proxy.open(value, ClientInfo(ip="10.0.0.1"))
    assert session.mode == MODE_DIRECT
    assert session.status_code == 200
    assert session.media_type == "video/mp4"
    assert session.headers["Content-Length"] == "6"
    assert session.headers["Cache-Control"] == "no-cache"
    assert 'filename="My_Clip.mp4"' in session.headers["Content-Disposition"]
    assert b"".join(session) == b"abcdef"
    assert session.outcome.success
    assert session.outcome.bytes_sent == 6

    call = harness.http.calls[0]
    assert call["stream"] is True
    assert call["headers"]["User-Agent"] == "test-agent"
    assert "Range" not in call["headers"]

    with pytest.raises(AuthorizationError) as excinfo:
        harness.proxy.open(value)
    assert excinfo.value.code == "token_used"
    metrics = harness.metrics.current_metrics()
    assert metrics["completed_streams"] == 1
    assert metrics["bytes_sent"] == 6
    assert metrics["tokens"]["used"] == 1


def test_direct_stream_forwards_range(harness):
    harness.http.response = FakeResponse(
        chunks=(b"x" * 100,),
        status_code=206,
        headers={"Content-Length": "100", "Content-Range": "bytes 0-99/1000"},
    )
    session = harness.proxy.open(harness.token(), range_header="bytes=0-99")
    assert harness.http.calls[0]["headers"]["Range"] == "bytes=0-99"
    assert session.status_code == 206
    assert session.headers["Content-Range"] == "bytes 0-99/1000"
    assert session.headers["Accept-Ranges"] == "bytes"
    assert len(b"".join(session)) == 100


def test_unsatisfiable_range_releases_token(harness):
    harness.http.response = FakeResponse(status_code=416)
    value = harness.token()
    with pytest.raises(ValidationError):
        harness.proxy.open(value, range_header="bytes=99999-")
    assert harness.http.response.closed
    harness.tokens.claim(value)


def test_mid_stream_failure_interrupts_and_keeps_token(harness):
    response = FakeResponse(fail_mid_stream=True)
    harness.http.response = response
    value = harness.token()
    session = harness.proxy.open(value)
    received = []
    with pytest.raises(UpstreamInterrupted) as excinfo:
        for chunk in session:
            received.append(chunk)
    assert received == [b"abc", b"def"]
    assert excinfo.value.bytes_sent == 6
    assert session.outcome.outcome == "interrupted"
    assert response.closed
    assert harness.metrics.current_metrics()["interrupted_streams"] == 1
    harness.tokens.claim(value)


def test_direct_failure_before_first_byte_falls_back_to_pipe(harness, fake_ytdlp):
    harness.http.response = FakeResponse(status_code=403)
    fake_ytdlp.stream_mode("stream", nbytes=150000)
    session = harness.proxy.open(harness.token())
    assert session.mode == MODE_PIPE
    assert session.headers["Accept-Ranges"] == "none"
    assert "Content-Length" not in session.headers
    assert len(b"".join(session)) == 150000
    assert session.outcome.success
    argv = fake_ytdlp.calls()[-1]
    assert argv[argv.index("--format") + 1] == "18"


def test_pipe_merges_audio_for_video_only_format(harness, fake_ytdlp):
    fake_ytdlp.stream_mode("stream", nbytes=50000)
    value = harness.token("137")
    session = harness.proxy.open(value, range_header="bytes=0-10")
    assert session.mode == MODE_PIPE
    assert harness.http.calls == []
    assert len(b"".join(session)) == 50000
    argv = fake_ytdlp.calls()[-1]
    assert argv[argv.index("--format") + 1] == "137+bestaudio/best[ext=mp4]/best"
    assert argv[argv.index("--output") + 1] == "-"


def test_client_disconnect_kills_pipe_process(harness, fake_ytdlp):
    fake_ytdlp.stream_mode("stream_then_hang")
    value = harness.token("137")
    session = harness.proxy.open(value)
    iterator = iter(session)
    assert next(iterator)
    proc = session._source.proc
    started = time.monotonic()
    session.close()
    assert time.monotonic() - started < 5
    assert proc.poll() is not None
    assert session.outcome.outcome == "interrupted"
    assert session.outcome.error == "client disconnected"
    assert list(iterator) == []
    harness.tokens.claim(value)


def test_disconnect_during_extraction_releases_token(harness):
    value = harness.token()
    with pytest.raises(CancelledError):
        harness.proxy.open(value, disconnect_check=lambda: True)
    metrics = harness.metrics.current_metrics()
    assert metrics["failed_streams"] == 1
    assert metrics["active_streams"] == 0
    assert harness.http.calls == []
    session = harness.proxy.open(value)
    assert b"".join(session) == b"abcdef"


def test_pipe_failure_mid_stream(harness, fake_ytdlp):
    fake_ytdlp.stream_mode("stream_then_fail")
    value = harness.token("137")
    session = harness.proxy.open(value)
    with pytest.raises(UpstreamInterrupted) as excinfo:
        b"".join(session)
    assert "Connection reset" in str(excinfo.value)
    assert session.outcome.bytes_sent == 10000
    harness.tokens.claim(value)


def test_pipe_without_output_is_classified(harness, fake_ytdlp):
    fake_ytdlp.stream_mode("fail")
    fake_ytdlp.dump_mode("json", "ERROR: [youtube] abc: Video unavailable")
    value = harness.token("137")
    with pytest.raises(ExtractionFailed) as excinfo:
        harness.proxy.open(value)
    assert excinfo.value.kind == "video_unavailable"
    assert harness.metrics.current_metrics()["failed_streams"] == 1
    assert harness.metrics.current_metrics()["active_streams"] == 0
    harness.tokens.claim(value)


def test_extraction_failure_releases_token(harness):
    harness.fallback.error = ExtractionFailed("private_video", "Private video")
    value = harness.token()
    with pytest.raises(ExtractionFailed):
        harness.proxy.open(value)
    harness.tokens.claim(value)


def test_unknown_or_unsupported_format(harness):
    with pytest.raises(ValidationError) as excinfo:
        harness.proxy.open(harness.token("999"))
    assert excinfo.value.code == "format_unavailable"
    with pytest.raises(ValidationError) as excinfo:
        harness.proxy.open(harness.token("sb0"))
    assert excinfo.value.code == "format_unsupported"


def test_token_in_use_while_streaming(harness):
    value = harness.token()
    session = harness.proxy.open(value)
    with pytest.raises(AuthorizationError) as excinfo:
        harness.proxy.open(value)
    assert excinfo.value.code == "token_in_use"
    assert harness.fallback.runs == 1
    session.close()


def test_close_before_iteration_releases(harness):
    value = harness.token()
    session = harness.proxy.open(value)
    session.close()
    session.close()
    assert session.outcome.outcome == "failed"
    assert harness.http.response.closed
    harness.tokens.claim(value)


def test_invalid_token_never_reaches_upstream(harness):
    with pytest.raises(AuthorizationError):
        harness.proxy.open("f" * 64)
    assert harness.fallback.runs == 0
    assert harness.metrics.current_metrics()["total_streams"] == 0


def test_expired_token_rejected_before_extraction(harness, clock, fake_ytdlp):
    value = harness.token()
    clock.advance(31 * 60)
    with pytest.raises(AuthorizationError) as excinfo:
        harness.proxy.open(value)
    assert excinfo.value.code == "token_expired"
    assert harness.fallback.runs == 0
    assert fake_ytdlp.calls() == []


def test_resumable_token_survives_completed_stream(harness):
    value = harness.token(resumable=True)
    assert b"".join(harness.proxy.open(value)) == b"abcdef"
    harness.http.response = FakeResponse()
    assert b"".join(harness.proxy.open(value)) == b"abcdef"
    assert harness.metrics.current_metrics()["tokens"]["used"] == 0
