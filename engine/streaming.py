import logging
import re
import subprocess
import threading
import time
import urllib.parse
from collections import deque
from dataclasses import dataclass
from typing import Optional
from uuid import uuid4

import requests

from engine.errors import (
    ERROR_NETWORK,
    ERROR_RATE_LIMITED,
    ERROR_TIMEOUT,
    ERROR_UNKNOWN,
    ERROR_VIDEO_UNAVAILABLE,
    ExtractionFailed,
    UpstreamInterrupted,
    ValidationError,
)
from engine.extractor import is_http_url, terminate_process
from engine.logging_setup import log_event, redact_token

logger = logging.getLogger(__name__)

MODE_DIRECT = "direct"
MODE_PIPE = "pipe"

OUTCOME_COMPLETED = "completed"
OUTCOME_INTERRUPTED = "interrupted"
OUTCOME_FAILED = "failed"

CONTENT_TYPES = {
    "mp4": "video/mp4",
    "webm": "video/webm",
    "mkv": "video/x-matroska",
    "avi": "video/x-msvideo",
    "mov": "video/quicktime",
    "m4a": "audio/mp4",
    "mp3": "audio/mpeg",
    "wav": "audio/wav",
}

_MANIFEST_PROTOCOLS = ("m3u8", "m3u8_native", "http_dash_segments", "dash", "f4m", "ism")
_FILENAME_STRIP_RE = re.compile(r"[^\w\s-]", re.UNICODE)
_WHITESPACE_RE = re.compile(r"\s+")
_STDERR_TAIL_LINES = 50


def content_type_for(ext):
    return CONTENT_TYPES.get((ext or "").lower(), "application/octet-stream")


def sanitize_filename(title, max_length=100):
    cleaned = _FILENAME_STRIP_RE.sub("", title or "").strip()
    cleaned = _WHITESPACE_RE.sub("_", cleaned)
    return cleaned[:max_length] or "video"


def content_disposition(filename):
    ascii_name = filename.encode("ascii", "ignore").decode("ascii") or "video"
    quoted = urllib.parse.quote(filename)
    return f"attachment; filename=\"{ascii_name}\"; filename*=UTF-8''{quoted}"


def select_mode(fmt):
    """``direct`` when the format is a single progressive http(s) file."""
    if not fmt.url or not is_http_url(fmt.url):
        return MODE_PIPE
    protocol = (fmt.protocol or "https").lower()
    if any(part in protocol for part in _MANIFEST_PROTOCOLS):
        return MODE_PIPE
    if fmt.has_video and not fmt.has_audio:
        return MODE_PIPE
    if not fmt.has_video and not fmt.has_audio:
        return MODE_PIPE
    return MODE_DIRECT


@dataclass
class StreamOutcome:
    stream_id: str
    mode: str
    outcome: str
    bytes_sent: int
    duration: float
    error: Optional[str] = None

    @property
    def success(self):
        return self.outcome == OUTCOME_COMPLETED


class _PipeSource:
    def __init__(self, proc, chunk_size, grace_sec):
        self.proc = proc
        self.chunk_size = chunk_size
        self.grace_sec = grace_sec
        self._stderr = deque(maxlen=_STDERR_TAIL_LINES)
        self._reader = threading.Thread(target=self._drain_stderr, name="stream-stderr", daemon=True)
        self._reader.start()

    def _drain_stderr(self):
        stream = self.proc.stderr
        if stream is None:
            return
        try:
            for raw_line in iter(stream.readline, b""):
                self._stderr.append(raw_line.decode("utf-8", "replace").rstrip())
        except (OSError, ValueError):
            return

    def read(self):
        return self.proc.stdout.read(self.chunk_size)

    def stderr_text(self):
        self._reader.join(timeout=1)
        return "\n".join(self._stderr)

    def failure(self):
        """Non-zero exit after EOF means the transfer is incomplete."""
        try:
            returncode = self.proc.wait(timeout=self.grace_sec)
        except subprocess.TimeoutExpired:
            return "stream process did not exit after end of output"
        if returncode != 0:
            return self.stderr_text()[-500:] or f"stream process exited with {returncode}"
        return None

    def close(self):
        terminate_process(self.proc, grace_sec=self.grace_sec)
        for stream in (self.proc.stdout, self.proc.stderr):
            if stream is not None:
                try:
                    stream.close()
                except (OSError, ValueError):
                    pass


class _DirectSource:
    def __init__(self, response, chunk_size):
        self.response = response
        self._chunks = response.iter_content(chunk_size=chunk_size)

    def read(self):
        return next(self._chunks, b"")

    def failure(self):
        return None

    def close(self):
        self.response.close()


class StreamSession:
    """One relay of upstream bytes to one client.

    Iterate it to get chunks. Whatever ends the iteration (exhaustion,
    upstream error, ``close()`` or a disconnect) tears down the upstream and
    reports the outcome exactly once.
    """

    def __init__(
        self,
        proxy,
        token_value,
        token,
        *,
        stream_id,
        mode,
        source,
        first_chunk,
        status_code,
        headers,
        media_type,
        started,
        disconnect_check=None,
    ):
        self.proxy = proxy
        self.token_value = token_value
        self.token = token
        self.stream_id = stream_id
        self.mode = mode
        self.status_code = status_code
        self.headers = headers
        self.media_type = media_type
        self.bytes_sent = 0
        self.outcome = None
        self._source = source
        self._first_chunk = first_chunk
        self._started = started
        self._disconnect_check = disconnect_check
        self._closing = threading.Event()
        self._finalize_lock = threading.Lock()
        self._source_lock = threading.Lock()
        self._source_closed = False
        self._gen = self._relay()

    def __iter__(self):
        return self._gen

    def _close_source(self):
        with self._source_lock:
            if self._source_closed:
                return
            self._source_closed = True
        try:
            self._source.close()
        except Exception:
            logger.exception("Failed to close upstream for stream %s", self.stream_id)

    def close(self):
        """Stop relaying and release the upstream; safe from any thread."""
        self._closing.set()
        self._close_source()
        try:
            self._gen.close()
        except ValueError:
            # Iteration is in progress on another thread; it stops at the next chunk.
            pass
        self._finalize(OUTCOME_INTERRUPTED if self.bytes_sent else OUTCOME_FAILED, "client disconnected")

    def _client_gone(self):
        if self._closing.is_set():
            return True
        return bool(self._disconnect_check and self._disconnect_check())

    def _relay(self):
        error = None
        completed = False
        try:
            chunk = self._first_chunk
            self._first_chunk = None
            while chunk:
                if self._client_gone():
                    error = "client disconnected"
                    break
                if self.proxy.clock() - self._started > self.proxy.max_duration:
                    error = "stream duration limit reached"
                    break
                self.bytes_sent += len(chunk)
                self.proxy.report_progress(self.stream_id, len(chunk))
                yield chunk
                chunk = self._source.read()
            else:
                if self._closing.is_set():
                    error = "client disconnected"
                else:
                    error = self._source.failure()
                    completed = error is None
        except GeneratorExit:
            error = "client disconnected"
            raise
        except (requests.RequestException, OSError, ValueError) as exc:
            if self._closing.is_set():
                error = "client disconnected"
            else:
                error = str(exc) or exc.__class__.__name__
        finally:
            self._close_source()
            if completed:
                self._finalize(OUTCOME_COMPLETED, None)
            else:
                self._finalize(OUTCOME_INTERRUPTED if self.bytes_sent else OUTCOME_FAILED, error)
        if not completed and error != "client disconnected":
            raise UpstreamInterrupted(f"Stream interrupted: {error}", bytes_sent=self.bytes_sent)

    def _finalize(self, outcome, error):
        with self._finalize_lock:
            if self.outcome is not None:
                return
            self.outcome = StreamOutcome(
                stream_id=self.stream_id,
                mode=self.mode,
                outcome=outcome,
                bytes_sent=self.bytes_sent,
                duration=max(0.0, self.proxy.clock() - self._started),
                error=error,
            )
        self.proxy.finish(self)


class StreamingProxy:
    def __init__(self, fallback, tokens, config=None, *, metrics=None, http=None, clock=None):
        cfg = (config or {}).get("streaming") or {}
        self.fallback = fallback
        self.extractor = fallback.extractor
        self.tokens = tokens
        self.metrics = metrics
        self.http = http or requests
        self.clock = clock or time.monotonic
        self.chunk_size = int(cfg.get("chunk_size", 65536))
        self.grace_seconds = float(cfg.get("grace_seconds", 3.0))
        self.connect_timeout = float(cfg.get("connect_timeout_seconds", 15))
        self.read_timeout = float(cfg.get("read_timeout_seconds", 60))
        self.max_duration = float(cfg.get("max_duration_seconds", 1800))

    def open(self, token_value, client=None, *, range_header=None, disconnect_check=None):
        """Claim the token, resolve its format and start the upstream.

        Failures before the first byte raise; the token is released so the
        caller may try again.
        """
        token = self.tokens.claim(token_value, client)
        stream_id = uuid4().hex
        started = self.clock()
        if self.metrics is not None:
            self.metrics.stream_started(stream_id, token.user_id)
        log_event(
            logging.INFO,
            "stream_open",
            logger=logger,
            stream_id=stream_id,
            token=redact_token(token_value),
            user_id=token.user_id,
            format_id=token.format_id,
        )
        try:
            result = self.fallback.run(token.video_url, cancel_check=disconnect_check)
            fmt = result.metadata.find_format(token.format_id)
            if fmt is None:
                raise ValidationError("The requested format is no longer available", code="format_unavailable")
            if not fmt.is_supported():
                raise ValidationError(f"Unsupported container: {fmt.ext}", code="format_unsupported")
            mode = select_mode(fmt)
            source = first_chunk = None
            status_code = 200
            extra_headers = {}
            if mode == MODE_DIRECT:
                try:
                    source, first_chunk, status_code, extra_headers = self._open_direct(fmt, range_header)
                except ExtractionFailed as exc:
                    logger.warning("Direct relay failed before first byte (%s); switching to pipe", exc.kind)
                    mode = MODE_PIPE
            if mode == MODE_PIPE:
                source, first_chunk = self._open_pipe(token.video_url, fmt, result.strategy)
                extra_headers = {"Accept-Ranges": "none"}
        except Exception as exc:
            self.tokens.release(token_value)
            if self.metrics is not None:
                self.metrics.stream_finished(stream_id, OUTCOME_FAILED, 0, str(exc))
            log_event(
                logging.WARNING,
                "stream_open_failed",
                logger=logger,
                stream_id=stream_id,
                token=redact_token(token_value),
                error=getattr(exc, "message", str(exc)),
            )
            raise

        filename = f"{sanitize_filename(token.title or result.metadata.title)}.{fmt.ext}"
        headers = {
            "Content-Disposition": content_disposition(filename),
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        }
        headers.update(extra_headers)
        return StreamSession(
            self,
            token_value,
            token,
            stream_id=stream_id,
            mode=mode,
            source=source,
            first_chunk=first_chunk,
            status_code=status_code,
            headers=headers,
            media_type=content_type_for(fmt.ext),
            started=started,
            disconnect_check=disconnect_check,
        )

    def _open_direct(self, fmt, range_header):
        request_headers = dict(fmt.http_headers or {})
        if range_header:
            request_headers["Range"] = range_header
        try:
            response = self.http.get(
                fmt.url,
                headers=request_headers,
                stream=True,
                timeout=(self.connect_timeout, self.read_timeout),
            )
        except requests.Timeout as exc:
            raise ExtractionFailed(ERROR_TIMEOUT, str(exc)) from exc
        except requests.RequestException as exc:
            raise ExtractionFailed(ERROR_NETWORK, str(exc)) from exc

        if response.status_code == 416:
            response.close()
            raise ValidationError("Requested range not satisfiable", code="range_not_satisfiable")
        if response.status_code >= 400:
            response.close()
            if response.status_code == 429:
                kind = ERROR_RATE_LIMITED
            elif response.status_code in (404, 410):
                kind = ERROR_VIDEO_UNAVAILABLE
            else:
                kind = ERROR_NETWORK
            raise ExtractionFailed(kind, f"upstream HTTP {response.status_code}")

        headers = {}
        length = response.headers.get("Content-Length")
        if length:
            headers["Content-Length"] = length
        status_code = 200
        if response.status_code == 206 and response.headers.get("Content-Range"):
            status_code = 206
            headers["Content-Range"] = response.headers["Content-Range"]
            headers["Accept-Ranges"] = "bytes"
        elif response.headers.get("Accept-Ranges"):
            headers["Accept-Ranges"] = response.headers["Accept-Ranges"]

        source = _DirectSource(response, self.chunk_size)
        try:
            first_chunk = source.read()
        except requests.RequestException as exc:
            source.close()
            raise ExtractionFailed(ERROR_NETWORK, str(exc)) from exc
        return source, first_chunk, status_code, headers

    def _open_pipe(self, url, fmt, strategy):
        argv = self.extractor.build_stream_argv(url, fmt, strategy)
        try:
            proc = self.extractor.open_stream_process(argv)
        except FileNotFoundError as exc:
            raise ExtractionFailed(ERROR_UNKNOWN, f"extractor binary not found: {exc}") from exc
        source = _PipeSource(proc, self.chunk_size, self.grace_seconds)
        try:
            first_chunk = source.read()
        except (OSError, ValueError):
            source.close()
            raise
        if not first_chunk:
            stderr = source.failure()
            source.close()
            kind = self.extractor.classifier.classify(stderr or "")
            raise ExtractionFailed(kind, stderr or "stream produced no output")
        return source, first_chunk

    def report_progress(self, stream_id, nbytes):
        if self.metrics is not None:
            self.metrics.stream_progress(stream_id, nbytes)

    def finish(self, session):
        outcome = session.outcome
        if outcome.success and not session.token.resumable:
            self.tokens.mark_used(session.token_value)
        else:
            # Resumable tokens stay usable until they expire.
            self.tokens.release(session.token_value)
        if self.metrics is not None:
            self.metrics.stream_finished(session.stream_id, outcome.outcome, outcome.bytes_sent, outcome.error)
        log_event(
            logging.INFO if outcome.success else logging.WARNING,
            "stream_finished",
            logger=logger,
            stream_id=session.stream_id,
            token=redact_token(session.token_value),
            mode=outcome.mode,
            outcome=outcome.outcome,
            bytes_sent=outcome.bytes_sent,
            duration=round(outcome.duration, 3),
            error=outcome.error,
        )