import itertools
import json
import logging
import re
import subprocess
import threading
import time
import urllib.parse
from dataclasses import dataclass, field
from typing import Optional

from config.settings import SUPPORTED_FORMAT_EXTS
from engine.config import ALTERNATE_USER_AGENTS, DESKTOP_USER_AGENTS, MOBILE_USER_AGENTS
from engine.errors import (
    ERROR_AUTH_REQUIRED,
    ERROR_NETWORK,
    ERROR_PRIVATE_VIDEO,
    ERROR_RATE_LIMITED,
    ERROR_TIMEOUT,
    ERROR_UNKNOWN,
    ERROR_VIDEO_UNAVAILABLE,
    ExtractionFailed,
)
from engine.logging_setup import log_event

logger = logging.getLogger(__name__)

PLATFORM_YOUTUBE = "youtube"
PLATFORM_TIKTOK = "tiktok"
PLATFORM_INSTAGRAM = "instagram"
PLATFORM_FACEBOOK = "facebook"
PLATFORM_TWITTER = "twitter"
PLATFORM_GENERIC = "generic"

_PLATFORM_HOSTS = (
    (PLATFORM_YOUTUBE, ("youtube.com", "youtu.be", "youtube-nocookie.com")),
    (PLATFORM_TIKTOK, ("tiktok.com",)),
    (PLATFORM_INSTAGRAM, ("instagram.com",)),
    (PLATFORM_FACEBOOK, ("facebook.com", "fb.watch")),
    (PLATFORM_TWITTER, ("twitter.com", "x.com")),
)

STRATEGY_DEFAULT = "default"
STRATEGY_ALTERNATE_ARGS = "alternate_args"
STRATEGY_ALTERNATE_IDENTITY = "alternate_identity"
STRATEGY_COOKIES = "cookies"


class CancelledError(Exception):
    """Raised to abort an in-flight extraction (client gone or shutdown)."""


@dataclass(frozen=True)
class PlatformProfile:
    user_agents: str
    extractor_args: Optional[str] = None
    alternate_extractor_args: Optional[str] = None
    alternate_user_agent: Optional[str] = None


# Explicit strategy table; new platforms get a row here, not a plugin.
PLATFORM_PROFILES = {
    PLATFORM_YOUTUBE: PlatformProfile(
        user_agents="desktop",
        extractor_args="youtube:skip=dash,hls",
        alternate_extractor_args="youtube:skip=dash;player_client=web,android",
        alternate_user_agent=ALTERNATE_USER_AGENTS["youtube"],
    ),
    PLATFORM_TIKTOK: PlatformProfile(
        user_agents="mobile",
        alternate_user_agent=ALTERNATE_USER_AGENTS["tiktok"],
    ),
    PLATFORM_INSTAGRAM: PlatformProfile(user_agents="mobile"),
    PLATFORM_FACEBOOK: PlatformProfile(user_agents="desktop"),
    PLATFORM_TWITTER: PlatformProfile(user_agents="desktop"),
    PLATFORM_GENERIC: PlatformProfile(user_agents="desktop"),
}


@dataclass(frozen=True)
class ExtractionStrategy:
    name: str
    alternate_args: bool = False
    alternate_identity: bool = False
    cookies: bool = False


DEFAULT_STRATEGIES = (
    ExtractionStrategy(STRATEGY_DEFAULT),
    ExtractionStrategy(STRATEGY_ALTERNATE_ARGS, alternate_args=True),
    ExtractionStrategy(STRATEGY_ALTERNATE_IDENTITY, alternate_args=True, alternate_identity=True),
    ExtractionStrategy(STRATEGY_COOKIES, cookies=True),
)
DEFAULT_STRATEGY = DEFAULT_STRATEGIES[0]


def detect_platform(url):
    try:
        host = (urllib.parse.urlparse(url or "").hostname or "").lower()
    except ValueError:
        return PLATFORM_GENERIC
    for platform, domains in _PLATFORM_HOSTS:
        for domain in domains:
            if host == domain or host.endswith("." + domain):
                return platform
    return PLATFORM_GENERIC


def is_http_url(url):
    if not url or not isinstance(url, str):
        return False
    try:
        parsed = urllib.parse.urlparse(url)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


class UserAgentRotator:
    def __init__(self, pools=None):
        pools = pools or {}
        desktop = list(pools.get("desktop") or DESKTOP_USER_AGENTS)
        mobile = list(pools.get("mobile") or MOBILE_USER_AGENTS)
        self._cycles = {"desktop": itertools.cycle(desktop), "mobile": itertools.cycle(mobile)}
        self._lock = threading.Lock()

    def next(self, pool):
        with self._lock:
            return next(self._cycles.get(pool) or self._cycles["desktop"])


# --- Error classification -------------------------------------------------

def _contains(*markers):
    lowered = tuple(m.lower() for m in markers)

    def _predicate(text):
        return any(marker in text for marker in lowered)

    return _predicate


def _matches(pattern):
    compiled = re.compile(pattern, re.IGNORECASE)

    def _predicate(text):
        return bool(compiled.search(text))

    return _predicate


# Order matters: the first matching rule wins.
DEFAULT_ERROR_RULES = (
    (_contains("http error 429", "too many requests", "rate-limited", "rate limit"), ERROR_RATE_LIMITED),
    (
        _contains(
            "private video",
            "this video is private",
            "members-only",
            "members only",
            "join this channel",
            "this account is private",
        ),
        ERROR_PRIVATE_VIDEO,
    ),
    (
        _contains(
            "sign in to confirm",
            "confirm you're not a bot",
            "login required",
            "log in to",
            "use --cookies",
            "cookies-from-browser",
            "age-restricted",
            "age restricted",
            "inappropriate for some users",
        ),
        ERROR_AUTH_REQUIRED,
    ),
    (
        _contains(
            "video unavailable",
            "this video is unavailable",
            "has been removed",
            "video has been removed",
            "not available in your country",
            "geo-restricted",
            "unable to extract",
            "unsupported url",
            "http error 404",
            "does not exist",
        ),
        ERROR_VIDEO_UNAVAILABLE,
    ),
    (_contains("timed out", "timeout"), ERROR_TIMEOUT),
    (
        _contains(
            "connection reset",
            "connection refused",
            "temporary failure",
            "name or service not known",
            "network error",
            "network is unreachable",
            "unable to download webpage",
            "couldn't download webpage",
            "http error 5",
            "http error 403",
            "service unavailable",
            "ssl",
        ),
        ERROR_NETWORK,
    ),
)


class ErrorClassifier:
    """Ordered ``(predicate, kind)`` table over the tool's diagnostic output."""

    def __init__(self, rules=None, *, overrides=None):
        extra = []
        for rule in overrides or ():
            pattern = rule.get("pattern")
            kind = rule.get("kind")
            if not pattern or not kind:
                continue
            predicate = _matches(pattern) if rule.get("regex") else _contains(pattern)
            extra.append((predicate, kind))
        self.rules = tuple(extra) + tuple(rules if rules is not None else DEFAULT_ERROR_RULES)

    def classify(self, text, *, timed_out=False):
        if timed_out:
            return ERROR_TIMEOUT
        lower_text = str(text or "").lower()
        if not lower_text.strip():
            return ERROR_UNKNOWN
        for predicate, kind in self.rules:
            if predicate(lower_text):
                return kind
        return ERROR_UNKNOWN


# --- Metadata -------------------------------------------------------------

def _int_or_none(value):
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def _float_or_none(value):
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class VideoFormat:
    format_id: str
    ext: str
    width: Optional[int] = None
    height: Optional[int] = None
    resolution: Optional[str] = None
    fps: Optional[float] = None
    has_video: bool = False
    has_audio: bool = False
    vcodec: Optional[str] = None
    acodec: Optional[str] = None
    filesize: Optional[int] = None
    filesize_approximate: bool = False
    quality_label: str = ""
    format_note: Optional[str] = None
    url: Optional[str] = None
    protocol: Optional[str] = None
    http_headers: dict = field(default_factory=dict, compare=False, hash=False)

    @classmethod
    def from_info(cls, fmt):
        width = _int_or_none(fmt.get("width"))
        height = _int_or_none(fmt.get("height"))
        vcodec = fmt.get("vcodec")
        acodec = fmt.get("acodec")
        has_video = vcodec != "none" if vcodec else bool(width or height)
        has_audio = bool(acodec) and acodec != "none"
        exact_size = _int_or_none(fmt.get("filesize"))
        approx_size = _int_or_none(fmt.get("filesize_approx"))
        resolution = fmt.get("resolution")
        if not resolution:
            resolution = f"{width}x{height}" if width and height else ("audio only" if not has_video else None)
        note = fmt.get("format_note")
        if note:
            label = str(note)
        elif height:
            label = f"{height}p"
        elif not has_video and fmt.get("abr"):
            label = f"audio {int(float(fmt['abr']))}k"
        else:
            label = str(fmt.get("format_id") or "")
        headers = fmt.get("http_headers")
        return cls(
            format_id=str(fmt.get("format_id") or ""),
            ext=str(fmt.get("ext") or ""),
            width=width,
            height=height,
            resolution=resolution,
            fps=_float_or_none(fmt.get("fps")),
            has_video=has_video,
            has_audio=has_audio,
            vcodec=vcodec,
            acodec=acodec,
            filesize=exact_size or approx_size,
            filesize_approximate=not exact_size and bool(approx_size),
            quality_label=label,
            format_note=note,
            url=fmt.get("url"),
            protocol=fmt.get("protocol"),
            http_headers=dict(headers) if isinstance(headers, dict) else {},
        )

    def is_supported(self):
        return (self.ext or "").lower() in SUPPORTED_FORMAT_EXTS

    def to_public_dict(self):
        # Direct URLs and headers stay server side.
        return {
            "format_id": self.format_id,
            "ext": self.ext,
            "resolution": self.resolution,
            "width": self.width,
            "height": self.height,
            "fps": self.fps,
            "has_video": self.has_video,
            "has_audio": self.has_audio,
            "vcodec": self.vcodec,
            "acodec": self.acodec,
            "filesize": self.filesize,
            "filesize_approximate": self.filesize_approximate,
            "quality_label": self.quality_label,
            "format_note": self.format_note,
        }


@dataclass(frozen=True)
class VideoMetadata:
    id: Optional[str]
    title: str
    formats: tuple = ()
    thumbnail: str = ""
    duration: Optional[float] = None
    uploader: Optional[str] = None
    upload_date: Optional[str] = None
    description: Optional[str] = None
    webpage_url: Optional[str] = None
    extractor: Optional[str] = None

    @classmethod
    def from_info(cls, info):
        formats = []
        for fmt in info.get("formats") or []:
            if isinstance(fmt, dict) and fmt.get("format_id"):
                formats.append(VideoFormat.from_info(fmt))
        if not formats and info.get("format_id") and info.get("url"):
            # Single-format extractors put the format fields on the top level.
            formats.append(VideoFormat.from_info(info))
        return cls(
            id=info.get("id"),
            title=info.get("title") or "Unknown Title",
            formats=tuple(formats),
            thumbnail=info.get("thumbnail") or "",
            duration=_float_or_none(info.get("duration")),
            uploader=info.get("uploader") or info.get("channel"),
            upload_date=info.get("upload_date"),
            description=info.get("description"),
            webpage_url=info.get("webpage_url"),
            extractor=info.get("extractor_key") or info.get("extractor"),
        )

    def supported_formats(self):
        return tuple(fmt for fmt in self.formats if fmt.ext and fmt.is_supported())

    def find_format(self, format_id):
        for fmt in self.formats:
            if fmt.format_id == format_id:
                return fmt
        return None

    def with_formats(self, formats):
        return VideoMetadata(
            id=self.id,
            title=self.title,
            formats=tuple(formats),
            thumbnail=self.thumbnail,
            duration=self.duration,
            uploader=self.uploader,
            upload_date=self.upload_date,
            description=self.description,
            webpage_url=self.webpage_url,
            extractor=self.extractor,
        )

    def to_public_dict(self):
        return {
            "id": self.id,
            "title": self.title,
            "thumbnail": self.thumbnail,
            "duration": self.duration,
            "uploader": self.uploader,
            "upload_date": self.upload_date,
            "description": self.description,
            "webpage_url": self.webpage_url,
            "extractor": self.extractor,
            "formats": [fmt.to_public_dict() for fmt in self.formats],
        }


def parse_dump_json(stdout_text):
    """Return the first JSON object from line-delimited ``--dump-json`` output."""
    for line in (stdout_text or "").splitlines():
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict):
            return payload
    return None


# --- Subprocess handling --------------------------------------------------

@dataclass
class ToolResult:
    returncode: Optional[int]
    stdout: str
    stderr: str
    timed_out: bool = False
    duration: float = 0.0


def terminate_process(proc, *, grace_sec=3.0):
    """Terminate ``proc``, kill it after ``grace_sec`` and reap it."""
    if proc is None:
        return
    try:
        if proc.poll() is not None:
            return
    except OSError:
        return
    try:
        proc.terminate()
    except OSError:
        pass
    try:
        proc.wait(timeout=grace_sec)
        return
    except subprocess.TimeoutExpired:
        pass
    try:
        proc.kill()
    except OSError:
        pass
    try:
        proc.wait(timeout=grace_sec)
    except subprocess.TimeoutExpired:
        logger.error("Subprocess pid=%s did not exit after kill", proc.pid)


def _redact_argv(argv):
    redacted = list(argv)
    for idx, part in enumerate(redacted[:-1]):
        if part == "--cookies":
            redacted[idx + 1] = "<redacted>"
    return redacted


def run_tool(argv, *, timeout, cancel_check=None, grace_sec=3.0, poll_interval=0.05):
    """Run ``argv`` bound to a deadline and an optional cancel check.

    The child is always reaped: on timeout it is terminated and a
    ``ToolResult`` with ``timed_out`` is returned, on cancel ``CancelledError``
    is raised after teardown.
    """
    started = time.monotonic()
    deadline = started + max(0.0, float(timeout))
    proc = subprocess.Popen(
        argv,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        encoding="utf-8",
        errors="replace",
    )
    stdout_parts = []
    stderr_parts = []

    def _drain(stream, sink):
        if stream is None:
            return
        try:
            for raw_line in iter(stream.readline, ""):
                sink.append(raw_line)
        finally:
            try:
                stream.close()
            except OSError:
                pass

    readers = [
        threading.Thread(target=_drain, args=(proc.stdout, stdout_parts), name="extractor-stdout", daemon=True),
        threading.Thread(target=_drain, args=(proc.stderr, stderr_parts), name="extractor-stderr", daemon=True),
    ]
    for reader in readers:
        reader.start()

    timed_out = False
    cancelled = False
    while proc.poll() is None:
        if callable(cancel_check) and cancel_check():
            cancelled = True
            break
        if time.monotonic() >= deadline:
            timed_out = True
            break
        time.sleep(poll_interval)

    if cancelled or timed_out:
        terminate_process(proc, grace_sec=grace_sec)
    returncode = proc.wait()
    for reader in readers:
        reader.join(timeout=1)
    if cancelled:
        raise CancelledError("extraction cancelled")
    return ToolResult(
        returncode=returncode,
        stdout="".join(stdout_parts),
        stderr="".join(stderr_parts).strip(),
        timed_out=timed_out,
        duration=time.monotonic() - started,
    )


class FormatExtractor:
    """Runs the external extractor once per call; stateless apart from UA rotation."""

    def __init__(self, config=None, cookie_store=None, *, runner=None):
        cfg = config or {}
        self.config = cfg
        self.command = list(cfg.get("ytdlp_command") or ["yt-dlp"])
        extraction = cfg.get("extraction") or {}
        self.attempt_timeout = float(extraction.get("attempt_timeout_seconds", 45))
        self.socket_timeout = extraction.get("socket_timeout_seconds", 20)
        self.kill_grace = float(extraction.get("kill_grace_seconds", 3.0))
        self.user_agents = UserAgentRotator(cfg.get("user_agents"))
        self.classifier = ErrorClassifier(overrides=cfg.get("error_patterns"))
        self.cookie_store = cookie_store
        self.runner = runner or run_tool

    def cookie_file(self):
        if self.cookie_store is None:
            return None
        return self.cookie_store.resolve()

    def strategy_available(self, strategy, url=None):
        if strategy.cookies:
            return bool(self.cookie_file())
        return True

    def _identity_args(self, platform, strategy):
        profile = PLATFORM_PROFILES.get(platform) or PLATFORM_PROFILES[PLATFORM_GENERIC]
        args = []
        extractor_args = profile.extractor_args
        if strategy.alternate_args and profile.alternate_extractor_args:
            extractor_args = profile.alternate_extractor_args
        if extractor_args:
            args += ["--extractor-args", extractor_args]
        if strategy.alternate_identity and profile.alternate_user_agent:
            user_agent = profile.alternate_user_agent
        else:
            user_agent = self.user_agents.next(profile.user_agents)
        args += ["--user-agent", user_agent]
        return args

    def _common_args(self, strategy, cookie_file):
        args = ["--no-warnings", "--no-check-certificates", "--no-playlist"]
        if self.socket_timeout:
            args += ["--socket-timeout", str(self.socket_timeout)]
        if strategy.cookies and cookie_file:
            args += ["--cookies", cookie_file]
        return args

    def build_argv(self, url, strategy=DEFAULT_STRATEGY, *, cookie_file=None):
        platform = detect_platform(url)
        if strategy.cookies and cookie_file is None:
            cookie_file = self.cookie_file()
        argv = list(self.command) + ["--dump-json"]
        argv += self._common_args(strategy, cookie_file)
        argv += self._identity_args(platform, strategy)
        argv += ["--", url]
        return argv

    def build_stream_argv(self, url, fmt, strategy=DEFAULT_STRATEGY, *, cookie_file=None):
        """Argv that writes the selected format to stdout."""
        platform = detect_platform(url)
        if strategy.cookies and cookie_file is None:
            cookie_file = self.cookie_file()
        format_id = fmt.format_id if isinstance(fmt, VideoFormat) else str(fmt)
        has_audio = fmt.has_audio if isinstance(fmt, VideoFormat) else True
        has_video = fmt.has_video if isinstance(fmt, VideoFormat) else True
        if has_video and not has_audio:
            format_selector = f"{format_id}+bestaudio/best[ext=mp4]/best"
        else:
            format_selector = format_id
        argv = list(self.command) + ["--format", format_selector, "--output", "-", "--quiet"]
        argv += self._common_args(strategy, cookie_file)
        argv += self._identity_args(platform, strategy)
        argv += ["--", url]
        return argv

    def open_stream_process(self, argv):
        logger.info("Starting stream subprocess: %s", _redact_argv(argv))
        return subprocess.Popen(
            argv,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            bufsize=0,
        )

    def extract(self, url, strategy=DEFAULT_STRATEGY, *, timeout=None, cancel_check=None):
        """Return ``VideoMetadata`` for ``url`` or raise ``ExtractionFailed``."""
        argv = self.build_argv(url, strategy)
        attempt_timeout = self.attempt_timeout if timeout is None else min(self.attempt_timeout, timeout)
        log_event(
            logging.INFO,
            "extraction_started",
            logger=logger,
            url=url,
            strategy=strategy.name,
            platform=detect_platform(url),
            timeout=attempt_timeout,
            argv=_redact_argv(argv),
        )
        try:
            result = self.runner(
                argv,
                timeout=attempt_timeout,
                cancel_check=cancel_check,
                grace_sec=self.kill_grace,
            )
        except FileNotFoundError as exc:
            raise ExtractionFailed(ERROR_UNKNOWN, f"extractor binary not found: {exc}") from exc

        if result.timed_out:
            raise ExtractionFailed(ERROR_TIMEOUT, f"extraction exceeded {attempt_timeout:.0f}s")
        if result.returncode != 0:
            kind = self.classifier.classify(result.stderr)
            log_event(
                logging.WARNING,
                "extraction_failed",
                logger=logger,
                url=url,
                strategy=strategy.name,
                returncode=result.returncode,
                kind=kind,
                stderr=result.stderr[-2000:],
            )
            raise ExtractionFailed(kind, result.stderr)
        info = parse_dump_json(result.stdout)
        if info is None:
            kind = self.classifier.classify(result.stderr)
            raise ExtractionFailed(kind, result.stderr or "unparsable extractor output")
        metadata = VideoMetadata.from_info(info)
        log_event(
            logging.INFO,
            "extraction_completed",
            logger=logger,
            url=url,
            strategy=strategy.name,
            format_count=len(metadata.formats),
            duration=round(result.duration, 3),
        )
        return metadata