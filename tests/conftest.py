import json
import sys
import time
from pathlib import Path

import pytest

# Ensure tests can import project packages regardless of how pytest is invoked.
ROOT = Path(__file__).resolve().parents[1]
ROOT_STR = str(ROOT)
if ROOT_STR not in sys.path:
    sys.path.insert(0, ROOT_STR)

from engine.config import DEFAULT_CONFIG, merge_config  # noqa: E402
from engine.paths import EnginePaths  # noqa: E402

FAKE_YTDLP = Path(__file__).resolve().parent / "fake_ytdlp.py"

VIDEO_URL = "https://www.youtube.com/watch?v=dQw4w9WgXcQ"

SAMPLE_INFO = {
    "id": "dQw4w9WgXcQ",
    "title": "Never Gonna Give You Up (Official Video)",
    "thumbnail": "https://i.ytimg.com/vi/dQw4w9WgXcQ/maxresdefault.jpg",
    "duration": 213,
    "uploader": "Rick Astley",
    "upload_date": "20091025",
    "webpage_url": VIDEO_URL,
    "extractor_key": "Youtube",
    "formats": [
        {
            "format_id": "18",
            "ext": "mp4",
            "width": 640,
            "height": 360,
            "vcodec": "avc1.42001E",
            "acodec": "mp4a.40.2",
            "filesize": 11000000,
            "format_note": "360p",
            "url": "https://rr1.googlevideo.example/videoplayback?itag=18",
            "protocol": "https",
            "http_headers": {"User-Agent": "test-agent"},
        },
        {
            "format_id": "137",
            "ext": "mp4",
            "width": 1920,
            "height": 1080,
            "vcodec": "avc1.640028",
            "acodec": "none",
            "filesize_approx": 80000000,
            "url": "https://rr1.googlevideo.example/videoplayback?itag=137",
            "protocol": "https",
        },
        {
            "format_id": "140",
            "ext": "m4a",
            "vcodec": "none",
            "acodec": "mp4a.40.2",
            "abr": 129.5,
            "url": "https://rr1.googlevideo.example/videoplayback?itag=140",
            "protocol": "https",
        },
        {
            "format_id": "hls-720",
            "ext": "mp4",
            "width": 1280,
            "height": 720,
            "vcodec": "avc1",
            "acodec": "mp4a",
            "url": "https://manifest.example/index.m3u8",
            "protocol": "m3u8_native",
        },
        {
            "format_id": "sb0",
            "ext": "mhtml",
            "vcodec": "none",
            "acodec": "none",
            "format_note": "storyboard",
            "protocol": "mhtml",
        },
    ],
}


class FakeClock:
    def __init__(self, start=1_700_000_000.0):
        self.now = float(start)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sample_info():
    return json.loads(json.dumps(SAMPLE_INFO))


@pytest.fixture
def make_config():
    def _make(**overrides):
        return merge_config(DEFAULT_CONFIG, overrides)

    return _make


@pytest.fixture
def engine_paths(tmp_path):
    cookies_dir = tmp_path / "cookies"
    cookies_dir.mkdir()
    logs_dir = tmp_path / "logs"
    logs_dir.mkdir()
    return EnginePaths(
        log_dir=str(logs_dir),
        db_path=str(tmp_path / "streamgate.sqlite"),
        cookies_dir=str(cookies_dir),
        config_dir=str(tmp_path),
    )


class FakeYtdlp:
    """Drives tests/fake_ytdlp.py through environment variables."""

    def __init__(self, tmp_path, monkeypatch):
        self.tmp_path = tmp_path
        self.monkeypatch = monkeypatch
        self.argv_log = tmp_path / "argv.jsonl"
        self.pid_file = tmp_path / "fake.pid"
        self.command = [sys.executable, str(FAKE_YTDLP)]
        monkeypatch.setenv("FAKE_YTDLP_ARGV_LOG", str(self.argv_log))
        monkeypatch.setenv("FAKE_YTDLP_PID_FILE", str(self.pid_file))
        self.set_info(SAMPLE_INFO)

    def set_info(self, info):
        path = self.tmp_path / "info.json"
        path.write_text(json.dumps(info), encoding="utf-8")
        self.monkeypatch.setenv("FAKE_YTDLP_INFO", str(path))

    def dump_mode(self, mode, stderr=None):
        self.monkeypatch.setenv("FAKE_YTDLP_MODE", mode)
        if stderr is not None:
            self.monkeypatch.setenv("FAKE_YTDLP_STDERR", stderr)

    def stream_mode(self, mode, nbytes=None):
        self.monkeypatch.setenv("FAKE_YTDLP_STREAM_MODE", mode)
        if nbytes is not None:
            self.monkeypatch.setenv("FAKE_YTDLP_BYTES", str(nbytes))

    def calls(self):
        if not self.argv_log.exists():
            return []
        return [json.loads(line) for line in self.argv_log.read_text(encoding="utf-8").splitlines() if line]

    def last_pid(self):
        return int(self.pid_file.read_text(encoding="utf-8").strip())


@pytest.fixture
def fake_ytdlp(tmp_path, monkeypatch):
    return FakeYtdlp(tmp_path, monkeypatch)


def _wait_until(predicate, timeout=5.0, interval=0.02):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        value = predicate()
        if value:
            return value
        time.sleep(interval)
    raise AssertionError("condition not met in time")


@pytest.fixture
def wait_until():
    return _wait_until
