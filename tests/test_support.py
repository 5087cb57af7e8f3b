import json
import logging
import math
from datetime import datetime
from enum import Enum

import pytest

from engine.json_utils import safe_json, safe_json_dumps
from engine.logging_setup import log_event, redact_token, setup_logging
from engine.paths import resolve_dir
from engine.runtime import get_runtime_info


class Color(Enum):
    RED = "red"


def test_safe_json_normalizes_odd_values():
    payload = safe_json({"when": datetime(2024, 1, 2, 3, 4, 5), "nan": math.nan, "tags": {"a"}, "c": Color.RED, 1: b"x"})
    assert payload == {"when": "2024-01-02T03:04:05", "nan": None, "tags": ["a"], "c": "red", "1": "x"}
    assert json.loads(safe_json_dumps({"inf": math.inf})) == {"inf": None}


def test_redact_token_keeps_short_prefix():
    assert redact_token("abcdef0123456789") == "abcdef***"
    assert redact_token("short") == "***"
    assert redact_token(None) == "***"


def test_log_event_emits_json(caplog):
    logger = logging.getLogger("streamgate.test")
    with caplog.at_level(logging.INFO, logger="streamgate.test"):
        log_event(logging.INFO, "stream_open", logger=logger, stream_id="s1", started=datetime(2024, 1, 1))
    record = json.loads(caplog.records[-1].getMessage())
    assert record == {"message": "stream_open", "started": "2024-01-01T00:00:00", "stream_id": "s1"}


def test_resolve_dir_stays_inside_base(tmp_path):
    assert resolve_dir("cookies.txt", tmp_path) == str(tmp_path / "cookies.txt")
    assert resolve_dir(None, tmp_path) == str(tmp_path)
    with pytest.raises(ValueError):
        resolve_dir("../escape.txt", tmp_path)
    with pytest.raises(ValueError):
        resolve_dir("/etc/passwd", tmp_path)


def test_runtime_info_names_extractor():
    info = get_runtime_info({"ytdlp_command": ["/usr/local/bin/yt-dlp"]})
    assert info["service"] == "streamgate"
    assert info["extractor_command"] == "yt-dlp"
    assert info["yt_dlp_version"]


def test_setup_logging_adds_one_file_handler(tmp_path, monkeypatch):
    root = logging.getLogger("")
    monkeypatch.setattr(root, "handlers", [])
    monkeypatch.setattr(root, "level", root.level)
    log_dir = tmp_path / "logs"
    path = setup_logging(str(log_dir))
    setup_logging(str(log_dir))
    file_handlers = [h for h in root.handlers if isinstance(h, logging.FileHandler)]
    try:
        assert len(file_handlers) == 1
        assert type(file_handlers[0]) is logging.FileHandler
        assert file_handlers[0].baseFilename == path
        assert len(root.handlers) == 2
    finally:
        for handler in file_handlers:
            handler.close()
