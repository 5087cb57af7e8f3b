import logging
import os

from engine.json_utils import safe_json_dumps
from engine.paths import ensure_dir

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(log_dir, *, level=logging.INFO, filename="streamgate.log"):
    ensure_dir(log_dir)
    root = logging.getLogger("")
    log_path = os.path.join(log_dir, filename)
    root.setLevel(level)
    has_file = False
    has_console = False
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler):
            if os.path.abspath(getattr(handler, "baseFilename", "")) == os.path.abspath(log_path):
                has_file = True
        elif isinstance(handler, logging.StreamHandler):
            has_console = True
    if not has_file:
        file_handler = logging.FileHandler(log_path)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        file_handler.setLevel(level)
        root.addHandler(file_handler)
    if not has_console:
        console = logging.StreamHandler()
        console.setFormatter(logging.Formatter(LOG_FORMAT))
        console.setLevel(level)
        root.addHandler(console)
    return log_path


def log_event(level, message, *, logger=None, **fields):
    payload = {"message": message, **fields}
    target = logger or logging.getLogger("streamgate")
    try:
        target.log(level, safe_json_dumps(payload, sort_keys=True))
    except Exception as exc:
        target.log(level, f"log_event_serialization_failed: {exc} message={message}")


def redact_token(value):
    """Tokens are secrets: only a short prefix ever reaches the logs."""
    text = str(value or "")
    if len(text) <= 8:
        return "***"
    return f"{text[:6]}***"
