import os
import platform
import sys

from yt_dlp.version import __version__ as ytdlp_version

SERVICE_NAME = "streamgate"


def get_runtime_info(config=None):
    command = (config or {}).get("ytdlp_command") or ["yt-dlp"]
    return {
        "service": SERVICE_NAME,
        "app_version": os.environ.get("STREAMGATE_VERSION", "0.1.0"),
        "python_version": sys.version.split()[0],
        "platform": platform.system().lower(),
        "yt_dlp_version": ytdlp_version,
        "extractor_command": " ".join(os.path.basename(part) for part in command),
    }
