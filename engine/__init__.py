from .config import load_config, validate_config
from .core import StreamgateServices, build_services
from .paths import EnginePaths
from .runtime import get_runtime_info

__all__ = [
    "EnginePaths",
    "StreamgateServices",
    "build_services",
    "get_runtime_info",
    "load_config",
    "validate_config",
]
