"""kvstash: a multi-backend key/value cache with transparent fallback."""

from .cache import (
    CacheManager,
    CacheBackendKind,
    GroupedCache,
    Throttle,
)
from .config import CacheSettings

__version__ = "0.1.0"

__all__ = [
    "CacheManager",
    "CacheBackendKind",
    "GroupedCache",
    "Throttle",
    "CacheSettings",
    "__version__",
]
