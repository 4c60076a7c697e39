from importlib.metadata import version, PackageNotFoundError

from .cache_types import (
    AssetPriority,
    LibraryAsset,
    MemoryStats,
    PrefetchStrategy,
    PressureLevel,
)
from .config import CacheSettings
from .memory_manager import MemoryManager
from .progressive_enhancement import ProgressiveEnhancement
from .services import CacheServices, build_cache_services
from .session_cache import SessionCache
from .swr_cache import StaleWhileRevalidateCache
from .url_cache import UrlCache

# Package metadata helpers
try:
    __version__ = version("library-asset-cache")
except PackageNotFoundError:  # pragma: no cover
    __version__ = "0.0.0+dev"

# Public API
__all__ = [
    "AssetPriority",
    "CacheServices",
    "CacheSettings",
    "LibraryAsset",
    "MemoryManager",
    "MemoryStats",
    "PrefetchStrategy",
    "PressureLevel",
    "ProgressiveEnhancement",
    "SessionCache",
    "StaleWhileRevalidateCache",
    "UrlCache",
    "build_cache_services",
    "__version__",
]
