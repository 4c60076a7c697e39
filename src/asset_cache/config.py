"""
Cache Settings

All tunable defaults of the cache services in one dataclass. The constants
are untuned starting points, so every one of them can be overridden from
ASSET_CACHE_* environment variables.
"""

from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass, field, fields
from typing import Mapping

logger = logging.getLogger(__name__)

ENV_PREFIX = "ASSET_CACHE_"
_TRUE_VALUES = {"1", "true", "yes", "on"}


def _default_dir(name: str) -> str:
    return os.path.join(tempfile.gettempdir(), "asset_cache", name)


@dataclass
class CacheSettings:
    """Configuration for build_cache_services()."""

    # Session cache
    url_ttl_seconds: float = 4 * 60 * 60
    metadata_ttl_seconds: float = 15 * 60
    max_cache_size: int = 500
    session_store_max_bytes: int | None = 5 * 1024 * 1024

    # Memory manager
    use_psutil_signal: bool = True
    process_only_memory: bool = False
    start_cleanup_timer: bool = True

    # Prefetching
    prefetch_limit: int = 10
    prefetch_batch_delay_seconds: float = 0.1
    resolve_timeout_seconds: float | None = 30.0
    max_viewed_assets: int = 50
    max_search_patterns: int = 20
    recent_asset_days: float = 7.0
    offline_limit: int = 10

    # Durable storage
    local_store_dir: str = field(default_factory=lambda: _default_dir("local"))
    offline_cache_dir: str | None = None

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "CacheSettings":
        """
        Build settings from ASSET_CACHE_* environment variables.

        Unset variables keep their defaults; values that fail to parse are
        logged and ignored. Optional numeric settings accept "none" to
        disable them.
        """
        env = os.environ if environ is None else environ
        settings = cls()

        for f in fields(cls):
            raw = env.get(f"{ENV_PREFIX}{f.name.upper()}")
            if raw is None:
                continue
            current = getattr(settings, f.name)
            try:
                value = _parse_value(raw, f.type, current)
            except ValueError:
                logger.warning(
                    f"Ignoring invalid {ENV_PREFIX}{f.name.upper()}={raw!r}, "
                    f"keeping {current!r}"
                )
                continue
            setattr(settings, f.name, value)

        return settings


def _parse_value(raw: str, type_name: object, current: object) -> object:
    type_str = str(type_name)
    optional = "None" in type_str
    stripped = raw.strip()

    if optional and stripped.lower() in {"", "none", "null"}:
        return None
    if type_str.startswith("bool"):
        return stripped.lower() in _TRUE_VALUES
    if type_str.startswith("int"):
        return int(stripped)
    if type_str.startswith("float"):
        return float(stripped)
    if type_str.startswith("str"):
        return stripped
    # Untyped fallback keeps the value type of the default
    return type(current)(stripped) if current is not None else stripped
