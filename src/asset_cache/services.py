"""
Cache Service Wiring

Builds the memory manager, session cache and prefetcher once at application
startup. Consumers receive the CacheServices bundle by reference instead of
reaching for module-level globals.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable

from .cache_types import PressureLevel
from .capabilities import (
    DiskOfflineCache,
    Fetcher,
    MemorySignal,
    OfflineCache,
    PsutilMemorySignal,
)
from .config import CacheSettings
from .memory_manager import MemoryManager
from .progressive_enhancement import ProgressiveEnhancement, Resolver, SECONDS_PER_DAY
from .session_cache import SessionCache
from .stores import DiskCacheStore, KeyValueStore, MemorySessionStore
from .system_utils import log_cache_status
from .url_cache import Signer, UrlCache

logger = logging.getLogger(__name__)


@dataclass
class CacheServices:
    """The process-wide set of cache services."""

    settings: CacheSettings
    session_store: KeyValueStore
    local_store: KeyValueStore
    memory_manager: MemoryManager
    session_cache: SessionCache
    progressive_enhancement: ProgressiveEnhancement
    url_cache: UrlCache | None = None
    offline_cache: OfflineCache | None = None

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - automatic cleanup."""
        self.close()

    def log_status(self, services_name: str = "library") -> None:
        """Log cache and RAM stats and send a pressure alert if configured."""
        log_cache_status(self, services_name)

    def _on_memory_pressure(self, level: PressureLevel) -> None:
        self.log_status()

    def close(self) -> None:
        """Stop background work and release stores."""
        self.progressive_enhancement.destroy()
        self.memory_manager.destroy()
        if self.url_cache is not None:
            self.url_cache.clear_all()
        if self.offline_cache is not None:
            self.offline_cache.close()
        self.local_store.close()
        self.session_store.close()


def build_cache_services(
    settings: CacheSettings | None = None,
    resolver: Resolver | None = None,
    signer: Signer | None = None,
    memory_signal: MemorySignal | None = None,
    offline_fetcher: Fetcher | None = None,
    session_store: KeyValueStore | None = None,
    local_store: KeyValueStore | None = None,
    clock: Callable[[], float] = time.time,
) -> CacheServices:
    """
    Construct the cache services.

    Args:
        settings: Configuration; CacheSettings.from_env() if omitted
        resolver: Async asset -> URL resolver used for prefetching
        signer: Async storage URL signer; wrapped in a UrlCache and used as
            the resolver when no resolver is given
        memory_signal: Platform memory signal; psutil-backed by default
        offline_fetcher: Fetcher for the offline content cache
        session_store: Session-scoped store; in-memory by default
        local_store: Durable store; diskcache-backed by default
        clock: Time source in epoch seconds

    Returns:
        CacheServices bundle

    Raises:
        ValueError: If neither a resolver nor a signer is supplied
    """
    settings = settings or CacheSettings.from_env()

    url_cache: UrlCache | None = None
    if signer is not None:
        url_cache = UrlCache(signer, clock=clock)
        if resolver is None:
            resolver = url_cache.as_resolver()
    if resolver is None:
        raise ValueError("A resolver or a signer is required to prefetch asset URLs")

    if session_store is None:
        session_store = MemorySessionStore(max_bytes=settings.session_store_max_bytes)
    if local_store is None:
        local_store = DiskCacheStore(settings.local_store_dir)

    if memory_signal is None and settings.use_psutil_signal:
        memory_signal = PsutilMemorySignal(process_only=settings.process_only_memory)

    offline_cache: OfflineCache | None = None
    if settings.offline_cache_dir:
        offline_cache = DiskOfflineCache(settings.offline_cache_dir, fetcher=offline_fetcher)

    memory_manager = MemoryManager(
        session_store,
        memory_signal=memory_signal,
        clock=clock,
        start_timer=settings.start_cleanup_timer,
    )
    session_cache = SessionCache(
        session_store,
        url_ttl_seconds=settings.url_ttl_seconds,
        metadata_ttl_seconds=settings.metadata_ttl_seconds,
        max_cache_size=settings.max_cache_size,
        clock=clock,
    )
    progressive_enhancement = ProgressiveEnhancement(
        memory_manager,
        session_cache,
        resolver,
        local_store,
        offline_cache=offline_cache,
        clock=clock,
        batch_delay_seconds=settings.prefetch_batch_delay_seconds,
        resolve_timeout_seconds=settings.resolve_timeout_seconds,
        prefetch_limit=settings.prefetch_limit,
        offline_limit=settings.offline_limit,
        max_viewed_assets=settings.max_viewed_assets,
        max_search_patterns=settings.max_search_patterns,
        recent_asset_seconds=settings.recent_asset_days * SECONDS_PER_DAY,
    )

    logger.info(
        f"Cache services initialized: session store={session_store.__class__.__name__}, "
        f"local store={local_store.__class__.__name__}, "
        f"memory signal={memory_signal.__class__.__name__ if memory_signal else 'none'}"
    )
    services = CacheServices(
        settings=settings,
        session_store=session_store,
        local_store=local_store,
        memory_manager=memory_manager,
        session_cache=session_cache,
        progressive_enhancement=progressive_enhancement,
        url_cache=url_cache,
        offline_cache=offline_cache,
    )
    memory_manager.add_pressure_listener(services._on_memory_pressure)
    return services
