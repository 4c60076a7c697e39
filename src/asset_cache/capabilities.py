"""
Platform Capabilities

Optional platform features the cache services can use when present: a memory
usage signal and an offline content cache. Each capability has a null-object
implementation so callers pick one at construction and never check for
availability inline.
"""

from __future__ import annotations

import asyncio
import gc
import hashlib
import logging
import urllib.request
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Awaitable, Callable

import diskcache
import psutil

logger = logging.getLogger(__name__)

PressureCallback = Callable[[], None]
Fetcher = Callable[[str], Awaitable[bytes]]


class MemorySignal(ABC):
    """Source of used/total memory readings and optional pressure notifications."""

    @abstractmethod
    def read(self) -> tuple[int, int] | None:
        """
        Read current memory usage.

        Returns:
            (used_bytes, total_bytes), or None if no reading is available
        """
        pass

    def subscribe(self, callback: PressureCallback) -> bool:
        """
        Register a callback fired on platform memory pressure notifications.

        Returns:
            True if the platform delivers notifications, False otherwise
        """
        return False

    def unsubscribe(self) -> None:
        """Detach any registered pressure callback."""

    def collect_garbage(self) -> None:
        """Hint the runtime to reclaim memory."""


class NullMemorySignal(MemorySignal):
    """No memory signal: pressure always reads as low."""

    def read(self) -> tuple[int, int] | None:
        return None


class PsutilMemorySignal(MemorySignal):
    """Memory signal backed by psutil.

    By default reports system-wide used/total RAM. With process_only=True it
    reports this process's resident set size against total RAM instead.
    """

    def __init__(self, process_only: bool = False) -> None:
        self._process_only = process_only
        self._callback: PressureCallback | None = None

    def read(self) -> tuple[int, int] | None:
        try:
            vm = psutil.virtual_memory()
            if self._process_only:
                rss = psutil.Process().memory_info().rss
                return int(rss), int(vm.total)
            return int(vm.used), int(vm.total)
        except Exception as exc:  # noqa: BLE001
            logger.debug(f"Failed to read memory usage: {exc}")
            return None

    def subscribe(self, callback: PressureCallback) -> bool:
        # psutil only supports polling; the periodic cleanup timer covers it
        self._callback = callback
        return False

    def unsubscribe(self) -> None:
        self._callback = None

    def collect_garbage(self) -> None:
        collected = gc.collect()
        logger.debug(f"Garbage collection reclaimed {collected} objects")


class OfflineCache(ABC):
    """Content cache that keeps whole resolved URLs available offline."""

    @property
    @abstractmethod
    def available(self) -> bool:
        pass

    @abstractmethod
    async def add(self, url: str) -> None:
        """
        Fetch a URL and keep its content for offline use.

        Args:
            url: Fully resolved, fetchable URL
        """
        pass

    def close(self) -> None:
        """Release any resources held by the cache."""


class NullOfflineCache(OfflineCache):
    """No offline cache on this platform."""

    @property
    def available(self) -> bool:
        return False

    async def add(self, url: str) -> None:
        return None


def _fetch_url_blocking(url: str, timeout: float) -> bytes:
    with urllib.request.urlopen(url, timeout=timeout) as resp:
        return bytes(resp.read())


class DiskOfflineCache(OfflineCache):
    """Offline cache storing fetched content in diskcache, keyed by URL digest."""

    def __init__(
        self,
        directory: str,
        fetcher: Fetcher | None = None,
        fetch_timeout_seconds: float = 30.0,
        size_limit: int = 512 * 1024**2,
    ) -> None:
        """
        Initialize DiskOfflineCache.

        Args:
            directory: Directory for the content cache
            fetcher: Async callable returning the bytes of a URL; defaults to
                urllib in a worker thread
            fetch_timeout_seconds: Timeout for the default fetcher
            size_limit: Maximum bytes kept before diskcache evicts
        """
        Path(directory).mkdir(parents=True, exist_ok=True)
        self._cache = diskcache.Cache(
            directory=directory,
            eviction_policy="least-recently-used",
            size_limit=size_limit,
        )
        self._fetch_timeout_seconds = fetch_timeout_seconds
        self._fetcher = fetcher or self._default_fetch

    @staticmethod
    def content_key(url: str) -> str:
        return hashlib.sha256(url.encode("utf-8")).hexdigest()

    @property
    def available(self) -> bool:
        return True

    async def _default_fetch(self, url: str) -> bytes:
        return await asyncio.to_thread(
            _fetch_url_blocking, url, self._fetch_timeout_seconds
        )

    async def add(self, url: str) -> None:
        content = await self._fetcher(url)
        self._cache.set(self.content_key(url), content)

    def get(self, url: str) -> bytes | None:
        value = self._cache.get(self.content_key(url))
        return value if isinstance(value, bytes) else None

    def __contains__(self, url: object) -> bool:
        return isinstance(url, str) and self.content_key(url) in self._cache

    def close(self) -> None:
        if hasattr(self, "_cache"):
            self._cache.close()
