"""
Stale-While-Revalidate Cache (Cacheout-backed)

Async in-memory cache that answers instantly from cached data and refreshes
stale entries in the background.

Entry lifecycle:
- fresh: younger than stale_seconds, returned as-is
- stale: returned as-is while one background refresh runs
- expired: older than max_age_seconds, dropped and fetched again
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, TypeVar

from cacheout import Cache

from .cache_types import SwrStats

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class SwrEntry(Generic[T]):
    data: T
    timestamp: float
    stale_at: float
    refresh_task: asyncio.Task[Any] | None = None


class StaleWhileRevalidateCache(Generic[T]):
    """Stale-while-revalidate cache keyed by string."""

    def __init__(
        self,
        stale_seconds: float,
        max_age_seconds: float,
        max_size: int = 100,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._stale_seconds = stale_seconds
        self._max_age_seconds = max_age_seconds
        self._clock = clock
        # Expiry is checked here rather than by cacheout so stats can see it
        self._cache = Cache(maxsize=max_size, ttl=0, timer=clock)
        self._refresh_tasks: set[asyncio.Task[Any]] = set()

    async def get(
        self, key: str, fetch: Callable[[], Awaitable[T]], force_refresh: bool = False
    ) -> T:
        now = self._clock()
        entry: SwrEntry[T] | None = self._cache.get(key)

        if force_refresh or entry is None:
            return await self._fetch_and_store(key, fetch)

        if now > entry.timestamp + self._max_age_seconds:
            self._cache.delete(key)
            return await self._fetch_and_store(key, fetch)

        if now < entry.stale_at:
            return entry.data

        if entry.refresh_task is None:
            task = asyncio.ensure_future(self._refresh(key, entry, fetch))
            entry.refresh_task = task
            self._refresh_tasks.add(task)
            task.add_done_callback(self._refresh_tasks.discard)
        return entry.data

    async def _fetch_and_store(self, key: str, fetch: Callable[[], Awaitable[T]]) -> T:
        data = await fetch()
        self.set(key, data)
        return data

    async def _refresh(
        self, key: str, entry: SwrEntry[T], fetch: Callable[[], Awaitable[T]]
    ) -> T:
        try:
            data = await fetch()
            self.set(key, data)
            return data
        except Exception as exc:  # noqa: BLE001
            logger.warning(f"Background refresh failed for key {key}: {exc}")
            return entry.data
        finally:
            entry.refresh_task = None

    def set(self, key: str, data: T) -> None:
        now = self._clock()
        self._cache.set(
            key, SwrEntry(data=data, timestamp=now, stale_at=now + self._stale_seconds)
        )

    def invalidate(self, key_pattern: str | None = None) -> None:
        if not key_pattern:
            self._cache.clear()
            return
        for key in list(self._cache.keys()):
            if key_pattern in key:
                self._cache.delete(key)

    async def wait_for_refreshes(self) -> None:
        if self._refresh_tasks:
            await asyncio.gather(*list(self._refresh_tasks), return_exceptions=True)

    def get_stats(self) -> SwrStats:
        now = self._clock()
        fresh = stale = expired = 0
        for entry in self._cache.values():
            if now < entry.stale_at:
                fresh += 1
            elif now < entry.timestamp + self._max_age_seconds:
                stale += 1
            else:
                expired += 1

        total = fresh + stale + expired
        return SwrStats(
            size=self._cache.size(),
            fresh=fresh,
            stale=stale,
            expired=expired,
            hit_rate=fresh / total if total else 0.0,
        )


def asset_metadata_cache(clock: Callable[[], float] = time.time) -> StaleWhileRevalidateCache[Any]:
    """Metadata cache: stale after 15 minutes, dropped after 1 hour."""
    return StaleWhileRevalidateCache(
        stale_seconds=15 * 60, max_age_seconds=60 * 60, max_size=1000, clock=clock
    )


def asset_url_cache(clock: Callable[[], float] = time.time) -> StaleWhileRevalidateCache[str]:
    """URL cache: stale after 30 minutes, dropped after 2 hours."""
    return StaleWhileRevalidateCache(
        stale_seconds=30 * 60, max_age_seconds=2 * 60 * 60, max_size=2000, clock=clock
    )
