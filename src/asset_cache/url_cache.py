"""
Signed URL Cache (Cacheout-backed)

In-memory cache in front of the storage backend's URL signer.

Design notes:
- Keys are "{bucket}:{storage_path}"
- A URL is reused until refresh_skew_seconds before it expires, then re-signed
- Concurrent requests for the same key share one pending signing task
- Cacheout drops entries once they are past their own expiry
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable

from cacheout import Cache

from .cache_types import LibraryAsset

logger = logging.getLogger(__name__)

Signer = Callable[[str, str, int], Awaitable[str]]
Resolver = Callable[[LibraryAsset], Awaitable[str]]

DEFAULT_EXPIRES_IN_SECONDS = 3600


class UrlCache:
    """Signed URL cache with request coalescing."""

    def __init__(
        self,
        signer: Signer,
        refresh_skew_seconds: float = 60.0,
        max_entries: int = 2000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._signer = signer
        self._refresh_skew_seconds = refresh_skew_seconds
        self._clock = clock
        # Values are (signed_url, expires_at)
        self._cache = Cache(maxsize=max_entries, ttl=0, timer=clock)
        self._pending: dict[str, asyncio.Task[str]] = {}

    @staticmethod
    def _key(bucket: str, storage_path: str) -> str:
        return f"{bucket}:{storage_path}"

    def get_cached(self, bucket: str, storage_path: str) -> str | None:
        entry = self._cache.get(self._key(bucket, storage_path))
        if entry is None:
            return None
        signed_url, expires_at = entry
        if expires_at - self._clock() <= self._refresh_skew_seconds:
            return None
        return str(signed_url)

    async def get_signed_url(
        self,
        bucket: str,
        storage_path: str,
        expires_in_seconds: int = DEFAULT_EXPIRES_IN_SECONDS,
    ) -> str:
        cached = self.get_cached(bucket, storage_path)
        if cached:
            return cached

        key = self._key(bucket, storage_path)
        task = self._pending.get(key)
        if task is None:
            task = asyncio.ensure_future(
                self._sign(key, bucket, storage_path, expires_in_seconds)
            )
            self._pending[key] = task
            task.add_done_callback(lambda done, k=key: self._forget_pending(k, done))
        # Shield so one cancelled waiter does not cancel the shared signing task
        return await asyncio.shield(task)

    async def _sign(
        self, key: str, bucket: str, storage_path: str, expires_in_seconds: int
    ) -> str:
        logger.debug(f"Generating signed URL for {bucket}/{storage_path[:40]}")
        signed_url = await self._signer(bucket, storage_path, expires_in_seconds)
        if not signed_url:
            logger.error(f"Failed to create signed URL for {bucket}/{storage_path[:40]}")
            raise ValueError(f"No signed URL returned for {bucket}/{storage_path}")

        expires_at = self._clock() + expires_in_seconds
        self._cache.set(key, (signed_url, expires_at), ttl=expires_in_seconds)
        return signed_url

    def _forget_pending(self, key: str, task: asyncio.Task[str]) -> None:
        if self._pending.get(key) is task:
            del self._pending[key]
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"Signing {key} failed: {task.exception()}")

    def invalidate(self, bucket: str, storage_path: str) -> None:
        key = self._key(bucket, storage_path)
        self._cache.delete(key)
        self._pending.pop(key, None)

    def invalidate_by_pattern(self, pattern: str) -> None:
        for key in list(self._cache.keys()):
            if pattern in key:
                self._cache.delete(key)
        for key in list(self._pending.keys()):
            if pattern in key:
                del self._pending[key]

    def clear_all(self) -> None:
        self._cache.clear()
        self._pending.clear()

    def __len__(self) -> int:
        return self._cache.size()

    def as_resolver(
        self,
        default_bucket: str = "",
        expires_in_seconds: int = DEFAULT_EXPIRES_IN_SECONDS,
    ) -> Resolver:
        """Adapt this cache into an asset -> URL resolver for prefetching."""

        async def resolve(asset: LibraryAsset) -> str:
            if not asset.storage_path:
                raise ValueError(f"Asset {asset.id} has no storage path to sign")
            return await self.get_signed_url(
                asset.bucket or default_bucket, asset.storage_path, expires_in_seconds
            )

        return resolve
