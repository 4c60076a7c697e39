"""
Session Cache

TTL cache for signed URLs and asset metadata layered over a session-scoped
key/value store.

Design notes:
- Every entry is a JSON CachedItem envelope: {data, timestamp, userId}
- URL entries (signed-url-*) live long because signing is expensive;
  metadata entries (metadata-*) expire quickly because they change often
- Entries are tagged with the session owner and validated on read rather
  than namespaced per user; a mismatch is treated like expiry
- Reads self-heal: expired, foreign or corrupt entries are deleted on sight
- Writes are fire-and-forget; a full store triggers a cleanup sweep and the
  write is dropped
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable, Iterable

from .cache_types import CachedItem, CacheStats, LibraryAsset
from .errors import StoreQuotaExceededError
from .keys import (
    EXPIRING_PREFIXES,
    SESSION_CACHE_PREFIXES,
    SESSION_START_KEY,
    SESSION_USER_KEY,
    SIGNED_URL_PREFIX,
    asset_list_cache_key,
    has_prefix,
    metadata_key,
    signed_url_key,
)
from .stores import KeyValueStore

logger = logging.getLogger(__name__)

DEFAULT_URL_TTL_SECONDS = 4 * 60 * 60
DEFAULT_METADATA_TTL_SECONDS = 15 * 60
DEFAULT_MAX_CACHE_SIZE = 500
DEFAULT_PRESSURE_THRESHOLD_BYTES = 5 * 1024 * 1024

LIBRARY_ASSET_KIND = "library"
RAW_ASSET_KIND = "raw"


class SessionCache:
    """Per-session signed URL and metadata cache."""

    def __init__(
        self,
        store: KeyValueStore,
        url_ttl_seconds: float = DEFAULT_URL_TTL_SECONDS,
        metadata_ttl_seconds: float = DEFAULT_METADATA_TTL_SECONDS,
        max_cache_size: int = DEFAULT_MAX_CACHE_SIZE,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Initialize SessionCache.

        Args:
            store: Session-scoped key/value store
            url_ttl_seconds: Expiry for signed URL entries
            metadata_ttl_seconds: Expiry for metadata entries
            max_cache_size: Advisory entry budget; not enforced as a hard cap
            clock: Time source in epoch seconds
        """
        self._store = store
        self._url_ttl_seconds = url_ttl_seconds
        self._metadata_ttl_seconds = metadata_ttl_seconds
        self._max_cache_size = max_cache_size
        self._clock = clock
        self._current_user_id: str | None = None

    @property
    def current_user_id(self) -> str | None:
        return self._current_user_id

    @property
    def max_cache_size(self) -> int:
        return self._max_cache_size

    def initialize_session(self, user_id: str) -> None:
        """Bind the cache to a session owner, wiping it if the owner changed."""
        existing_user_id = self._store.get_item(SESSION_USER_KEY)

        if existing_user_id != user_id:
            logger.info("New user session detected, clearing cache")
            self.clear_all_cache()
            try:
                self._store.set_item(SESSION_USER_KEY, user_id)
                self._store.set_item(SESSION_START_KEY, str(self._clock()))
            except StoreQuotaExceededError as exc:
                logger.warning(f"Failed to record session owner: {exc}")

        self._current_user_id = user_id

    # Generic entry handling
    def _write(self, key: str, data: Any) -> bool:
        if self._current_user_id is None:
            return False

        cached = CachedItem(data=data, timestamp=self._clock(), user_id=self._current_user_id)
        try:
            self._store.set_item(key, json.dumps(cached.to_dict()))
        except StoreQuotaExceededError as exc:
            logger.warning(f"Failed to cache {key}: {exc}")
            self.cleanup_old_cache()
            return False
        except (TypeError, ValueError) as exc:
            logger.warning(f"Failed to serialize cache entry {key}: {exc}")
            return False
        return True

    def _read(self, key: str, ttl_seconds: float) -> Any:
        if self._current_user_id is None:
            return None

        raw = self._store.get_item(key)
        if raw is None:
            return None

        try:
            cached = CachedItem.from_dict(json.loads(raw))
        except (TypeError, ValueError, KeyError) as exc:
            logger.debug(f"Dropping corrupt cache entry {key}: {exc}")
            self._store.remove_item(key)
            return None

        if cached.user_id != self._current_user_id:
            self._store.remove_item(key)
            return None

        if self._clock() - cached.timestamp > ttl_seconds:
            self._store.remove_item(key)
            return None

        return cached.data

    # Signed URLs
    def cache_signed_url(self, asset_id: str, url: str) -> None:
        if self._write(signed_url_key(asset_id), url):
            logger.debug(f"Cached signed URL for asset: {asset_id}")

    def get_cached_signed_url(self, asset_id: str) -> str | None:
        url = self._read(signed_url_key(asset_id), self._url_ttl_seconds)
        if url is None:
            return None
        logger.debug(f"Cache hit for signed URL: {asset_id}")
        return str(url)

    def batch_cache_urls(self, asset_urls: Iterable[tuple[str, str]]) -> None:
        for asset_id, url in asset_urls:
            self.cache_signed_url(asset_id, url)

    # Metadata
    def cache_asset_metadata(self, cache_key: str, metadata: Any) -> None:
        if self._write(metadata_key(cache_key), metadata):
            logger.debug(f"Cached metadata for key: {cache_key}")

    def get_cached_metadata(self, cache_key: str) -> Any:
        metadata = self._read(metadata_key(cache_key), self._metadata_ttl_seconds)
        if metadata is not None:
            logger.debug(f"Cache hit for metadata: {cache_key}")
        return metadata

    # Asset listings (stale-while-revalidate reads; the caller revalidates)
    def cache_asset_list(
        self, filters: Any, pagination: dict[str, Any] | None, assets: list[Any]
    ) -> None:
        """
        Cache one page of an asset listing.

        A page made only of LibraryAsset objects is read back as LibraryAsset
        objects. Any other JSON-serializable items are stored as given.
        """
        is_library_page = bool(assets) and all(
            isinstance(asset, LibraryAsset) for asset in assets
        )
        cache_key = asset_list_cache_key(filters, pagination)
        self.cache_asset_metadata(
            cache_key,
            {
                "assets": [
                    asset.to_dict() if isinstance(asset, LibraryAsset) else asset
                    for asset in assets
                ],
                "assetKind": LIBRARY_ASSET_KIND if is_library_page else RAW_ASSET_KIND,
                "filters": filters,
                "pagination": pagination,
                "cachedAt": self._clock(),
            },
        )

    def get_cached_asset_list(
        self, filters: Any, pagination: dict[str, Any] | None
    ) -> list[Any] | None:
        cache_key = asset_list_cache_key(filters, pagination)
        cached = self.get_cached_metadata(cache_key)
        if not isinstance(cached, dict):
            return None
        assets = cached.get("assets")
        if not isinstance(assets, list):
            return None
        if cached.get("assetKind") != LIBRARY_ASSET_KIND:
            return assets

        try:
            return [LibraryAsset.from_dict(raw) for raw in assets]
        except (TypeError, ValueError, KeyError) as exc:
            logger.debug(f"Dropping corrupt asset list {cache_key}: {exc}")
            self._store.remove_item(metadata_key(cache_key))
            return None

    # Maintenance
    def cleanup_old_cache(self) -> int:
        """
        Sweep expired, foreign and corrupt entries to make room in the store.

        Returns:
            Number of removed entries
        """
        cutoff = self._clock() - max(self._url_ttl_seconds, self._metadata_ttl_seconds)
        keys_to_remove: list[str] = []

        for key in self._store.keys():
            if not has_prefix(key, EXPIRING_PREFIXES):
                continue
            raw = self._store.get_item(key)
            if raw is None:
                continue
            try:
                cached = CachedItem.from_dict(json.loads(raw))
            except (TypeError, ValueError, KeyError):
                keys_to_remove.append(key)
                continue
            if cached.timestamp < cutoff or cached.user_id != self._current_user_id:
                keys_to_remove.append(key)

        for key in keys_to_remove:
            self._store.remove_item(key)

        if keys_to_remove:
            logger.info(f"Cleaned up {len(keys_to_remove)} old cache entries")
        return len(keys_to_remove)

    def clear_all_cache(self) -> None:
        keys_to_remove = [
            key for key in self._store.keys() if has_prefix(key, SESSION_CACHE_PREFIXES)
        ]
        for key in keys_to_remove:
            self._store.remove_item(key)
        logger.info(f"Cleared all cache data ({len(keys_to_remove)} entries)")

    def get_cache_stats(self) -> CacheStats:
        signed_urls = 0
        metadata = 0
        total_size = 0

        for key in self._store.keys():
            if not has_prefix(key, EXPIRING_PREFIXES):
                continue
            item = self._store.get_item(key)
            if not item:
                continue
            total_size += len(item.encode("utf-8"))
            if key.startswith(SIGNED_URL_PREFIX):
                signed_urls += 1
            else:
                metadata += 1

        return CacheStats(signed_urls=signed_urls, metadata=metadata, total_size=total_size)

    def is_memory_pressure_high(
        self, threshold_bytes: int = DEFAULT_PRESSURE_THRESHOLD_BYTES
    ) -> bool:
        return self.get_cache_stats().total_size > threshold_bytes
