"""
Key/Value Store Abstraction

This module provides the string key/value stores the cache services persist
into. The abstraction allows different backends (process memory, diskcache,
etc.) while keeping a consistent interface for the SessionCache, the
MemoryManager and the ProgressiveEnhancement behaviour log.

Implementations:
- MemorySessionStore: session-scoped, lost when the process ends, optional
  byte quota that rejects writes when full
- DiskCacheStore: durable local store backed by diskcache, survives restarts
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Iterator

import diskcache

from .errors import StoreQuotaExceededError

logger = logging.getLogger(__name__)


def entry_bytes(key: str, value: str) -> int:
    """UTF-8 encoded size of a key/value pair."""
    return len(key.encode("utf-8")) + len(value.encode("utf-8"))


class KeyValueStore(ABC):
    """
    Abstract base class for string key/value storage.

    Stores are enumerable (list all keys) and may have a finite capacity.
    A write that does not fit raises StoreQuotaExceededError; callers decide
    whether to recover from it.
    """

    @abstractmethod
    def get_item(self, key: str) -> str | None:
        """
        Get the value stored under a key.

        Args:
            key: The store key

        Returns:
            The stored string, or None if the key is absent
        """
        pass

    @abstractmethod
    def set_item(self, key: str, value: str) -> None:
        """
        Store a value under a key, replacing any previous value.

        Args:
            key: The store key
            value: The string value

        Raises:
            StoreQuotaExceededError: If the store has no room for the value
        """
        pass

    @abstractmethod
    def remove_item(self, key: str) -> None:
        """
        Remove a key. Removing an absent key is a no-op.

        Args:
            key: The store key
        """
        pass

    @abstractmethod
    def keys(self) -> list[str]:
        """
        List all keys currently in the store.

        Returns:
            Snapshot list of keys, safe to iterate while removing
        """
        pass

    @abstractmethod
    def clear(self) -> None:
        """Remove every key from the store."""
        pass

    def close(self) -> None:
        """Release any resources held by the store."""

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.get_item(key) is not None

    def __len__(self) -> int:
        return len(self.keys())

    def __iter__(self) -> Iterator[str]:
        return iter(self.keys())

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - automatic cleanup."""
        self.close()


class MemorySessionStore(KeyValueStore):
    """
    In-memory, session-scoped store.

    Keys keep insertion order. When max_bytes is set, the combined UTF-8 size
    of all keys and values may not exceed it and an oversize write is rejected
    without modifying the store.
    """

    def __init__(self, max_bytes: int | None = None) -> None:
        self._items: dict[str, str] = {}
        self._max_bytes = max_bytes
        self._used_bytes = 0
        self._lock = threading.RLock()

    @property
    def used_bytes(self) -> int:
        return self._used_bytes

    def get_item(self, key: str) -> str | None:
        with self._lock:
            return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        with self._lock:
            previous = self._items.get(key)
            freed = entry_bytes(key, previous) if previous is not None else 0
            required = entry_bytes(key, value)
            if (
                self._max_bytes is not None
                and self._used_bytes - freed + required > self._max_bytes
            ):
                raise StoreQuotaExceededError(
                    key, self._used_bytes - freed + required, self._max_bytes
                )
            self._items[key] = value
            self._used_bytes += required - freed

    def remove_item(self, key: str) -> None:
        with self._lock:
            previous = self._items.pop(key, None)
            if previous is not None:
                self._used_bytes -= entry_bytes(key, previous)

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._items.keys())

    def clear(self) -> None:
        with self._lock:
            self._items.clear()
            self._used_bytes = 0


class DiskCacheStore(KeyValueStore):
    """
    Durable store using the diskcache library.

    Values survive process restarts. diskcache handles its own SQLite
    connections so no manual thread management is needed.
    """

    def __init__(self, directory: str, size_limit: int = 64 * 1024**2) -> None:
        """
        Initialize DiskCacheStore.

        Args:
            directory: Directory for the cache database
            size_limit: Soft size limit in bytes enforced by diskcache eviction
        """
        self._directory = Path(directory)
        self._directory.mkdir(parents=True, exist_ok=True)
        self._cache = diskcache.Cache(
            directory=str(self._directory),
            eviction_policy="least-recently-stored",
            size_limit=size_limit,
        )

    def get_item(self, key: str) -> str | None:
        value = self._cache.get(key)
        if value is None:
            return None
        if not isinstance(value, str):
            # Self-heal: only strings are ever written through this interface
            logger.warning(f"Deleting non-string value stored under {key}")
            self._cache.delete(key)
            return None
        return value

    def set_item(self, key: str, value: str) -> None:
        if not self._cache.set(key, value):
            raise StoreQuotaExceededError(key, entry_bytes(key, value), self._cache.size_limit)

    def remove_item(self, key: str) -> None:
        self._cache.delete(key)

    def keys(self) -> list[str]:
        return [key for key in self._cache.iterkeys() if isinstance(key, str)]

    def clear(self) -> None:
        self._cache.clear()

    def close(self) -> None:
        """Close the cache and cleanup resources."""
        if hasattr(self, "_cache"):
            self._cache.close()
