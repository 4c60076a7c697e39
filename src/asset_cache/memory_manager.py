"""
Memory Manager

Tracks registered library assets, derives a memory pressure level from the
platform memory signal and evicts invisible, low-priority assets when memory
runs short.

Key Features:
- Pressure level from used/total memory against fixed thresholds
- Policy table per level: eviction scope, session purge age, recheck interval
- Oldest-first eviction that never touches visible assets
- Self-rescheduling cleanup timer, rechecking more often under pressure
- Eviction cascades into the session store using exact key derivation
"""

from __future__ import annotations

import json
import logging
import threading
import time
from typing import Callable

from .cache_types import (
    PRESSURE_POLICIES,
    AssetPriority,
    AssetReference,
    EvictionMode,
    EvictionPolicy,
    MemoryStats,
    PressureLevel,
    pressure_level_for_ratio,
)
from .capabilities import MemorySignal, NullMemorySignal
from .keys import (
    SESSION_SIZE_PREFIXES,
    TRACKED_ASSET_PREFIXES,
    asset_store_keys,
    has_prefix,
)
from .stores import KeyValueStore

logger = logging.getLogger(__name__)

DEFAULT_ASSET_SIZE = 1024


class MemoryManager:
    """
    Memory pressure aware registry of library assets.

    One instance is meant to live for the whole process; build it once with
    build_cache_services() and pass it to consumers. All operations are
    synchronous and never raise for missing platform support.
    """

    def __init__(
        self,
        session_store: KeyValueStore,
        memory_signal: MemorySignal | None = None,
        clock: Callable[[], float] = time.time,
        start_timer: bool = True,
        policies: dict[PressureLevel, EvictionPolicy] | None = None,
    ) -> None:
        """
        Initialize MemoryManager.

        Args:
            session_store: Store holding per-asset cache entries to clean up
            memory_signal: Platform memory signal; NullMemorySignal if omitted
            clock: Time source in epoch seconds
            start_timer: Start the periodic cleanup timer immediately
            policies: Override of the per-level eviction policy table
        """
        self._session_store = session_store
        self._clock = clock
        self._policies = policies or PRESSURE_POLICIES

        self._assets: dict[str, AssetReference] = {}
        # Re-entrant: eviction unregisters assets while holding the lock
        self._lock = threading.RLock()
        self._timer: threading.Timer | None = None
        self._destroyed = False
        self._pressure_listeners: list[Callable[[PressureLevel], None]] = []

        if memory_signal is None:
            logger.warning(
                "Memory usage signal not available; pressure level will stay low"
            )
            memory_signal = NullMemorySignal()
        self._memory_signal = memory_signal
        if not self._memory_signal.subscribe(self._on_platform_pressure):
            logger.debug("Platform memory pressure notifications not supported")

        if start_timer:
            self.start_periodic_cleanup()

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - automatic cleanup."""
        self.destroy()

    # Asset registry
    def register_asset(
        self,
        asset_id: str,
        size: int = DEFAULT_ASSET_SIZE,
        priority: AssetPriority = AssetPriority.MEDIUM,
    ) -> None:
        with self._lock:
            # Re-registration replaces the entry and moves it to the end
            self._assets.pop(asset_id, None)
            self._assets[asset_id] = AssetReference(
                id=asset_id,
                last_accessed=self._clock(),
                size=size,
                is_visible=False,
                priority=priority,
            )

    def update_asset_visibility(self, asset_id: str, is_visible: bool) -> None:
        with self._lock:
            ref = self._assets.get(asset_id)
            if ref is None:
                return
            ref.is_visible = is_visible
            ref.last_accessed = self._clock()

    def unregister_asset(self, asset_id: str) -> None:
        with self._lock:
            self._assets.pop(asset_id, None)
        self._cleanup_asset_caches(asset_id)

    def add_pressure_listener(self, listener: Callable[[PressureLevel], None]) -> None:
        """Call listener with the level after every pressure cleanup."""
        with self._lock:
            self._pressure_listeners.append(listener)

    def get_asset(self, asset_id: str) -> AssetReference | None:
        with self._lock:
            return self._assets.get(asset_id)

    def asset_ids(self) -> list[str]:
        with self._lock:
            return list(self._assets.keys())

    def __contains__(self, asset_id: object) -> bool:
        with self._lock:
            return asset_id in self._assets

    def __len__(self) -> int:
        with self._lock:
            return len(self._assets)

    # Stats
    def get_memory_stats(self) -> MemoryStats:
        reading = self._memory_signal.read()
        used_memory, total_memory = reading if reading is not None else (0, 0)
        ratio = used_memory / total_memory if total_memory > 0 else 0.0

        return MemoryStats(
            total_memory=total_memory,
            used_memory=used_memory,
            asset_cache_size=self._calculate_asset_cache_size(),
            session_cache_size=self._calculate_session_cache_size(),
            pressure_level=pressure_level_for_ratio(ratio),
        )

    def get_pressure_level(self) -> PressureLevel:
        return self.get_memory_stats().pressure_level

    def _calculate_asset_cache_size(self) -> int:
        with self._lock:
            return sum(ref.size for ref in self._assets.values())

    def _calculate_session_cache_size(self) -> int:
        total_size = 0
        for key in self._session_store.keys():
            if has_prefix(key, SESSION_SIZE_PREFIXES):
                value = self._session_store.get_item(key) or ""
                total_size += len(value.encode("utf-8"))
        return total_size

    # Eviction
    def handle_memory_pressure(self, level: PressureLevel | None = None) -> int:
        """
        Evict assets and purge stale session data for a pressure level.

        Args:
            level: Pressure level to act on; read from the signal if omitted

        Returns:
            Number of assets evicted
        """
        if level is None:
            level = self.get_pressure_level()
        policy = self._policies[level]
        if policy.mode is EvictionMode.NONE:
            return 0

        logger.info(f"Memory pressure detected: {level.value}")
        with self._lock:
            evicted = self._pop_evictable(self._select_evictions(policy), policy)
        # Store cleanup runs outside the lock
        for asset_id in evicted:
            self._cleanup_asset_caches(asset_id)

        purged = 0
        if policy.max_age_seconds is not None:
            purged = self.purge_stale_session_data(policy.max_age_seconds)

        if policy.collect_garbage:
            self._memory_signal.collect_garbage()

        logger.info(
            f"Cleanup at {level.value} pressure evicted {len(evicted)} assets, "
            f"purged {purged} session entries"
        )
        self._notify_pressure_listeners(level)
        return len(evicted)

    def _notify_pressure_listeners(self, level: PressureLevel) -> None:
        with self._lock:
            listeners = list(self._pressure_listeners)
        for listener in listeners:
            try:
                listener(level)
            except Exception as exc:  # noqa: BLE001
                logger.error(f"Memory pressure listener failed: {exc}")

    def _select_evictions(self, policy: EvictionPolicy) -> list[str]:
        with self._lock:
            candidates = [
                ref for ref in self._assets.values() if self._is_evictable(ref, policy)
            ]
            # sort() is stable, so equal timestamps keep insertion order
            candidates.sort(key=lambda ref: ref.last_accessed)

            if policy.mode is EvictionMode.HALF_LOW_PRIORITY:
                candidates = candidates[: len(candidates) // 2]
            if policy.max_evictions is not None:
                candidates = candidates[: policy.max_evictions]
            return [ref.id for ref in candidates]

    def _is_evictable(self, ref: AssetReference, policy: EvictionPolicy) -> bool:
        if ref.is_visible:
            return False
        return (
            policy.mode is EvictionMode.ALL_INVISIBLE
            or ref.priority is AssetPriority.LOW
        )

    def _pop_evictable(self, asset_ids: list[str], policy: EvictionPolicy) -> list[str]:
        # Caller holds the lock; visibility may have changed since selection
        popped: list[str] = []
        for asset_id in asset_ids:
            ref = self._assets.get(asset_id)
            if ref is None or not self._is_evictable(ref, policy):
                continue
            del self._assets[asset_id]
            popped.append(asset_id)
        return popped

    def purge_stale_session_data(self, max_age_seconds: float) -> int:
        """
        Remove tracked session-store entries older than max_age_seconds.

        Entries that fail to parse are removed as well.

        Returns:
            Number of removed entries
        """
        now = self._clock()
        keys_to_remove: list[str] = []

        for key in self._session_store.keys():
            if not has_prefix(key, TRACKED_ASSET_PREFIXES):
                continue
            raw = self._session_store.get_item(key)
            if raw is None:
                continue
            try:
                data = json.loads(raw)
            except (TypeError, ValueError):
                keys_to_remove.append(key)
                continue
            timestamp = data.get("timestamp") if isinstance(data, dict) else None
            if isinstance(timestamp, (int, float)) and now - timestamp > max_age_seconds:
                keys_to_remove.append(key)

        for key in keys_to_remove:
            self._session_store.remove_item(key)
        logger.debug(f"Cleaned up {len(keys_to_remove)} old session entries")
        return len(keys_to_remove)

    def _cleanup_asset_caches(self, asset_id: str) -> None:
        for key in asset_store_keys(asset_id):
            self._session_store.remove_item(key)

    # Periodic cleanup
    def start_periodic_cleanup(self) -> None:
        """Run one cleanup tick now and keep rescheduling afterwards."""
        self._destroyed = False
        self._periodic_cleanup()

    def _periodic_cleanup(self) -> None:
        if self._destroyed:
            return
        level = PressureLevel.LOW
        try:
            level = self.get_pressure_level()
            if level is not PressureLevel.LOW:
                self.handle_memory_pressure(level)
        except Exception as exc:  # noqa: BLE001
            logger.error(f"Periodic memory cleanup failed: {exc}")
        finally:
            self._schedule_next(level)

    def _schedule_next(self, level: PressureLevel) -> None:
        with self._lock:
            if self._destroyed:
                return
            if self._timer is not None:
                self._timer.cancel()
            interval = self._policies[level].cleanup_interval_seconds
            self._timer = threading.Timer(interval, self._periodic_cleanup)
            self._timer.daemon = True
            self._timer.start()

    @property
    def next_cleanup_interval(self) -> float | None:
        """Delay of the pending cleanup timer, or None if none is scheduled."""
        with self._lock:
            return self._timer.interval if self._timer is not None else None

    def _on_platform_pressure(self) -> None:
        try:
            self.handle_memory_pressure()
        except Exception as exc:  # noqa: BLE001
            logger.error(f"Memory pressure handling failed: {exc}")

    def destroy(self) -> None:
        """Stop the cleanup timer, detach the signal and forget all assets."""
        with self._lock:
            self._destroyed = True
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self._assets.clear()
            self._pressure_listeners.clear()
        self._memory_signal.unsubscribe()
