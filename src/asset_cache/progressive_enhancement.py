"""
Progressive Enhancement

Prefetch orchestrator that ranks library assets by predicted relevance and
warms the signed URL cache ahead of user navigation.

Key Features:
- Heuristic scoring from viewing, search and filter history
- Top-N candidates appended to a FIFO prefetch queue
- Single-flight queue processing on the asyncio event loop
- Batch size shrinks as memory pressure rises; stops at critical pressure
- Behaviour history persisted to the durable local store after every change
- Best-effort offline caching of frequently viewed assets
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections import deque
from typing import Any, Awaitable, Callable, Coroutine, Iterable

from .cache_types import (
    PRESSURE_POLICIES,
    AssetPriority,
    LibraryAsset,
    PrefetchStrategy,
    PressureLevel,
    UserBehaviorData,
)
from .capabilities import NullOfflineCache, OfflineCache
from .errors import ResolveTimeoutError
from .keys import BEHAVIOR_DATA_KEY
from .memory_manager import DEFAULT_ASSET_SIZE, MemoryManager
from .session_cache import SessionCache
from .stores import KeyValueStore

logger = logging.getLogger(__name__)

Resolver = Callable[[LibraryAsset], Awaitable[str]]

SECONDS_PER_DAY = 24 * 60 * 60
MAX_PRIORITY = 10
MAX_CONFIDENCE = 1.0


class ProgressiveEnhancement:
    """
    Behaviour-driven prefetcher for library assets.

    Queue processing moves idle -> processing -> idle. Calls made while a
    run is in flight only enqueue; the running loop picks the items up.
    """

    def __init__(
        self,
        memory_manager: MemoryManager,
        session_cache: SessionCache,
        resolver: Resolver,
        local_store: KeyValueStore,
        offline_cache: OfflineCache | None = None,
        clock: Callable[[], float] = time.time,
        batch_delay_seconds: float = 0.1,
        resolve_timeout_seconds: float | None = 30.0,
        prefetch_limit: int = 10,
        offline_limit: int = 10,
        max_viewed_assets: int = 50,
        max_search_patterns: int = 20,
        recent_asset_seconds: float = 7 * SECONDS_PER_DAY,
    ) -> None:
        """
        Initialize ProgressiveEnhancement.

        Args:
            memory_manager: Registry prefetched assets are registered with
            session_cache: Cache receiving resolved signed URLs
            resolver: Async callable turning an asset into a fetchable URL
            local_store: Durable store for the behaviour history
            offline_cache: Offline content cache; disabled if omitted
            clock: Time source in epoch seconds
            batch_delay_seconds: Pause between prefetch batches
            resolve_timeout_seconds: Per-asset resolver timeout; None waits forever
            prefetch_limit: Candidates queued per analyze_and_prefetch call
            offline_limit: Maximum assets cached by enable_offline_mode
            max_viewed_assets: Cap of the viewed-asset history
            max_search_patterns: Cap of the search history
            recent_asset_seconds: Age under which an asset counts as recent
        """
        self._memory_manager = memory_manager
        self._session_cache = session_cache
        self._resolver = resolver
        self._local_store = local_store
        self._clock = clock
        self._batch_delay_seconds = batch_delay_seconds
        self._resolve_timeout_seconds = resolve_timeout_seconds
        self._prefetch_limit = prefetch_limit
        self._offline_limit = offline_limit
        self._max_viewed_assets = max_viewed_assets
        self._max_search_patterns = max_search_patterns
        self._recent_asset_seconds = recent_asset_seconds

        if offline_cache is None or not offline_cache.available:
            logger.warning("Offline cache not available; offline mode disabled")
            offline_cache = NullOfflineCache()
        self._offline_cache = offline_cache

        self._behavior_data = self._load_behavior_data()
        self._prefetch_queue: deque[tuple[LibraryAsset, PrefetchStrategy]] = deque()
        self._is_processing_queue = False
        self._processing_task: asyncio.Task[None] | None = None
        self._background_tasks: set[asyncio.Task[Any]] = set()

    # State
    @property
    def is_processing(self) -> bool:
        return self._is_processing_queue

    @property
    def queue_size(self) -> int:
        return len(self._prefetch_queue)

    @property
    def behavior_data(self) -> UserBehaviorData:
        """Snapshot copy of the behaviour history."""
        return UserBehaviorData.from_dict(self._behavior_data.to_dict())

    # Prefetching
    def analyze_and_prefetch(
        self, assets: Iterable[LibraryAsset], current_filters: dict[str, Any] | None = None
    ) -> None:
        """Queue the most promising assets and start prefetching in the background."""
        logger.info(f"Analyzing user behavior for smart prefetching (filters={current_filters})")

        scored = [
            (asset, self.calculate_asset_strategy(asset, current_filters))
            for asset in assets
        ]
        scored.sort(key=lambda item: item[1].score, reverse=True)
        self._prefetch_queue.extend(scored[: self._prefetch_limit])

        if self._processing_task is not None and not self._processing_task.done():
            return
        task = self._spawn(self.process_prefetch_queue(), "prefetch queue")
        if task is not None:
            self._processing_task = task

    def calculate_asset_strategy(
        self, asset: LibraryAsset, current_filters: dict[str, Any] | None = None
    ) -> PrefetchStrategy:
        priority = 1
        confidence = 0.5
        reasons: list[str] = []

        # Coarse similarity: a viewed id mentioning the asset type
        if asset.type and any(
            asset.type in viewed_id for viewed_id in self._behavior_data.viewed_assets
        ):
            priority += 3
            confidence += 0.3
            reasons.append("similar content viewed")

        prompt = asset.prompt.lower()
        if any(
            pattern.lower() in prompt for pattern in self._behavior_data.search_patterns
        ):
            priority += 2
            confidence += 0.2
            reasons.append("matches search history")

        if self._behavior_data.filter_preferences.get("type") == asset.type:
            priority += 1
            confidence += 0.1
            reasons.append("matches filter preference")

        if asset.quality == "high":
            priority += 1
            confidence += 0.1
            reasons.append("high quality")

        if self._clock() - asset.created_at < self._recent_asset_seconds:
            priority += 1
            confidence += 0.1
            reasons.append("recent content")

        return PrefetchStrategy(
            priority=min(priority, MAX_PRIORITY),
            confidence=min(round(confidence, 6), MAX_CONFIDENCE),
            reason=", ".join(reasons),
        )

    async def process_prefetch_queue(self) -> None:
        """Drain the prefetch queue in pressure-sized batches (single-flight)."""
        if self._is_processing_queue or not self._prefetch_queue:
            return

        self._is_processing_queue = True
        logger.info(f"Processing prefetch queue: {len(self._prefetch_queue)} items")
        try:
            while self._prefetch_queue:
                level = self._memory_manager.get_pressure_level()
                if level is PressureLevel.CRITICAL:
                    logger.info(
                        f"Critical memory pressure, pausing prefetch with "
                        f"{len(self._prefetch_queue)} items queued"
                    )
                    break

                batch_size = PRESSURE_POLICIES[level].prefetch_batch_size
                batch = [
                    self._prefetch_queue.popleft()
                    for _ in range(min(batch_size, len(self._prefetch_queue)))
                ]
                results = await asyncio.gather(
                    *(self._prefetch_asset(asset, strategy) for asset, strategy in batch),
                    return_exceptions=True,
                )
                for result in results:
                    if isinstance(result, Exception):
                        logger.warning(f"Prefetch batch item failed: {result}")

                if self._prefetch_queue:
                    await asyncio.sleep(self._batch_delay_seconds)
        finally:
            self._is_processing_queue = False

    async def _prefetch_asset(self, asset: LibraryAsset, strategy: PrefetchStrategy) -> None:
        try:
            logger.debug(f"Prefetching asset {asset.id} ({strategy.reason})")
            url = await self._resolve(asset)
            if url:
                self._session_cache.cache_signed_url(asset.id, url)
            self._memory_manager.register_asset(asset.id, DEFAULT_ASSET_SIZE, AssetPriority.LOW)
            self._record_behavior("prefetched", asset)
        except Exception as exc:  # noqa: BLE001
            logger.warning(f"Failed to prefetch asset {asset.id}: {exc}")

    async def _resolve(self, asset: LibraryAsset) -> str:
        if self._resolve_timeout_seconds is None:
            return await self._resolver(asset)
        try:
            return await asyncio.wait_for(
                self._resolver(asset), timeout=self._resolve_timeout_seconds
            )
        except asyncio.TimeoutError:
            raise ResolveTimeoutError(asset.id, self._resolve_timeout_seconds)

    async def wait_until_idle(self) -> None:
        """Wait for queue processing and offline caching tasks to finish."""
        while True:
            pending = {task for task in self._background_tasks if not task.done()}
            if not pending:
                return
            await asyncio.wait(pending)

    # Behaviour tracking
    def track_asset_view(self, asset: LibraryAsset) -> None:
        viewed = [asset.id] + self._behavior_data.viewed_assets
        self._behavior_data.viewed_assets = viewed[: self._max_viewed_assets]
        self._record_behavior("viewed", asset)
        self._save_behavior_data()

    def track_search(self, search_term: str) -> None:
        if not search_term.strip():
            return
        patterns = [search_term] + self._behavior_data.search_patterns
        self._behavior_data.search_patterns = patterns[: self._max_search_patterns]
        self._save_behavior_data()

    def track_filter_change(self, filters: dict[str, Any]) -> None:
        self._behavior_data.filter_preferences = {
            **self._behavior_data.filter_preferences,
            **filters,
        }
        self._save_behavior_data()

    def track_library_time(self, elapsed_seconds: float) -> None:
        self._behavior_data.time_spent_in_library += elapsed_seconds
        self._behavior_data.last_visit = self._clock()
        self._save_behavior_data()

    def _record_behavior(self, action: str, asset: LibraryAsset) -> None:
        logger.debug(f"Behavior: {action} asset {asset.type} ({asset.model_type})")

    # Offline mode
    def enable_offline_mode(self, assets: Iterable[LibraryAsset]) -> int:
        """
        Cache the most viewed of the given assets for offline use.

        Returns:
            Number of assets scheduled for offline caching
        """
        if not self._offline_cache.available:
            logger.warning("Offline mode requested but no offline cache is available")
            return 0

        logger.info("Enabling offline mode for frequently accessed assets")
        viewed = set(self._behavior_data.viewed_assets)
        frequent = [asset for asset in assets if asset.id in viewed][: self._offline_limit]

        scheduled = 0
        for asset in frequent:
            if self._spawn(self._cache_asset_for_offline(asset), f"offline {asset.id}"):
                scheduled += 1
        return scheduled

    async def _cache_asset_for_offline(self, asset: LibraryAsset) -> None:
        try:
            url = await self._resolve(asset)
            if url:
                await self._offline_cache.add(url)
                logger.info(f"Cached asset for offline: {asset.id}")
        except Exception as exc:  # noqa: BLE001
            logger.warning(f"Failed to cache asset for offline: {asset.id}: {exc}")

    # Background tasks
    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task[Any] | None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            logger.warning(f"No running event loop, {name} not started")
            return None
        task = loop.create_task(coro, name=name)
        self._background_tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task[Any]) -> None:
        self._background_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Background task {task.get_name()} failed: {exc}")

    # Persistence
    def _load_behavior_data(self) -> UserBehaviorData:
        try:
            stored = self._local_store.get_item(BEHAVIOR_DATA_KEY)
            if stored:
                raw = json.loads(stored)
                if isinstance(raw, dict):
                    return UserBehaviorData.from_dict(raw)
                logger.warning("Ignoring behavior data with unexpected shape")
        except Exception as exc:  # noqa: BLE001
            logger.warning(f"Failed to load behavior data: {exc}")

        return UserBehaviorData(last_visit=self._clock())

    def _save_behavior_data(self) -> None:
        try:
            self._local_store.set_item(
                BEHAVIOR_DATA_KEY, json.dumps(self._behavior_data.to_dict(), default=str)
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning(f"Failed to save behavior data: {exc}")

    def destroy(self) -> None:
        """Cancel background work and drop the queue."""
        for task in list(self._background_tasks):
            task.cancel()
        self._background_tasks.clear()
        self._prefetch_queue.clear()
        self._processing_task = None
