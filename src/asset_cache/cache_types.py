"""
Cache Types and Data Classes

This module contains the core data structures and enums shared by the
memory manager, the session cache and the prefetch orchestrator.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class PressureLevel(Enum):
    """Coarse memory scarcity level."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AssetPriority(Enum):
    """Priority tier of a tracked asset."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class EvictionMode(Enum):
    """Which assets an eviction pass may remove."""

    NONE = "none"
    ALL_INVISIBLE = "all_invisible"
    HALF_LOW_PRIORITY = "half_low_priority"
    OLDEST_LOW_PRIORITY = "oldest_low_priority"


@dataclass(frozen=True)
class EvictionPolicy:
    """Per-level behaviour shared by eviction, cleanup scheduling and prefetch."""

    threshold: float
    cleanup_interval_seconds: float
    max_age_seconds: float | None
    mode: EvictionMode
    prefetch_batch_size: int
    max_evictions: int | None = None
    collect_garbage: bool = False


# Ordered from the most to the least severe level so threshold lookup can stop
# at the first match.
PRESSURE_POLICIES: dict[PressureLevel, EvictionPolicy] = {
    PressureLevel.CRITICAL: EvictionPolicy(
        threshold=0.95,
        cleanup_interval_seconds=5.0,
        max_age_seconds=5 * 60,
        mode=EvictionMode.ALL_INVISIBLE,
        prefetch_batch_size=1,
        collect_garbage=True,
    ),
    PressureLevel.HIGH: EvictionPolicy(
        threshold=0.85,
        cleanup_interval_seconds=15.0,
        max_age_seconds=15 * 60,
        mode=EvictionMode.HALF_LOW_PRIORITY,
        prefetch_batch_size=1,
    ),
    PressureLevel.MEDIUM: EvictionPolicy(
        threshold=0.70,
        cleanup_interval_seconds=30.0,
        max_age_seconds=30 * 60,
        mode=EvictionMode.OLDEST_LOW_PRIORITY,
        prefetch_batch_size=2,
        max_evictions=10,
    ),
    PressureLevel.LOW: EvictionPolicy(
        threshold=0.0,
        cleanup_interval_seconds=60.0,
        max_age_seconds=None,
        mode=EvictionMode.NONE,
        prefetch_batch_size=3,
    ),
}


def pressure_level_for_ratio(ratio: float) -> PressureLevel:
    """Map a used/total memory ratio to a pressure level (strict comparisons)."""
    for level, policy in PRESSURE_POLICIES.items():
        if level is PressureLevel.LOW:
            continue
        if ratio > policy.threshold:
            return level
    return PressureLevel.LOW


@dataclass
class AssetReference:
    """An asset tracked by the memory manager."""

    id: str
    last_accessed: float
    size: int
    is_visible: bool
    priority: AssetPriority


@dataclass
class CachedItem:
    """Envelope persisted in the session store for every cache entry."""

    data: Any
    timestamp: float
    user_id: str

    def to_dict(self) -> dict[str, Any]:
        return {"data": self.data, "timestamp": self.timestamp, "userId": self.user_id}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "CachedItem":
        return cls(
            data=raw["data"],
            timestamp=float(raw["timestamp"]),
            user_id=str(raw["userId"]),
        )


@dataclass
class MemoryStats:
    """Memory statistics for monitoring and eviction decisions."""

    total_memory: int
    used_memory: int
    asset_cache_size: int
    session_cache_size: int
    pressure_level: PressureLevel


@dataclass
class CacheStats:
    """Session cache statistics."""

    signed_urls: int
    metadata: int
    total_size: int


@dataclass
class SwrStats:
    """Freshness breakdown of a stale-while-revalidate cache."""

    size: int
    fresh: int
    stale: int
    expired: int
    hit_rate: float


@dataclass
class LibraryAsset:
    """A candidate asset as supplied by the library UI layer."""

    id: str
    type: str
    prompt: str = ""
    quality: str = "medium"
    created_at: float = 0.0
    model_type: str = ""
    bucket: str = ""
    storage_path: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "prompt": self.prompt,
            "quality": self.quality,
            "createdAt": self.created_at,
            "modelType": self.model_type,
            "bucket": self.bucket,
            "storagePath": self.storage_path,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "LibraryAsset":
        return cls(
            id=str(raw["id"]),
            type=str(raw["type"]),
            prompt=str(raw.get("prompt", "")),
            quality=str(raw.get("quality", "medium")),
            created_at=float(raw.get("createdAt", 0.0)),
            model_type=str(raw.get("modelType", "")),
            bucket=str(raw.get("bucket", "")),
            storage_path=str(raw.get("storagePath", "")),
        )


@dataclass(frozen=True)
class PrefetchStrategy:
    """Computed ranking of a prefetch candidate; never persisted."""

    priority: int
    confidence: float
    reason: str

    @property
    def score(self) -> float:
        return self.priority * self.confidence


@dataclass
class UserBehaviorData:
    """Behavioural history used to rank prefetch candidates."""

    viewed_assets: list[str] = field(default_factory=list)
    search_patterns: list[str] = field(default_factory=list)
    filter_preferences: dict[str, Any] = field(default_factory=dict)
    time_spent_in_library: float = 0.0
    last_visit: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "viewedAssets": list(self.viewed_assets),
            "searchPatterns": list(self.search_patterns),
            "filterPreferences": dict(self.filter_preferences),
            "timeSpentInLibrary": self.time_spent_in_library,
            "lastVisit": self.last_visit,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "UserBehaviorData":
        return cls(
            viewed_assets=[str(v) for v in raw.get("viewedAssets", [])],
            search_patterns=[str(s) for s in raw.get("searchPatterns", [])],
            filter_preferences=dict(raw.get("filterPreferences", {})),
            time_spent_in_library=float(raw.get("timeSpentInLibrary", 0.0)),
            last_visit=float(raw.get("lastVisit", 0.0)),
        )
