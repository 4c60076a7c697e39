"""Exception hierarchy for the asset cache package."""

from __future__ import annotations


class AssetCacheError(Exception):
    """Base class for asset cache errors."""


class StoreQuotaExceededError(AssetCacheError):
    """Raised by a key/value store when a write would exceed its capacity."""

    def __init__(self, key: str, required_bytes: int, max_bytes: int) -> None:
        super().__init__(
            f"Store quota exceeded writing '{key}': "
            f"{required_bytes} bytes required, limit is {max_bytes} bytes"
        )
        self.key = key
        self.required_bytes = required_bytes
        self.max_bytes = max_bytes


class ResolveTimeoutError(AssetCacheError):
    """Raised when the asset URL resolver does not answer in time."""

    def __init__(self, asset_id: str, timeout_seconds: float) -> None:
        super().__init__(
            f"Resolving URL for asset '{asset_id}' timed out after {timeout_seconds}s"
        )
        self.asset_id = asset_id
        self.timeout_seconds = timeout_seconds
