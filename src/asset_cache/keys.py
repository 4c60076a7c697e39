"""
Store Key Construction

Every key written to the session or local store is built here, so that
cleanup can delete exact keys instead of matching substrings.
"""

from __future__ import annotations

import json
from typing import Any

SIGNED_URL_PREFIX = "signed-url-"
METADATA_PREFIX = "metadata-"
SESSION_PREFIX = "cache-"
ASSET_PREFIX = "asset_"
URL_PREFIX = "url_"

SESSION_USER_KEY = f"{SESSION_PREFIX}user-id"
SESSION_START_KEY = f"{SESSION_PREFIX}session-start"
BEHAVIOR_DATA_KEY = "library-behavior-data"

# Prefixes owned by the session cache and wiped by clear_all_cache().
SESSION_CACHE_PREFIXES = (SIGNED_URL_PREFIX, METADATA_PREFIX, SESSION_PREFIX)
# Prefixes swept by cleanup_old_cache().
EXPIRING_PREFIXES = (SIGNED_URL_PREFIX, METADATA_PREFIX)
# Prefixes the memory manager measures and purges under pressure.
TRACKED_ASSET_PREFIXES = (ASSET_PREFIX, URL_PREFIX, SIGNED_URL_PREFIX, METADATA_PREFIX)
# Prefixes counted in the session cache size stat.
SESSION_SIZE_PREFIXES = (ASSET_PREFIX, URL_PREFIX)


def signed_url_key(asset_id: str) -> str:
    return f"{SIGNED_URL_PREFIX}{asset_id}"


def metadata_key(cache_key: str) -> str:
    return f"{METADATA_PREFIX}{cache_key}"


def asset_key(asset_id: str) -> str:
    return f"{ASSET_PREFIX}{asset_id}"


def url_key(asset_id: str) -> str:
    return f"{URL_PREFIX}{asset_id}"


def asset_store_keys(asset_id: str) -> list[str]:
    """All session-store keys that belong to a single asset."""
    return [signed_url_key(asset_id), asset_key(asset_id), url_key(asset_id)]


def asset_list_cache_key(filters: Any, pagination: dict[str, Any] | None) -> str:
    """Deterministic metadata key for one page of a filtered asset listing."""
    offset = (pagination or {}).get("offset") or 0
    serialized = json.dumps(filters, sort_keys=True, separators=(",", ":"), default=str)
    return f"assets-{serialized}-{offset}"


def has_prefix(key: str, prefixes: tuple[str, ...]) -> bool:
    return key.startswith(prefixes)
