from __future__ import annotations

import sys
import psutil
import logging
from typing import TYPE_CHECKING

from .alert_utils import send_pressure_alert_if_needed

if TYPE_CHECKING:
    from .services import CacheServices

logger = logging.getLogger(__name__)


def log_cache_status(services: CacheServices, services_name: str = "library") -> None:
    """Log cache and system memory stats, and send a pressure alert if configured."""
    try:
        memory_stats = services.memory_manager.get_memory_stats()
        cache_stats = services.session_cache.get_cache_stats()
        vm = psutil.virtual_memory()

        msg = (
            f"Cache={services_name} | pressure={memory_stats.pressure_level.value} | "
            f"assets={len(services.memory_manager)} "
            f"({memory_stats.asset_cache_size // 1024}KB) | "
            f"signed_urls={cache_stats.signed_urls} metadata={cache_stats.metadata} "
            f"({cache_stats.total_size // 1024}KB) | "
            f"prefetch_queue={services.progressive_enhancement.queue_size} | "
            f"RAM used={vm.percent:.1f}% "
            f"({vm.used // (1024**2)}MB/{vm.total // (1024**2)}MB)"
        )
        logger.info(msg)
        print(f"[AssetCache] {msg}", file=sys.stderr, flush=True)

        send_pressure_alert_if_needed(
            memory_stats.pressure_level, vm.percent, services_name
        )
    except Exception as exc:  # noqa: BLE001
        logger.debug(f"Failed to log cache status: {exc}")
