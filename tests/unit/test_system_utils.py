"""
Unit tests for System Utils

Tests cache status logging and alert forwarding.
"""

from unittest.mock import patch

import pytest

from asset_cache.cache_types import PressureLevel
from asset_cache.config import CacheSettings
from asset_cache.services import build_cache_services
from asset_cache.stores import MemorySessionStore
from asset_cache.system_utils import log_cache_status
from tests.utils.mock_system_resources import MockMemorySignal, TestConfig


@pytest.fixture
def services(clock, resolver):
    signal = MockMemorySignal(ratio=TestConfig.RATIO_HIGH)
    built = build_cache_services(
        CacheSettings(start_cleanup_timer=False),
        resolver=resolver,
        memory_signal=signal,
        local_store=MemorySessionStore(),
        clock=clock,
    )
    built.session_cache.initialize_session(TestConfig.USER_A)
    yield built
    built.close()


class TestSystemUtils:
    """Test suite for cache status logging."""

    def test_log_cache_status_success(self, services):
        """Test successful cache status logging."""
        services.memory_manager.register_asset("img1", size=4096)
        services.session_cache.cache_signed_url("img1", "https://x/img1")

        with (
            patch("psutil.virtual_memory") as mock_vm,
            patch("asset_cache.system_utils.send_pressure_alert_if_needed") as mock_alert,
            patch("asset_cache.system_utils.logger") as mock_logger,
        ):
            mock_vm.return_value.percent = 75.5
            mock_vm.return_value.used = 8 * 1024**3  # 8GB
            mock_vm.return_value.total = 16 * 1024**3  # 16GB

            log_cache_status(services, "TestLibrary")

            mock_logger.info.assert_called_once()
            log_message = mock_logger.info.call_args[0][0]
            assert "Cache=TestLibrary" in log_message
            assert "pressure=high" in log_message
            assert "assets=1 (4KB)" in log_message
            assert "signed_urls=1 metadata=0" in log_message
            assert "prefetch_queue=0" in log_message
            assert "RAM used=75.5%" in log_message

            mock_alert.assert_called_once()
            level, percent, name = mock_alert.call_args[0]
            assert level.value == "high"
            assert percent == 75.5
            assert name == "TestLibrary"

    def test_log_cache_status_swallows_errors(self, services):
        """Test that status logging never raises."""
        with (
            patch("psutil.virtual_memory", side_effect=RuntimeError("no psutil")),
            patch("asset_cache.system_utils.logger") as mock_logger,
        ):
            log_cache_status(services)

            mock_logger.info.assert_not_called()
            mock_logger.debug.assert_called_once()

    def test_log_status_uses_services(self, services):
        """Test that CacheServices.log_status forwards itself."""
        with patch("asset_cache.services.log_cache_status") as mock_log:
            services.log_status("TestLibrary")

            mock_log.assert_called_once_with(services, "TestLibrary")

    def test_memory_pressure_logs_status(self, services):
        """Test that a pressure cleanup logs the cache status."""
        with patch("asset_cache.services.log_cache_status") as mock_log:
            services.memory_manager.handle_memory_pressure()

            mock_log.assert_called_once_with(services, "library")

    def test_low_pressure_does_not_log_status(self, services):
        """Test that nothing is logged when no cleanup runs."""
        with patch("asset_cache.services.log_cache_status") as mock_log:
            services.memory_manager.handle_memory_pressure(PressureLevel.LOW)

            mock_log.assert_not_called()
