"""
Unit tests for MemoryManager

Covers asset registration, pressure level derivation, per-level eviction,
session store purging and the self-rescheduling cleanup timer.
"""

import json
import threading
from unittest.mock import Mock, patch

import pytest

from asset_cache.cache_types import AssetPriority, PressureLevel
from asset_cache.memory_manager import MemoryManager
from asset_cache.stores import MemorySessionStore
from tests.utils.mock_system_resources import MockMemorySignal, TestConfig


def _entry(timestamp: float) -> str:
    return json.dumps({"data": "x", "timestamp": timestamp, "userId": "user-a"})


class TestAssetRegistry:
    def test_register_defaults(self, memory_manager, clock):
        memory_manager.register_asset("img1")
        ref = memory_manager.get_asset("img1")
        assert ref is not None
        assert ref.size == 1024
        assert ref.priority is AssetPriority.MEDIUM
        assert ref.is_visible is False
        assert ref.last_accessed == clock()

    def test_register_overwrites_previous_entry(self, memory_manager):
        memory_manager.register_asset("img1", size=10, priority=AssetPriority.HIGH)
        memory_manager.update_asset_visibility("img1", True)
        memory_manager.register_asset("img1", size=20, priority=AssetPriority.LOW)

        ref = memory_manager.get_asset("img1")
        assert len(memory_manager) == 1
        assert ref.size == 20
        assert ref.priority is AssetPriority.LOW
        assert ref.is_visible is False

    def test_update_visibility_refreshes_last_accessed(self, memory_manager, clock):
        memory_manager.register_asset("img1")
        clock.advance(30)
        memory_manager.update_asset_visibility("img1", True)

        ref = memory_manager.get_asset("img1")
        assert ref.is_visible is True
        assert ref.last_accessed == clock()

    def test_update_visibility_unknown_id_is_noop(self, memory_manager):
        memory_manager.update_asset_visibility("missing", True)
        assert "missing" not in memory_manager

    def test_unregister_removes_asset_and_derived_keys(
        self, memory_manager, session_store, clock
    ):
        memory_manager.register_asset("img1")
        session_store.set_item("signed-url-img1", _entry(clock()))
        session_store.set_item("asset_img1", _entry(clock()))
        session_store.set_item("url_img1", _entry(clock()))
        # Ids that merely contain "img1" must survive
        session_store.set_item("signed-url-img10", _entry(clock()))
        session_store.set_item("metadata-img1-list", _entry(clock()))

        memory_manager.unregister_asset("img1")

        assert "img1" not in memory_manager
        assert memory_manager.get_memory_stats().asset_cache_size == 0
        assert session_store.keys() == ["signed-url-img10", "metadata-img1-list"]


class TestMemoryStats:
    def test_sizes(self, memory_manager, session_store):
        memory_manager.register_asset("a", size=100)
        memory_manager.register_asset("b", size=250)
        session_store.set_item("url_a", "12345")
        session_store.set_item("signed-url-b", "123")
        session_store.set_item("unrelated", "1234567890")

        stats = memory_manager.get_memory_stats()
        assert stats.asset_cache_size == 350
        assert stats.session_cache_size == 5

    def test_session_size_counts_utf8_bytes_of_asset_and_url_entries(
        self, memory_manager, session_store
    ):
        session_store.set_item("asset_a", "\u00e9\u00e9")
        session_store.set_item("metadata-a", "\u00e9\u00e9\u00e9")

        assert memory_manager.get_memory_stats().session_cache_size == 4

    def test_reports_signal_reading(self, memory_manager, memory_signal):
        memory_signal.set_usage(used=600, total=1000)
        stats = memory_manager.get_memory_stats()
        assert stats.used_memory == 600
        assert stats.total_memory == 1000
        assert stats.pressure_level is PressureLevel.LOW

    @pytest.mark.parametrize(
        "used,expected",
        [
            (0, PressureLevel.LOW),
            (700, PressureLevel.LOW),
            (701, PressureLevel.MEDIUM),
            (850, PressureLevel.MEDIUM),
            (851, PressureLevel.HIGH),
            (950, PressureLevel.HIGH),
            (951, PressureLevel.CRITICAL),
            (1000, PressureLevel.CRITICAL),
        ],
    )
    def test_pressure_thresholds_are_strict(self, memory_manager, memory_signal, used, expected):
        memory_signal.set_usage(used=used, total=1000)
        assert memory_manager.get_memory_stats().pressure_level is expected

    def test_missing_signal_reads_low(self, session_store, clock):
        manager = MemoryManager(session_store, clock=clock, start_timer=False)
        try:
            stats = manager.get_memory_stats()
            assert stats.total_memory == 0
            assert stats.used_memory == 0
            assert stats.pressure_level is PressureLevel.LOW
        finally:
            manager.destroy()

    def test_unavailable_reading_reads_low(self, memory_manager, memory_signal):
        memory_signal.set_ratio(0.99)
        memory_signal.available = False
        assert memory_manager.get_memory_stats().pressure_level is PressureLevel.LOW


class TestEviction:
    def _register(self, manager, clock, specs):
        for asset_id, priority, visible in specs:
            manager.register_asset(asset_id, priority=priority)
            manager.update_asset_visibility(asset_id, visible)
            clock.advance(1)

    def test_critical_evicts_every_invisible_asset(self, memory_manager, memory_signal, clock):
        self._register(
            memory_manager,
            clock,
            [
                ("img1", AssetPriority.LOW, False),
                ("img2", AssetPriority.HIGH, True),
                ("img3", AssetPriority.HIGH, False),
                ("img4", AssetPriority.MEDIUM, False),
            ],
        )
        memory_signal.set_ratio(TestConfig.RATIO_CRITICAL)

        evicted = memory_manager.handle_memory_pressure()

        assert evicted == 3
        assert memory_manager.asset_ids() == ["img2"]
        assert memory_signal.gc_calls == 1

    def test_high_evicts_oldest_half_of_low_priority(self, memory_manager, clock):
        self._register(
            memory_manager,
            clock,
            [
                ("low1", AssetPriority.LOW, False),
                ("low2", AssetPriority.LOW, False),
                ("low3", AssetPriority.LOW, False),
                ("low4", AssetPriority.LOW, False),
                ("low5", AssetPriority.LOW, False),
                ("med1", AssetPriority.MEDIUM, False),
                ("lowvis", AssetPriority.LOW, True),
            ],
        )

        evicted = memory_manager.handle_memory_pressure(PressureLevel.HIGH)

        assert evicted == 2
        assert "low1" not in memory_manager
        assert "low2" not in memory_manager
        for remaining in ("low3", "low4", "low5", "med1", "lowvis"):
            assert remaining in memory_manager

    def test_medium_evicts_at_most_ten_oldest_low_priority(self, memory_manager, clock):
        self._register(
            memory_manager,
            clock,
            [(f"low{i:02d}", AssetPriority.LOW, False) for i in range(15)],
        )
        # Touch an early asset so it becomes one of the newest
        memory_manager.update_asset_visibility("low00", False)

        evicted = memory_manager.handle_memory_pressure(PressureLevel.MEDIUM)

        assert evicted == 10
        remaining = sorted(memory_manager.asset_ids())
        assert remaining == ["low00", "low11", "low12", "low13", "low14"]

    def test_low_pressure_evicts_nothing(self, memory_manager, clock):
        self._register(memory_manager, clock, [("low1", AssetPriority.LOW, False)])
        assert memory_manager.handle_memory_pressure(PressureLevel.LOW) == 0
        assert "low1" in memory_manager

    def test_eviction_cascades_into_session_store(self, memory_manager, session_store, clock):
        memory_manager.register_asset("img1", priority=AssetPriority.LOW)
        session_store.set_item("signed-url-img1", _entry(clock()))

        memory_manager.handle_memory_pressure(PressureLevel.CRITICAL)

        assert session_store.get_item("signed-url-img1") is None

    @pytest.mark.parametrize(
        "level,max_age",
        [
            (PressureLevel.CRITICAL, 5 * 60),
            (PressureLevel.HIGH, 15 * 60),
            (PressureLevel.MEDIUM, 30 * 60),
        ],
    )
    def test_purges_session_entries_older_than_level_max_age(
        self, memory_manager, session_store, clock, level, max_age
    ):
        now = clock()
        session_store.set_item("url_old", _entry(now - max_age - 1))
        session_store.set_item("url_fresh", _entry(now - max_age + 1))
        session_store.set_item("asset_broken", "{not json")
        session_store.set_item("other_old", _entry(now - 10 * max_age))

        memory_manager.handle_memory_pressure(level)

        assert session_store.get_item("url_old") is None
        assert session_store.get_item("asset_broken") is None
        assert session_store.get_item("url_fresh") is not None
        assert session_store.get_item("other_old") is not None

    def test_asset_shown_during_selection_is_kept(self, memory_manager, session_store, clock):
        memory_manager.register_asset("img1", priority=AssetPriority.LOW)
        memory_manager.register_asset("img2", priority=AssetPriority.LOW)
        session_store.set_item("signed-url-img1", _entry(clock()))
        select = memory_manager._select_evictions

        def select_then_show_img1(policy):
            selected = select(policy)
            memory_manager.update_asset_visibility("img1", True)
            return selected

        with patch.object(
            memory_manager, "_select_evictions", side_effect=select_then_show_img1
        ):
            evicted = memory_manager.handle_memory_pressure(PressureLevel.CRITICAL)

        assert evicted == 1
        assert "img1" in memory_manager
        assert "img2" not in memory_manager
        assert session_store.get_item("signed-url-img1") is not None

    def test_eviction_and_visibility_updates_from_two_threads(self, memory_manager, clock):
        for i in range(200):
            memory_manager.register_asset(f"a{i}", priority=AssetPriority.LOW)
        shown = [f"a{i}" for i in range(0, 200, 2)]

        def show_assets():
            for asset_id in shown:
                memory_manager.update_asset_visibility(asset_id, True)

        worker = threading.Thread(target=show_assets)
        worker.start()
        memory_manager.handle_memory_pressure(PressureLevel.CRITICAL)
        worker.join()

        for asset_id in memory_manager.asset_ids():
            assert memory_manager.get_asset(asset_id).is_visible

    def test_platform_pressure_event_triggers_eviction(self, memory_manager, memory_signal):
        memory_manager.register_asset("img1", priority=AssetPriority.LOW)
        memory_signal.set_ratio(TestConfig.RATIO_CRITICAL)

        memory_signal.fire_pressure_event()

        assert "img1" not in memory_manager

    def test_pressure_listeners_receive_level(self, memory_manager):
        levels = []
        memory_manager.add_pressure_listener(levels.append)

        memory_manager.handle_memory_pressure(PressureLevel.HIGH)
        memory_manager.handle_memory_pressure(PressureLevel.LOW)

        assert levels == [PressureLevel.HIGH]

    def test_failing_listener_does_not_stop_cleanup(self, memory_manager):
        levels = []
        memory_manager.add_pressure_listener(Mock(side_effect=RuntimeError("boom")))
        memory_manager.add_pressure_listener(levels.append)
        memory_manager.register_asset("img1", priority=AssetPriority.LOW)

        evicted = memory_manager.handle_memory_pressure(PressureLevel.CRITICAL)

        assert evicted == 1
        assert levels == [PressureLevel.CRITICAL]


class TestPeriodicCleanup:
    def test_interval_follows_pressure_level(self, session_store, clock):
        signal = MockMemorySignal(ratio=TestConfig.RATIO_LOW)
        manager = MemoryManager(session_store, memory_signal=signal, clock=clock)
        try:
            assert manager.next_cleanup_interval == 60.0

            signal.set_ratio(TestConfig.RATIO_HIGH)
            manager._periodic_cleanup()
            assert manager.next_cleanup_interval == 15.0

            signal.set_ratio(TestConfig.RATIO_CRITICAL)
            manager._periodic_cleanup()
            assert manager.next_cleanup_interval == 5.0

            signal.set_ratio(TestConfig.RATIO_MEDIUM)
            manager._periodic_cleanup()
            assert manager.next_cleanup_interval == 30.0
        finally:
            manager.destroy()

    def test_tick_evicts_under_pressure(self, session_store, clock):
        signal = MockMemorySignal(ratio=TestConfig.RATIO_CRITICAL)
        manager = MemoryManager(session_store, memory_signal=signal, clock=clock, start_timer=False)
        try:
            manager.register_asset("img1", priority=AssetPriority.LOW)
            manager.start_periodic_cleanup()
            assert "img1" not in manager
        finally:
            manager.destroy()

    def test_only_one_timer_pending(self, session_store, clock):
        manager = MemoryManager(session_store, memory_signal=MockMemorySignal(), clock=clock)
        try:
            first = manager._timer
            manager._periodic_cleanup()
            second = manager._timer
            assert first is not second
            assert first.finished.is_set()
            assert not second.finished.is_set()
        finally:
            manager.destroy()

    def test_destroy_cancels_timer_and_clears_state(self, clock):
        store = MemorySessionStore()
        signal = MockMemorySignal()
        manager = MemoryManager(store, memory_signal=signal, clock=clock)
        manager.register_asset("img1")

        manager.destroy()

        assert manager.next_cleanup_interval is None
        assert len(manager) == 0
        assert signal.unsubscribed is True
        # A late tick after destroy must not reschedule
        manager._periodic_cleanup()
        assert manager.next_cleanup_interval is None

    def test_tick_failure_still_reschedules(self, session_store, clock):
        signal = MockMemorySignal(ratio=TestConfig.RATIO_CRITICAL)
        manager = MemoryManager(session_store, memory_signal=signal, clock=clock, start_timer=False)
        try:
            with patch.object(manager, "handle_memory_pressure", side_effect=RuntimeError("boom")):
                manager.start_periodic_cleanup()
            assert manager.next_cleanup_interval == 5.0
        finally:
            manager.destroy()


def test_context_manager_destroys(clock):
    with MemoryManager(MemorySessionStore(), memory_signal=MockMemorySignal(), clock=clock) as manager:
        manager.register_asset("img1")
    assert len(manager) == 0
    assert manager.next_cleanup_interval is None
