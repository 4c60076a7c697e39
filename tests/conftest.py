"""Shared pytest fixtures for asset cache tests."""

import pytest

from asset_cache.memory_manager import MemoryManager
from asset_cache.session_cache import SessionCache
from asset_cache.stores import DiskCacheStore, MemorySessionStore
from tests.utils.mock_system_resources import FakeClock, MockMemorySignal


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def session_store():
    return MemorySessionStore()


@pytest.fixture
def local_store(tmp_path):
    store = DiskCacheStore(str(tmp_path / "local"))
    yield store
    store.close()


@pytest.fixture
def memory_signal():
    return MockMemorySignal()


@pytest.fixture
def memory_manager(session_store, memory_signal, clock):
    manager = MemoryManager(
        session_store, memory_signal=memory_signal, clock=clock, start_timer=False
    )
    yield manager
    manager.destroy()


@pytest.fixture
def session_cache(session_store, clock):
    cache = SessionCache(session_store, clock=clock)
    cache.initialize_session("user-a")
    return cache


@pytest.fixture
def resolver_calls():
    return []


@pytest.fixture
def resolver(resolver_calls):
    async def resolve(asset):
        resolver_calls.append(asset.id)
        return f"https://cdn.example.com/signed/{asset.id}?token=abc"

    return resolve
