"""
Tests for the key/value store backends.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError, WatchError

from defense_gateway.storage.kv import MemoryStore, RedisStore, StoreUnavailableError
from defense_gateway.storage.redis_client import RedisManager


class FakeClock:
    def __init__(self, now: int = 1_000_000) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return MemoryStore(clock=clock)


@pytest.mark.asyncio
async def test_set_and_get(store):
    await store.set("a", "1")
    assert await store.get("a") == "1"
    assert await store.get("missing") is None


@pytest.mark.asyncio
async def test_ttl_expiry(store, clock):
    await store.set("a", "1", ttl_ms=1000)
    clock.now += 999
    assert await store.get("a") == "1"
    clock.now += 1
    assert await store.get("a") is None


@pytest.mark.asyncio
async def test_delete_many(store):
    await store.set("a", "1")
    await store.set("b", "2")
    await store.delete("a", "b", "c")
    assert await store.get("a") is None
    assert await store.get("b") is None


@pytest.mark.asyncio
async def test_compare_and_swap(store):
    # absent key: expected None
    assert await store.compare_and_swap("k", None, "v1")
    assert not await store.compare_and_swap("k", None, "v2")
    assert await store.get("k") == "v1"

    assert await store.compare_and_swap("k", "v1", "v2")
    assert not await store.compare_and_swap("k", "v1", "v3")
    assert await store.get("k") == "v2"


@pytest.mark.asyncio
async def test_compare_and_swap_delete(store):
    await store.set("k", "v")
    assert await store.compare_and_swap("k", "v", None)
    assert await store.get("k") is None


@pytest.mark.asyncio
async def test_expired_value_counts_as_absent(store, clock):
    await store.set("k", "old", ttl_ms=10)
    clock.now += 10
    assert await store.compare_and_swap("k", None, "new")
    assert await store.get("k") == "new"


@pytest.mark.asyncio
async def test_sweep(store, clock):
    await store.set("short", "1", ttl_ms=5)
    await store.set("long", "1", ttl_ms=5000)
    await store.set("forever", "1")
    clock.now += 10
    assert store.sweep() == 1
    assert len(store) == 2


@pytest.mark.asyncio
async def test_writes_sweep_expired_keys_periodically(store, clock):
    for i in range(1000):
        await store.set(f"k{i}", "1", ttl_ms=1000)
    assert len(store) == 1000

    # Never read again; the next write after the interval clears them.
    clock.now += 60 * 60 * 1000
    await store.set("fresh", "1", ttl_ms=1000)
    assert len(store) == 1
    assert await store.get("fresh") == "1"


@pytest.mark.asyncio
async def test_no_sweep_before_interval(clock):
    store = MemoryStore(clock=clock, sweep_interval_ms=10_000)
    await store.set("short", "1", ttl_ms=5)
    clock.now += 100
    await store.set("other", "1")
    assert len(store) == 2


# ── Redis backend ────────────────────────────────────────


def redis_store(current=None):
    """RedisStore over a mocked client whose watched key holds ``current``."""
    pipe = MagicMock()
    pipe.__aenter__ = AsyncMock(return_value=pipe)
    pipe.__aexit__ = AsyncMock(return_value=False)
    pipe.watch = AsyncMock()
    pipe.unwatch = AsyncMock()
    pipe.get = AsyncMock(return_value=current)
    pipe.execute = AsyncMock(return_value=[True])

    client = MagicMock()
    client.pipeline.return_value = pipe
    client.get = AsyncMock(return_value=current)
    client.set = AsyncMock()
    client.delete = AsyncMock()

    manager = RedisManager()
    manager.client = client
    return RedisStore(manager), client, pipe


@pytest.mark.asyncio
async def test_redis_compare_and_swap_commits():
    store, client, pipe = redis_store(current="old")
    assert await store.compare_and_swap("k", "old", "new", ttl_ms=500)
    client.pipeline.assert_called_once_with(transaction=True)
    pipe.watch.assert_awaited_once_with("k")
    pipe.multi.assert_called_once()
    pipe.set.assert_called_once_with("k", "new", px=500)
    pipe.execute.assert_awaited_once()


@pytest.mark.asyncio
async def test_redis_compare_and_swap_deletes():
    store, _, pipe = redis_store(current="old")
    assert await store.compare_and_swap("k", "old", None)
    pipe.delete.assert_called_once_with("k")
    pipe.set.assert_not_called()


@pytest.mark.asyncio
async def test_redis_compare_and_swap_mismatch():
    store, _, pipe = redis_store(current="other")
    assert not await store.compare_and_swap("k", "old", "new")
    pipe.unwatch.assert_awaited_once()
    pipe.multi.assert_not_called()
    pipe.execute.assert_not_awaited()


@pytest.mark.asyncio
async def test_redis_compare_and_swap_lost_race():
    store, _, pipe = redis_store(current="old")
    pipe.execute.side_effect = WatchError("changed")
    assert not await store.compare_and_swap("k", "old", "new")


@pytest.mark.asyncio
async def test_redis_errors_become_store_unavailable():
    store, client, pipe = redis_store()
    client.get.side_effect = RedisConnectionError("refused")
    with pytest.raises(StoreUnavailableError):
        await store.get("k")

    pipe.watch.side_effect = RedisConnectionError("refused")
    with pytest.raises(StoreUnavailableError):
        await store.compare_and_swap("k", None, "v")


@pytest.mark.asyncio
async def test_redis_not_connected():
    store = RedisStore(RedisManager())
    with pytest.raises(StoreUnavailableError):
        await store.get("k")
    with pytest.raises(StoreUnavailableError):
        await store.set("k", "v")
    with pytest.raises(StoreUnavailableError):
        await store.compare_and_swap("k", None, "v")


@pytest.mark.asyncio
async def test_redis_set_passes_ttl():
    store, client, _ = redis_store()
    await store.set("k", "v", ttl_ms=250)
    client.set.assert_awaited_once_with("k", "v", px=250)
    await store.set("k2", "v")
    client.set.assert_awaited_with("k2", "v", px=None)
