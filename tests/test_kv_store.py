"""Contract tests for the key-value stores.

The Redis variant runs only when a server answers at REDIS_URL.
"""

import os
import uuid

import pytest
from redis.exceptions import RedisError

from iamauth.storage.kv import MemoryKeyValueStore, RedisKeyValueStore


class ManualClock:
    def __init__(self):
        self.value = 1000.0

    def __call__(self):
        return self.value


async def _redis_store():
    store = RedisKeyValueStore(os.environ.get("REDIS_URL", "redis://localhost:6379/1"))
    try:
        store.verify_connection()
    except (RedisError, OSError):
        await store.close()
        pytest.skip("redis not available")
    return store


async def _exercise_contract(store, prefix):
    key = f"{prefix}:record"
    companion = f"{prefix}:companion"

    assert await store.get(key) is None
    assert await store.compare_and_swap(key, None, "v1", 60) is True
    assert await store.compare_and_swap(key, None, "v2", 60) is False
    assert await store.compare_and_swap(key, "stale", "v2", 60) is False
    assert await store.compare_and_swap(
        key, "v1", "v2", None, companions={companion: ("c1", 60)}
    ) is True
    assert await store.get(key) == "v2"
    assert await store.get(companion) == "c1"

    index = f"{prefix}:index"
    await store.add_to_index(index, "a", 60)
    await store.add_to_index(index, "b", 60)
    assert await store.index_members(index) == {"a", "b"}
    await store.remove_from_index(index, "a")
    assert await store.index_members(index) == {"b"}

    await store.delete(key)
    assert await store.get(key) is None


class TestMemoryStore:
    async def test_contract(self):
        await _exercise_contract(MemoryKeyValueStore(), "mem")

    async def test_values_expire_lazily(self):
        clock = ManualClock()
        store = MemoryKeyValueStore(clock=clock)
        await store.set("k", "v", 10)

        clock.value += 9
        assert await store.get("k") == "v"
        clock.value += 1
        assert await store.get("k") is None

    async def test_cas_without_ttl_keeps_existing_expiry(self):
        clock = ManualClock()
        store = MemoryKeyValueStore(clock=clock)
        await store.set("k", "v1", 10)
        clock.value += 5

        assert await store.compare_and_swap("k", "v1", "v2") is True
        clock.value += 5
        assert await store.get("k") is None

    async def test_expired_key_counts_as_absent_for_cas(self):
        clock = ManualClock()
        store = MemoryKeyValueStore(clock=clock)
        await store.set("k", "old", 1)
        clock.value += 2

        assert await store.compare_and_swap("k", "old", "new", 10) is False
        assert await store.compare_and_swap("k", None, "new", 10) is True

    async def test_index_ttl_only_extends(self):
        clock = ManualClock()
        store = MemoryKeyValueStore(clock=clock)
        await store.add_to_index("idx", "a", 100)
        await store.add_to_index("idx", "b", 10)

        clock.value += 50
        assert await store.index_members("idx") == {"a", "b"}


class TestRedisStore:
    async def test_contract(self):
        store = await _redis_store()
        prefix = f"iamauth-test:{uuid.uuid4()}"
        try:
            await _exercise_contract(store, prefix)
            await store.delete(f"{prefix}:companion")
            await store.delete(f"{prefix}:index")
        finally:
            await store.close()

    async def test_cas_keeps_ttl(self):
        store = await _redis_store()
        key = f"iamauth-test:{uuid.uuid4()}"
        try:
            await store.set(key, "v1", 120)
            assert await store.compare_and_swap(key, "v1", "v2") is True
            ttl = await store.client.ttl(key)
            assert 0 < ttl <= 120
        finally:
            await store.delete(key)
            await store.close()
