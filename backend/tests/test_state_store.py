"""Tests for the in-memory TTL key/value store."""
import pytest

from weaver.state import InMemoryTTLStore


@pytest.fixture
def store(clock):
    return InMemoryTTLStore(default_ttl_seconds=100, clock=clock, name="test")


class TestInMemoryTTLStore:
    @pytest.mark.asyncio
    async def test_put_and_get(self, store):
        await store.put("a", {"x": 1})
        assert await store.get("a") == {"x": 1}
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_missing_key(self, store):
        assert await store.get("nope") is None

    @pytest.mark.asyncio
    async def test_expired_entry_reads_as_missing(self, store, clock):
        await store.put("a", 1, ttl_seconds=10)
        clock.advance(10)
        assert await store.get("a") is None
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_update_without_ttl_keeps_deadline(self, store, clock):
        await store.put("a", 1, ttl_seconds=10)
        clock.advance(5)
        await store.put("a", 2)
        assert await store.get("a") == 2
        clock.advance(5)
        assert await store.get("a") is None

    @pytest.mark.asyncio
    async def test_update_with_ttl_resets_deadline(self, store, clock):
        await store.put("a", 1, ttl_seconds=10)
        clock.advance(5)
        await store.put("a", 2, ttl_seconds=10)
        clock.advance(7)
        assert await store.get("a") == 2

    @pytest.mark.asyncio
    async def test_new_key_uses_default_ttl(self, store, clock):
        await store.put("a", 1)
        clock.advance(99)
        assert await store.get("a") == 1
        clock.advance(1)
        assert await store.get("a") is None

    @pytest.mark.asyncio
    async def test_sweep_evicts_only_expired(self, store, clock):
        await store.put("short", 1, ttl_seconds=5)
        await store.put("long", 2, ttl_seconds=50)
        clock.advance(10)
        assert await store.sweep() == 1
        assert len(store) == 1
        assert await store.values() == [2]

    @pytest.mark.asyncio
    async def test_delete(self, store):
        await store.put("a", 1)
        await store.delete("a")
        await store.delete("a")
        assert await store.get("a") is None

    @pytest.mark.asyncio
    async def test_start_and_stop(self, store):
        await store.start()
        await store.put("a", 1)
        await store.stop()
        assert len(store) == 0
