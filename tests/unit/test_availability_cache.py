"""Test the availability read cache and its backends."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from app.core.redis import RedisClient
from app.services.availability_cache import (
    AvailabilityCache,
    MemoryCacheBackend,
    RedisCacheBackend,
)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def memory_cache(fake_clock):
    return AvailabilityCache(MemoryCacheBackend(clock=fake_clock), ttl_seconds=30)


class TestAvailabilityCache:
    @pytest.mark.asyncio
    async def test_second_call_served_from_cache(self, memory_cache):
        compute = AsyncMock(return_value=["2030-01-07"])

        first = await memory_cache.get_or_compute("1", ("overview",), compute)
        second = await memory_cache.get_or_compute("1", ("overview",), compute)

        assert first == second == ["2030-01-07"]
        compute.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_empty_result_is_cached(self, memory_cache):
        compute = AsyncMock(return_value=[])

        await memory_cache.get_or_compute("1", ("slots",), compute)
        await memory_cache.get_or_compute("1", ("slots",), compute)

        compute.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_entries_expire(self, memory_cache, fake_clock):
        compute = AsyncMock(return_value=[1])

        await memory_cache.get_or_compute("1", ("overview",), compute)
        fake_clock.now += 31
        await memory_cache.get_or_compute("1", ("overview",), compute)

        assert compute.await_count == 2

    @pytest.mark.asyncio
    async def test_invalidate_drops_namespace_entries(self, memory_cache):
        compute = AsyncMock(return_value=[1])

        await memory_cache.get_or_compute("1", ("overview",), compute)
        await memory_cache.get_or_compute("2", ("overview",), compute)
        await memory_cache.invalidate("1")
        await memory_cache.get_or_compute("1", ("overview",), compute)
        await memory_cache.get_or_compute("2", ("overview",), compute)

        assert compute.await_count == 3

    @pytest.mark.asyncio
    async def test_concurrent_identical_calls_share_one_computation(self, memory_cache):
        calls = 0
        release = asyncio.Event()

        async def compute():
            nonlocal calls
            calls += 1
            await release.wait()
            return ["2030-01-07"]

        tasks = [
            asyncio.create_task(
                memory_cache.get_or_compute("1", ("overview",), compute)
            )
            for _ in range(5)
        ]
        await asyncio.sleep(0)
        release.set()
        results = await asyncio.gather(*tasks)

        assert calls == 1
        assert results == [["2030-01-07"]] * 5

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_fail_joined_callers(self, memory_cache):
        calls = 0
        release = asyncio.Event()

        async def compute():
            nonlocal calls
            calls += 1
            await release.wait()
            return ["2030-01-07"]

        first = asyncio.create_task(
            memory_cache.get_or_compute("1", ("overview",), compute)
        )
        await asyncio.sleep(0)
        joined = asyncio.create_task(
            memory_cache.get_or_compute("1", ("overview",), compute)
        )
        await asyncio.sleep(0)

        first.cancel()
        release.set()

        assert await joined == ["2030-01-07"]
        with pytest.raises(asyncio.CancelledError):
            await first
        assert calls == 1

    @pytest.mark.asyncio
    async def test_result_of_cancelled_caller_is_still_cached(self, memory_cache):
        calls = 0
        release = asyncio.Event()

        async def compute():
            nonlocal calls
            calls += 1
            await release.wait()
            return ["2030-01-07"]

        first = asyncio.create_task(
            memory_cache.get_or_compute("1", ("overview",), compute)
        )
        await asyncio.sleep(0)
        first.cancel()
        release.set()
        with pytest.raises(asyncio.CancelledError):
            await first
        await asyncio.sleep(0.01)

        result = await memory_cache.get_or_compute("1", ("overview",), compute)

        assert result == ["2030-01-07"]
        assert calls == 1

    @pytest.mark.asyncio
    async def test_failures_are_not_cached(self, memory_cache):
        compute = AsyncMock(side_effect=[RuntimeError("db down"), ["2030-01-07"]])

        with pytest.raises(RuntimeError):
            await memory_cache.get_or_compute("1", ("overview",), compute)
        result = await memory_cache.get_or_compute("1", ("overview",), compute)

        assert result == ["2030-01-07"]

    @pytest.mark.asyncio
    async def test_zero_ttl_disables_caching(self):
        cache = AvailabilityCache(MemoryCacheBackend(), ttl_seconds=0)
        compute = AsyncMock(return_value=[1])

        await cache.get_or_compute("1", ("overview",), compute)
        await cache.get_or_compute("1", ("overview",), compute)

        assert compute.await_count == 2


class TestRedisCacheBackend:
    @pytest.fixture
    def redis_client(self):
        client = RedisClient(url="redis://localhost:6379/0")
        client.get = AsyncMock(return_value=None)
        client.set = AsyncMock(return_value=True)
        client.incr = AsyncMock(return_value=1)
        client.get_int = AsyncMock(return_value=0)
        return client

    @pytest.mark.asyncio
    async def test_miss_computes_and_stores_with_ttl(self, redis_client):
        cache = AvailabilityCache(RedisCacheBackend(redis_client), ttl_seconds=30)
        compute = AsyncMock(return_value=[[540, 600]])

        result = await cache.get_or_compute("7", ("slots", 3), compute)

        assert result == [[540, 600]]
        redis_client.set.assert_awaited_once_with(
            "availability:7:g0:slots:3", [[540, 600]], expire=30
        )

    @pytest.mark.asyncio
    async def test_hit_skips_computation(self, redis_client):
        redis_client.get.return_value = ["2030-01-07"]
        cache = AvailabilityCache(RedisCacheBackend(redis_client), ttl_seconds=30)
        compute = AsyncMock()

        result = await cache.get_or_compute("7", ("overview",), compute)

        assert result == ["2030-01-07"]
        compute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_invalidate_bumps_generation(self, redis_client):
        cache = AvailabilityCache(RedisCacheBackend(redis_client), ttl_seconds=30)

        await cache.invalidate("7")

        redis_client.incr.assert_awaited_once_with("availability:7:generation")

    @pytest.mark.asyncio
    async def test_generation_is_part_of_the_key(self, redis_client):
        redis_client.get_int.return_value = 4
        cache = AvailabilityCache(RedisCacheBackend(redis_client), ttl_seconds=30)

        await cache.get_or_compute("7", ("overview", None), AsyncMock(return_value=[]))

        redis_client.get.assert_awaited_once_with("availability:7:g4:overview:-")
