import asyncio
import time
from typing import Any, Awaitable, Callable, Optional, TypeVar

import structlog

from app.core.config import settings
from app.core.redis import RedisClient, redis_client

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class MemoryCacheBackend:
    """Process-local TTL store."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: dict[str, tuple[float, Any]] = {}
        self._generations: dict[str, int] = {}

    async def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if expires_at <= self._clock():
            self._entries.pop(key, None)
            return None
        return value

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        self._purge_expired()
        self._entries[key] = (self._clock() + ttl_seconds, value)

    async def generation(self, namespace: str) -> int:
        return self._generations.get(namespace, 0)

    async def bump(self, namespace: str) -> None:
        self._generations[namespace] = self._generations.get(namespace, 0) + 1

    def _purge_expired(self) -> None:
        now = self._clock()
        expired = [k for k, (expires_at, _) in self._entries.items() if expires_at <= now]
        for key in expired:
            del self._entries[key]


class RedisCacheBackend:
    """Cache shared by every instance through Redis."""

    def __init__(self, client: RedisClient):
        self.client = client

    async def get(self, key: str) -> Optional[Any]:
        return await self.client.get(key)

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        await self.client.set(key, value, expire=ttl_seconds)

    async def generation(self, namespace: str) -> int:
        return await self.client.get_int(f"availability:{namespace}:generation")

    async def bump(self, namespace: str) -> None:
        result = await self.client.incr(f"availability:{namespace}:generation")
        if result is None:
            logger.warning(
                "Availability cache invalidation failed, entries expire by TTL",
                namespace=namespace,
            )


class AvailabilityCache:
    """
    TTL read cache with in-flight de-duplication for availability queries.

    Entries are keyed by namespace (the business) plus query parameters and
    a per-namespace generation. Reservations and cancellations bump the
    generation, so no entry computed before a write is served after it.
    Failed computations are never stored.
    """

    def __init__(self, backend=None, ttl_seconds: Optional[int] = None):
        self.backend = backend if backend is not None else MemoryCacheBackend()
        self.ttl_seconds = (
            settings.AVAILABILITY_CACHE_TTL_SECONDS
            if ttl_seconds is None
            else ttl_seconds
        )
        self._inflight: dict[str, asyncio.Future] = {}

    @property
    def enabled(self) -> bool:
        return self.ttl_seconds > 0

    async def get_or_compute(
        self,
        namespace: str,
        key_parts: tuple,
        compute: Callable[[], Awaitable[T]],
    ) -> T:
        if not self.enabled:
            return await compute()

        generation = await self.backend.generation(namespace)
        key = ":".join(
            ["availability", namespace, f"g{generation}"]
            + ["-" if part is None else str(part) for part in key_parts]
        )

        cached = await self.backend.get(key)
        if cached is not None:
            logger.debug("Availability cache hit", key=key)
            return cached

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._compute_and_store(key, compute))
            self._inflight[key] = task
            task.add_done_callback(lambda done: self._finish(key, done))
        else:
            logger.debug("Joining in-flight availability computation", key=key)

        # a cancelled caller leaves the shared computation running for the others
        return await asyncio.shield(task)

    async def _compute_and_store(self, key: str, compute: Callable[[], Awaitable[T]]) -> T:
        value = await compute()
        await self.backend.set(key, value, self.ttl_seconds)
        return value

    def _finish(self, key: str, task: asyncio.Future) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled() and task.exception() is not None:
            logger.debug(
                "Availability computation failed, not cached",
                key=key,
                error=repr(task.exception()),
            )

    async def invalidate(self, namespace: str) -> None:
        if not self.enabled:
            return
        await self.backend.bump(namespace)
        logger.debug("Availability cache invalidated", namespace=namespace)


_cache: Optional[AvailabilityCache] = None


def get_availability_cache() -> AvailabilityCache:
    """Process-wide cache, Redis-backed when REDIS_URL is configured."""
    global _cache
    if _cache is None:
        backend = (
            RedisCacheBackend(redis_client)
            if redis_client.is_configured
            else MemoryCacheBackend()
        )
        _cache = AvailabilityCache(backend)
    return _cache
