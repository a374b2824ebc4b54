"""Keyed store for the debounce buffer, the drain guard and the dedup cache.

All buffer/guard state lives behind CacheStore so the scheduling decision can be
made with one atomic conditional set (SET NX) rather than ambient process state.
"""

import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Optional

import redis.asyncio as redis_async

from app.logging_config import get_logger

logger = get_logger("cache_store")

_redis_client = None
_redis_url: Optional[str] = None


class CacheStore(ABC):
    @abstractmethod
    async def set_if_absent(self, key: str, value: str, ttl_seconds: float) -> bool:
        """Atomically set key if it does not exist. Returns True if this call set it."""

    @abstractmethod
    async def exists(self, key: str) -> bool:
        pass

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: float) -> None:
        pass

    @abstractmethod
    async def delete(self, *keys: str) -> None:
        pass

    @abstractmethod
    async def append(self, key: str, value: str, ttl_seconds: float) -> int:
        """Append to the list at key and refresh its TTL. Returns the new length."""

    @abstractmethod
    async def pop_all(self, key: str, also_delete: tuple[str, ...] = ()) -> list[str]:
        """Atomically read and delete the list at key, together with also_delete."""


def _ttl_ms(ttl_seconds: float) -> int:
    return max(1, int(ttl_seconds * 1000))


class RedisCacheStore(CacheStore):
    def __init__(self, client):
        self.client = client

    async def set_if_absent(self, key: str, value: str, ttl_seconds: float) -> bool:
        return bool(await self.client.set(key, value, nx=True, px=_ttl_ms(ttl_seconds)))

    async def exists(self, key: str) -> bool:
        return bool(await self.client.exists(key))

    async def set(self, key: str, value: str, ttl_seconds: float) -> None:
        await self.client.set(key, value, px=_ttl_ms(ttl_seconds))

    async def delete(self, *keys: str) -> None:
        if keys:
            await self.client.delete(*keys)

    async def append(self, key: str, value: str, ttl_seconds: float) -> int:
        async with self.client.pipeline(transaction=True) as pipe:
            length, _ = await pipe.rpush(key, value).pexpire(key, _ttl_ms(ttl_seconds)).execute()
        return int(length)

    async def pop_all(self, key: str, also_delete: tuple[str, ...] = ()) -> list[str]:
        async with self.client.pipeline(transaction=True) as pipe:
            items, _ = await pipe.lrange(key, 0, -1).delete(key, *also_delete).execute()
        return [item.decode("utf-8") if isinstance(item, bytes) else item for item in items or []]


class MemoryCacheStore(CacheStore):
    """Single-process store with the same semantics, for local runs and tests."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._values: dict[str, tuple[object, float]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str):
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self._clock():
            del self._values[key]
            return None
        return value

    async def set_if_absent(self, key: str, value: str, ttl_seconds: float) -> bool:
        with self._lock:
            if self._live(key) is not None:
                return False
            self._values[key] = (value, self._clock() + ttl_seconds)
            return True

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._live(key) is not None

    async def set(self, key: str, value: str, ttl_seconds: float) -> None:
        with self._lock:
            self._values[key] = (value, self._clock() + ttl_seconds)

    async def delete(self, *keys: str) -> None:
        with self._lock:
            for key in keys:
                self._values.pop(key, None)

    async def append(self, key: str, value: str, ttl_seconds: float) -> int:
        with self._lock:
            items = list(self._live(key) or [])
            items.append(value)
            self._values[key] = (items, self._clock() + ttl_seconds)
            return len(items)

    async def pop_all(self, key: str, also_delete: tuple[str, ...] = ()) -> list[str]:
        with self._lock:
            items = self._live(key) or []
            for name in (key, *also_delete):
                self._values.pop(name, None)
            return list(items)


def get_redis_client(redis_url: str, socket_timeout_seconds: float = 1.0):
    global _redis_client, _redis_url

    if _redis_client is None or _redis_url != redis_url:
        _redis_url = redis_url
        _redis_client = redis_async.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=socket_timeout_seconds,
            socket_timeout=socket_timeout_seconds,
        )
    return _redis_client


def build_cache_store(redis_url: Optional[str]) -> CacheStore:
    if not redis_url:
        logger.warning("REDIS_URL not set, using in-memory cache store")
        return MemoryCacheStore()
    return RedisCacheStore(get_redis_client(redis_url))
