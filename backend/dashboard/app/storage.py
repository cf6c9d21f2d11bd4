"""Short-lived key/value storage for pending authentication state."""
from __future__ import annotations

import asyncio
from typing import Optional

import redis.asyncio as redis

from .logging import get_logger


logger = get_logger("dashboard.storage")


class CacheBackend:
    """Minimal cache interface used by the dashboard."""

    async def get(self, key: str) -> Optional[bytes]:  # pragma: no cover - interface
        raise NotImplementedError

    async def set(self, key: str, value: bytes, ttl: Optional[int] = None) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def delete(self, key: str) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def pop(self, key: str) -> Optional[bytes]:  # pragma: no cover - interface
        """Return and remove ``key`` in one step so it can be read only once."""

        raise NotImplementedError

    async def add(self, key: str, value: bytes, ttl: Optional[int] = None) -> bool:  # pragma: no cover - interface
        """Store ``value`` only when ``key`` is absent; return whether it was stored."""

        raise NotImplementedError


class MemoryCache(CacheBackend):
    """Simple in-memory cache used when Redis isn't configured."""

    def __init__(self) -> None:
        self._store: dict[str, tuple[bytes, Optional[float]]] = {}
        self._lock = asyncio.Lock()

    def _read(self, key: str) -> Optional[bytes]:
        entry = self._store.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at < asyncio.get_running_loop().time():
            self._store.pop(key, None)
            return None
        return value

    async def get(self, key: str) -> Optional[bytes]:
        async with self._lock:
            return self._read(key)

    def _write(self, key: str, value: bytes, ttl: Optional[int]) -> None:
        expires_at = None
        if ttl:
            expires_at = asyncio.get_running_loop().time() + ttl
        self._store[key] = (value, expires_at)

    async def set(self, key: str, value: bytes, ttl: Optional[int] = None) -> None:
        async with self._lock:
            self._write(key, value, ttl)

    async def add(self, key: str, value: bytes, ttl: Optional[int] = None) -> bool:
        async with self._lock:
            if self._read(key) is not None:
                return False
            self._write(key, value, ttl)
            return True

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._store.pop(key, None)

    async def pop(self, key: str) -> Optional[bytes]:
        async with self._lock:
            value = self._read(key)
            self._store.pop(key, None)
            return value


class RedisCache(CacheBackend):
    """Redis backed cache using ``redis.asyncio``."""

    def __init__(self, url: str) -> None:
        self._client = redis.from_url(url)

    async def get(self, key: str) -> Optional[bytes]:
        return await self._client.get(key)

    async def set(self, key: str, value: bytes, ttl: Optional[int] = None) -> None:
        await self._client.set(name=key, value=value, ex=ttl)

    async def delete(self, key: str) -> None:
        await self._client.delete(key)

    async def pop(self, key: str) -> Optional[bytes]:
        return await self._client.getdel(key)

    async def add(self, key: str, value: bytes, ttl: Optional[int] = None) -> bool:
        return bool(await self._client.set(name=key, value=value, ex=ttl, nx=True))


def build_cache(redis_url: str | None) -> CacheBackend:
    if redis_url:
        logger.info("cache_backend_selected", backend="redis")
        return RedisCache(redis_url)
    logger.info("cache_backend_selected", backend="memory")
    return MemoryCache()


__all__ = [
    "CacheBackend",
    "MemoryCache",
    "RedisCache",
    "build_cache",
]
