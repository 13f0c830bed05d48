"""Key-value cache backends used for short lived security state."""
from __future__ import annotations

import asyncio
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from .errors import CacheUnavailableError
from .logging import get_logger


logger = get_logger("livesales.storage")


class CacheBackend:
    """Minimal cache interface used by the auth services."""

    #: ``False`` when state lives only in this process.
    shared: bool = True

    async def get(self, key: str) -> Optional[bytes]:  # pragma: no cover - interface
        raise NotImplementedError

    async def set(self, key: str, value: bytes, ttl: Optional[int] = None) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def delete(self, key: str) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def pop(self, key: str) -> Optional[bytes]:  # pragma: no cover - interface
        """Atomically read and delete ``key``."""

        raise NotImplementedError

    async def close(self) -> None:
        return None


class MemoryCache(CacheBackend):
    """In-process cache used when Redis isn't configured or is unreachable."""

    shared = False

    def __init__(self, *, purge_interval: float = 60.0) -> None:
        self._store: dict[str, tuple[bytes, Optional[float]]] = {}
        self._lock = asyncio.Lock()
        self._purge_interval = purge_interval
        self._next_purge = 0.0

    @staticmethod
    def _now() -> float:
        return asyncio.get_running_loop().time()

    def _purge_expired(self, now: float) -> None:
        if now < self._next_purge:
            return
        expired = [
            key
            for key, (_, expires_at) in self._store.items()
            if expires_at is not None and expires_at <= now
        ]
        for key in expired:
            self._store.pop(key, None)
        self._next_purge = now + self._purge_interval

    def _live_entry(self, key: str, now: float) -> Optional[bytes]:
        entry = self._store.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= now:
            self._store.pop(key, None)
            return None
        return value

    async def get(self, key: str) -> Optional[bytes]:
        async with self._lock:
            now = self._now()
            self._purge_expired(now)
            return self._live_entry(key, now)

    async def set(self, key: str, value: bytes, ttl: Optional[int] = None) -> None:
        async with self._lock:
            now = self._now()
            self._purge_expired(now)
            expires_at = None
            if ttl:
                expires_at = now + ttl
            self._store[key] = (value, expires_at)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._store.pop(key, None)

    async def pop(self, key: str) -> Optional[bytes]:
        async with self._lock:
            value = self._live_entry(key, self._now())
            self._store.pop(key, None)
            return value

    def __len__(self) -> int:
        return len(self._store)


class RedisCache(CacheBackend):
    """Redis backed cache using ``redis.asyncio``.

    Connection and command failures surface as :class:`CacheUnavailableError`
    so callers can decide whether to fail closed or degrade.
    """

    def __init__(self, url: str | None = None, *, client: "redis.Redis | None" = None) -> None:
        if client is None:
            if not url:
                raise ValueError("RedisCache requires a URL or a client")
            client = redis.from_url(url)
        self._client = client

    @property
    def client(self) -> "redis.Redis":
        return self._client

    async def get(self, key: str) -> Optional[bytes]:
        try:
            return await self._client.get(key)
        except RedisError as exc:
            raise CacheUnavailableError(str(exc)) from exc

    async def set(self, key: str, value: bytes, ttl: Optional[int] = None) -> None:
        try:
            await self._client.set(name=key, value=value, ex=ttl)
        except RedisError as exc:
            raise CacheUnavailableError(str(exc)) from exc

    async def delete(self, key: str) -> None:
        try:
            await self._client.delete(key)
        except RedisError as exc:
            raise CacheUnavailableError(str(exc)) from exc

    async def pop(self, key: str) -> Optional[bytes]:
        try:
            return await self._client.getdel(key)
        except RedisError as exc:
            raise CacheUnavailableError(str(exc)) from exc

    async def close(self) -> None:
        try:
            await self._client.aclose()
        except RedisError:  # pragma: no cover - connection already gone
            logger.warning("redis_close_failed", exc_info=True)


def build_cache(redis_url: str | None) -> CacheBackend:
    if redis_url:
        try:
            return RedisCache(redis_url)
        except (RedisError, ValueError):  # pragma: no cover - malformed URL
            logger.warning("redis_cache_initialisation_failed", exc_info=True)
    return MemoryCache()


__all__ = [
    "CacheBackend",
    "MemoryCache",
    "RedisCache",
    "build_cache",
]
