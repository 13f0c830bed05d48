"""One-time tokens bridging password verification and the second factor."""
from __future__ import annotations

import uuid

from .errors import CacheUnavailableError
from .logging import get_logger
from .storage import CacheBackend, MemoryCache


logger = get_logger("livesales.temp_tokens")


class TempLoginTokenStore:
    """Map opaque single-use tokens to pending user ids with a short TTL.

    Tokens live in the shared cache. When the cache is unreachable the
    store degrades to a process-local map with the same TTL; such tokens
    are only redeemable on the instance that issued them.
    """

    def __init__(
        self,
        cache: CacheBackend,
        *,
        ttl_seconds: int = 300,
        namespace: str = "2fa:temp",
        fallback: MemoryCache | None = None,
    ) -> None:
        self._cache = cache
        self._fallback = fallback if fallback is not None else MemoryCache()
        self._ttl = ttl_seconds
        self._namespace = namespace.rstrip(":")

    @property
    def ttl_seconds(self) -> int:
        return self._ttl

    def _key(self, token: str) -> str:
        return f"{self._namespace}:{token}"

    async def create(self, user_id: int) -> str:
        token = str(uuid.uuid4())
        payload = str(user_id).encode("ascii")
        try:
            await self._cache.set(self._key(token), payload, ttl=self._ttl)
        except CacheUnavailableError as exc:
            logger.warning("temp_token_cache_degraded", operation="create", error=str(exc))
            await self._fallback.set(self._key(token), payload, ttl=self._ttl)
        return token

    async def consume(self, token: str) -> int | None:
        """Return the user id for ``token`` and delete it, at most once."""

        if not token:
            return None
        key = self._key(token)
        try:
            raw = await self._cache.pop(key)
        except CacheUnavailableError as exc:
            logger.warning("temp_token_cache_degraded", operation="consume", error=str(exc))
            raw = None
        if raw is None and self._fallback is not self._cache:
            raw = await self._fallback.pop(key)
        if raw is None:
            return None
        try:
            return int(raw.decode("ascii") if isinstance(raw, bytes) else raw)
        except (UnicodeDecodeError, ValueError):
            logger.warning("temp_token_payload_invalid")
            return None


__all__ = ["TempLoginTokenStore"]
