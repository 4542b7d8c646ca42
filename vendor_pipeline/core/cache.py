import logging
from typing import Optional

from redis.asyncio import Redis

logger = logging.getLogger(__name__)


class CacheService:
    """Thin wrapper around an async Redis client.

    If *redis_client* is ``None`` (Redis unavailable), every operation
    degrades to a no-op, so callers never need to check for ``None``.
    """

    def __init__(self, redis_client: Optional[Redis] = None) -> None:
        self._redis: Optional[Redis] = redis_client

    async def get(self, key: str) -> Optional[str]:
        """Return the raw string value for *key*, or ``None``."""
        if self._redis is None:
            return None
        try:
            return await self._redis.get(key)
        except Exception:
            logger.warning("Redis GET failed for key %s", key)
            return None

    async def set(self, key: str, value: str, ttl: int | None = None) -> None:
        """Store a raw string value, optionally with a TTL (seconds)."""
        if self._redis is None:
            return
        try:
            if ttl:
                await self._redis.setex(key, ttl, value)
            else:
                await self._redis.set(key, value)
        except Exception:
            logger.warning("Redis SET failed for key %s", key)

    async def add(self, key: str, value: str, ttl: int | None = None) -> Optional[bool]:
        """Store *value* only if *key* is absent (``SET NX``).

        Returns ``True`` when the key was written, ``False`` when it
        already existed, and ``None`` when Redis is unavailable so the
        caller can fall back to its authoritative store.
        """
        if self._redis is None:
            return None
        try:
            written = await self._redis.set(key, value, ex=ttl, nx=True)
            return bool(written)
        except Exception:
            logger.warning("Redis SET NX failed for key %s", key)
            return None

    async def delete(self, key: str) -> None:
        """Remove *key* from the cache (best-effort)."""
        if self._redis is None:
            return
        try:
            await self._redis.delete(key)
        except Exception:
            logger.warning("Redis DELETE failed for key %s", key)

    @property
    def is_available(self) -> bool:
        """Return ``True`` if a Redis client is configured."""
        return self._redis is not None
