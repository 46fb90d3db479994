"""
Redis service for the sandbox recovery controller.

Provides per-project single-flight locks so that concurrent recovery
requests for the same project do not create duplicate sandboxes.
"""

import logging

import redis.asyncio as redis
from redis.asyncio.lock import Lock
from redis.exceptions import LockError

from config import settings

logger = logging.getLogger(__name__)


class CacheService:
    """
    Async Redis service for distributed locking.

    Locks are redis-py Lock objects. Each one carries its own owner token and
    releases through an atomic compare-and-delete script, so a holder whose
    lock expired can never delete a lock taken by someone else.
    """

    PREFIX_LOCK = "sandbox:lock:"

    TTL_LOCK = 300  # 5 minutes, longer than a typical sandbox creation
    POLL_INTERVAL = 0.5

    def __init__(self, redis_url: str | None = None):
        """Initialize cache service."""
        self.redis_url = redis_url or settings.redis_url
        self._client: redis.Redis | None = None

    async def connect(self) -> None:
        """Create Redis connection."""
        if self._client is None:
            self._client = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            # Test connection
            await self._client.ping()
            logger.info("[Cache] Connected to Redis")

    async def disconnect(self) -> None:
        """Close Redis connection."""
        if self._client:
            await self._client.close()
            self._client = None
            logger.info("[Cache] Disconnected from Redis")

    async def _get_client(self) -> redis.Redis:
        """Get or create Redis client."""
        if self._client is None:
            await self.connect()
        return self._client  # type: ignore

    # =========================================================================
    # Distributed Locking
    # =========================================================================

    async def acquire_lock(
        self,
        resource: str,
        ttl: int | None = None,
        wait_seconds: float = 0.0,
    ) -> Lock | None:
        """
        Acquire a distributed lock.

        Args:
            resource: Resource identifier to lock
            ttl: Lock TTL in seconds (default: 300)
            wait_seconds: How long to keep retrying while the lock is held (0 = try once)

        Returns:
            The held Lock, to be passed to release_lock, or None if not acquired
        """
        client = await self._get_client()
        lock = client.lock(
            f"{self.PREFIX_LOCK}{resource}",
            timeout=ttl or self.TTL_LOCK,
            sleep=self.POLL_INTERVAL,
            blocking=wait_seconds > 0,
            blocking_timeout=wait_seconds if wait_seconds > 0 else None,
            thread_local=False,
        )
        if await lock.acquire():
            logger.debug(f"[Cache] Acquired lock {lock.name}")
            return lock
        return None

    async def release_lock(self, lock: Lock) -> bool:
        """
        Release a lock returned by acquire_lock.

        Returns False when the lock already expired or now belongs to someone else.
        """
        try:
            await lock.release()
        except LockError as e:
            logger.warning(f"[Cache] Lock {lock.name} was no longer held: {e}")
            return False
        return True


# Global cache instance
_cache: CacheService | None = None


async def get_cache() -> CacheService:
    """Get or create the global cache service."""
    global _cache
    if _cache is None:
        _cache = CacheService()
        await _cache.connect()
    return _cache


async def close_cache() -> None:
    """Close the global cache connection."""
    global _cache
    if _cache:
        await _cache.disconnect()
        _cache = None
