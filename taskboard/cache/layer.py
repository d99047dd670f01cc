import asyncio
import json
import logging
from typing import Any, Callable, Iterable, Optional

from cachetools import TTLCache
from redis.asyncio import Redis, RedisError

from taskboard.core.config import Settings, get_settings

logger = logging.getLogger(__name__)


def task_cache_key(task_id: int) -> str:
    return f"task:{task_id}"


class CacheLayer:
    """
    Two-tier read-through cache for task lookups.

    L1: Process-local TTLCache (fast, limited size)
    L2: Redis (shared between API workers and the queue worker)

    Writes never go through the cache: every write path deletes the keys it
    touched. Redis failures degrade to L1 only and are never raised to callers.
    """

    def __init__(self, settings: Settings | None = None):
        self._settings = settings
        self._redis: Redis | None = None
        self.l1: TTLCache | None = None
        self._initialized = False

        self.stats = {"l1_hits": 0, "l2_hits": 0, "misses": 0, "errors": 0}

    async def init_cache(self, redis: Redis | None = None):
        """Initialize settings, L1 cache, and Redis connection.

        An already connected client may be passed in (tests, worker startup).
        """
        if self._initialized:
            return

        if self._settings is None:
            self._settings = get_settings()
        settings = self._settings

        if self.l1 is None:
            self.l1 = TTLCache(maxsize=settings.l1_maxsize, ttl=settings.l1_ttl_seconds)

        if redis is not None:
            self._redis = redis
        elif self._redis is None:
            client = Redis.from_url(
                settings.redis_dsn,
                encoding="utf-8",
                decode_responses=True,
                max_connections=settings.redis_pool_size,
                socket_connect_timeout=5,
                socket_keepalive=True,
                health_check_interval=30,
            )
            try:
                await client.ping()
                self._redis = client
                logger.info("Redis connection established")
            except RedisError as e:
                # degraded operation, L1 only
                logger.error(f"Redis initialization failed, using L1 only: {e}")
                await client.aclose()

        self._initialized = True
        logger.info("Cache layer initialized")

    def _key(self, key: str) -> str:
        return f"{self._settings.cache_namespace}{key}"

    def _serialize(self, value: Any) -> str:
        return json.dumps(value, default=str)

    def _deserialize(self, raw: str | bytes) -> Any:
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return raw

    async def _get_l2(self, key: str) -> Any:
        if not self._redis:
            return None
        try:
            raw = await self._redis.get(self._key(key))
        except RedisError as e:
            logger.error(f"Redis GET error for {key}: {e}")
            self.stats["errors"] += 1
            return None
        return None if raw is None else self._deserialize(raw)

    async def get(
        self,
        key: str,
        loader: Optional[Callable[[], Any]] = None,
        l2_ttl: Optional[int] = None,
    ):
        """
        Retrieve value from cache hierarchy: L1 -> L2 -> loader.

        Args:
            key: Cache key (will be namespaced automatically)
            loader: Async function to load value on cache miss
            l2_ttl: TTL for L2 cache in seconds (uses default if None)

        Returns:
            Cached value or loaded value, or None if not found
        """
        await self.init_cache()
        namespaced = self._key(key)

        if namespaced in self.l1:
            self.stats["l1_hits"] += 1
            return self.l1[namespaced]

        value = await self._get_l2(key)
        if value is not None:
            self.stats["l2_hits"] += 1
            self.l1[namespaced] = value
            return value

        if loader is None:
            self.stats["misses"] += 1
            return None

        # only one concurrent loader per key
        async with _get_lock_for_key(key):
            if namespaced in self.l1:
                return self.l1[namespaced]

            self.stats["misses"] += 1
            logger.debug(f"Loading {key} from source")
            value = await loader()
            if value is None:
                return None

            await self.set(key, value, l2_ttl)
            return value

    async def set(self, key: str, value: Any, l2_ttl: Optional[int] = None):
        """Explicitly set a value in both cache layers."""
        await self.init_cache()
        self.l1[self._key(key)] = value

        if self._redis:
            try:
                ttl = l2_ttl or self._settings.l2_ttl_seconds
                await self._redis.set(self._key(key), self._serialize(value), ex=ttl)
            except RedisError as e:
                logger.error(f"Redis SET error for {key}: {e}")
                self.stats["errors"] += 1

    async def delete_many(self, keys: Iterable[str]):
        """
        Delete several keys from both layers in one Redis round trip.

        Other processes keep their own L1 copies until the L1 TTL expires.
        """
        await self.init_cache()
        namespaced = [self._key(key) for key in keys]
        if not namespaced:
            return

        for key in namespaced:
            self.l1.pop(key, None)

        if self._redis:
            try:
                await self._redis.delete(*namespaced)
            except RedisError as e:
                logger.error(f"Redis DELETE error for {len(namespaced)} keys: {e}")
                self.stats["errors"] += 1

    async def close(self):
        """Release the Redis connection and reset both layers."""
        if self._redis:
            try:
                await self._redis.aclose()
                logger.info("Redis connection closed")
            except RedisError as e:
                logger.error(f"Error closing Redis: {e}")
        self._redis = None
        self.l1 = None
        self._initialized = False

    def get_stats(self) -> dict:
        total = self.stats["l1_hits"] + self.stats["l2_hits"] + self.stats["misses"]
        return {
            **self.stats,
            "l1_size": len(self.l1) if self.l1 else 0,
            "hit_rate": (
                (self.stats["l1_hits"] + self.stats["l2_hits"]) / total if total else 0
            ),
        }


# Per-key locks for stampede protection. setdefault() hands every concurrent
# caller the same lock; entries expire 300s after creation.
_locks = TTLCache(maxsize=10_000, ttl=300)


def _get_lock_for_key(key: str) -> asyncio.Lock:
    return _locks.setdefault(key, asyncio.Lock())


# Cache layer instance (singleton per process)
cache_layer = CacheLayer()
