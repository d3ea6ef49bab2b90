"""
Short-TTL cache in front of the blob store.

Keys are namespaced by purpose so a preview can never be served as
authorized data: ``preview:<feedId>`` and ``data:<feedId>``. Failures are
never cached. ``None`` means absent, so a ``None`` payload is not stored.
"""

import asyncio
import json
import time
from typing import Any, Callable, Dict, Optional, Tuple

import redis.asyncio as redis

from shared.logging import get_logger
from shared.metrics import MetricsCollector

PREVIEW_NAMESPACE = "preview"
DATA_NAMESPACE = "data"
DEFAULT_TTL = 300


def preview_key(feed_id: str) -> str:
    return f"{PREVIEW_NAMESPACE}:{feed_id}"


def data_key(feed_id: str) -> str:
    return f"{DATA_NAMESPACE}:{feed_id}"


class BlobCache:
    """Common behaviour of cache backends."""

    def __init__(self, ttl: int = DEFAULT_TTL, metrics: Optional[MetricsCollector] = None):
        self.ttl = ttl
        self.metrics = metrics
        self.logger = get_logger("marketplace.blob_cache")

    async def get(self, key: str) -> Optional[Any]:
        value = await self._get(key)
        if self.metrics:
            self.metrics.record_cache_lookup(key.split(":", 1)[0], hit=value is not None)
        return value

    async def put(self, key: str, value: Any):
        if value is None:
            return
        await self._put(key, value)

    async def invalidate_feed(self, feed_id: str):
        """Drop both cached forms of a feed after its blob pointer moved."""
        await self.delete(preview_key(feed_id), data_key(feed_id))

    async def _get(self, key: str) -> Optional[Any]:
        raise NotImplementedError

    async def _put(self, key: str, value: Any):
        raise NotImplementedError

    async def delete(self, *keys: str):
        raise NotImplementedError

    async def close(self):
        pass


class MemoryBlobCache(BlobCache):
    """Process-local TTL map guarded by an asyncio lock."""

    def __init__(self, ttl: int = DEFAULT_TTL, metrics: Optional[MetricsCollector] = None,
                 clock: Callable[[], float] = time.monotonic):
        super().__init__(ttl, metrics)
        self.clock = clock
        self._entries: Dict[str, Tuple[float, Any]] = {}
        self._lock = asyncio.Lock()

    async def _get(self, key: str) -> Optional[Any]:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if self.clock() >= expires_at:
                del self._entries[key]
                return None
            return value

    async def _put(self, key: str, value: Any):
        async with self._lock:
            self._entries[key] = (self.clock() + self.ttl, value)

    async def delete(self, *keys: str):
        async with self._lock:
            for key in keys:
                self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)


class RedisBlobCache(BlobCache):
    """Redis backed cache; values are JSON encoded and expire via SETEX."""

    KEY_PREFIX = "marketplace:blob"

    def __init__(self, redis_url: str, ttl: int = DEFAULT_TTL, metrics: Optional[MetricsCollector] = None,
                 client: Optional[redis.Redis] = None):
        super().__init__(ttl, metrics)
        self.redis_url = redis_url
        self._redis = client

    def _client(self) -> redis.Redis:
        if self._redis is None:
            self._redis = redis.from_url(self.redis_url)
        return self._redis

    def _key(self, key: str) -> str:
        return f"{self.KEY_PREFIX}:{key}"

    async def _get(self, key: str) -> Optional[Any]:
        try:
            cached = await self._client().get(self._key(key))
        except Exception as e:
            self.logger.error("Cache get error", key=key, error=str(e))
            return None
        if cached is None:
            return None
        return json.loads(cached)

    async def _put(self, key: str, value: Any):
        try:
            await self._client().setex(self._key(key), self.ttl, json.dumps(value, default=str))
        except Exception as e:
            self.logger.error("Cache set error", key=key, error=str(e))

    async def delete(self, *keys: str):
        if not keys:
            return
        try:
            await self._client().delete(*(self._key(k) for k in keys))
        except Exception as e:
            self.logger.error("Cache delete error", keys=list(keys), error=str(e))

    async def close(self):
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


def create_blob_cache(backend: str, ttl: int, redis_url: str,
                      metrics: Optional[MetricsCollector] = None) -> BlobCache:
    """Pick the cache backend once at startup."""
    if backend.lower() == "redis":
        return RedisBlobCache(redis_url, ttl=ttl, metrics=metrics)
    return MemoryBlobCache(ttl=ttl, metrics=metrics)
