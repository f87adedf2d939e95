# nextbus/services/fast_cache.py
from __future__ import annotations

import json
import logging
import threading
import time
from typing import Any

from redis import Redis
from redis.exceptions import RedisError

from nextbus.config import settings

log = logging.getLogger("fast_cache")


class MemoryCache:
    """In-process key/value cache with optional per-key expiry."""

    def __init__(self, default_ttl: int | None = None):
        self.default_ttl = default_ttl
        self._items: dict[str, tuple[float | None, Any]] = {}
        self._lock = threading.RLock()

    def get(self, key: str) -> Any | None:
        with self._lock:
            hit = self._items.get(key)
            if hit is None:
                return None
            expires_at, value = hit
            if expires_at is not None and time.monotonic() >= expires_at:
                del self._items[key]
                return None
            return value

    def set(self, key: str, value: Any, ttl: int | None = None) -> bool:
        ttl = ttl if ttl is not None else self.default_ttl
        expires_at = time.monotonic() + ttl if ttl else None
        with self._lock:
            self._items[key] = (expires_at, value)
        return True

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._items.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._items.clear()


class RedisCache:
    """Redis-backed cache storing JSON values. Redis errors behave as misses."""

    def __init__(self, client: Redis, default_ttl: int | None = None, prefix: str = "nextbus:"):
        self.redis = client
        self.default_ttl = default_ttl
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str, default_ttl: int | None = None) -> RedisCache:
        client = Redis.from_url(url, decode_responses=True)
        client.ping()
        log.info("Successfully connected to Redis")
        return cls(client, default_ttl=default_ttl)

    def get(self, key: str) -> Any | None:
        try:
            data = self.redis.get(self.prefix + key)
        except RedisError as e:
            log.error("Error getting %s from Redis: %s", key, e)
            return None
        if not data:
            return None
        try:
            return json.loads(data)
        except ValueError:
            log.warning("Discarding undecodable cache entry %s", key)
            return None

    def set(self, key: str, value: Any, ttl: int | None = None) -> bool:
        ttl = ttl if ttl is not None else self.default_ttl
        try:
            serialized = json.dumps(value)
            return bool(self.redis.set(self.prefix + key, serialized, ex=ttl or None))
        except (RedisError, TypeError, ValueError) as e:
            log.error("Error setting %s in Redis: %s", key, e)
            return False

    def delete(self, key: str) -> bool:
        try:
            return bool(self.redis.delete(self.prefix + key))
        except RedisError as e:
            log.error("Error deleting %s from Redis: %s", key, e)
            return False


_cache: MemoryCache | RedisCache | None = None


def get_cache() -> MemoryCache | RedisCache:
    global _cache
    if _cache is None:
        ttl = getattr(settings, "CACHE_TTL_S", None)
        url = getattr(settings, "REDIS_URL", None)
        if url:
            try:
                _cache = RedisCache.from_url(url, default_ttl=ttl)
            except RedisError as e:
                log.warning("Failed to connect to Redis: %s. Using in-memory fallback.", e)
        if _cache is None:
            _cache = MemoryCache(default_ttl=ttl)
    return _cache
