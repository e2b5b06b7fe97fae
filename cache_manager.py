"""
Cache manager backed by Redis, with an in-process TTL store when Redis is unreachable.
"""

import json
import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import redis

from config import settings

logger = logging.getLogger(__name__)

KEY_PREFIX = "libralink_cache:"


class CacheManager:
    """Redis cache; the memory store only serves when Redis is down or a Redis call fails."""

    def __init__(self, redis_url: Optional[str] = None, use_redis: bool = True):
        self.redis_client = None
        self.memory_cache: Dict[str, Any] = {}
        self.memory_cache_lock = threading.RLock()
        self.cache_stats = {
            'hits': 0,
            'misses': 0,
            'redis_hits': 0,
            'memory_hits': 0
        }
        if use_redis:
            self._init_redis(redis_url or settings.redis_url)

    def _init_redis(self, redis_url: str):
        try:
            self.redis_client = redis.from_url(
                redis_url,
                decode_responses=False,
                socket_connect_timeout=1,
                socket_timeout=1,
                retry_on_timeout=True,
                health_check_interval=30
            )
            self.redis_client.ping()
            logger.info("Redis cache initialised")
        except redis.RedisError as e:
            logger.warning(f"Redis unavailable: {e}. Using memory cache only.")
            self.redis_client = None

    def _make_key(self, key: str) -> str:
        return f"{KEY_PREFIX}{key}"

    def _serialize_value(self, value: Any) -> bytes:
        return json.dumps(value, default=str, ensure_ascii=False).encode('utf-8')

    def _deserialize_value(self, data: bytes) -> Any:
        return json.loads(data.decode('utf-8'))

    def get(self, key: str) -> Optional[Any]:
        """Return the cached value, or None on a miss."""
        if self.redis_client:
            try:
                data = self.redis_client.get(self._make_key(key))
                if data is None:
                    self.cache_stats['misses'] += 1
                    return None
                self.cache_stats['hits'] += 1
                self.cache_stats['redis_hits'] += 1
                return self._deserialize_value(data)
            except redis.RedisError as e:
                logger.warning(f"Redis get failed: {e}")

        with self.memory_cache_lock:
            cache_entry = self.memory_cache.get(key)
            if cache_entry:
                value, expires_at = cache_entry
                if datetime.now() < expires_at:
                    self.cache_stats['hits'] += 1
                    self.cache_stats['memory_hits'] += 1
                    return value
                del self.memory_cache[key]

        self.cache_stats['misses'] += 1
        return None

    def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> bool:
        ttl_seconds = ttl_seconds or settings.cache_ttl
        redis_success = False
        if self.redis_client:
            try:
                self.redis_client.setex(self._make_key(key), ttl_seconds, self._serialize_value(value))
                redis_success = True
            except redis.RedisError as e:
                logger.warning(f"Redis set failed: {e}")
        if redis_success:
            with self.memory_cache_lock:
                self.memory_cache.pop(key, None)
            return True

        with self.memory_cache_lock:
            self.memory_cache[key] = (value, datetime.now() + timedelta(seconds=ttl_seconds))
            # Keep at most 1000 entries; drop the 100 closest to expiry
            if len(self.memory_cache) > 1000:
                sorted_items = sorted(self.memory_cache.items(), key=lambda x: x[1][1])
                for k, _ in sorted_items[:100]:
                    self.memory_cache.pop(k, None)

        return True

    def delete(self, key: str) -> bool:
        redis_deleted = False
        if self.redis_client:
            try:
                redis_deleted = bool(self.redis_client.delete(self._make_key(key)))
            except redis.RedisError as e:
                logger.warning(f"Redis delete failed: {e}")

        with self.memory_cache_lock:
            memory_deleted = key in self.memory_cache
            self.memory_cache.pop(key, None)

        return redis_deleted or memory_deleted

    def invalidate_pattern(self, pattern: str) -> int:
        """Drop every key matching a glob-style pattern (prefix match in memory)."""
        count = 0
        if self.redis_client:
            try:
                keys = self.redis_client.keys(self._make_key(pattern))
                if keys:
                    count += self.redis_client.delete(*keys)
            except redis.RedisError as e:
                logger.warning(f"Redis pattern invalidation failed: {e}")

        with self.memory_cache_lock:
            prefix = pattern.replace('*', '')
            keys_to_remove = [key for key in self.memory_cache if key.startswith(prefix)]
            for key in keys_to_remove:
                self.memory_cache.pop(key, None)
                count += 1

        return count

    def clear(self) -> bool:
        redis_cleared = False
        if self.redis_client:
            try:
                keys = self.redis_client.keys(self._make_key("*"))
                if keys:
                    self.redis_client.delete(*keys)
                redis_cleared = True
            except redis.RedisError as e:
                logger.warning(f"Redis clear failed: {e}")

        with self.memory_cache_lock:
            self.memory_cache.clear()

        return redis_cleared

    def get_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = dict(self.cache_stats)
        stats['redis_available'] = self.redis_client is not None
        stats['memory_cache_size'] = len(self.memory_cache)
        total = stats['hits'] + stats['misses']
        stats['hit_ratio'] = stats['hits'] / total if total > 0 else 0.0
        return stats


cache_manager = CacheManager()
