"""
Caching utilities for frequently accessed data (policies, package catalogs)
Uses Redis when available and falls back to an in-process TTL map otherwise.
"""
import fnmatch
import json
import logging
import time
from functools import wraps
from threading import Lock
from typing import Any, Callable, Optional

import redis

from .config import CACHE_DEFAULT_TTL, CACHE_MAX_MEMORY_ENTRIES
from .rate_limiter import get_redis_client

logger = logging.getLogger(__name__)


class Cache:
    """Redis cache wrapper with automatic serialization and a memory fallback"""

    def __init__(self, default_ttl: int = CACHE_DEFAULT_TTL, max_memory_entries: int = CACHE_MAX_MEMORY_ENTRIES):
        self.default_ttl = default_ttl
        self.max_memory_entries = max_memory_entries
        self.use_redis = True
        # {key: (expires_at, json_payload)}
        self._memory: dict[str, tuple[float, str]] = {}
        self._lock = Lock()

    def _get_client(self) -> Optional[redis.Redis]:
        if not self.use_redis:
            return None
        return get_redis_client()

    def _purge_expired(self) -> None:
        now = time.time()
        expired = [k for k, (expires_at, _) in self._memory.items() if expires_at <= now]
        for k in expired:
            del self._memory[k]
        if expired:
            logger.debug(f"🧹 Purged {len(expired)} expired cache entries")

    def get(self, key: str) -> Optional[Any]:
        """Get value from cache"""
        client = self._get_client()
        if client is not None:
            try:
                value = client.get(key)
                if value:
                    logger.debug(f"✅ Cache HIT: {key}")
                    return json.loads(value)
                logger.debug(f"❌ Cache MISS: {key}")
                return None
            except redis.RedisError as e:
                logger.error(f"❌ Cache get error for {key}: {e}")
                return None

        with self._lock:
            entry = self._memory.get(key)
            if entry is None:
                return None
            expires_at, payload = entry
            if expires_at <= time.time():
                del self._memory[key]
                return None
            return json.loads(payload)

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """Set value in cache with TTL (default 5 minutes)"""
        ttl = ttl or self.default_ttl
        serialized = json.dumps(value, default=str)
        client = self._get_client()
        if client is not None:
            try:
                client.setex(key, ttl, serialized)
                logger.debug(f"✅ Cache SET: {key} (TTL: {ttl}s)")
                return True
            except redis.RedisError as e:
                logger.error(f"❌ Cache set error for {key}: {e}")
                return False

        with self._lock:
            self._memory[key] = (time.time() + ttl, serialized)
            if len(self._memory) > self.max_memory_entries:
                self._purge_expired()
        return True

    def delete(self, key: str) -> bool:
        """Delete value from cache"""
        client = self._get_client()
        if client is not None:
            try:
                client.delete(key)
                return True
            except redis.RedisError as e:
                logger.error(f"❌ Cache delete error for {key}: {e}")
                return False

        with self._lock:
            return self._memory.pop(key, None) is not None

    def delete_pattern(self, pattern: str) -> int:
        """Delete all keys matching a glob pattern (e.g., 'policy:*')"""
        client = self._get_client()
        if client is not None:
            try:
                keys = list(client.scan_iter(match=pattern))
                if keys:
                    deleted = client.delete(*keys)
                    logger.debug(f"✅ Cache DELETE pattern: {pattern} ({deleted} keys)")
                    return deleted
                return 0
            except redis.RedisError as e:
                logger.error(f"❌ Cache delete pattern error for {pattern}: {e}")
                return 0

        with self._lock:
            keys = [k for k in self._memory if fnmatch.fnmatchcase(k, pattern)]
            for k in keys:
                del self._memory[k]
            return len(keys)

    def clear(self) -> None:
        """Drop the in-process entries (Redis keys expire on their own)"""
        with self._lock:
            self._memory.clear()

    def size(self) -> int:
        with self._lock:
            return len(self._memory)


# Global cache instance
cache = Cache()


def cached(key_prefix: str, ttl: Optional[int] = None, key_builder: Optional[Callable] = None):
    """
    Decorator to cache function results

    Example:
        @cached(key_prefix="student_packages", ttl=300)
        def list_student_packages(unit_id: str) -> list[dict]:
            ...
    """

    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            if key_builder:
                cache_key = key_builder(*args, **kwargs)
            else:
                arg_str = str(args[0]) if args else "default"
                cache_key = f"{key_prefix}:{arg_str}"

            cached_value = cache.get(cache_key)
            if cached_value is not None:
                return cached_value

            result = func(*args, **kwargs)
            if result is not None:
                cache.set(cache_key, result, ttl)
            return result

        return wrapper

    return decorator


def policy_cache_key(academy_id: Optional[str]) -> str:
    return f"policy:effective:{academy_id or 'default'}"


def invalidate_policy_cache() -> int:
    return cache.delete_pattern("policy:effective:*")


def package_cache_key(kind: str, unit_id: str) -> str:
    return f"packages:{kind}:{unit_id}"


def invalidate_package_cache(unit_id: str) -> int:
    return cache.delete_pattern(f"packages:*:{unit_id}")
