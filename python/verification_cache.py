"""
Key/value cache with TTL and key prefixes

One shared store serves several uses (registry verification results,
webhook idempotency keys, pending MFA setups). Each use passes its own
prefix; the effective key is ``prefix + ":" + key`` so uses never collide.

Backends:
- MemoryCacheBackend: in-process dict, TTL checked on read and purged by a
  periodic sweep. Read-your-write within one process only.
- RedisCacheBackend: redis.asyncio client, shared across processes.

When Redis is configured but fails, the cache logs the error and serves the
request from memory instead. Values must be JSON-serializable.
"""

import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import redis.asyncio as redis

from periodic import PeriodicTask

logger = logging.getLogger(__name__)


class CachePrefix:
    """Standard key prefixes"""
    LICENSE_REGISTRY = "license:registry"
    MFA_PENDING = "mfa:pending"
    WEBHOOK_IDEMPOTENCY = "webhook:idem"
    EMERGENCY_ACCESS = "emergency:access"
    RATE_LIMIT = "rate:limit"


def build_key(key: str, prefix: Optional[str] = None) -> str:
    """Effective storage key for ``key`` under ``prefix``."""
    return f"{prefix}:{key}" if prefix else key


@dataclass
class CacheEntry:
    value: Any
    expires_at: float


class MemoryCacheBackend:
    """Thread-safe in-process store with per-entry expiry."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def get(self, full_key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(full_key)
            if entry is None:
                return None
            if entry.expires_at <= self._clock():
                del self._entries[full_key]
                return None
            return entry.value

    def set(self, full_key: str, value: Any, ttl_seconds: int) -> None:
        with self._lock:
            self._entries[full_key] = CacheEntry(value=value, expires_at=self._clock() + ttl_seconds)

    def delete(self, full_key: str) -> bool:
        with self._lock:
            return self._entries.pop(full_key, None) is not None

    def increment(self, full_key: str, ttl_seconds: int) -> int:
        with self._lock:
            now = self._clock()
            entry = self._entries.get(full_key)
            if entry is None or entry.expires_at <= now:
                self._entries[full_key] = CacheEntry(value=1, expires_at=now + ttl_seconds)
                return 1
            entry.value = int(entry.value) + 1
            return entry.value

    def delete_by_prefix(self, prefix: str) -> int:
        marker = f"{prefix}:"
        with self._lock:
            doomed = [key for key in self._entries if key.startswith(marker)]
            for key in doomed:
                del self._entries[key]
            return len(doomed)

    def cleanup_expired(self) -> int:
        with self._lock:
            now = self._clock()
            expired = [key for key, entry in self._entries.items() if entry.expires_at <= now]
            for key in expired:
                del self._entries[key]
            return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def size_estimate(self) -> int:
        """Rough byte size of keys and JSON values."""
        with self._lock:
            items = list(self._entries.items())
        total = 0
        for key, entry in items:
            total += len(key) * 2
            total += len(json.dumps(entry.value, default=str)) * 2
            total += 16
        return total

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


class RedisCacheBackend:
    """Redis store; values are stored as JSON strings with SETEX."""

    def __init__(self, client: "redis.Redis"):
        self.client = client

    @classmethod
    def from_url(cls, url: str) -> 'RedisCacheBackend':
        return cls(redis.from_url(url, decode_responses=True))

    async def get(self, full_key: str) -> Optional[Any]:
        data = await self.client.get(full_key)
        return json.loads(data) if data else None

    async def set(self, full_key: str, value: Any, ttl_seconds: int) -> None:
        await self.client.setex(full_key, ttl_seconds, json.dumps(value))

    async def delete(self, full_key: str) -> bool:
        return bool(await self.client.delete(full_key))

    async def exists(self, full_key: str) -> bool:
        return bool(await self.client.exists(full_key))

    async def increment(self, full_key: str, ttl_seconds: int) -> int:
        result = await self.client.incr(full_key)
        if result == 1:
            await self.client.expire(full_key, ttl_seconds)
        return int(result)

    async def delete_by_prefix(self, prefix: str) -> int:
        deleted = 0
        async for key in self.client.scan_iter(match=f"{prefix}:*"):
            deleted += int(await self.client.delete(key))
        return deleted

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def close(self) -> None:
        await self.client.aclose()


class VerificationCache:
    """Prefix-namespaced async cache fronting a memory or Redis backend."""

    def __init__(
        self,
        redis_backend: Optional[RedisCacheBackend] = None,
        default_ttl_seconds: int = 900,
        cleanup_interval_seconds: float = 60,
        memory_backend: Optional[MemoryCacheBackend] = None
    ):
        self.redis = redis_backend
        self.memory = memory_backend or MemoryCacheBackend()
        self.default_ttl_seconds = default_ttl_seconds
        self._sweeper = PeriodicTask("cache-cleanup", cleanup_interval_seconds, self.cleanup_expired)

    @classmethod
    def from_config(cls, cache_config) -> 'VerificationCache':
        """Build from a CacheConfig; Redis only when a URL is configured."""
        redis_backend = None
        if cache_config.redis_url:
            redis_backend = RedisCacheBackend.from_url(cache_config.redis_url)
            logger.info("Cache backend: redis")
        else:
            logger.info("Redis not configured, using in-memory cache (not shared across processes)")
        return cls(
            redis_backend=redis_backend,
            default_ttl_seconds=cache_config.default_ttl_seconds,
            cleanup_interval_seconds=cache_config.cleanup_interval_seconds
        )

    @property
    def backend_name(self) -> str:
        return "redis" if self.redis is not None else "memory"

    async def get(self, key: str, prefix: Optional[str] = None) -> Optional[Any]:
        full_key = build_key(key, prefix)
        if self.redis is not None:
            try:
                return await self.redis.get(full_key)
            except Exception as e:
                logger.error("Redis read failed, using memory: %s", e)
        return self.memory.get(full_key)

    async def set(self, key: str, value: Any, prefix: Optional[str] = None,
                  ttl_seconds: Optional[int] = None) -> None:
        full_key = build_key(key, prefix)
        ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            # already expired: drop any previous value instead of caching
            await self.delete(key, prefix)
            return
        if self.redis is not None:
            try:
                await self.redis.set(full_key, value, ttl)
                return
            except Exception as e:
                logger.error("Redis write failed, using memory: %s", e)
        self.memory.set(full_key, value, ttl)

    async def delete(self, key: str, prefix: Optional[str] = None) -> None:
        full_key = build_key(key, prefix)
        if self.redis is not None:
            try:
                await self.redis.delete(full_key)
            except Exception as e:
                logger.error("Redis delete failed: %s", e)
        self.memory.delete(full_key)

    async def exists(self, key: str, prefix: Optional[str] = None) -> bool:
        full_key = build_key(key, prefix)
        if self.redis is not None:
            try:
                return await self.redis.exists(full_key)
            except Exception as e:
                logger.error("Redis exists check failed, using memory: %s", e)
        return self.memory.get(full_key) is not None

    async def increment(self, key: str, prefix: Optional[str] = None,
                        ttl_seconds: Optional[int] = None) -> int:
        """Increment a counter; the TTL is set when the counter is created."""
        full_key = build_key(key, prefix)
        ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        if self.redis is not None:
            try:
                return await self.redis.increment(full_key, ttl)
            except Exception as e:
                logger.error("Redis increment failed, using memory: %s", e)
        return self.memory.increment(full_key, ttl)

    async def delete_by_prefix(self, prefix: str) -> int:
        deleted = 0
        if self.redis is not None:
            try:
                deleted += await self.redis.delete_by_prefix(prefix)
            except Exception as e:
                logger.error("Redis prefix delete failed: %s", e)
        deleted += self.memory.delete_by_prefix(prefix)
        return deleted

    def cleanup_expired(self) -> int:
        """Drop expired memory entries; Redis expires keys on its own."""
        cleaned = self.memory.cleanup_expired()
        if cleaned:
            logger.debug("Cache cleanup: %d expired entries removed", cleaned)
        return cleaned

    def get_stats(self) -> Dict[str, Any]:
        return {
            "type": self.backend_name,
            "memory_entries": len(self.memory),
            "memory_size": f"{self.memory.size_estimate() / 1024:.2f} KB",
        }

    async def health_check(self) -> Dict[str, Any]:
        if self.redis is not None:
            try:
                await self.redis.ping()
                return {"status": "healthy", "details": {"backend": "redis", **self.get_stats()}}
            except Exception as e:
                logger.warning("Redis ping failed: %s", e)
                return {"status": "degraded", "details": {"backend": "memory (redis failed)", **self.get_stats()}}
        return {"status": "degraded", "details": {"backend": "memory", **self.get_stats()}}

    def start(self) -> None:
        self._sweeper.start()

    async def shutdown(self) -> None:
        await self._sweeper.stop()
        if self.redis is not None:
            try:
                await self.redis.close()
            except Exception as e:
                logger.error("Error closing Redis connection: %s", e)
        self.memory.clear()
        logger.info("Cache shutdown complete")
