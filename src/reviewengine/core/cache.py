"""
Caching utilities for the aggregation engine.

Provides:
- TTLCache: in-process key/value store with per-entry time to live
- make_cache_key: deterministic keys from a namespace and parameters
- StatsMirror: best-effort copy of computed results into Redis
"""

import hashlib
import json
import logging
import threading
import time
from typing import Any, Callable, Dict, NamedTuple, Optional, Tuple

import redis.asyncio as redis

logger = logging.getLogger(__name__)

# Default TTLs (in seconds)
TTL_SHORT = 300  # 5 minutes - review-derived statistics and composed lists
TTL_LONG = 3600  # 1 hour - term membership sets and reference data

# Size bound and expired-entry sweep period
DEFAULT_MAX_ENTRIES = 2048
SWEEP_INTERVAL = 60  # seconds


class CacheEntry(NamedTuple):
    value: Any
    inserted_at: float
    ttl: float

    def is_live(self, now: float) -> bool:
        return now < self.inserted_at + self.ttl


def make_cache_key(namespace: str, **params: Any) -> str:
    """Generate a cache key from a namespace and sorted parameters."""
    if not params:
        return namespace
    key_data = str(sorted(params.items()))
    key_hash = hashlib.md5(key_data.encode()).hexdigest()[:16]
    return f"{namespace}:{key_hash}"


class TTLCache:
    """
    Thread-safe TTL cache.

    An entry is present only while now < inserted_at + ttl. Reading an
    expired entry evicts it and reports a miss. The lock guards single dict
    operations only and is never held while a value is computed, so a miss
    always means the caller recomputes synchronously.

    Writes sweep expired entries at most once per sweep_interval, and a
    full cache drops its oldest entry to make room for a new key.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        sweep_interval: float = SWEEP_INTERVAL,
    ):
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self.max_entries = max_entries
        self.sweep_interval = sweep_interval
        self._last_sweep = clock()

    def get(self, key: str) -> Tuple[Any, bool]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None, False
            if not entry.is_live(now):
                del self._entries[key]
                self._misses += 1
                return None, False
            self._hits += 1
            return entry.value, True

    def _sweep(self, now: float) -> None:
        # Caller holds the lock
        expired = [k for k, entry in self._entries.items() if not entry.is_live(now)]
        for k in expired:
            del self._entries[k]
        self._last_sweep = now

    def set(self, key: str, value: Any, ttl: float) -> None:
        if ttl <= 0:
            return
        now = self._clock()
        entry = CacheEntry(value, now, ttl)
        with self._lock:
            if now - self._last_sweep >= self.sweep_interval:
                self._sweep(now)
            # Re-inserting moves the key to the end, so the first key is the oldest write
            self._entries.pop(key, None)
            if len(self._entries) >= self.max_entries:
                self._sweep(now)
            while self._entries and len(self._entries) >= self.max_entries:
                del self._entries[next(iter(self._entries))]
                self._evictions += 1
            self._entries[key] = entry

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def invalidate_prefix(self, prefix: str) -> int:
        """Drop every entry whose key starts with prefix."""
        with self._lock:
            keys = [k for k in self._entries if k.startswith(prefix)]
            for k in keys:
                del self._entries[k]
        return len(keys)

    def invalidate_all(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        logger.info(f"Cache invalidated ({count} entries dropped)")
        return count

    def stats(self) -> dict:
        """Get cache statistics."""
        now = self._clock()
        with self._lock:
            live = sum(1 for entry in self._entries.values() if entry.is_live(now))
            total = len(self._entries)
            hits, misses, evictions = self._hits, self._misses, self._evictions
        lookups = hits + misses
        return {
            "entries": total,
            "live_entries": live,
            "expired_entries": total - live,
            "hits": hits,
            "misses": misses,
            "evictions": evictions,
            "max_entries": self.max_entries,
            "hit_rate": hits / lookups if lookups else 0.0,
        }


class StatsMirror:
    """
    Writes computed results to Redis for other consumers.

    Best effort only: the engine never reads the mirror back, and every
    Redis error is logged and dropped.
    """

    def __init__(self, redis_url: Optional[str], prefix: str = "reviewengine"):
        self.redis_url = redis_url
        self.prefix = prefix
        self._client: Optional[redis.Redis] = None

    @property
    def enabled(self) -> bool:
        return bool(self.redis_url)

    async def get_redis(self) -> Optional[redis.Redis]:
        """Get or create Redis connection."""
        if not self.enabled:
            return None
        if self._client is None:
            try:
                client = redis.from_url(
                    self.redis_url,
                    encoding="utf-8",
                    decode_responses=True,
                )
                # Test connection
                await client.ping()  # type: ignore[misc]
                self._client = client
            except Exception as e:
                logger.warning(f"Redis connection failed: {e}")
                self._client = None
        return self._client

    async def close(self) -> None:
        """Close Redis connection."""
        if self._client:
            await self._client.close()
            self._client = None

    async def publish(self, key: str, payload: Any, ttl: int) -> bool:
        redis_client = await self.get_redis()
        if not redis_client:
            return False
        try:
            await redis_client.setex(
                f"{self.prefix}:{key}", ttl, json.dumps(payload, default=str)
            )
            return True
        except (TypeError, ValueError) as e:
            logger.warning(f"Result for {key} not JSON serializable, skipping mirror: {e}")
            return False
        except Exception as e:
            logger.warning(f"Mirror write failed for {key}: {e}")
            return False

    async def clear(self) -> int:
        """Remove every mirrored entry."""
        redis_client = await self.get_redis()
        if not redis_client:
            return 0
        try:
            keys = []
            async for key in redis_client.scan_iter(match=f"{self.prefix}:*"):
                keys.append(key)
            if keys:
                deleted: int = await redis_client.delete(*keys)
                return deleted
            return 0
        except Exception as e:
            logger.warning(f"Mirror invalidation error: {e}")
            return 0
