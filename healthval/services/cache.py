"""
Caching Service.

Bounded in-memory LRU caches with per-entry TTL. When a cache reaches its
size limit the least recently used fraction of entries is dropped in one
pass. The engine keeps one cache per data type (results, profiles,
terminology lookups, reference checks, business-rule evaluations) so each can
be sized and expired independently.
"""

import asyncio
import fnmatch
import hashlib
import json
import math
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel, Field

from healthval.core.config import EngineSettings, get_engine_settings
from healthval.utils.logging import get_logger

logger = get_logger(__name__)

_MISSING = object()


class CacheConfig(BaseModel):
    """Cache configuration."""

    name: str = "cache"
    max_size: int = Field(1000, ge=1)
    default_ttl_seconds: float = Field(300.0, gt=0)
    eviction_fraction: float = Field(0.1, gt=0.0, le=1.0)


class CacheStats(BaseModel):
    """Cache statistics."""

    name: str
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    expirations: int = 0
    total_items: int = 0
    max_size: int = 0
    hit_rate: float = 0.0


@dataclass
class CacheEntry:
    """Single cache entry."""

    value: Any
    expires_at: float
    created_at: float
    access_count: int = 0

    def is_expired(self, now: float) -> bool:
        """Check if entry is expired."""
        return now >= self.expires_at


def make_cache_key(*parts: Any) -> str:
    """Create a deterministic hash key from complex data."""
    serialized = json.dumps(parts, sort_keys=True, default=str)
    return hashlib.sha256(serialized.encode()).hexdigest()


class LRUCache:
    """Least Recently Used cache with TTL expiry and fractional eviction."""

    def __init__(
        self,
        config: Optional[CacheConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._config = config or CacheConfig()
        self._cache: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = asyncio.Lock()
        self._clock = clock

        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expirations = 0

    @property
    def config(self) -> CacheConfig:
        return self._config

    @property
    def name(self) -> str:
        return self._config.name

    async def get(self, key: str, default: Any = None) -> Any:
        """Get value from cache, or ``default`` on a miss."""
        async with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                self._misses += 1
                return default

            if entry.is_expired(self._clock()):
                del self._cache[key]
                self._expirations += 1
                self._misses += 1
                return default

            # Move to end (most recently used)
            self._cache.move_to_end(key)
            entry.access_count += 1
            self._hits += 1
            return entry.value

    async def contains(self, key: str) -> bool:
        return await self.get(key, _MISSING) is not _MISSING

    async def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        """Set value in cache."""
        ttl = ttl_seconds if ttl_seconds is not None else self._config.default_ttl_seconds
        async with self._lock:
            if key not in self._cache and len(self._cache) >= self._config.max_size:
                self._evict_locked()

            now = self._clock()
            self._cache[key] = CacheEntry(value=value, expires_at=now + ttl, created_at=now)
            self._cache.move_to_end(key)

    def _evict_locked(self) -> None:
        # Expired entries go first; if that frees nothing, drop the LRU fraction.
        now = self._clock()
        expired = [k for k, e in self._cache.items() if e.is_expired(now)]
        for k in expired:
            del self._cache[k]
        self._expirations += len(expired)
        if len(self._cache) < self._config.max_size:
            return

        count = max(1, math.ceil(self._config.max_size * self._config.eviction_fraction))
        for _ in range(min(count, len(self._cache))):
            self._cache.popitem(last=False)
            self._evictions += 1
        logger.debug(f"Cache '{self.name}' evicted {count} least recently used entries")

    async def delete(self, key: str) -> bool:
        """Delete key from cache."""
        async with self._lock:
            if key in self._cache:
                del self._cache[key]
                return True
            return False

    async def clear(self) -> int:
        """Clear all entries. Returns how many were removed."""
        async with self._lock:
            count = len(self._cache)
            self._cache.clear()
            return count

    async def keys(self, pattern: str = "*") -> list[str]:
        """Get keys matching pattern."""
        async with self._lock:
            if pattern == "*":
                return list(self._cache.keys())
            return [k for k in self._cache.keys() if fnmatch.fnmatch(k, pattern)]

    async def purge_expired(self) -> int:
        """Drop every expired entry."""
        async with self._lock:
            now = self._clock()
            expired = [k for k, e in self._cache.items() if e.is_expired(now)]
            for k in expired:
                del self._cache[k]
            self._expirations += len(expired)
            return len(expired)

    async def get_or_set(
        self,
        key: str,
        factory: Callable[[], Awaitable[Any]],
        ttl_seconds: Optional[float] = None,
    ) -> Any:
        """Get from cache or compute and set."""
        value = await self.get(key, _MISSING)
        if value is _MISSING:
            value = await factory()
            await self.set(key, value, ttl_seconds)
        return value

    def size(self) -> int:
        """Get current cache size."""
        return len(self._cache)

    def get_stats(self) -> CacheStats:
        """Get cache statistics."""
        total_requests = self._hits + self._misses
        hit_rate = (self._hits / total_requests * 100) if total_requests > 0 else 0.0
        return CacheStats(
            name=self.name,
            hits=self._hits,
            misses=self._misses,
            evictions=self._evictions,
            expirations=self._expirations,
            total_items=len(self._cache),
            max_size=self._config.max_size,
            hit_rate=hit_rate,
        )

    def reset_stats(self) -> None:
        """Reset statistics."""
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expirations = 0


# =============================================================================
# Engine Cache Set
# =============================================================================


@dataclass
class EngineCaches:
    """Independent caches used by one validation engine."""

    results: LRUCache
    profiles: LRUCache
    terminology: LRUCache
    references: LRUCache
    business_rules: LRUCache
    _all: list[LRUCache] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._all = [
            self.results,
            self.profiles,
            self.terminology,
            self.references,
            self.business_rules,
        ]

    @classmethod
    def from_settings(
        cls,
        settings: Optional[EngineSettings] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> "EngineCaches":
        s = settings or get_engine_settings()
        fraction = s.CACHE_EVICTION_FRACTION

        def build(name: str, size: int, ttl: float) -> LRUCache:
            return LRUCache(
                CacheConfig(
                    name=name,
                    max_size=size,
                    default_ttl_seconds=ttl,
                    eviction_fraction=fraction,
                ),
                clock=clock,
            )

        return cls(
            results=build("results", s.CACHE_RESULT_MAX_SIZE, s.CACHE_RESULT_TTL_SECONDS),
            profiles=build("profiles", s.CACHE_PROFILE_MAX_SIZE, s.CACHE_PROFILE_TTL_SECONDS),
            terminology=build(
                "terminology", s.CACHE_TERMINOLOGY_MAX_SIZE, s.CACHE_TERMINOLOGY_TTL_SECONDS
            ),
            references=build(
                "references", s.CACHE_REFERENCE_MAX_SIZE, s.CACHE_REFERENCE_TTL_SECONDS
            ),
            business_rules=build(
                "business_rules",
                s.CACHE_BUSINESS_RULE_MAX_SIZE,
                s.CACHE_BUSINESS_RULE_TTL_SECONDS,
            ),
        )

    async def clear_all(self) -> int:
        cleared = 0
        for cache in self._all:
            cleared += await cache.clear()
        logger.info(f"Cleared {cleared} cached validation entries")
        return cleared

    def get_stats(self) -> dict[str, CacheStats]:
        return {cache.name: cache.get_stats() for cache in self._all}
