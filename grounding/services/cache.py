"""
Result cache for per-candidate validation outcomes.

Entries are keyed by the normalized (query, url) pair and expire by TTL.
``InMemoryResultCache`` is the default; ``RedisResultCache`` shares entries
across processes through ``redis.asyncio``. Cache failures are never fatal:
a Redis error reads as a miss and drops the write.
"""

from __future__ import annotations

import asyncio
import hashlib
import math
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Callable, Optional, Tuple

import redis.asyncio as redis
import structlog
from pydantic import ValidationError

from grounding.models.pipeline import CacheEntry
from grounding.utils.url_utils import normalize_query, normalize_url

logger = structlog.get_logger(__name__)

KEY_PREFIX = "grounding"


def make_cache_key(query: str, url: str, prefix: str = KEY_PREFIX) -> str:
    """Generate a consistent cache key"""
    key_string = f"{normalize_query(query)}|{normalize_url(url)}"

    # Create hash for long keys
    if len(key_string) > 200:
        key_hash = hashlib.md5(key_string.encode()).hexdigest()
        return f"{prefix}:hash:{key_hash}"

    return f"{prefix}:{key_string}"


class ResultCache(ABC):
    default_ttl: float = 3600.0

    @abstractmethod
    async def get(self, query: str, url: str) -> Optional[CacheEntry]:
        ...

    @abstractmethod
    async def put(self, query: str, url: str, entry: CacheEntry, ttl: Optional[float] = None) -> None:
        ...

    @abstractmethod
    async def invalidate(self, query: str, url: str) -> None:
        ...

    @abstractmethod
    async def clear(self) -> None:
        ...

    async def close(self) -> None:
        return None


class InMemoryResultCache(ResultCache):
    """Process-local cache; expired entries are evicted lazily on read."""

    def __init__(
        self,
        default_ttl: float = 3600.0,
        max_entries: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.default_ttl = default_ttl
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[CacheEntry, float]]" = OrderedDict()
        self._lock = asyncio.Lock()
        self.hit_count = 0
        self.miss_count = 0

    def __len__(self) -> int:
        return len(self._entries)

    async def get(self, query: str, url: str) -> Optional[CacheEntry]:
        key = make_cache_key(query, url)
        async with self._lock:
            item = self._entries.get(key)
            if item is None:
                self.miss_count += 1
                return None
            entry, expires_at = item
            if self._clock() >= expires_at:
                del self._entries[key]
                self.miss_count += 1
                return None
            self.hit_count += 1
            return entry

    async def put(self, query: str, url: str, entry: CacheEntry, ttl: Optional[float] = None) -> None:
        key = make_cache_key(query, url)
        ttl = self.default_ttl if ttl is None else ttl
        async with self._lock:
            # Whole-entry replace; re-inserting moves the key to the newest slot
            self._entries.pop(key, None)
            self._entries[key] = (entry, self._clock() + ttl)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    async def invalidate(self, query: str, url: str) -> None:
        async with self._lock:
            self._entries.pop(make_cache_key(query, url), None)

    async def clear(self) -> None:
        async with self._lock:
            self._entries.clear()


class RedisResultCache(ResultCache):
    """Redis-backed cache storing entries as JSON with ``SETEX``."""

    def __init__(
        self,
        redis_url: Optional[str] = None,
        *,
        client: Optional[redis.Redis] = None,
        default_ttl: float = 3600.0,
        prefix: str = KEY_PREFIX,
    ) -> None:
        if client is None and not redis_url:
            raise ValueError("RedisResultCache needs a redis_url or a client")
        self.redis_url = redis_url
        self._client = client
        self.default_ttl = default_ttl
        self.prefix = prefix

    def _get_client(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.from_url(self.redis_url, decode_responses=True)
        return self._client

    def _key(self, query: str, url: str) -> str:
        return make_cache_key(query, url, prefix=self.prefix)

    async def get(self, query: str, url: str) -> Optional[CacheEntry]:
        try:
            raw = await self._get_client().get(self._key(query, url))
        except (redis.RedisError, OSError) as e:
            logger.error("Cache get error", error=str(e), url=url)
            return None
        if not raw:
            return None
        try:
            return CacheEntry.model_validate_json(raw)
        except ValidationError as e:
            logger.warning("Discarding unreadable cache entry", error=str(e), url=url)
            return None

    async def put(self, query: str, url: str, entry: CacheEntry, ttl: Optional[float] = None) -> None:
        ttl = self.default_ttl if ttl is None else ttl
        try:
            await self._get_client().setex(
                self._key(query, url), max(1, int(math.ceil(ttl))), entry.model_dump_json()
            )
        except (redis.RedisError, OSError) as e:
            logger.error("Cache set error", error=str(e), url=url)

    async def invalidate(self, query: str, url: str) -> None:
        try:
            await self._get_client().delete(self._key(query, url))
        except (redis.RedisError, OSError) as e:
            logger.error("Cache invalidate error", error=str(e), url=url)

    async def clear(self) -> None:
        try:
            client = self._get_client()
            keys = [k async for k in client.scan_iter(match=f"{self.prefix}:*")]
            if keys:
                await client.delete(*keys)
        except (redis.RedisError, OSError) as e:
            logger.error("Cache clear error", error=str(e))

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
