"""Shared key-value store.

Redis backs the store when ``REDIS_URL`` is set, which makes rate-limit
counters and cached reads visible to every replica. Without Redis a
per-process dictionary is used, which is fine for development and tests.

Two kinds of data live here:

- cached read responses (``cached`` decorator), dropped when a sync writes
  new rows for their domain
- fixed-window counters (``incr`` / ``peek_counter``) for the rate limiter
"""

import asyncio
import functools
import hashlib
import json
import logging
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass
from typing import Any, TypeVar

import redis.asyncio as redis

from deenhub.core.config import get_settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

KEY_NAMESPACE = "deenhub"


@dataclass
class StoreStats:
    """Read/write counters for one backend."""

    hits: int = 0
    misses: int = 0
    writes: int = 0
    evictions: int = 0
    errors: int = 0

    def snapshot(self) -> dict[str, Any]:
        lookups = self.hits + self.misses
        data = asdict(self)
        data["hit_rate_percent"] = round(self.hits * 100 / lookups, 2) if lookups else 0.0
        return data


class InMemoryCache:
    """Dictionary store; entries carry an absolute expiry timestamp."""

    def __init__(self):
        self._entries: dict[str, tuple[Any, float | None]] = {}
        self._lock = asyncio.Lock()
        self.stats = StoreStats()

    def _lookup(self, key: str, now: float) -> tuple[Any, float | None] | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry[1] is not None and entry[1] <= now:
            self._entries.pop(key, None)
            return None
        return entry

    async def get(self, key: str) -> Any | None:
        async with self._lock:
            entry = self._lookup(key, time.time())
        if entry is None:
            self.stats.misses += 1
            return None
        self.stats.hits += 1
        return entry[0]

    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        async with self._lock:
            expires_at = time.time() + ttl_seconds if ttl_seconds else None
            self._entries[key] = (value, expires_at)
        self.stats.writes += 1

    async def incr(self, key: str, ttl_seconds: int) -> int:
        """Bump a counter; the TTL starts with the first increment."""
        async with self._lock:
            now = time.time()
            entry = self._lookup(key, now)
            if entry is None:
                count, expires_at = 1, now + ttl_seconds
            else:
                count, expires_at = int(entry[0]) + 1, entry[1]
            self._entries[key] = (count, expires_at)
        return count

    async def peek_counter(self, key: str) -> tuple[int, int]:
        async with self._lock:
            now = time.time()
            entry = self._lookup(key, now)
        if entry is None:
            return 0, 0
        value, expires_at = entry
        return int(value), int(expires_at - now) if expires_at is not None else -1

    async def delete(self, key: str) -> bool:
        async with self._lock:
            found = self._entries.pop(key, None) is not None
        if found:
            self.stats.evictions += 1
        return found

    async def delete_matching(self, fragment: str) -> int:
        async with self._lock:
            doomed = [key for key in self._entries if fragment in key]
            for key in doomed:
                del self._entries[key]
        self.stats.evictions += len(doomed)
        return len(doomed)

    async def close(self) -> None:
        self._entries.clear()


class RedisCache:
    """Redis store; values are JSON encoded."""

    def __init__(self, url: str):
        self.url = url
        self.stats = StoreStats()
        self._client: redis.Redis | None = None
        self._connect_lock = asyncio.Lock()

    async def connect(self) -> redis.Redis:
        if self._client is not None:
            return self._client
        async with self._connect_lock:
            if self._client is None:
                client = redis.from_url(
                    self.url,
                    decode_responses=True,
                    socket_connect_timeout=5,
                    socket_timeout=5,
                    retry_on_timeout=True,
                )
                try:
                    await client.ping()
                except Exception as exc:
                    await client.aclose()
                    raise RuntimeError(f"Redis connection failed: {exc}") from exc
                self._client = client
                logger.info("Connected to Redis")
        return self._client

    async def get(self, key: str) -> Any | None:
        try:
            raw = await (await self.connect()).get(key)
        except Exception as exc:
            self.stats.errors += 1
            logger.warning(f"Redis read failed for {key}: {exc}")
            return None
        if raw is None:
            self.stats.misses += 1
            return None
        self.stats.hits += 1
        return json.loads(raw)

    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        try:
            client = await self.connect()
            await client.set(key, json.dumps(value, default=str), ex=ttl_seconds or None)
            self.stats.writes += 1
        except Exception as exc:
            self.stats.errors += 1
            logger.warning(f"Redis write failed for {key}: {exc}")

    async def incr(self, key: str, ttl_seconds: int) -> int:
        """INCR, setting the expiry only when the key is new.

        Errors propagate so the rate limiter can decide to fail open.
        """
        client = await self.connect()
        async with client.pipeline(transaction=True) as pipe:
            pipe.incr(key)
            pipe.expire(key, ttl_seconds, nx=True)
            count, _ = await pipe.execute()
        return int(count)

    async def peek_counter(self, key: str) -> tuple[int, int]:
        client = await self.connect()
        async with client.pipeline(transaction=False) as pipe:
            pipe.get(key)
            pipe.ttl(key)
            value, ttl = await pipe.execute()
        return (0, 0) if value is None else (int(value), int(ttl))

    async def delete(self, key: str) -> bool:
        try:
            removed = await (await self.connect()).delete(key)
        except Exception as exc:
            self.stats.errors += 1
            logger.warning(f"Redis delete failed for {key}: {exc}")
            return False
        self.stats.evictions += removed
        return removed > 0

    async def delete_matching(self, fragment: str) -> int:
        try:
            client = await self.connect()
            keys = [key async for key in client.scan_iter(match=f"*{fragment}*")]
            removed = await client.delete(*keys) if keys else 0
        except Exception as exc:
            self.stats.errors += 1
            logger.warning(f"Redis pattern delete failed for {fragment}: {exc}")
            return 0
        self.stats.evictions += removed
        return removed

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class CacheManager:
    """Chooses a backend at startup and fronts it for the rest of the app.

    Counters bypass ``CACHE_ENABLED``; only cached reads honour it.
    """

    def __init__(self):
        self._cache: InMemoryCache | RedisCache | None = None
        self._cache_type = "none"

    async def initialize(self) -> None:
        url = get_settings().redis_url
        if url:
            store = RedisCache(url)
            try:
                await store.connect()
            except RuntimeError as exc:
                logger.warning(f"Falling back to in-memory store: {exc}")
            else:
                self._cache, self._cache_type = store, "redis"
                return
        self._cache, self._cache_type = InMemoryCache(), "memory"
        logger.info("Using in-memory store")

    @property
    def store(self) -> InMemoryCache | RedisCache:
        if self._cache is None:
            self._cache, self._cache_type = InMemoryCache(), "memory"
        return self._cache

    @property
    def backend(self) -> str:
        return self._cache_type

    @staticmethod
    def generate_key(data_type: str, *args, **kwargs) -> str:
        """``deenhub:<data_type>[:<hash of args>]``."""
        key = f"{KEY_NAMESPACE}:{data_type}"
        if args or kwargs:
            material = json.dumps([args, kwargs], sort_keys=True, default=str)
            key += ":" + hashlib.sha1(material.encode()).hexdigest()[:12]
        return key

    async def get(self, key: str) -> Any | None:
        if not get_settings().cache_enabled:
            return None
        return await self.store.get(key)

    async def set(
        self,
        key: str,
        value: Any,
        ttl_seconds: int | None = None,
        data_type: str | None = None,
    ) -> None:
        """Store a value; ``data_type`` picks the configured TTL when none is given."""
        settings = get_settings()
        if not settings.cache_enabled:
            return
        if ttl_seconds is None and data_type:
            ttl_seconds = settings.get_cache_ttl(data_type)
        await self.store.set(key, value, ttl_seconds)

    async def incr(self, key: str, ttl_seconds: int) -> int:
        return await self.store.incr(key, ttl_seconds)

    async def peek_counter(self, key: str) -> tuple[int, int]:
        """(count, seconds to expiry); (0, 0) when the counter does not exist."""
        return await self.store.peek_counter(key)

    async def delete(self, key: str) -> bool:
        return await self.store.delete(key)

    async def delete_pattern(self, pattern: str) -> int:
        return await self.store.delete_matching(pattern)

    async def invalidate_data_type(self, data_type: str) -> int:
        removed = await self.delete_pattern(f"{KEY_NAMESPACE}:{data_type}")
        logger.info(f"Dropped {removed} cached {data_type} entries")
        return removed

    def get_metrics(self) -> dict[str, Any]:
        return {"backend": self.backend, **self.store.stats.snapshot()}

    async def close(self) -> None:
        if self._cache is not None:
            await self._cache.close()


cache_manager = CacheManager()


def cached(data_type: str, ttl_seconds: int | None = None):
    """Cache the JSON-able result of an async read handler.

    The key is built from keyword arguments (minus ``db``), so handlers must
    be called with keywords, which FastAPI always does.
    """

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            if not get_settings().cache_enabled:
                return await func(*args, **kwargs)

            params = {name: value for name, value in kwargs.items() if name != "db"}
            key = cache_manager.generate_key(data_type, func.__name__, **params)
            hit = await cache_manager.get(key)
            if hit is not None:
                return hit

            result = await func(*args, **kwargs)
            if result is not None:
                await cache_manager.set(key, result, ttl_seconds=ttl_seconds, data_type=data_type)
            return result

        return wrapper

    return decorator


# Ledger job name -> cached data types its writes make stale
SYNC_CACHE_DATA_TYPES = {
    "gold-prices": ["gold_prices"],
}


async def invalidate_on_sync_completion(job_name: str) -> None:
    """Drop cached reads backed by ``job_name``, plus the sync summary."""
    if not get_settings().cache_enabled:
        return
    for data_type in [*SYNC_CACHE_DATA_TYPES.get(job_name, []), "sync_summary"]:
        await cache_manager.invalidate_data_type(data_type)
