"""Read cache over computed leaderboards.

Tier 1 is an in-process TTL map, tier 2 a shared Redis cache. The materialized
``point_aggregates`` table behind them acts as tier 3.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import OrderedDict
from datetime import datetime
from typing import Any, Dict, Iterable, Optional, Protocol, Tuple

import redis

logger = logging.getLogger(__name__)

CacheValue = Dict[str, Any]


def cache_key(context_type: str, context_id: str, partition_key: str, period: str, bucket_start: datetime) -> str:
    return "leaderboard:{}:{}:{}:{}:{}".format(
        context_type,
        context_id,
        partition_key or "-",
        period,
        bucket_start.isoformat(),
    )


class SharedCache(Protocol):
    def get(self, key: str) -> Optional[CacheValue]: ...

    def set(self, key: str, value: CacheValue) -> None: ...

    def delete(self, keys: Iterable[str]) -> None: ...


class NullSharedCache:
    """Shared tier placeholder when no Redis URL is configured."""

    def get(self, key: str) -> Optional[CacheValue]:
        return None

    def set(self, key: str, value: CacheValue) -> None:
        return None

    def delete(self, keys: Iterable[str]) -> None:
        return None


class RedisSharedCache:
    """JSON values in Redis with a fixed TTL. Failures degrade to cache misses."""

    def __init__(self, client: redis.Redis, *, ttl_seconds: int = 300) -> None:
        self._client = client
        self._ttl = ttl_seconds

    @classmethod
    def from_url(cls, url: str, *, ttl_seconds: int = 300) -> "RedisSharedCache":
        return cls(redis.Redis.from_url(url, decode_responses=True), ttl_seconds=ttl_seconds)

    def get(self, key: str) -> Optional[CacheValue]:
        try:
            raw = self._client.get(key)
        except redis.RedisError as exc:
            logger.warning("shared cache read failed for %s: %s", key, exc)
            return None
        return json.loads(raw) if raw else None

    def set(self, key: str, value: CacheValue) -> None:
        try:
            self._client.setex(key, self._ttl, json.dumps(value))
        except redis.RedisError as exc:
            logger.warning("shared cache write failed for %s: %s", key, exc)

    def delete(self, keys: Iterable[str]) -> None:
        keys = list(keys)
        if not keys:
            return
        try:
            self._client.delete(*keys)
        except redis.RedisError as exc:
            logger.warning("shared cache delete failed for %s keys: %s", len(keys), exc)


class LocalTTLCache:
    """Thread-safe in-process map with per-entry expiry."""

    def __init__(self, ttl_seconds: float = 60.0, max_entries: int = 4096, clock=time.monotonic) -> None:
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._clock = clock
        self._data: "OrderedDict[str, Tuple[float, CacheValue]]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[CacheValue]:
        with self._lock:
            item = self._data.get(key)
            if item is None:
                return None
            expires_at, value = item
            if expires_at <= self._clock():
                del self._data[key]
                return None
            self._data.move_to_end(key)
            return value

    def set(self, key: str, value: CacheValue) -> None:
        with self._lock:
            self._data[key] = (self._clock() + self._ttl, value)
            self._data.move_to_end(key)
            while len(self._data) > self._max_entries:
                self._data.popitem(last=False)

    def delete(self, keys: Iterable[str]) -> None:
        with self._lock:
            for key in keys:
                self._data.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)


class LeaderboardCache:
    """Two-tier read-through cache with invalidation generations.

    ``invalidate`` marks keys dirty immediately so local reads miss at once,
    and bumps a generation counter so a computation that started before the
    invalidation cannot repopulate the cache with pre-invalidation data.
    ``flush`` later purges the shared tier for the dirty keys.
    """

    def __init__(
        self,
        local: LocalTTLCache,
        shared: Optional[SharedCache] = None,
        *,
        last_good_entries: int = 1024,
    ) -> None:
        self.local = local
        self.shared = shared or NullSharedCache()
        self._lock = threading.Lock()
        self._generations: Dict[str, int] = {}
        self._dirty: set = set()
        self._last_good: "OrderedDict[str, CacheValue]" = OrderedDict()
        self._last_good_entries = last_good_entries

    def generation(self, key: str) -> int:
        with self._lock:
            return self._generations.get(key, 0)

    def get(self, key: str) -> Optional[CacheValue]:
        with self._lock:
            if key in self._dirty:
                return None
        value = self.local.get(key)
        if value is not None:
            return value
        value = self.shared.get(key)
        if value is not None:
            self.local.set(key, value)
        return value

    def put(self, key: str, value: CacheValue, generation: int) -> bool:
        """Store a freshly computed value unless it was invalidated meanwhile."""

        with self._lock:
            if self._generations.get(key, 0) != generation:
                return False
            self._dirty.discard(key)
            self._remember(key, value)
        self.local.set(key, value)
        self.shared.set(key, value)
        return True

    def _remember(self, key: str, value: CacheValue) -> None:
        self._last_good[key] = value
        self._last_good.move_to_end(key)
        while len(self._last_good) > self._last_good_entries:
            self._last_good.popitem(last=False)

    def last_good(self, key: str) -> Optional[CacheValue]:
        """Most recent value stored for ``key``, ignoring TTL and invalidation."""

        with self._lock:
            return self._last_good.get(key)

    def invalidate(self, keys: Iterable[str]) -> None:
        keys = list(keys)
        with self._lock:
            for key in keys:
                self._generations[key] = self._generations.get(key, 0) + 1
                self._dirty.add(key)
        self.local.delete(keys)

    def flush(self, keys: Iterable[str]) -> None:
        keys = list(keys)
        self.shared.delete(keys)
        with self._lock:
            self._dirty.difference_update(keys)
