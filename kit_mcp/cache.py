"""In-memory TTL cache for Kit API responses."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Literal, Mapping, TypeVar

from kit_mcp.config import CacheConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

Strategy = Literal["short", "medium", "long", "static"]

STRATEGY_TTLS: dict[str, float] = {
    "short": 300,  # real-time data
    "medium": 900,  # dashboard data
    "long": 1800,  # account summaries
    "static": 86400,  # historical data
}

_MISSING = object()


@dataclass
class _CacheEntry:
    value: Any
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class ApiCache:
    """
    Key/value store with per-entry TTL and hit/miss accounting.

    Entries are capped at ``max_size``. Inserting a new key into a full
    cache first drops expired entries, then evicts the oldest entry by
    insertion order. Expired entries are removed lazily on access and by a
    sweep that runs at most once per ``check_period``.
    """

    def __init__(
        self,
        config: CacheConfig | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or CacheConfig()
        self._clock = clock
        self._data: dict[str, _CacheEntry] = {}
        self._hits = 0
        self._misses = 0
        self._last_sweep = clock()

    # -- expiry -----------------------------------------------------------

    def purge_expired(self) -> int:
        """Remove all expired entries and return how many were dropped."""
        now = self._clock()
        expired = [key for key, entry in self._data.items() if entry.is_expired(now)]
        for key in expired:
            del self._data[key]
            logger.debug("Cache: Key %s expired", key)
        self._last_sweep = now
        return len(expired)

    def _maybe_sweep(self) -> None:
        if self._clock() - self._last_sweep >= self.config.check_period:
            self.purge_expired()

    def _live_entry(self, key: str) -> _CacheEntry | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            del self._data[key]
            logger.debug("Cache: Key %s expired", key)
            return None
        return entry

    # -- basic operations -------------------------------------------------

    def get(self, key: str, default: Any = None) -> Any:
        if not self.config.enabled:
            return default
        self._maybe_sweep()

        entry = self._live_entry(key)
        if entry is None:
            self._misses += 1
            logger.debug("Cache: Miss for key %s", key)
            return default

        self._hits += 1
        logger.debug("Cache: Hit for key %s", key)
        return entry.value

    def set(self, key: str, value: Any, ttl: float | None = None) -> bool:
        if not self.config.enabled:
            return False
        self._maybe_sweep()

        ttl = ttl or self.config.ttl
        if key in self._data:
            del self._data[key]
        elif len(self._data) >= self.config.max_size:
            self.purge_expired()
            while self._data and len(self._data) >= self.config.max_size:
                oldest = next(iter(self._data))
                del self._data[oldest]
                logger.debug("Cache: Evicted key %s (max size %d)", oldest, self.config.max_size)
            if self.config.max_size <= 0:
                return False

        self._data[key] = _CacheEntry(value=value, expires_at=self._clock() + ttl)
        logger.debug("Cache: Set key %s with TTL %ss", key, ttl)
        return True

    def delete(self, key: str) -> int:
        if not self.config.enabled:
            return 0
        deleted = 1 if self._data.pop(key, None) is not None else 0
        logger.debug("Cache: Deleted %d key(s) for %s", deleted, key)
        return deleted

    def clear(self) -> None:
        self._data.clear()
        self._hits = 0
        self._misses = 0
        logger.debug("Cache: Cleared all keys")

    def has(self, key: str) -> bool:
        if not self.config.enabled:
            return False
        return self._live_entry(key) is not None

    def list_keys(self) -> list[str]:
        self.purge_expired()
        return list(self._data)

    def get_stats(self) -> dict[str, float | int]:
        total = self._hits + self._misses
        hit_rate = (self._hits / total) * 100 if total > 0 else 0
        return {
            "key_count": len(self.list_keys()),
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round(hit_rate, 2),
        }

    def get_ttl(self, key: str) -> float | None:
        """Return the Unix timestamp at which ``key`` expires."""
        if not self.config.enabled:
            return None
        entry = self._live_entry(key)
        return entry.expires_at if entry is not None else None

    def update_ttl(self, key: str, ttl: float) -> bool:
        if not self.config.enabled:
            return False
        entry = self._live_entry(key)
        if entry is None:
            return False
        entry.expires_at = self._clock() + ttl
        return True

    # -- helpers ----------------------------------------------------------

    @staticmethod
    def generate_key(prefix: str, params: Mapping[str, Any] | None = None) -> str:
        """Build a deterministic key; parameter order never changes the result."""
        if not params:
            return prefix
        parts = [
            f"{name}:{json.dumps(params[name], sort_keys=True, separators=(',', ':'), default=str)}"
            for name in sorted(params)
        ]
        return f"{prefix}:{'|'.join(parts)}"

    def set_with_strategy(self, key: str, value: Any, strategy: Strategy = "medium") -> bool:
        return self.set(key, value, STRATEGY_TTLS[strategy])

    def invalidate_pattern(self, pattern: str) -> int:
        """Delete every live key containing ``pattern``."""
        if not self.config.enabled:
            return 0
        self.purge_expired()
        matching = [key for key in self._data if pattern in key]
        deleted = 0
        for key in matching:
            deleted += self.delete(key)
        logger.debug("Cache: Invalidated %d keys matching pattern %s", deleted, pattern)
        return deleted

    async def get_or_compute(
        self,
        key: str,
        fetch: Callable[[], Awaitable[T]],
        ttl: float | None = None,
    ) -> T:
        """Return the cached value or await ``fetch`` once and store its result."""
        cached = self.get(key, _MISSING)
        if cached is not _MISSING:
            return cached

        value = await fetch()
        self.set(key, value, ttl)
        return value
