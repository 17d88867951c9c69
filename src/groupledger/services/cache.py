"""Read-through cache for computed group balances.

Entries are keyed per group and must be invalidated by every write that
touches expenses, items, splits, payers, settlements or membership of that
group.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

from groupledger.db.models import GroupBalances
from groupledger.logging import get_logger

DEFAULT_TTL_SECONDS = 5 * 60
DEFAULT_MAX_SIZE = 1000


class CacheUnavailableError(RuntimeError):
    pass


def cache_key(group_id: str) -> str:
    return f"balances:{group_id}"


class BalanceCache(Protocol):
    """Storage for computed balances, one entry per group.

    Backends that lose their connection should raise ``CacheUnavailableError``;
    ``ConnectionError`` and ``TimeoutError`` are treated the same way.
    """

    def get(self, group_id: str) -> Optional[GroupBalances]: ...

    def set(self, group_id: str, value: GroupBalances, ttl: Optional[float] = None) -> None: ...

    def invalidate(self, group_id: str) -> None: ...


@dataclass(slots=True)
class _Entry:
    value: GroupBalances
    expires_at: float
    created_at: float


@dataclass(slots=True, frozen=True)
class CacheStats:
    hits: int
    misses: int
    sets: int
    invalidations: int
    size: int

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


class InMemoryBalanceCache:
    """Process-local cache, safe to share between threads and tasks.

    Expired entries are dropped lazily on access or by ``purge_expired``.
    """

    def __init__(
        self,
        default_ttl: float = DEFAULT_TTL_SECONDS,
        max_size: int = DEFAULT_MAX_SIZE,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if default_ttl <= 0:
            raise ValueError("default_ttl must be positive")
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self._default_ttl = default_ttl
        self._max_size = max_size
        self._clock = clock
        self._entries: dict[str, _Entry] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._sets = 0
        self._invalidations = 0
        self._log = get_logger(__name__)

    def get(self, group_id: str) -> Optional[GroupBalances]:
        key = cache_key(group_id)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            if self._clock() >= entry.expires_at:
                del self._entries[key]
                self._misses += 1
                return None
            self._hits += 1
            return entry.value

    def set(self, group_id: str, value: GroupBalances, ttl: Optional[float] = None) -> None:
        effective_ttl = self._default_ttl if ttl is None else ttl
        if effective_ttl <= 0:
            raise ValueError("ttl must be positive")

        key = cache_key(group_id)
        with self._lock:
            now = self._clock()
            if key not in self._entries and len(self._entries) >= self._max_size:
                self._evict_oldest()
            self._entries[key] = _Entry(value=value, expires_at=now + effective_ttl, created_at=now)
            self._sets += 1

    def invalidate(self, group_id: str) -> None:
        with self._lock:
            if self._entries.pop(cache_key(group_id), None) is not None:
                self._invalidations += 1

    def ttl_remaining(self, group_id: str) -> Optional[float]:
        with self._lock:
            entry = self._entries.get(cache_key(group_id))
            if entry is None:
                return None
            return max(0.0, entry.expires_at - self._clock())

    def purge_expired(self) -> int:
        with self._lock:
            now = self._clock()
            expired = [key for key, entry in self._entries.items() if now >= entry.expires_at]
            for key in expired:
                del self._entries[key]
            return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._invalidations += len(self._entries)
            self._entries.clear()

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                hits=self._hits,
                misses=self._misses,
                sets=self._sets,
                invalidations=self._invalidations,
                size=len(self._entries),
            )

    def _evict_oldest(self) -> None:
        # caller holds the lock
        by_age = sorted(self._entries.items(), key=lambda item: item[1].created_at)
        to_remove = max(1, len(by_age) // 10)
        for key, _ in by_age[:to_remove]:
            del self._entries[key]
        self._log.info("balances.cache.evicted", count=to_remove)


class NullBalanceCache:
    """Cache that never stores anything."""

    def get(self, group_id: str) -> Optional[GroupBalances]:
        return None

    def set(self, group_id: str, value: GroupBalances, ttl: Optional[float] = None) -> None:
        return None

    def invalidate(self, group_id: str) -> None:
        return None
