"""Thread-safe TTL cache shared by the orchestrator and validator."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from threading import Lock
from typing import Any, Callable, Dict, Hashable, Optional, Tuple

logger = logging.getLogger(__name__)

_MISSING = object()


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    size: int = 0


class TTLCache:
    """
    Key/value cache with time-based eviction.

    Entries expire ``ttl_seconds`` after they are written; expired entries are
    evicted lazily on read and by ``purge_expired``. ``clock`` defaults to
    ``time.monotonic`` and can be replaced in tests.
    """

    def __init__(
        self,
        ttl_seconds: float = 300.0,
        *,
        clock: Callable[[], float] | None = None,
    ):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0.")
        self.ttl_seconds = ttl_seconds
        self._clock = clock or time.monotonic
        self._entries: Dict[Hashable, Tuple[float, Any]] = {}
        self._lock = Lock()
        self._stats = CacheStats()

    def get(self, key: Hashable, default: Any = None) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._stats.misses += 1
                return default
            expires_at, value = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                self._stats.evictions += 1
                self._stats.misses += 1
                return default
            self._stats.hits += 1
            return value

    def set(self, key: Hashable, value: Any, *, ttl_seconds: Optional[float] = None) -> None:
        ttl = ttl_seconds if ttl_seconds is not None else self.ttl_seconds
        with self._lock:
            self._entries[key] = (self._clock() + ttl, value)

    def get_or_compute(self, key: Hashable, compute: Callable[[], Any]) -> Any:
        """Return the cached value, computing and storing it on a miss."""
        value = self.get(key, _MISSING)
        if value is not _MISSING:
            return value
        value = compute()
        self.set(key, value)
        return value

    def invalidate(self, key: Hashable) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [key for key, (expires_at, _) in self._entries.items() if now >= expires_at]
            for key in expired:
                del self._entries[key]
            self._stats.evictions += len(expired)
        if expired:
            logger.debug("Evicted %d expired cache entries", len(expired))
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                hits=self._stats.hits,
                misses=self._stats.misses,
                evictions=self._stats.evictions,
                size=len(self._entries),
            )

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
