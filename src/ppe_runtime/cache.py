from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Dict, Optional, Protocol, TypeVar

from .constants import CACHE_TTL

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Cache(Protocol):
    def get_or_compute(
        self,
        key: str,
        ttl: Optional[float],
        compute: Callable[[], T],
        *,
        fingerprint: Optional[Any] = None,
    ) -> T:
        ...


class TTLCache:
    """
    Thread-safe in-memory cache with TTL support.

    Entries may carry a fingerprint (e.g. a file mtime); a lookup with a
    different fingerprint is treated as a miss and recomputed.
    """

    def __init__(self, default_ttl: float = CACHE_TTL, clock: Callable[[], float] = time.monotonic):
        self._entries: Dict[str, Dict[str, Any]] = {}
        self._default_ttl = default_ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    def get(self, key: str, *, fingerprint: Optional[Any] = None) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            if self._clock() > entry["expires_at"] or entry["fingerprint"] != fingerprint:
                del self._entries[key]
                self._misses += 1
                return None
            self._hits += 1
        logger.debug(f"Cache hit: {key}")
        return entry["value"]

    def set(self, key: str, value: Any, ttl: Optional[float] = None, *, fingerprint: Optional[Any] = None) -> None:
        ttl = ttl if ttl is not None else self._default_ttl
        with self._lock:
            self._entries[key] = {
                "value": value,
                "expires_at": self._clock() + ttl,
                "fingerprint": fingerprint,
            }

    def get_or_compute(
        self,
        key: str,
        ttl: Optional[float],
        compute: Callable[[], T],
        *,
        fingerprint: Optional[Any] = None,
    ) -> T:
        cached = self.get(key, fingerprint=fingerprint)
        if cached is not None:
            return cached
        # computed outside the lock; a concurrent miss may compute twice, last write wins
        value = compute()
        self.set(key, value, ttl, fingerprint=fingerprint)
        return value

    def invalidate(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            total = self._hits + self._misses
            return {
                "size": len(self._entries),
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": round(self._hits / total * 100, 2) if total else 0,
            }
