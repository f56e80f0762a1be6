from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, List, Optional, Sequence

from ..constants import CREDENTIAL_COOLDOWN

logger = logging.getLogger(__name__)


def _mask(key: str) -> str:
    return f"...{key[-4:]}" if len(key) > 4 else "***"


class CredentialPool:
    """
    API keys for one provider, shared by every session using that provider.

    Keys that hit a rate limit cool down for a while; ``acquire`` prefers keys
    that are not cooling and rotates between them. All state changes happen
    under a lock that is never held across a network call.
    """

    def __init__(
        self,
        keys: Sequence[str],
        *,
        cooldown: float = CREDENTIAL_COOLDOWN,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._keys: List[str] = [k for k in keys if k]
        self._cooldown = cooldown
        self._clock = clock
        self._lock = threading.Lock()
        self._cooling_until: Dict[str, float] = {}
        self._next = 0

    def __len__(self) -> int:
        return len(self._keys)

    def _available(self, now: float) -> List[str]:
        return [k for k in self._keys if self._cooling_until.get(k, 0.0) <= now]

    def acquire(self) -> Optional[str]:
        """Next key to use; falls back to the soonest-recovering key when all are cooling."""
        with self._lock:
            if not self._keys:
                return None
            now = self._clock()
            available = self._available(now)
            if available:
                key = available[self._next % len(available)]
                self._next += 1
                return key
            return min(self._keys, key=lambda k: self._cooling_until.get(k, 0.0))

    def mark_rate_limited(self, key: str, delay: Optional[float] = None) -> None:
        with self._lock:
            until = self._clock() + (delay if delay is not None else self._cooldown)
            self._cooling_until[key] = max(until, self._cooling_until.get(key, 0.0))
        logger.warning(f"API key {_mask(key)} rate limited; cooling down")

    def mark_success(self, key: str) -> None:
        with self._lock:
            self._cooling_until.pop(key, None)

    def has_available(self) -> bool:
        with self._lock:
            return bool(self._available(self._clock()))

    def retry_delay(self) -> Optional[float]:
        """Seconds until the first cooling key recovers, or None if one is free now."""
        with self._lock:
            if not self._keys:
                return None
            now = self._clock()
            if self._available(now):
                return None
            return max(0.0, min(self._cooling_until[k] for k in self._keys) - now)
