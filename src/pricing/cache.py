"""
Time-bounded price cache.

Entries are stored as (value, expiry) against an injected clock. An entry
read after its expiry is evicted and reported as absent; there is no
stale-but-usable mode.
"""

import time
from typing import Any, Callable, Dict, Generic, Optional, Tuple, TypeVar

V = TypeVar("V")


class TTLCache(Generic[V]):
    """
    Key/value cache with per-entry expiry.

    Example:
        now = [0.0]
        cache = TTLCache(ttl=30.0, clock=lambda: now[0])
        cache.set("BTC", quote)
        now[0] = 31.0
        assert cache.get("BTC") is None
    """

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic):
        if ttl <= 0:
            raise ValueError(f"TTL must be positive, got {ttl}")
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[str, Tuple[V, float]] = {}
        self._hits = 0
        self._misses = 0
        self._expired = 0

    def get(self, key: str) -> Optional[V]:
        """Return the cached value, or None if absent or expired."""
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return None

        value, expiry = entry
        if self._clock() >= expiry:
            del self._entries[key]
            self._expired += 1
            self._misses += 1
            return None

        self._hits += 1
        return value

    def set(self, key: str, value: V, ttl: Optional[float] = None) -> None:
        self._entries[key] = (value, self._clock() + (ttl if ttl is not None else self.ttl))

    def invalidate(self, key: Optional[str] = None) -> None:
        """Drop one entry, or everything when key is None."""
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)

    def __contains__(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and self._clock() < entry[1]

    def __len__(self) -> int:
        now = self._clock()
        return sum(1 for _, expiry in self._entries.values() if now < expiry)

    def get_stats(self) -> Dict[str, Any]:
        total = self._hits + self._misses
        return {
            "entries": len(self),
            "hits": self._hits,
            "misses": self._misses,
            "expired": self._expired,
            "hit_rate": self._hits / total if total else 0.0,
        }
