"""Explicit, time-bounded in-memory caches.

WHAT:
    A small key/value cache with per-instance TTL and an injectable clock.

WHY:
    Caches are created per backfill invocation (scored-match lookups) or per
    resolver instance (taxonomy index) and passed in explicitly, so two
    stores backfilling concurrently never share entries and tests control
    time without sleeping.

REFERENCES:
    - attribution_engine/services/scored_matcher.py (per-run match cache)
    - attribution_engine/services/utm_resolver.py (taxonomy index cache)
"""

import time
from typing import Any, Callable, Dict, Hashable, Optional, Tuple


_MISSING = object()


class ExpiringCache:
    """Key/value cache whose entries expire `ttl_seconds` after being set.

    `ttl_seconds=None` keeps entries for the cache's lifetime, which is what a
    single backfill run wants. Cached `None` values are real hits; use
    `get(key, default)` with a sentinel to tell them apart from misses.
    """

    def __init__(
        self,
        ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[Hashable, Tuple[Any, float]] = {}
        self.hits = 0
        self.misses = 0

    def get(self, key: Hashable, default: Any = None) -> Any:
        entry = self._entries.get(key, _MISSING)
        if entry is _MISSING:
            self.misses += 1
            return default

        value, stored_at = entry
        if self.ttl_seconds is not None and self._clock() - stored_at > self.ttl_seconds:
            del self._entries[key]
            self.misses += 1
            return default

        self.hits += 1
        return value

    def set(self, key: Hashable, value: Any) -> None:
        self._entries[key] = (value, self._clock())

    def get_or_compute(self, key: Hashable, compute: Callable[[], Any]) -> Any:
        """Return the cached value for `key`, computing and storing it on a miss."""
        value = self.get(key, _MISSING)
        if value is _MISSING:
            value = compute()
            self.set(key, value)
        return value

    def invalidate(self, key: Optional[Hashable] = None) -> None:
        """Drop one key, or every entry when `key` is None."""
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)
