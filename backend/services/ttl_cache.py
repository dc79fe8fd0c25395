"""Time-bounded cache for per-project lookups."""

import time
from typing import Any, Callable, Hashable, Optional


class TTLCache:
    """Key/value cache whose entries expire after ``ttl_seconds``.

    The clock is injectable so expiry can be driven from tests. Concurrent
    misses may both load the value; writes are idempotent so the last one
    simply wins.
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries = {}

    def get(self, key: Hashable, default: Any = None) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            return default
        stored_at, value = entry
        if self._clock() - stored_at >= self.ttl_seconds:
            self._entries.pop(key, None)
            return default
        return value

    def __contains__(self, key: Hashable) -> bool:
        sentinel = object()
        return self.get(key, sentinel) is not sentinel

    def set(self, key: Hashable, value: Any):
        self._entries[key] = (self._clock(), value)

    def get_or_load(self, key: Hashable, loader: Callable[[], Any]) -> Any:
        """Return the cached value, calling ``loader`` on a miss."""
        sentinel = object()
        value = self.get(key, sentinel)
        if value is sentinel:
            value = loader()
            self.set(key, value)
        return value

    def invalidate(self, key: Optional[Hashable] = None):
        """Drop one key, or everything when no key is given."""
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)
