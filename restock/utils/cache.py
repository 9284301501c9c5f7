"""In-memory read-through TTL cache for ranked replenishment queries."""
import threading
import time
from typing import Any, Callable, Dict, Hashable, Tuple

_MISS = object()


class ReadThroughCache:
    """
    TTL cache that loads on miss.

    Instances are passed to the services that use them; nothing is cached at
    module level. ``clock`` returns seconds and defaults to ``time.monotonic``
    so tests can substitute a fake clock.
    """

    def __init__(self, ttl_seconds: float = 300, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[Hashable, Tuple[float, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: Hashable):
        """Return cached value if still valid, else _MISS sentinel."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return _MISS
            expires, value = entry
            if self._clock() < expires:
                return value
            del self._entries[key]
            return _MISS

    def set(self, key: Hashable, value: Any, ttl_seconds: float = None):
        """Store a value with TTL."""
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        with self._lock:
            self._entries[key] = (self._clock() + ttl, value)

    def get_or_load(self, key: Hashable, loader: Callable[[], Any], force_refresh: bool = False):
        """Return the cached value for ``key``, calling ``loader`` on miss or when forced."""
        if not force_refresh:
            cached = self.get(key)
            if cached is not _MISS:
                return cached
        value = loader()
        self.set(key, value)
        return value

    def invalidate_prefix(self, prefix: Tuple):
        """Drop every tuple key starting with ``prefix`` (e.g. one tenant's entries)."""
        n = len(prefix)
        with self._lock:
            stale = [
                k for k in self._entries
                if isinstance(k, tuple) and k[:n] == prefix
            ]
            for k in stale:
                del self._entries[k]

    def clear(self):
        """Clear all cached values."""
        with self._lock:
            self._entries.clear()

    def __len__(self):
        return len(self._entries)
