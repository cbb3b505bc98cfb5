"""
TTL cache for backend lookups (projects, users).
"""

import time
import threading
from typing import Any, Callable, Optional


class Cache:
    """Thread-safe TTL cache keyed by lookup name."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._store: dict = {}
        self._lock = threading.Lock()
        self._clock = clock

    def get(self, key: str, ttl: float) -> Optional[Any]:
        with self._lock:
            entry = self._store.get(key)
            if entry and (self._clock() - entry["ts"]) < ttl:
                return entry["data"]
            return None

    def set(self, key: str, data: Any):
        with self._lock:
            self._store[key] = {"data": data, "ts": self._clock()}

    def get_or_load(self, key: str, ttl: float, loader: Callable[[], Any]) -> Any:
        """Return the cached value, calling *loader* on a miss.

        The loader runs outside the lock; two threads missing at once both
        load and the last one wins, which is fine for read-mostly lookups.
        """
        cached = self.get(key, ttl)
        if cached is not None:
            return cached
        data = loader()
        self.set(key, data)
        return data

    def invalidate(self, key: str = None):
        with self._lock:
            if key:
                self._store.pop(key, None)
            else:
                self._store.clear()
