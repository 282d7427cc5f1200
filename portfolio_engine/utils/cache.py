"""In-memory TTL cache for short-lived computation results.

Used to memoize covariance matrices (and optionally price histories) across
closely spaced calls within one optimization pipeline.  Instances are
injected into the components that use them; pass ``cache=None`` to disable.
"""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Hashable

from portfolio_engine.config import Defaults


class TTLCache:
    """Bounded, thread-safe key/value cache with per-entry expiry.

    Entries older than *ttl_seconds* are dropped on access.  When the cache
    holds *max_entries* items the least recently used one is evicted.
    """

    def __init__(
        self,
        ttl_seconds: float = Defaults.CACHE_TTL_SECONDS,
        max_entries: int = Defaults.CACHE_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._data: OrderedDict[Hashable, tuple[float, Any]] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: Hashable) -> Any | None:
        """Return the cached value, or None if missing or expired."""
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            stored_at, value = entry
            if self._clock() - stored_at > self.ttl_seconds:
                del self._data[key]
                return None
            self._data.move_to_end(key)
            return value

    def set(self, key: Hashable, value: Any) -> None:
        """Store *value* under *key*, evicting the oldest entry if full."""
        with self._lock:
            self._data[key] = (self._clock(), value)
            self._data.move_to_end(key)
            while len(self._data) > self.max_entries:
                self._data.popitem(last=False)

    def get_or_compute(self, key: Hashable, compute: Callable[[], Any]) -> Any:
        cached = self.get(key)
        if cached is not None:
            return cached
        value = compute()
        self.set(key, value)
        return value

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def __len__(self) -> int:
        return len(self._data)
