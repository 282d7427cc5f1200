"""Rate limiting for calls into the price-history provider."""

import threading
import time
from collections import deque

from portfolio_engine.config import Defaults


class RateLimiter:
    """Sliding-window rate limiter shared by the fetcher's worker threads."""

    def __init__(self, calls_per_minute: int = Defaults.FETCH_CALLS_PER_MINUTE):
        if calls_per_minute < 1:
            raise ValueError("calls_per_minute must be at least 1")
        self.calls_per_minute = calls_per_minute
        self._timestamps: deque[float] = deque()
        self._lock = threading.Lock()

    def wait(self) -> None:
        """Block until a request is allowed."""
        while True:
            with self._lock:
                now = time.monotonic()
                # Drop timestamps that left the 60 second window
                while self._timestamps and now - self._timestamps[0] > 60:
                    self._timestamps.popleft()
                if len(self._timestamps) < self.calls_per_minute:
                    self._timestamps.append(now)
                    return
                sleep_time = 60 - (now - self._timestamps[0])
            time.sleep(max(sleep_time, 0.01))
