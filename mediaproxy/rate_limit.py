from __future__ import annotations

import threading
import time
from typing import Dict, Optional, Tuple


class ClientRateLimiter:
    """Fixed-window request counter per client address.

    Time is cut into aligned windows of window_seconds. Each client may make
    max_requests requests per window; the count resets when the next window
    starts. A max_requests of 0 disables limiting.
    """

    # Drop counters from finished windows every N calls.
    _PRUNE_EVERY = 1024

    def __init__(self, max_requests: int = 300, window_seconds: float = 60):
        self.max_requests = max(0, int(max_requests))
        self.window_seconds = max(0.001, float(window_seconds))
        # client -> (window index, requests seen in that window)
        self._counts: Dict[str, Tuple[int, int]] = {}
        self._lock = threading.Lock()
        self._calls = 0

    @property
    def enabled(self) -> bool:
        return self.max_requests > 0

    def _window(self, now: float) -> int:
        return int(now // self.window_seconds)

    def allow(self, client: str, now: Optional[float] = None) -> bool:
        if not self.enabled:
            return True
        now = time.monotonic() if now is None else now
        window = self._window(now)
        with self._lock:
            self._calls += 1
            if self._calls % self._PRUNE_EVERY == 0:
                self._prune(window)
            seen_window, count = self._counts.get(client, (window, 0))
            if seen_window != window:
                count = 0
            if count >= self.max_requests:
                self._counts[client] = (window, count)
                return False
            self._counts[client] = (window, count + 1)
            return True

    def retry_after(self, now: Optional[float] = None) -> int:
        """Whole seconds until the current window ends."""
        now = time.monotonic() if now is None else now
        end = (self._window(now) + 1) * self.window_seconds
        return max(1, int(end - now + 0.999))

    def _prune(self, window: int) -> None:
        stale = [k for k, (w, _) in self._counts.items() if w != window]
        for k in stale:
            del self._counts[k]
