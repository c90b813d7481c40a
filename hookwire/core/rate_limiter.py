"""Per-provider sliding-window rate limiting."""

from __future__ import annotations

import threading
import time
from collections import defaultdict, deque
from typing import Callable

from hookwire.utils.logging import get_logger

log = get_logger(__name__)


class RateLimiter:
    """Sliding-window request log per provider.

    Every call to ``admit`` is recorded, including rejected ones, so a sender
    that keeps retrying while throttled stays throttled.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._log: dict[str, deque[float]] = defaultdict(deque)

    def _prune(self, provider: str, period: float, now: float) -> deque[float]:
        entries = self._log[provider]
        cutoff = now - period
        while entries and entries[0] <= cutoff:
            entries.popleft()
        return entries

    def admit(self, provider: str, limit: int | None, period: float | None) -> bool:
        """Record a request and return whether it is within the limit."""
        if not limit or not period:
            return True

        with self._lock:
            now = self._clock()
            entries = self._prune(provider, period, now)
            entries.append(now)
            count = len(entries)

        if count > limit:
            log.warning("rate_limit_exceeded", provider=provider, count=count, limit=limit)
            return False
        return True

    def current_count(self, provider: str, period: float) -> int:
        with self._lock:
            return len(self._prune(provider, period, self._clock()))

    def remaining(self, provider: str, limit: int, period: float) -> int:
        return max(limit - self.current_count(provider, period), 0)

    def reset(self, provider: str) -> None:
        with self._lock:
            self._log.pop(provider, None)

    def clear(self) -> None:
        with self._lock:
            self._log.clear()
