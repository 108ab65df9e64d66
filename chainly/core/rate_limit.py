"""Fixed-window request rate limiter.

One instance is owned by the application (created in the lifespan handler)
and injected into request handlers. State is process-local: a clustered
deployment gets approximate limits per process.
"""

import math
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable

import structlog

logger = structlog.get_logger()

DEFAULT_LIMIT = 10
DEFAULT_WINDOW_SECONDS = 10.0
DEFAULT_MAX_KEYS = 10_000


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of one rate limit check."""

    allowed: bool
    limit: int
    remaining: int
    reset_at: float  # epoch seconds when the current window ends

    def retry_after(self, now: float | None = None) -> int:
        """Seconds until the window resets, at least 1."""
        current = time.time() if now is None else now
        return max(1, math.ceil(self.reset_at - current))

    def headers(self, now: float | None = None) -> dict[str, str]:
        """Standard rate limit response headers."""
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(self.reset_at)),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after(now))
        return headers


@dataclass
class _WindowEntry:
    count: int
    reset_at: float


class RateLimiter:
    """Fixed-window counter keyed by an external identifier.

    Memory is bounded by ``max_keys``: once exceeded, expired entries are
    purged first, then the oldest tracked keys are evicted until the size is
    back at the ceiling. Eviction is best-effort, not LRU.

    Example usage:
        limiter = RateLimiter()
        result = limiter.check(f"webhook:{client_ip}")
        if not result.allowed:
            return JSONResponse(status_code=429, headers=result.headers())
    """

    def __init__(
        self,
        limit: int = DEFAULT_LIMIT,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        max_keys: int = DEFAULT_MAX_KEYS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if limit < 1:
            raise ValueError("limit must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        if max_keys < 1:
            raise ValueError("max_keys must be at least 1")

        self.limit = limit
        self.window_seconds = window_seconds
        self.max_keys = max_keys
        self._clock = clock
        self._entries: OrderedDict[str, _WindowEntry] = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def check(self, key: str) -> RateLimitResult:
        """Count one request for ``key`` and report whether it is allowed."""
        with self._lock:
            now = self._clock()
            entry = self._entries.get(key)
            if entry is None:
                self._enforce_ceiling(now)

            if entry is None or entry.reset_at <= now:
                entry = _WindowEntry(count=1, reset_at=now + self.window_seconds)
                # Re-inserting moves a renewed key to the young end
                self._entries.pop(key, None)
                self._entries[key] = entry
                return RateLimitResult(
                    allowed=True,
                    limit=self.limit,
                    remaining=self.limit - 1,
                    reset_at=entry.reset_at,
                )

            entry.count += 1
            if entry.count > self.limit:
                return RateLimitResult(
                    allowed=False,
                    limit=self.limit,
                    remaining=0,
                    reset_at=entry.reset_at,
                )

            return RateLimitResult(
                allowed=True,
                limit=self.limit,
                remaining=self.limit - entry.count,
                reset_at=entry.reset_at,
            )

    def reset(self) -> None:
        """Forget all tracked keys."""
        with self._lock:
            self._entries.clear()

    def _enforce_ceiling(self, now: float) -> None:
        if len(self._entries) < self.max_keys:
            return

        expired = [key for key, entry in self._entries.items() if entry.reset_at <= now]
        for key in expired:
            del self._entries[key]

        # Leave room for the key about to be inserted
        evicted = 0
        while len(self._entries) >= self.max_keys:
            self._entries.popitem(last=False)
            evicted += 1

        if expired or evicted:
            logger.debug(
                "rate_limit_cache_pruned",
                expired=len(expired),
                evicted=evicted,
                size=len(self._entries),
            )
