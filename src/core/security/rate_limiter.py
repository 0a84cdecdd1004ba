"""
Fixed-window rate limiter.

Counts requests per caller identifier in fixed windows. Bursts at a window
boundary can let up to twice the quota through; the limiter is meant to
dampen abuse, not to account quotas exactly.
"""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from src.core.config import settings

logger = logging.getLogger(__name__)

DEFAULT_MAX_REQUESTS = settings.RATE_LIMIT_MAX_REQUESTS
DEFAULT_WINDOW_MS = settings.RATE_LIMIT_WINDOW_MS


def _now_ms() -> float:
    return time.time() * 1000


@dataclass
class RateLimitWindow:
    """Counter state for one identifier"""
    count: int
    reset_at_ms: float


class FixedWindowRateLimiter:
    """
    Process-wide fixed-window limiter keyed by identifier.

    The read-check-increment in ``allow`` runs under a lock, so two
    concurrent callers can never both observe "under limit" for the last
    free slot of a window.
    """

    def __init__(self, clock: Optional[Callable[[], float]] = None):
        """
        Args:
            clock: Returns the current wall clock in milliseconds
        """
        self._clock = clock or _now_ms
        self._windows: Dict[str, RateLimitWindow] = {}
        self._lock = threading.Lock()
        self._cleanup_task: Optional[asyncio.Task] = None

        self._allowed_count = 0
        self._denied_count = 0

    def allow(
        self,
        identifier: str,
        max_requests: int = DEFAULT_MAX_REQUESTS,
        window_ms: int = DEFAULT_WINDOW_MS
    ) -> bool:
        """
        Record one request for ``identifier`` and decide whether it may pass.

        Returns:
            True if the request is within the quota of the current window
        """
        with self._lock:
            now = self._clock()
            window = self._windows.get(identifier)

            if window is None or now > window.reset_at_ms:
                self._windows[identifier] = RateLimitWindow(count=1, reset_at_ms=now + window_ms)
                self._allowed_count += 1
                return True

            if window.count >= max_requests:
                self._denied_count += 1
                return False

            window.count += 1
            self._allowed_count += 1
            return True

    def get_window(self, identifier: str) -> Optional[RateLimitWindow]:
        """Return a copy of the current window for ``identifier``, if any"""
        with self._lock:
            window = self._windows.get(identifier)
            if window is None:
                return None
            return RateLimitWindow(count=window.count, reset_at_ms=window.reset_at_ms)

    def retry_after_seconds(self, identifier: str) -> int:
        """Seconds until the identifier's window resets (at least 1)"""
        window = self.get_window(identifier)
        if window is None:
            return 0
        remaining_ms = window.reset_at_ms - self._clock()
        return max(1, int(remaining_ms // 1000) + 1)

    def reset(self, identifier: Optional[str] = None) -> None:
        """Forget one identifier, or every identifier when none is given"""
        with self._lock:
            if identifier is None:
                self._windows.clear()
            else:
                self._windows.pop(identifier, None)

    def purge_expired(self) -> int:
        """
        Drop windows whose reset time has passed.

        Purging never changes ``allow`` decisions: an expired window would be
        replaced by a fresh one on the next request anyway.
        """
        with self._lock:
            now = self._clock()
            expired = [key for key, window in self._windows.items() if now > window.reset_at_ms]
            for key in expired:
                del self._windows[key]

        if expired:
            logger.debug(f"Purged {len(expired)} expired rate limit windows")
        return len(expired)

    def start_cleanup(self, interval_seconds: float = 300) -> None:
        """Start the periodic purge task on the running event loop"""
        if self._cleanup_task is None:
            self._cleanup_task = asyncio.create_task(self._cleanup_loop(interval_seconds))

    async def _cleanup_loop(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            self.purge_expired()

    def dispose(self) -> None:
        """Stop the cleanup task and drop all state"""
        if self._cleanup_task:
            self._cleanup_task.cancel()
            self._cleanup_task = None
        self.reset()

    def get_metrics(self) -> Dict[str, int]:
        with self._lock:
            return {
                "tracked_identifiers": len(self._windows),
                "allowed": self._allowed_count,
                "denied": self._denied_count,
            }


# Global instance shared by every caller in the process
rate_limiter = FixedWindowRateLimiter()


def check_rate_limit(
    identifier: str,
    max_requests: int = DEFAULT_MAX_REQUESTS,
    window_ms: int = DEFAULT_WINDOW_MS
) -> bool:
    """Apply the process-wide limiter to ``identifier``"""
    return rate_limiter.allow(identifier, max_requests, window_ms)
