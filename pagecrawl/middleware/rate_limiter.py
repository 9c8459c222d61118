"""Rate limiting for crawl starts.

Each crawl occupies browser sessions for its whole run, so starts are
limited per client with a sliding window.
"""

from collections import defaultdict, deque
from datetime import datetime, timedelta, timezone
from threading import Lock

import logfire

from pagecrawl.config import get_settings


class RateLimiter:
    """Thread-safe in-memory sliding-window limiter keyed by client."""

    def __init__(self, max_requests: int, window_seconds: int):
        """Initialize rate limiter.

        Args:
            max_requests: Maximum crawl starts per window.
            window_seconds: Size of the sliding window in seconds.
        """
        self._starts: dict[str, deque[datetime]] = defaultdict(deque)
        self._max_requests = max_requests
        self._window = timedelta(seconds=window_seconds)
        self._lock = Lock()

    def _prune(self, client_id: str, now: datetime) -> deque[datetime]:
        starts = self._starts[client_id]
        cutoff = now - self._window
        while starts and starts[0] <= cutoff:
            starts.popleft()
        return starts

    def check_rate_limit(self, client_id: str) -> bool:
        """Record a crawl start if the client is within its limit.

        Args:
            client_id: Client identifier (remote host).

        Returns:
            True if allowed, False if the limit is exceeded.
        """
        now = datetime.now(timezone.utc)
        with self._lock:
            starts = self._prune(client_id, now)
            if len(starts) >= self._max_requests:
                logfire.warning(
                    "Crawl start rate limit exceeded",
                    client_id=client_id,
                    start_count=len(starts),
                    max_requests=self._max_requests,
                    window_seconds=self._window.total_seconds(),
                )
                return False
            starts.append(now)
            return True

    def get_remaining_requests(self, client_id: str) -> int:
        now = datetime.now(timezone.utc)
        with self._lock:
            return max(0, self._max_requests - len(self._prune(client_id, now)))

    def get_retry_after(self, client_id: str) -> int:
        """Seconds until the client may start another crawl (0 if it may now)."""
        now = datetime.now(timezone.utc)
        with self._lock:
            starts = self._prune(client_id, now)
            if len(starts) < self._max_requests:
                return 0
            wait = (starts[0] + self._window - now).total_seconds()
            return max(1, int(wait + 0.999))

    def reset(self, client_id: str | None = None) -> None:
        """Reset tracking for one client, or for all when None."""
        with self._lock:
            if client_id:
                self._starts.pop(client_id, None)
            else:
                self._starts.clear()


# Global instance
_rate_limiter: RateLimiter | None = None


def get_rate_limiter() -> RateLimiter:
    """Get the global rate limiter, sized from Settings."""
    global _rate_limiter
    if _rate_limiter is None:
        settings = get_settings()
        _rate_limiter = RateLimiter(
            max_requests=settings.rate_limit_max_crawl_starts,
            window_seconds=settings.rate_limit_window_seconds,
        )
    return _rate_limiter


def reset_rate_limiter() -> None:
    """Reset the global rate limiter (primarily for testing)."""
    global _rate_limiter
    _rate_limiter = None
