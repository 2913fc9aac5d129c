"""Rate limiting for upstream API callers.

Provides a sliding-window limiter that admits at most ``max_requests``
per identity within any trailing window.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, Optional

from reports.lib.constants import (
    DEFAULT_RATE_LIMIT_MAX_REQUESTS,
    DEFAULT_RATE_LIMIT_WINDOW_MS,
)
from reports.lib.errors import RateLimitExceeded

logger = logging.getLogger(__name__)

__all__ = ["RateLimiter"]


class RateLimiter:
    """Sliding-window rate limiter keyed by caller identity.

    Thread-safe. Each identity keeps the timestamps of its admitted requests
    inside the trailing window; timestamps that fall out of the window are
    dropped on the next check.

    Example:
        limiter = RateLimiter(max_requests=100, window_seconds=900)

        limiter.check_limit(seller_id)  # raises RateLimitExceeded when spent
        client.create_report(...)
    """

    def __init__(
        self,
        max_requests: int = DEFAULT_RATE_LIMIT_MAX_REQUESTS,
        window_seconds: float = DEFAULT_RATE_LIMIT_WINDOW_MS / 1000.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize rate limiter.

        Args:
            max_requests: Requests admitted per identity within one window
            window_seconds: Length of the trailing window
            clock: Monotonic time source (injectable for tests)
        """
        if max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        self.max_requests = max_requests
        self.window_seconds = float(window_seconds)
        self._clock = clock
        self._requests: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()

    def _prune(self, identity: str, now: float) -> Deque[float]:
        window = self._requests.setdefault(identity, deque())
        boundary = now - self.window_seconds
        while window and window[0] <= boundary:
            window.popleft()
        return window

    def check_limit(self, identity: str) -> None:
        """Admit one request for ``identity`` or raise.

        Raises:
            RateLimitExceeded: With ``retry_after`` seconds until the oldest
                request in the window expires (never more than the window).
        """
        with self._lock:
            now = self._clock()
            window = self._prune(identity, now)

            if len(window) >= self.max_requests:
                retry_after = max(0.0, window[0] + self.window_seconds - now)
                retry_after = min(retry_after, self.window_seconds)
                logger.warning(
                    "Rate limit exceeded for %s: %d requests in %.0fs window",
                    identity,
                    len(window),
                    self.window_seconds,
                )
                raise RateLimitExceeded(identity, retry_after)

            window.append(now)

    def try_acquire(self, identity: str) -> bool:
        """Admit one request without raising.

        Returns:
            True if admitted, False if the window is full
        """
        try:
            self.check_limit(identity)
        except RateLimitExceeded:
            return False
        return True

    def get_stats(self, identity: str) -> Dict[str, float]:
        """Return usage for ``identity`` within the current window."""
        with self._lock:
            now = self._clock()
            window = self._prune(identity, now)
            reset_in = (window[0] + self.window_seconds - now) if window else 0.0
            return {
                "requests": len(window),
                "remaining": max(0, self.max_requests - len(window)),
                "reset_in": max(0.0, reset_in),
            }

    def reset(self, identity: Optional[str] = None) -> None:
        """Forget recorded requests for one identity, or for all of them."""
        with self._lock:
            if identity is None:
                self._requests.clear()
            else:
                self._requests.pop(identity, None)

    def cleanup(self) -> int:
        """Drop identities with no requests left in the window.

        Returns:
            Number of identities removed
        """
        with self._lock:
            now = self._clock()
            empty = [key for key in list(self._requests) if not self._prune(key, now)]
            for key in empty:
                del self._requests[key]
        if empty:
            logger.debug("Rate limiter dropped %d idle identities", len(empty))
        return len(empty)
