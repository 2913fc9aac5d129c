"""Exponential backoff policy.

Pure computation of how long to wait before attempt ``n + 1``; callers
decide how to wait.
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Any, Dict

from reports.lib.constants import (
    DEFAULT_BACKOFF_MULTIPLIER,
    DEFAULT_RETRY_BASE_DELAY_SECONDS,
    DEFAULT_RETRY_MAX_DELAY_SECONDS,
    MAX_WAIT_SECONDS,
)

__all__ = ["BackoffPolicy", "cap_wait"]


def cap_wait(seconds: float) -> float:
    """Clamp a wait to ``[0, MAX_WAIT_SECONDS]``."""
    return max(0.0, min(float(seconds), MAX_WAIT_SECONDS))


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff bounded by ``max_delay`` and the global wait cap.

    Example:
        >>> policy = BackoffPolicy(base_delay=30, max_delay=120)
        >>> [policy.compute_delay(n) for n in (1, 2, 3, 4)]
        [30.0, 60.0, 120.0, 120.0]
    """

    base_delay: float = DEFAULT_RETRY_BASE_DELAY_SECONDS
    max_delay: float = DEFAULT_RETRY_MAX_DELAY_SECONDS
    multiplier: float = DEFAULT_BACKOFF_MULTIPLIER
    jitter: float = 0.0  # fraction of delay as jitter (0.0-1.0)

    def __post_init__(self) -> None:
        if self.base_delay < 0:
            raise ValueError("base_delay must be >= 0")
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")
        if not 0.0 <= self.jitter <= 1.0:
            raise ValueError("jitter must be between 0.0 and 1.0")

    def compute_delay(self, attempt: int) -> float:
        """Return the wait in seconds after failed attempt ``attempt`` (1-based)."""
        exponent = min(max(1, attempt) - 1, 64)
        delay = min(self.max_delay, self.base_delay * (self.multiplier ** exponent))
        if self.jitter > 0:
            span = delay * self.jitter
            delay = random.uniform(delay - span, delay + span)
        return cap_wait(delay)

    def __call__(self, attempt: int) -> float:
        return self.compute_delay(attempt)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "base_delay": self.base_delay,
            "max_delay": self.max_delay,
            "multiplier": self.multiplier,
            "jitter": self.jitter,
        }
