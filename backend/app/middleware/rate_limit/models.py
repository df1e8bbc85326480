"""Rate limiting data models.

This module contains dataclasses for rate limit state and results.
"""

import time
from dataclasses import dataclass, field
from typing import Optional


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""
    allowed: bool
    limit: int
    remaining: int
    reset_time: int
    retry_after: Optional[int] = None
    # Start of the window the request was counted in, used to release it
    window_start: Optional[float] = None

    def seconds_until_reset(self, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        return max(0, int(self.reset_time - now))


@dataclass
class RateLimitEntry:
    """Entry for tracking rate limit state (fixed window)."""
    requests: int = 0
    window_start: float = field(default_factory=time.time)


@dataclass(frozen=True)
class RateLimitRule:
    """Configuration of one limiter instance."""
    name: str
    window_seconds: int
    max_requests: int
    message: str
    skip_successful_requests: bool = False
    standard_headers: bool = True
    legacy_headers: bool = False
