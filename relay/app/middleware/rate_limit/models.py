"""Rate limiting data models.

This module contains dataclasses for sliding-window state, caller profiles
and admission decisions.
"""

import bisect
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

# Effective limit for the unlimited tier: large enough never to bind, but
# still an ordinary number so the admission algorithm stays uniform.
UNLIMITED_LIMIT = 2**31 - 1

# Daily quota sentinel meaning "no daily cap".
UNLIMITED_DAILY = -1

MINUTE_MS = 60_000
DAY_MS = 86_400_000


class CallerTier(str, Enum):
    """Quota tiers a caller can belong to."""

    STANDARD = "standard"
    PREMIUM = "premium"
    UNLIMITED = "unlimited"


@dataclass(frozen=True)
class CallerProfile:
    """Quotas that apply to one caller key.

    Attributes:
        caller_key: The rate limit identity
        tier: Quota tier
        per_minute: Accepted requests per sliding minute
        daily_limit: Accepted requests per sliding day, or UNLIMITED_DAILY
    """
    caller_key: str
    tier: CallerTier
    per_minute: int
    daily_limit: int = UNLIMITED_DAILY

    @property
    def is_daily_unlimited(self) -> bool:
        return self.daily_limit < 0

    @property
    def effective_per_minute(self) -> int:
        if self.tier == CallerTier.UNLIMITED:
            return UNLIMITED_LIMIT
        return self.per_minute


@dataclass(frozen=True)
class WindowSpec:
    """One sliding window to check: storage key, limit and width."""
    key: str
    limit: int
    window_ms: int


@dataclass
class RateWindow:
    """Local sliding-window state for one key.

    Invariant: every retained timestamp is greater than now - window_ms
    after a prune.
    """
    window_ms: int
    timestamps: List[int] = field(default_factory=list)

    def prune(self, now_ms: int) -> None:
        cutoff = now_ms - self.window_ms
        # Timestamps are kept sorted; drop the expired prefix.
        idx = bisect.bisect_right(self.timestamps, cutoff)
        if idx:
            del self.timestamps[:idx]

    def is_idle(self, now_ms: int) -> bool:
        return not self.timestamps or self.timestamps[-1] <= now_ms - self.window_ms


@dataclass
class RateLimitDecision:
    """Result of an admission check."""
    allowed: bool
    limit: int
    remaining: int
    reset_at_ms: int
    window_ms: int
    retry_after: Optional[int] = None

    @property
    def reset_time(self) -> int:
        """Reset time in epoch seconds (for X-RateLimit-Reset)."""
        return self.reset_at_ms // 1000
