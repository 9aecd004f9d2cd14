"""Sliding-window storage backends.

Both backends implement the same contract: given one or more windows, prune
each, count what remains, and record the current request in every window
only if all of them still have room. The whole step is atomic per backend.
"""

import asyncio
import bisect
import uuid
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Any, List, Sequence, Tuple

from relay.app.core.logging import get_logger
from relay.app.middleware.rate_limit.models import RateWindow, WindowSpec
from relay.app.middleware.rate_limit.redis_lua import SLIDING_WINDOW_SCRIPT

logger = get_logger(__name__)

# Extra lifetime given to window keys beyond the window width.
EXPIRY_SLACK_MS = 1000


class SlidingWindowBackend(ABC):
    """Abstract base class for sliding-window backends."""

    @abstractmethod
    async def acquire(
        self, windows: Sequence[WindowSpec], now_ms: int
    ) -> Tuple[bool, List[int]]:
        """Atomically check and record a request across ``windows``.

        Args:
            windows: Windows that must all have room for the request
            now_ms: Current time in epoch milliseconds

        Returns:
            (allowed, counts) where counts are per-window entry counts
            observed before this request was recorded
        """
        pass

    @abstractmethod
    async def cleanup(self, now_ms: int) -> int:
        """Drop idle windows. Returns the number removed."""
        pass


class InMemorySlidingWindow(SlidingWindowBackend):
    """Process-local sliding windows.

    Used when the shared store is unreachable. Limits hold per instance
    only; a horizontally scaled fleet may admit up to N times the limit.

    Memory is bounded by ``max_entries`` windows; when exceeded the least
    recently checked 20% are evicted.
    """

    DEFAULT_MAX_ENTRIES = 10000

    def __init__(self, max_entries: int = DEFAULT_MAX_ENTRIES):
        self._max_entries = max_entries
        self._windows: "OrderedDict[str, RateWindow]" = OrderedDict()
        self._lock = asyncio.Lock()

    def _enforce_lru_limit(self) -> None:
        if len(self._windows) > self._max_entries:
            remove_count = max(1, int(self._max_entries * 0.2))
            for _ in range(remove_count):
                self._windows.popitem(last=False)

    def _window(self, spec: WindowSpec) -> RateWindow:
        window = self._windows.get(spec.key)
        if window is None:
            window = RateWindow(window_ms=spec.window_ms)
            self._windows[spec.key] = window
        else:
            self._windows.move_to_end(spec.key)
        return window

    async def acquire(
        self, windows: Sequence[WindowSpec], now_ms: int
    ) -> Tuple[bool, List[int]]:
        async with self._lock:
            state = [self._window(spec) for spec in windows]
            counts = []
            for window in state:
                window.prune(now_ms)
                counts.append(len(window.timestamps))

            allowed = all(
                count < spec.limit for count, spec in zip(counts, windows)
            )
            if allowed:
                for window in state:
                    bisect.insort(window.timestamps, now_ms)

            self._enforce_lru_limit()
            return allowed, counts

    async def cleanup(self, now_ms: int) -> int:
        async with self._lock:
            idle = [
                key for key, window in self._windows.items()
                if window.is_idle(now_ms)
            ]
            for key in idle:
                del self._windows[key]
            return len(idle)

    def timestamps(self, key: str) -> List[int]:
        """Copy of the recorded timestamps for ``key`` (for inspection)."""
        window = self._windows.get(key)
        return list(window.timestamps) if window else []

    def __len__(self) -> int:
        return len(self._windows)


class RedisSlidingWindow(SlidingWindowBackend):
    """Redis-backed distributed sliding windows.

    Each window is a sorted set scored by epoch milliseconds. The check runs
    as a single Lua script, so the fleet shares one exact window per key.
    Store errors propagate to the caller, which decides how to degrade.
    """

    def __init__(self, redis_client: Any):
        self._redis = redis_client

    @staticmethod
    def _member(now_ms: int) -> str:
        # Timestamps alone collide under high QPS.
        return f"{now_ms}-{uuid.uuid4().hex[:12]}"

    async def acquire(
        self, windows: Sequence[WindowSpec], now_ms: int
    ) -> Tuple[bool, List[int]]:
        args: List[Any] = [now_ms, self._member(now_ms), EXPIRY_SLACK_MS]
        for spec in windows:
            args.extend([spec.window_ms, spec.limit])

        result = await self._redis.eval(
            SLIDING_WINDOW_SCRIPT,
            len(windows),
            *[spec.key for spec in windows],
            *args,
        )
        allowed = bool(int(result[0]))
        counts = [int(c) for c in result[1:]]
        return allowed, counts

    async def cleanup(self, now_ms: int) -> int:
        """No-op for Redis (keys expire automatically)."""
        return 0
