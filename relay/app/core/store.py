"""Shared key-value store connection management.

The relay optionally shares rate-limit windows and cached responses across
instances through Redis. Every component asks this module whether the store
is usable; when it is not, they silently fall back to process-local state.
Unavailability is logged once per outage, never raised to callers.
"""

import time
from typing import Any, Callable, Optional

import redis
import redis.asyncio as aioredis

from relay.app.core.config import settings
from relay.app.core.logging import get_logger

logger = get_logger(__name__)

# Errors that mean "the store is unreachable or misbehaving", as opposed to
# programming errors in the caller.
STORE_EXCEPTIONS = (
    redis.ConnectionError,
    redis.TimeoutError,
    redis.RedisError,
    OSError,
)


class SharedStore:
    """Owns the Redis client and its availability state.

    Usage:
        store = SharedStore(redis_url="redis://localhost:6379/0")
        await store.connect()
        client = store.client  # None while degraded to local mode
        ...
        except STORE_EXCEPTIONS as e:
            store.mark_unavailable(e)

    After an outage the store is offered again once ``retry_interval``
    seconds have passed; the next operation acts as the probe.
    """

    def __init__(
        self,
        redis_client: Optional[Any] = None,
        redis_url: Optional[str] = None,
        enabled: Optional[bool] = None,
        retry_interval: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the store wrapper.

        Args:
            redis_client: Pre-built async Redis client (tests inject mocks)
            redis_url: Redis connection URL, defaults to settings.redis_url
            enabled: Whether to use Redis at all (None = settings.redis_enabled)
            retry_interval: Seconds before a failed store is probed again
            clock: Time source, seconds since epoch
        """
        if enabled is None:
            enabled = redis_client is not None or settings.redis_enabled
        self._enabled = enabled
        self._redis = redis_client
        self._redis_url = redis_url or settings.redis_url
        self._retry_interval = (
            settings.redis_retry_interval_seconds
            if retry_interval is None
            else retry_interval
        )
        self._clock = clock
        self._available = enabled
        self._down_since: Optional[float] = None
        self._notice_logged = False

    async def connect(self) -> bool:
        """Create the client and verify it answers PING.

        Returns:
            True when the shared store is usable, False when running local
        """
        if not self._enabled:
            logger.info("Shared store disabled; using in-process state")
            self._available = False
            return False

        try:
            if self._redis is None:
                self._redis = aioredis.from_url(self._redis_url)
            await self._redis.ping()
        except STORE_EXCEPTIONS as e:
            self.mark_unavailable(e)
            return False

        self._mark_available()
        logger.info("Shared store connected; rate limits and cache are distributed")
        return True

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def available(self) -> bool:
        """Whether operations should currently be routed to Redis."""
        if not self._enabled or self._redis is None:
            return False
        if self._available:
            return True
        if (
            self._down_since is not None
            and self._clock() - self._down_since >= self._retry_interval
        ):
            # Half-open: let the next operation probe the store.
            self._down_since = self._clock()
            return True
        return False

    @property
    def client(self) -> Optional[Any]:
        """The Redis client, or None while degraded to local mode."""
        return self._redis if self.available else None

    def mark_unavailable(self, error: BaseException) -> None:
        """Record a store failure and switch callers to local mode."""
        was_available = self._available
        self._available = False
        self._down_since = self._clock()
        if was_available or not self._notice_logged:
            logger.warning(
                f"Shared store unavailable ({type(error).__name__}: {error}); "
                "falling back to in-process state"
            )
            self._notice_logged = True

    def mark_success(self) -> None:
        """Record a successful round trip (ends an outage after a probe)."""
        if not self._available:
            self._mark_available()
            logger.info("Shared store reachable again; resuming distributed mode")

    def _mark_available(self) -> None:
        self._available = True
        self._down_since = None
        self._notice_logged = False

    @property
    def mode(self) -> str:
        if self._enabled and self._redis is not None and self._available:
            return "redis"
        return "memory"

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._redis is not None:
            # aclose() for proper async cleanup in redis-py 5.0+
            await self._redis.aclose()
            self._redis = None
            self._available = False
