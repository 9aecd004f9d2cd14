"""Admission control for the relay.

This module decides whether a caller may proceed using a true sliding
window: no more than ``limit`` accepted requests inside any trailing
``window_ms`` interval per caller key. Windows live in Redis when the shared
store is reachable and in process memory otherwise.
"""

import hashlib
import math
import time
from typing import Callable, List, Optional, Sequence, Tuple

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from relay.app.core.config import settings
from relay.app.core.logging import get_logger
from relay.app.core.periodic import PeriodicTask
from relay.app.core.store import STORE_EXCEPTIONS, SharedStore
from relay.app.exceptions import RateLimitExceededError

# Re-export models
from relay.app.middleware.rate_limit.models import (
    DAY_MS,
    MINUTE_MS,
    UNLIMITED_DAILY,
    UNLIMITED_LIMIT,
    CallerProfile,
    CallerTier,
    RateLimitDecision,
    RateWindow,
    WindowSpec,
)

# Re-export backends
from relay.app.middleware.rate_limit.backends import (
    InMemorySlidingWindow,
    RedisSlidingWindow,
    SlidingWindowBackend,
)
from relay.app.middleware.rate_limit.profiles import (
    CallerProfileResolver,
    CallerRegistry,
    default_profile,
)

logger = get_logger(__name__)

__all__ = [
    # Models
    "CallerProfile",
    "CallerTier",
    "RateLimitDecision",
    "RateWindow",
    "WindowSpec",
    "UNLIMITED_DAILY",
    "UNLIMITED_LIMIT",
    "MINUTE_MS",
    "DAY_MS",
    # Backends
    "SlidingWindowBackend",
    "InMemorySlidingWindow",
    "RedisSlidingWindow",
    # Profiles
    "CallerRegistry",
    "CallerProfileResolver",
    "default_profile",
    # Main classes
    "AdmissionController",
    "RateLimitMiddleware",
    "caller_identity",
]

MAX_CREDENTIAL_LENGTH = 512


class AdmissionController:
    """Sliding-window admission control with automatic local fallback.

    Usage:
        store = SharedStore()
        await store.connect()
        admission = AdmissionController(store)

        decision = await admission.check("ratelimit:ip:abc", limit=2, window_ms=60000)
        if not decision.allowed:
            raise RateLimitExceededError.from_decision(decision)

    Shared-store errors are absorbed: the failing check is re-evaluated
    against the in-process windows and the store is marked unavailable.
    """

    def __init__(
        self,
        store: Optional[SharedStore] = None,
        profiles: Optional[CallerProfileResolver] = None,
        prefix: str = "ratelimit",
        max_entries: int = InMemorySlidingWindow.DEFAULT_MAX_ENTRIES,
        cleanup_interval: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the admission controller.

        Args:
            store: Shared store wrapper; None runs purely in memory
            profiles: Caller profile resolver for tiered checks
            prefix: Key namespace for window storage
            max_entries: Maximum local windows kept (LRU eviction)
            cleanup_interval: Seconds between idle-window purges
            clock: Time source, seconds since epoch
        """
        self._store = store or SharedStore(enabled=False)
        self._profiles = profiles or CallerProfileResolver()
        self._prefix = prefix
        self._memory = InMemorySlidingWindow(max_entries=max_entries)
        self._clock = clock
        self._cleaner = PeriodicTask(
            "rate limit cleanup",
            cleanup_interval or settings.rate_limit_cleanup_interval_seconds,
            self.cleanup,
        )

    @property
    def mode(self) -> str:
        return self._store.mode

    @property
    def local_backend(self) -> InMemorySlidingWindow:
        return self._memory

    def window_key(self, caller_key: str, window_ms: int) -> str:
        return f"{self._prefix}:{caller_key}:{window_ms}"

    async def check(
        self, caller_key: str, limit: int, window_ms: Optional[int] = None
    ) -> RateLimitDecision:
        """Check and record one request for ``caller_key``.

        Args:
            caller_key: Rate limit identity
            limit: Maximum accepted requests per window (<= 0 denies all)
            window_ms: Window width in milliseconds

        Returns:
            RateLimitDecision; denied requests are not recorded
        """
        if window_ms is None:
            window_ms = settings.rate_limit_window_ms
        spec = WindowSpec(
            key=self.window_key(caller_key, window_ms),
            limit=max(0, limit),
            window_ms=window_ms,
        )
        return await self._evaluate([spec])

    async def check_caller(
        self,
        caller_key: str,
        tier: Optional[CallerTier] = None,
        credential_hash: Optional[str] = None,
    ) -> RateLimitDecision:
        """Check a caller against its profile's per-minute and daily quotas.

        Both windows are checked and recorded as one atomic unit, so a
        request refused by either consumes neither.
        """
        profile = await self._profiles.resolve(
            caller_key, tier=tier, credential_hash=credential_hash
        )
        window_ms = settings.rate_limit_window_ms
        windows = [
            WindowSpec(
                key=self.window_key(caller_key, window_ms),
                limit=max(0, profile.effective_per_minute),
                window_ms=window_ms,
            )
        ]
        if profile.tier != CallerTier.UNLIMITED and not profile.is_daily_unlimited:
            windows.append(
                WindowSpec(
                    key=self.window_key(caller_key, DAY_MS),
                    limit=profile.daily_limit,
                    window_ms=DAY_MS,
                )
            )
        return await self._evaluate(windows)

    async def _acquire(
        self, windows: Sequence[WindowSpec], now_ms: int
    ) -> Tuple[bool, List[int]]:
        client = self._store.client
        if client is not None:
            try:
                result = await RedisSlidingWindow(client).acquire(windows, now_ms)
                self._store.mark_success()
                return result
            except STORE_EXCEPTIONS as e:
                self._store.mark_unavailable(e)
        return await self._memory.acquire(windows, now_ms)

    async def _evaluate(self, windows: Sequence[WindowSpec]) -> RateLimitDecision:
        now_ms = int(self._clock() * 1000)
        allowed, counts = await self._acquire(windows, now_ms)

        if allowed:
            remaining = [
                max(0, spec.limit - count - 1) for spec, count in zip(windows, counts)
            ]
            # Report the window closest to binding.
            idx = min(range(len(windows)), key=lambda i: remaining[i])
            spec = windows[idx]
            return RateLimitDecision(
                allowed=True,
                limit=spec.limit,
                remaining=min(spec.limit, remaining[idx]),
                reset_at_ms=now_ms + spec.window_ms,
                window_ms=spec.window_ms,
            )

        idx = next(
            (i for i, (spec, count) in enumerate(zip(windows, counts)) if count >= spec.limit),
            0,
        )
        spec = windows[idx]
        return RateLimitDecision(
            allowed=False,
            limit=spec.limit,
            remaining=0,
            reset_at_ms=now_ms + spec.window_ms,
            window_ms=spec.window_ms,
            retry_after=max(1, math.ceil(spec.window_ms / 1000)),
        )

    async def cleanup(self) -> int:
        """Clean up idle local windows."""
        return await self._memory.cleanup(int(self._clock() * 1000))

    async def start(self) -> None:
        """Purge idle local windows periodically."""
        await self._cleaner.start()

    async def stop(self) -> None:
        await self._cleaner.stop()


def _hash(value: str) -> str:
    return hashlib.sha256(value.encode()).hexdigest()


def caller_identity(request: Request) -> Tuple[str, Optional[str], CallerTier]:
    """Derive the rate limit identity for a request.

    Uses the API credential if present, otherwise the client IP. Both are
    hashed with SHA-256 so raw keys never reach memory or Redis keys.

    Returns:
        (caller_key, credential_hash, tier_hint)

    Raises:
        ValueError: If the credential exceeds MAX_CREDENTIAL_LENGTH
    """
    credential = request.headers.get("X-API-Key", "").strip()
    if not credential:
        auth = request.headers.get("Authorization", "")
        if auth.startswith("Bearer "):
            credential = auth[7:].strip()

    if credential:
        if len(credential) > MAX_CREDENTIAL_LENGTH:
            raise ValueError(
                f"API key too long (max {MAX_CREDENTIAL_LENGTH} characters)"
            )
        credential_hash = _hash(credential)
        # 32 hex chars (128 bits) is plenty for a window key.
        tier = CallerTier.PREMIUM if len(credential) > 20 else CallerTier.STANDARD
        return f"apikey:{credential_hash[:32]}", credential_hash, tier

    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        client_ip = forwarded.split(",")[0].strip()
    else:
        client_ip = request.client.host if request.client else "unknown"
    return f"ip:{_hash(client_ip)[:32]}", None, CallerTier.STANDARD


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Middleware to enforce admission control on requests.

    Limits are applied per API credential if available, otherwise per IP.
    Denials become 429 responses with Retry-After; allowed responses carry
    X-RateLimit-* headers.
    """

    def __init__(
        self,
        app,
        admission: AdmissionController,
        exempt_paths: Sequence[str] = ("/health",),
    ):
        super().__init__(app)
        self.admission = admission
        self.exempt_paths = set(exempt_paths)

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        """Process request with admission control."""
        if request.url.path in self.exempt_paths:
            return await call_next(request)

        try:
            caller_key, credential_hash, tier = caller_identity(request)
        except ValueError as e:
            return JSONResponse(status_code=400, content={"error": "bad_request", "message": str(e)})

        decision = await self.admission.check_caller(
            caller_key, tier=tier, credential_hash=credential_hash
        )

        if not decision.allowed:
            error = RateLimitExceededError.from_decision(decision)
            logger.info(
                "Request denied by rate limiter",
                extra={"caller_key": caller_key, "limit": decision.limit},
            )
            return JSONResponse(
                status_code=error.status_code,
                content=error.to_response(),
                headers=error.headers(),
            )

        request.state.caller_key = caller_key
        request.state.rate_limit = decision

        response = await call_next(request)

        response.headers["X-RateLimit-Limit"] = str(decision.limit)
        response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
        response.headers["X-RateLimit-Reset"] = str(decision.reset_time)

        return response
