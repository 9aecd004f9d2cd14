"""Caller profile resolution.

A caller's quotas come from an external credential registry. Lookups are
cached briefly so a burst of requests from one caller does not hammer the
registry; registry failures degrade to the tier defaults.
"""

import time
from collections import OrderedDict
from typing import Callable, Optional, Protocol, Tuple

from relay.app.core.config import settings
from relay.app.core.logging import get_logger
from relay.app.middleware.rate_limit.models import (
    UNLIMITED_DAILY,
    CallerProfile,
    CallerTier,
)

logger = get_logger(__name__)


class CallerRegistry(Protocol):
    """Source of truth for per-credential quotas."""

    async def get_profile(
        self, caller_key: str, credential_hash: str
    ) -> Optional[CallerProfile]:
        """Return the profile for a credential, or None if unknown."""
        ...


def default_profile(caller_key: str, tier: CallerTier) -> CallerProfile:
    """Build the settings-derived profile for ``tier``."""
    if tier == CallerTier.UNLIMITED:
        return CallerProfile(
            caller_key=caller_key,
            tier=tier,
            per_minute=settings.rate_limit_unlimited,
            daily_limit=UNLIMITED_DAILY,
        )
    if tier == CallerTier.PREMIUM:
        return CallerProfile(
            caller_key=caller_key,
            tier=tier,
            per_minute=settings.rate_limit_premium,
            daily_limit=settings.premium_daily_limit,
        )
    return CallerProfile(
        caller_key=caller_key,
        tier=CallerTier.STANDARD,
        per_minute=settings.rate_limit_default,
        daily_limit=settings.standard_daily_limit,
    )


class CallerProfileResolver:
    """Resolves caller profiles with a short-lived lookup cache.

    Cache key format: {credential_hash}; negative results are cached too.
    """

    MAX_CACHED_PROFILES = 10000

    def __init__(
        self,
        registry: Optional[CallerRegistry] = None,
        cache_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the resolver.

        Args:
            registry: External registry; None means tier defaults only
            cache_seconds: Lifetime of a cached lookup
            clock: Monotonic time source
        """
        self._registry = registry
        self._cache_seconds = (
            settings.caller_profile_cache_seconds
            if cache_seconds is None
            else cache_seconds
        )
        self._clock = clock
        self._cache: "OrderedDict[str, Tuple[float, Optional[CallerProfile]]]" = OrderedDict()

    async def resolve(
        self,
        caller_key: str,
        tier: Optional[CallerTier] = None,
        credential_hash: Optional[str] = None,
    ) -> CallerProfile:
        """Return the profile governing ``caller_key``.

        Args:
            caller_key: The rate limit identity
            tier: Tier hint from the request layer, used when the registry
                does not know the caller
            credential_hash: SHA-256 hex of the caller's credential, if any

        Returns:
            The registry profile when found, otherwise the tier default
        """
        fallback = default_profile(caller_key, tier or CallerTier.STANDARD)
        if self._registry is None or not credential_hash:
            return fallback

        now = self._clock()
        cached = self._cache.get(credential_hash)
        if cached is not None and cached[0] > now:
            self._cache.move_to_end(credential_hash)
            return cached[1] or fallback

        try:
            profile = await self._registry.get_profile(caller_key, credential_hash)
        except Exception as e:
            # Registry outages must not turn into request failures.
            logger.warning(
                f"Caller registry lookup failed: {e}. Using {fallback.tier.value} defaults."
            )
            return fallback

        self._cache[credential_hash] = (now + self._cache_seconds, profile)
        self._cache.move_to_end(credential_hash)
        while len(self._cache) > self.MAX_CACHED_PROFILES:
            self._cache.popitem(last=False)

        return profile or fallback

    def invalidate(self, credential_hash: Optional[str] = None) -> None:
        """Forget cached lookups (one credential, or all)."""
        if credential_hash is None:
            self._cache.clear()
        else:
            self._cache.pop(credential_hash, None)
