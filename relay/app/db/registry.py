"""Database-backed caller registry.

Resolves a caller's credential hash to the quotas stored in ``caller_keys``.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from relay.app.core.logging import get_logger
from relay.app.db.crud import get_caller_key_by_hash
from relay.app.db.models import CallerKey
from relay.app.middleware.rate_limit.models import (
    UNLIMITED_DAILY,
    CallerProfile,
    CallerTier,
)

logger = get_logger(__name__)


def profile_from_record(
    record: CallerKey, caller_key: str, now: Optional[datetime] = None
) -> CallerProfile:
    """Translate a stored key into the quotas it grants.

    Revoked and expired keys get a zero quota, so every request is denied.
    """
    now = now or datetime.now(timezone.utc)
    expires_at = record.expires_at
    if expires_at is not None and expires_at.tzinfo is None:
        # SQLite drops tzinfo on the way back.
        expires_at = expires_at.replace(tzinfo=timezone.utc)

    if not record.is_active or (expires_at is not None and expires_at <= now):
        return CallerProfile(
            caller_key=caller_key,
            tier=CallerTier.STANDARD,
            per_minute=0,
            daily_limit=0,
        )

    if record.is_unlimited:
        tier = CallerTier.UNLIMITED
    else:
        try:
            tier = CallerTier(record.tier)
        except ValueError:
            tier = CallerTier.STANDARD

    daily_limit = record.daily_limit
    if record.is_unlimited or daily_limit is None or daily_limit < 0:
        daily_limit = UNLIMITED_DAILY

    return CallerProfile(
        caller_key=caller_key,
        tier=tier,
        per_minute=record.rate_limit_per_minute,
        daily_limit=daily_limit,
    )


class SqlCallerRegistry:
    """CallerRegistry backed by the ``caller_keys`` table."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    async def get_profile(
        self, caller_key: str, credential_hash: str
    ) -> Optional[CallerProfile]:
        async with self._session_maker() as session:
            record = await get_caller_key_by_hash(session, credential_hash)
        if record is None:
            return None
        return profile_from_record(record, caller_key)
