"""Caller key CRUD operations."""
import hashlib
import secrets
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from relay.app.db.models import CallerKey

KEY_PREFIX = "llmr"


def hash_key(key: str) -> str:
    """SHA-256 hex digest of a caller key, as stored in ``key_hash``."""
    return hashlib.sha256(key.encode()).hexdigest()


def generate_key() -> str:
    return f"{KEY_PREFIX}_{secrets.token_hex(24)}"


async def create_caller_key(
    session: AsyncSession,
    owner_id: str,
    tier: str = "standard",
    name: Optional[str] = None,
    rate_limit_per_minute: int = 1000,
    daily_limit: int = 100000,
    is_unlimited: bool = False,
    expires_at: Optional[datetime] = None,
) -> Tuple[CallerKey, str]:
    """Issue a new caller key.

    Args:
        session: Database session
        owner_id: Who the key belongs to
        tier: "standard" or "premium"
        name: Optional label
        rate_limit_per_minute: Per-minute quota
        daily_limit: Daily quota, -1 for no cap
        is_unlimited: Grants the unlimited tier
        expires_at: Optional expiry

    Returns:
        (record, plaintext key). The plaintext is not stored anywhere.
    """
    if tier not in ("standard", "premium"):
        raise ValueError(f"Unknown tier: {tier}")

    key = generate_key()
    record = CallerKey(
        owner_id=owner_id,
        key_hash=hash_key(key),
        key_prefix=KEY_PREFIX,
        tier=tier,
        name=name,
        rate_limit_per_minute=rate_limit_per_minute,
        daily_limit=daily_limit,
        is_unlimited=is_unlimited,
        is_active=True,
        usage_count=0,
        created_at=datetime.now(timezone.utc),
        expires_at=expires_at,
    )
    session.add(record)
    await session.flush()
    return record, key


async def get_caller_key_by_hash(
    session: AsyncSession, key_hash: str
) -> Optional[CallerKey]:
    """Find a caller key by its hash.

    Returns:
        CallerKey if found, None otherwise
    """
    result = await session.execute(
        select(CallerKey).where(CallerKey.key_hash == key_hash)
    )
    return result.scalar_one_or_none()


async def list_caller_keys(session: AsyncSession, owner_id: str) -> List[CallerKey]:
    result = await session.execute(
        select(CallerKey).where(CallerKey.owner_id == owner_id).order_by(CallerKey.id)
    )
    return list(result.scalars().all())


async def deactivate_caller_key(session: AsyncSession, key_hash: str) -> bool:
    """Revoke a key. Returns False if no such key exists."""
    result = await session.execute(
        update(CallerKey)
        .where(CallerKey.key_hash == key_hash)
        .values(is_active=False)
    )
    return result.rowcount > 0


async def record_usage(session: AsyncSession, key_hash: str) -> None:
    """Bump usage_count and last_used_at for a key."""
    await session.execute(
        update(CallerKey)
        .where(CallerKey.key_hash == key_hash)
        .values(
            usage_count=CallerKey.usage_count + 1,
            last_used_at=datetime.now(timezone.utc),
        )
    )
