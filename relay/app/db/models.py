from datetime import datetime

from sqlalchemy import Boolean, DateTime, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from relay.app.db.base import Base


class CallerKey(Base):
    """A caller credential issued by the relay operator.

    Only the SHA-256 hash of the key is stored. ``daily_limit`` of -1 means
    no daily cap.
    """
    __tablename__ = "caller_keys"
    __table_args__ = (
        Index("idx_caller_keys_owner", "owner_id"),
        Index("idx_caller_keys_prefix", "key_prefix"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[str] = mapped_column(String(64))
    key_hash: Mapped[str] = mapped_column(String(64), unique=True)
    key_prefix: Mapped[str] = mapped_column(String(16))
    tier: Mapped[str] = mapped_column(String(16), default="standard")  # standard | premium
    name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    rate_limit_per_minute: Mapped[int] = mapped_column(Integer, default=1000)
    daily_limit: Mapped[int] = mapped_column(Integer, default=100000)
    is_unlimited: Mapped[bool] = mapped_column(Boolean, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    usage_count: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    last_used_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
