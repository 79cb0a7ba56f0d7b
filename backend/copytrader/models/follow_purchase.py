"""Follow entitlement model."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from sqlalchemy import CheckConstraint, DateTime, Index, Integer, String, text
from sqlalchemy.orm import Mapped, mapped_column

from copytrader.database import Base, utcnow


class FollowStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    REFUNDED = "refunded"


class FollowPurchase(Base):
    """One purchased batch of plays from a follower for a capper.

    ``created_at`` opens the follow window; ``updated_at`` closes it once the
    purchase is completed.
    """

    __tablename__ = "follow_purchases"
    __table_args__ = (
        CheckConstraint("plays_purchased >= 1", name="ck_follow_plays_purchased"),
        CheckConstraint(
            "plays_consumed >= 0 AND plays_consumed <= plays_purchased",
            name="ck_follow_plays_consumed",
        ),
        CheckConstraint(
            "status IN ('active', 'completed', 'refunded')", name="ck_follow_status"
        ),
        # At most one active entitlement per (follower, capper).
        Index(
            "uq_follow_active_pair",
            "follower_user_id",
            "capper_user_id",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
        Index("ix_follow_follower_status", "follower_user_id", "status"),
        Index("ix_follow_capper_status", "capper_user_id", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    follower_user_id: Mapped[str] = mapped_column(String, nullable=False)
    capper_user_id: Mapped[str] = mapped_column(String, nullable=False)
    company_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    plan_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    payment_id: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    plays_purchased: Mapped[int] = mapped_column(Integer, nullable=False)
    plays_consumed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(
        String, nullable=False, default=FollowStatus.ACTIVE.value
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow
    )

    @property
    def remaining_plays(self) -> int:
        return max(0, self.plays_purchased - self.plays_consumed)
