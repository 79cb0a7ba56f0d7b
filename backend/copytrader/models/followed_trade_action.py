"""Follower follow/fade decision model."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from sqlalchemy import DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from copytrader.database import Base, utcnow


class TradeActionType(str, Enum):
    FOLLOW = "follow"
    FADE = "fade"


class FollowedTradeAction(Base):
    """Links a creator trade to a follower's decision on it.

    The (follower, original trade) uniqueness is what keeps manual follows and
    AutoIQ replication from both copying the same trade.
    """

    __tablename__ = "followed_trade_actions"
    __table_args__ = (
        UniqueConstraint(
            "follower_user_id", "original_trade_id", name="uq_action_follower_trade"
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    follower_user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    original_trade_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("trades.id"), nullable=False, index=True
    )
    action: Mapped[str] = mapped_column(String, nullable=False)
    followed_trade_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("trades.id"), nullable=True, index=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
