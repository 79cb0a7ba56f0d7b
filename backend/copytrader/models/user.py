"""User projection model.

Identity is owned by the upstream platform; this table only holds the
settings the copy-trading core reads (AutoIQ mode, default broker, the
creator's follow offer).
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from copytrader.database import Base, utcnow

AUTO_TRADE_MODE = "auto-trade"
NOTIFY_MODE = "notify"


class User(Base):
    """A follower and/or creator known to the copy-trading core."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    alias: Mapped[str | None] = mapped_column(String, nullable=True)
    company_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)

    # AutoIQ (follower side)
    has_autoiq: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    auto_trade_mode: Mapped[str] = mapped_column(
        String, nullable=False, default=NOTIFY_MODE
    )
    default_broker_connection_id: Mapped[int | None] = mapped_column(
        Integer, nullable=True
    )

    # Follow offer (creator side)
    follow_offer_enabled: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    follow_offer_plan_id: Mapped[str | None] = mapped_column(
        String, nullable=True, unique=True
    )
    follow_offer_num_plays: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow
    )

    @property
    def autoiq_enabled(self) -> bool:
        """True when the user pays for AutoIQ and has automatic mode on."""
        return self.has_autoiq and self.auto_trade_mode == AUTO_TRADE_MODE
