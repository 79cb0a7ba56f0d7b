"""Linked brokerage account model."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from copytrader.database import Base, utcnow


class BrokerConnection(Base):
    """A follower's brokerage credentials and account reference."""

    __tablename__ = "broker_connections"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    broker_type: Mapped[str] = mapped_column(String, nullable=False, default="alpaca")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    account_id: Mapped[str | None] = mapped_column(String, nullable=True)
    authorization_id: Mapped[str | None] = mapped_column(String, nullable=True)
    api_key: Mapped[str | None] = mapped_column(String, nullable=True)
    api_secret: Mapped[str | None] = mapped_column(String, nullable=True)
    paper_trading: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    broker_name: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow
    )

    @property
    def is_usable(self) -> bool:
        """Active and carrying both an account and an authorization id."""
        return bool(self.is_active and self.account_id and self.authorization_id)
