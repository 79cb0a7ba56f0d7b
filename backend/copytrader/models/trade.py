"""Option trade (position) model."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Float, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from copytrader.database import Base, utcnow

# Option premiums are quoted per share; one contract covers 100 shares.
CONTRACT_MULTIPLIER = 100


class TradeSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class TradeStatus(str, Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"
    REJECTED = "REJECTED"


class TradeOutcome(str, Enum):
    WIN = "WIN"
    LOSS = "LOSS"
    BREAKEVEN = "BREAKEVEN"


def notional(contracts: int, price: float) -> float:
    """Dollar value of *contracts* option contracts at *price* per share."""
    return contracts * price * CONTRACT_MULTIPLIER


def outcome_for(net_pnl: float) -> TradeOutcome:
    if net_pnl > 0:
        return TradeOutcome.WIN
    if net_pnl < 0:
        return TradeOutcome.LOSS
    return TradeOutcome.BREAKEVEN


class Trade(Base):
    """A single-leg option position owned by a creator or a follower."""

    __tablename__ = "trades"
    __table_args__ = (
        Index("ix_trades_user_created", "user_id", "created_at"),
        Index("ix_trades_user_status", "user_id", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    side: Mapped[str] = mapped_column(String, nullable=False, default=TradeSide.BUY.value)
    contracts: Mapped[int] = mapped_column(Integer, nullable=False)
    ticker: Mapped[str] = mapped_column(String, nullable=False, index=True)
    strike: Mapped[float] = mapped_column(Float, nullable=False)
    option_type: Mapped[str] = mapped_column(String, nullable=False)
    expiry_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    fill_price: Mapped[float] = mapped_column(Float, nullable=False)
    status: Mapped[str] = mapped_column(
        String, nullable=False, default=TradeStatus.OPEN.value
    )
    price_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    option_contract: Mapped[str | None] = mapped_column(String, nullable=True)
    is_market_order: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    remaining_open_contracts: Mapped[int] = mapped_column(Integer, nullable=False)
    total_buy_notional: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    total_sell_notional: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    net_pnl: Mapped[float | None] = mapped_column(Float, nullable=True)
    outcome: Mapped[str | None] = mapped_column(String, nullable=True)

    # Broker linkage (follower trades opened through AutoIQ)
    broker_connection_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    broker_order_id: Mapped[str | None] = mapped_column(String, nullable=True)
    broker_order_details: Mapped[dict[str, Any] | None] = mapped_column(
        JSON, nullable=True
    )
    broker_cost_info: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    # Optimistic lock: concurrent settlements of the same trade cannot both commit.
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def is_open(self) -> bool:
        return self.status == TradeStatus.OPEN.value
