"""Trade-related Pydantic schemas."""

from __future__ import annotations

from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, Field


class TradeCreate(BaseModel):
    """Request schema for a creator opening a trade."""

    ticker: str = Field(min_length=1)
    strike: float
    option_type: str = Field(description="'C' for a call, 'P' for a put")
    expiry_date: date
    contracts: int
    fill_price: float
    option_contract: str | None = None
    is_market_order: bool = True


class TradeSettle(BaseModel):
    """Request schema for a SELL fill against an open trade."""

    trade_id: int
    contracts: int
    fill_price: float


class TradeDelete(BaseModel):
    trade_id: int


class TradeResponse(BaseModel):
    id: int
    user_id: str
    side: str
    contracts: int
    ticker: str
    strike: float
    option_type: str
    expiry_date: datetime
    fill_price: float
    status: str
    price_verified: bool
    option_contract: str | None = None
    is_market_order: bool
    remaining_open_contracts: int
    total_buy_notional: float
    total_sell_notional: float
    net_pnl: float | None = None
    outcome: str | None = None
    broker_order_id: str | None = None
    broker_cost_info: dict[str, Any] | None = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class SettleResponse(BaseModel):
    trade_id: int
    fill_id: int
    contracts: int
    fill_price: float
    remaining_open_contracts: int
    total_sell_notional: float
    net_pnl: float
    status: str
    outcome: str | None = None

    model_config = {"from_attributes": True}
