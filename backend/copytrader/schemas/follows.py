"""Follow feed and trade action schemas."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel

from copytrader.schemas.trades import TradeResponse


class FollowPurchaseResponse(BaseModel):
    id: int
    follower_user_id: str
    capper_user_id: str
    company_id: str
    plan_id: str | None = None
    plays_purchased: int
    plays_consumed: int
    remaining_plays: int
    status: str
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class FeedItemResponse(BaseModel):
    trade: TradeResponse
    follow_purchase_id: int | None = None
    remaining_plays: int
    action: str | None = None
    followed_trade_id: int | None = None

    model_config = {"from_attributes": True}


class FeedResponse(BaseModel):
    items: list[FeedItemResponse]
    follows: list[FollowPurchaseResponse]
    page: int
    page_size: int
    total: int
    total_pages: int
    has_more: bool

    model_config = {"from_attributes": True}


class TradeActionRequest(BaseModel):
    trade_id: int
    action: str


class TradeActionResponse(BaseModel):
    action: str
    followed_trade_id: int | None = None
    already_acted: bool = False

    model_config = {"from_attributes": True}
