"""Pydantic schemas for API request/response validation."""

from copytrader.schemas.follows import (
    FeedItemResponse,
    FeedResponse,
    FollowPurchaseResponse,
    TradeActionRequest,
    TradeActionResponse,
)
from copytrader.schemas.trades import SettleResponse, TradeCreate, TradeResponse, TradeSettle
from copytrader.schemas.users import AutoIQResponse, AutoIQUpdate
from copytrader.schemas.webhooks import FollowMetadata, PaymentData, WebhookPayload

__all__ = [
    "FeedItemResponse",
    "FeedResponse",
    "FollowPurchaseResponse",
    "TradeActionRequest",
    "TradeActionResponse",
    "TradeCreate",
    "TradeResponse",
    "TradeSettle",
    "SettleResponse",
    "AutoIQUpdate",
    "AutoIQResponse",
    "FollowMetadata",
    "PaymentData",
    "WebhookPayload",
]
