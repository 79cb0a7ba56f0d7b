"""SQLAlchemy ORM models."""

from copytrader.models.audit_log import AuditLog
from copytrader.models.broker_connection import BrokerConnection
from copytrader.models.follow_purchase import FollowPurchase, FollowStatus
from copytrader.models.followed_trade_action import FollowedTradeAction, TradeActionType
from copytrader.models.trade import Trade, TradeOutcome, TradeSide, TradeStatus
from copytrader.models.trade_fill import TradeFill
from copytrader.models.user import User

__all__ = [
    "User",
    "FollowPurchase",
    "FollowStatus",
    "Trade",
    "TradeSide",
    "TradeStatus",
    "TradeOutcome",
    "TradeFill",
    "FollowedTradeAction",
    "TradeActionType",
    "BrokerConnection",
    "AuditLog",
]
