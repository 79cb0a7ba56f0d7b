"""Broker adapters used to place and confirm follower option orders."""

from copytrader.brokers.base import (
    AccountInfo,
    BrokerAdapter,
    OrderDetail,
    OrderResult,
    OrderStatus,
    estimate_cost_info,
    to_occ_symbol,
)
from copytrader.brokers.factory import create_broker

__all__ = [
    "AccountInfo",
    "BrokerAdapter",
    "OrderDetail",
    "OrderResult",
    "OrderStatus",
    "create_broker",
    "estimate_cost_info",
    "to_occ_symbol",
]
