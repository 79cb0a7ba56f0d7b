"""Build a broker adapter for a stored connection."""

from __future__ import annotations

from copytrader.brokers.alpaca import AlpacaBroker
from copytrader.brokers.base import BrokerAdapter
from copytrader.config import get_config
from copytrader.errors import BrokerError
from copytrader.models.broker_connection import BrokerConnection


def create_broker(connection: BrokerConnection) -> BrokerAdapter:
    """Return an adapter for *connection*. Raises BrokerError for unknown brokers."""
    broker_type = (connection.broker_type or "").lower()
    if broker_type == "alpaca":
        if not connection.api_key or not connection.api_secret:
            raise BrokerError(f"Broker connection {connection.id} has no API credentials")
        config = get_config()
        base_url = (
            config.alpaca_paper_base_url
            if connection.paper_trading
            else config.alpaca_live_base_url
        )
        return AlpacaBroker(
            api_key=connection.api_key,
            api_secret=connection.api_secret,
            base_url=base_url,
            timeout=config.broker_request_timeout_seconds,
        )
    raise BrokerError(f"Unsupported broker type: {connection.broker_type}")
