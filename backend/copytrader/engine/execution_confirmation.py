"""Wait for a broker-confirmed execution price.

Nothing about a follower trade may be written until this returns. A positive
price in the placement response is used as-is; otherwise the order is polled
until it fills, reaches a terminal non-fill status, or the deadline passes.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime

from copytrader.brokers.base import BrokerAdapter, OrderResult
from copytrader.database import utcnow
from copytrader.errors import BrokerError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConfirmedFill:
    price: float
    order_id: str | None
    executed_at: datetime


class ExecutionConfirmer:
    """Resolve an order placement into a confirmed fill price."""

    def __init__(
        self,
        poll_interval: float = 0.5,
        timeout: float = 90.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.poll_interval = poll_interval
        self.timeout = timeout
        self._sleep = sleep

    async def confirm(self, broker: BrokerAdapter, result: OrderResult) -> ConfirmedFill:
        """Return the confirmed fill for *result* or raise BrokerError."""
        if not result.success:
            raise BrokerError(result.error or "Order placement failed")
        if result.execution_price is not None and result.execution_price > 0:
            return ConfirmedFill(
                result.execution_price, result.order_id, result.executed_at or utcnow()
            )
        if not result.order_id:
            raise BrokerError("Order placed without an id or execution price")

        try:
            async with asyncio.timeout(self.timeout):
                return await self._poll(broker, result.order_id)
        except TimeoutError:
            raise BrokerError(
                f"Order {result.order_id} not filled within {self.timeout:g}s"
            ) from None

    async def _poll(self, broker: BrokerAdapter, order_id: str) -> ConfirmedFill:
        attempts = 0
        while True:
            attempts += 1
            try:
                detail = await broker.poll_order_detail(order_id)
            except Exception as exc:
                # Transport failures retry until the deadline
                logger.debug("Polling order %s failed (attempt %d): %s", order_id, attempts, exc)
            else:
                if detail.execution_price is not None and detail.execution_price > 0:
                    logger.debug("Order %s confirmed after %d polls", order_id, attempts)
                    return ConfirmedFill(
                        detail.execution_price, order_id, detail.executed_at or utcnow()
                    )
                if detail.status.is_terminal_non_fill:
                    raise BrokerError(f"Order {order_id} ended {detail.status.value}")
            await self._sleep(self.poll_interval)
