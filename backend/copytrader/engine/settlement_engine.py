"""Settlement engine.

Applies SELL fills to trades and mirrors a creator's fill onto every follower
trade that was opened through a broker. The fill, the aggregates and the status
change commit together; ``Trade.version`` turns concurrent fills on the same
trade into a stale-write that is retried from a fresh read.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from copytrader.brokers.base import BrokerAdapter, commission_of, estimate_cost_info
from copytrader.brokers.factory import create_broker
from copytrader.engine.execution_confirmation import ExecutionConfirmer
from copytrader.engine.worker_pool import (
    FollowerResult,
    JobRunner,
    failed,
    fan_out,
    skipped,
    succeeded,
)
from copytrader.errors import (
    BrokerError,
    CopyTraderError,
    NotFoundError,
    TransactionError,
    ValidationError,
)
from copytrader.models.broker_connection import BrokerConnection
from copytrader.models.followed_trade_action import FollowedTradeAction, TradeActionType
from copytrader.models.trade import Trade, TradeSide, TradeStatus, notional, outcome_for
from copytrader.models.trade_fill import TradeFill
from copytrader.models.user import User
from copytrader.services.audit_service import AuditService
from copytrader.services.notification_service import NotificationService

logger = logging.getLogger(__name__)

BrokerFactory = Callable[[BrokerConnection], BrokerAdapter]

MAX_COMMIT_ATTEMPTS = 3


@dataclass(frozen=True)
class SettledTrade:
    """State of a trade right after a fill was applied."""

    trade_id: int
    fill_id: int
    contracts: int
    fill_price: float
    remaining_open_contracts: int
    total_sell_notional: float
    net_pnl: float
    status: str
    outcome: str | None

    @property
    def closed(self) -> bool:
        return self.status == TradeStatus.CLOSED.value


async def _write_sell_fill(
    session: AsyncSession,
    trade_id: int,
    contracts: int,
    price: float,
    broker_order_id: str | None,
    cost_info: dict[str, Any] | None,
) -> SettledTrade:
    trade = await session.get(Trade, trade_id, populate_existing=True)
    if trade is None:
        raise NotFoundError("Trade not found")
    if not trade.is_open:
        raise ValidationError(f"Trade {trade_id} is not open")
    if contracts > trade.remaining_open_contracts:
        raise ValidationError(
            f"Cannot sell {contracts} contracts; only "
            f"{trade.remaining_open_contracts} remain open"
        )

    fill = TradeFill(
        trade_id=trade_id,
        side=TradeSide.SELL.value,
        contracts=contracts,
        fill_price=price,
        notional=notional(contracts, price),
        broker_order_id=broker_order_id,
        broker_cost_info=cost_info,
    )
    session.add(fill)
    await session.flush()

    total_sell = await session.scalar(
        select(func.coalesce(func.sum(TradeFill.notional), 0.0)).where(
            TradeFill.trade_id == trade_id, TradeFill.side == TradeSide.SELL.value
        )
    )
    trade.total_sell_notional = float(total_sell)
    trade.net_pnl = trade.total_sell_notional - trade.total_buy_notional
    trade.remaining_open_contracts -= contracts
    trade.outcome = outcome_for(trade.net_pnl).value
    if trade.remaining_open_contracts == 0:
        trade.status = TradeStatus.CLOSED.value
    await session.commit()

    return SettledTrade(
        trade_id=trade.id,
        fill_id=fill.id,
        contracts=contracts,
        fill_price=price,
        remaining_open_contracts=trade.remaining_open_contracts,
        total_sell_notional=trade.total_sell_notional,
        net_pnl=trade.net_pnl,
        status=trade.status,
        outcome=trade.outcome,
    )


class SettlementEngine:
    """Writes SELL fills and propagates creator fills to followers."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        notifier: NotificationService,
        audit: AuditService,
        jobs: JobRunner,
        confirmer: ExecutionConfirmer,
        *,
        broker_factory: BrokerFactory = create_broker,
        concurrency: int = 10,
    ) -> None:
        self._session_factory = session_factory
        self._notifier = notifier
        self._audit = audit
        self._jobs = jobs
        self._confirmer = confirmer
        self._broker_factory = broker_factory
        self._concurrency = concurrency

    async def apply_sell_fill(
        self,
        trade_id: int,
        contracts: int,
        price: float,
        broker_order_id: str | None = None,
        cost_info: dict[str, Any] | None = None,
    ) -> SettledTrade:
        """Append a SELL fill and recompute the trade in one transaction.

        Raises TransactionError if the write cannot be committed; nothing is
        persisted in that case.
        """
        if contracts < 1:
            raise ValidationError("contracts must be at least 1")
        if price < 0:
            raise ValidationError("fill price cannot be negative")

        for attempt in range(1, MAX_COMMIT_ATTEMPTS + 1):
            async with self._session_factory() as session:
                try:
                    return await _write_sell_fill(
                        session, trade_id, contracts, price, broker_order_id, cost_info
                    )
                except StaleDataError:
                    await session.rollback()
                    logger.info(
                        "Trade %d changed concurrently, retrying fill (attempt %d/%d)",
                        trade_id,
                        attempt,
                        MAX_COMMIT_ATTEMPTS,
                    )
                except CopyTraderError:
                    await session.rollback()
                    raise
                except SQLAlchemyError as exc:
                    await session.rollback()
                    raise TransactionError(
                        f"Settlement of trade {trade_id} rolled back: {exc}"
                    ) from exc
        raise TransactionError(
            f"Settlement of trade {trade_id} kept conflicting with concurrent fills"
        )

    def on_trade_settled(
        self, creator_trade_id: int, fill_contracts: int, fill_price: float
    ) -> None:
        """Schedule follower settlement in the background. Never raises."""
        self._jobs.spawn(
            self.settle_followers(creator_trade_id, fill_contracts, fill_price),
            name=f"settle-{creator_trade_id}",
        )

    async def settle_followers(
        self, creator_trade_id: int, fill_contracts: int, fill_price: float
    ) -> list[FollowerResult]:
        """Mirror a creator SELL fill onto every open follower trade."""
        async with self._session_factory() as session:
            rows = (
                await session.execute(
                    select(Trade, User)
                    .join(
                        FollowedTradeAction,
                        FollowedTradeAction.followed_trade_id == Trade.id,
                    )
                    .outerjoin(User, User.id == Trade.user_id)
                    .where(
                        FollowedTradeAction.original_trade_id == creator_trade_id,
                        FollowedTradeAction.action == TradeActionType.FOLLOW.value,
                        Trade.status == TradeStatus.OPEN.value,
                    )
                    .order_by(Trade.id)
                )
            ).all()

        results: list[FollowerResult] = []
        candidates: list[tuple[Trade, User]] = []
        for trade, user in rows:
            if trade.broker_connection_id is None:
                results.append(skipped(trade.user_id, "followed manually"))
            elif user is None or not user.autoiq_enabled:
                results.append(skipped(trade.user_id, "automatic mode disabled"))
            elif min(fill_contracts, trade.remaining_open_contracts) <= 0:
                results.append(skipped(trade.user_id, "nothing left to settle"))
            else:
                candidates.append((trade, user))

        results += await fan_out(
            candidates,
            lambda pair: self._settle_one(pair[0], fill_contracts, fill_price),
            key=lambda pair: pair[0].user_id,
            concurrency=self._concurrency,
            label=f"settle trade {creator_trade_id}",
        )
        return results

    async def _settle_one(
        self, trade: Trade, fill_contracts: int, creator_price: float
    ) -> FollowerResult:
        follower_id = trade.user_id
        contracts = min(fill_contracts, trade.remaining_open_contracts)

        async with self._session_factory() as session:
            connection = await session.get(BrokerConnection, trade.broker_connection_id)
        if connection is None or not connection.is_usable:
            return failed(follower_id, "broker connection no longer usable")

        try:
            broker = self._broker_factory(connection)
        except BrokerError as exc:
            return failed(follower_id, str(exc))
        try:
            result = await broker.place_option_order(
                trade, TradeSide.SELL.value, contracts, limit_price=creator_price
            )
            fill = await self._confirmer.confirm(broker, result)
        except BrokerError as exc:
            await self._audit.warn(
                "settlement",
                f"Settlement of trade {trade.id} abandoned: {exc}",
                user_id=follower_id,
                trade_id=trade.id,
            )
            return failed(follower_id, str(exc))
        finally:
            await broker.aclose()

        try:
            settled = await self.apply_sell_fill(
                trade.id,
                contracts,
                fill.price,
                fill.order_id,
                cost_info=estimate_cost_info(
                    TradeSide.SELL.value, contracts, fill.price, commission_of(result.cost_info)
                ),
            )
        except CopyTraderError as exc:
            await self._audit.error(
                "settlement",
                f"Order {fill.order_id} filled but trade {trade.id} was not updated: {exc}",
                user_id=follower_id,
                trade_id=trade.id,
                details={"contracts": contracts, "price": fill.price},
            )
            return failed(follower_id, str(exc))

        await self._audit.info(
            "settlement",
            f"Settled {contracts} contracts of trade {trade.id} at {fill.price}",
            user_id=follower_id,
            trade_id=trade.id,
            details={"order_id": fill.order_id, "status": settled.status},
        )
        await self._notifier.notify(
            follower_id,
            "trade_settled",
            {
                "trade_id": trade.id,
                "contracts": contracts,
                "fill_price": fill.price,
                "remaining_open_contracts": settled.remaining_open_contracts,
                "status": settled.status,
                "net_pnl": settled.net_pnl,
            },
        )
        return succeeded(follower_id, trade.id)
