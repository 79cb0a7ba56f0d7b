"""Replication engine (AutoIQ).

When a creator opens a trade, every entitled follower in automatic mode gets
the same option bought in their own broker account. Each follower runs
independently under a concurrency cap. Nothing is written for a follower
until the broker has confirmed a fill price.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from copytrader.brokers.base import BrokerAdapter, commission_of, estimate_cost_info
from copytrader.brokers.factory import create_broker
from copytrader.engine.execution_confirmation import ExecutionConfirmer
from copytrader.engine.follow_ledger import FollowLedger
from copytrader.engine.trade_actions import clone_for_follower, find_action
from copytrader.engine.worker_pool import (
    FollowerResult,
    JobRunner,
    failed,
    fan_out,
    skipped,
    succeeded,
)
from copytrader.errors import BrokerError, NotFoundError
from copytrader.models.broker_connection import BrokerConnection
from copytrader.models.followed_trade_action import FollowedTradeAction, TradeActionType
from copytrader.models.trade import Trade, TradeSide
from copytrader.models.user import User
from copytrader.services.audit_service import AuditService
from copytrader.services.notification_service import NotificationService

logger = logging.getLogger(__name__)

BrokerFactory = Callable[[BrokerConnection], BrokerAdapter]

OPTION_TYPES = ("C", "P")


def is_single_leg_option(trade: Trade) -> bool:
    return trade.option_type in OPTION_TYPES and trade.side == TradeSide.BUY.value


async def resolve_broker_connection(
    session: AsyncSession, user: User
) -> BrokerConnection | None:
    """The user's default connection if usable, else any usable one."""
    if user.default_broker_connection_id is not None:
        default = await session.get(BrokerConnection, user.default_broker_connection_id)
        if default is not None and default.user_id == user.id and default.is_usable:
            return default
    rows = await session.scalars(
        select(BrokerConnection)
        .where(BrokerConnection.user_id == user.id, BrokerConnection.is_active.is_(True))
        .order_by(BrokerConnection.id)
    )
    for connection in rows:
        if connection.is_usable:
            return connection
    return None


class ReplicationEngine:
    """Copies creator trades into followers' broker accounts."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: FollowLedger,
        notifier: NotificationService,
        audit: AuditService,
        jobs: JobRunner,
        confirmer: ExecutionConfirmer,
        *,
        broker_factory: BrokerFactory = create_broker,
        concurrency: int = 10,
    ) -> None:
        self._session_factory = session_factory
        self._ledger = ledger
        self._notifier = notifier
        self._audit = audit
        self._jobs = jobs
        self._confirmer = confirmer
        self._broker_factory = broker_factory
        self._concurrency = concurrency

    def on_trade_created(
        self, creator_trade_id: int, entitled_follower_ids: Iterable[str] | None = None
    ) -> None:
        """Schedule replication in the background. Never raises."""
        followers = set(entitled_follower_ids) if entitled_follower_ids is not None else None
        self._jobs.spawn(
            self.replicate_trade(creator_trade_id, followers),
            name=f"replicate-{creator_trade_id}",
        )

    async def replicate_trade(
        self,
        creator_trade_id: int,
        entitled_follower_ids: Iterable[str] | None = None,
    ) -> list[FollowerResult]:
        """Replicate one creator trade to every eligible follower.

        *entitled_follower_ids* is the set of followers charged a play when the
        trade was opened. Without it, the currently active, non-exhausted
        purchases of the creator decide who is entitled.
        """
        async with self._session_factory() as session:
            trade = await session.get(Trade, creator_trade_id)
            if trade is None:
                raise NotFoundError(f"Trade {creator_trade_id} not found")

        if entitled_follower_ids is None:
            purchases = await self._ledger.active_purchases_for_capper(trade.user_id)
            entitled = {p.follower_user_id for p in purchases}
        else:
            entitled = set(entitled_follower_ids)
        entitled.discard(trade.user_id)
        if not entitled:
            return []

        async with self._session_factory() as session:
            users = {
                u.id: u
                for u in await session.scalars(select(User).where(User.id.in_(entitled)))
            }

        results: list[FollowerResult] = []
        candidates: list[User] = []
        for follower_id in sorted(entitled):
            user = users.get(follower_id)
            if user is None or not user.autoiq_enabled:
                results.append(skipped(follower_id, "automatic mode disabled"))
            elif not is_single_leg_option(trade):
                results.append(skipped(follower_id, "not a single-leg option"))
            else:
                candidates.append(user)

        results += await fan_out(
            candidates,
            lambda user: self._replicate_to(trade, user),
            key=lambda user: user.id,
            concurrency=self._concurrency,
            label=f"replicate trade {creator_trade_id}",
        )
        return results

    async def _replicate_to(self, trade: Trade, user: User) -> FollowerResult:
        async with self._session_factory() as session:
            if await find_action(session, user.id, trade.id) is not None:
                return skipped(user.id, "already acted on this trade")
            connection = await resolve_broker_connection(session, user)
        if connection is None:
            return skipped(user.id, "no usable broker connection")

        try:
            broker = self._broker_factory(connection)
        except BrokerError as exc:
            return failed(user.id, str(exc))
        try:
            result = await broker.place_option_order(trade, TradeSide.BUY.value, trade.contracts)
            fill = await self._confirmer.confirm(broker, result)
        except BrokerError as exc:
            await self._audit.warn(
                "replication",
                f"Replication of trade {trade.id} abandoned: {exc}",
                user_id=user.id,
                trade_id=trade.id,
            )
            return failed(user.id, str(exc))
        finally:
            await broker.aclose()

        async with self._session_factory() as session:
            follower_trade = clone_for_follower(trade, user.id, fill_price=fill.price)
            follower_trade.price_verified = True
            follower_trade.broker_connection_id = connection.id
            follower_trade.broker_order_id = fill.order_id
            follower_trade.broker_order_details = result.order_details or None
            follower_trade.broker_cost_info = estimate_cost_info(
                TradeSide.BUY.value, trade.contracts, fill.price, commission_of(result.cost_info)
            )
            session.add(follower_trade)
            await session.flush()
            session.add(
                FollowedTradeAction(
                    follower_user_id=user.id,
                    original_trade_id=trade.id,
                    action=TradeActionType.FOLLOW.value,
                    followed_trade_id=follower_trade.id,
                )
            )
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                await self._audit.error(
                    "replication",
                    f"Order {fill.order_id} filled but follower already acted on trade {trade.id}",
                    user_id=user.id,
                    trade_id=trade.id,
                    details={
                        "order_id": fill.order_id,
                        "broker_connection_id": connection.id,
                        "price": fill.price,
                        "contracts": trade.contracts,
                    },
                )
                return skipped(user.id, "already acted on this trade")

        await self._audit.info(
            "replication",
            f"Replicated trade {trade.id} as trade {follower_trade.id}",
            user_id=user.id,
            trade_id=follower_trade.id,
            details={
                "original_trade_id": trade.id,
                "order_id": fill.order_id,
                "price": fill.price,
                "contracts": trade.contracts,
            },
        )
        await self._notifier.notify(
            user.id,
            "trade_replicated",
            {
                "original_trade_id": trade.id,
                "trade_id": follower_trade.id,
                "ticker": trade.ticker,
                "contracts": trade.contracts,
                "fill_price": fill.price,
            },
        )
        return succeeded(user.id, follower_trade.id)
