"""Creator trade lifecycle: opening and settling trades.

Opening a trade spends one play on every active purchase of the creator in
the same transaction as the insert, then hands the charged followers to the
replication engine. Settling applies the creator's SELL fill and schedules
follower settlement. Background work never fails the creator's call.

Opening and settling are refused while the market is closed. Opening and
deleting count against a per-user action limit.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from copytrader.database import utcnow
from copytrader.engine.follow_ledger import FollowLedger
from copytrader.engine.replication_engine import OPTION_TYPES, ReplicationEngine
from copytrader.engine.settlement_engine import SettledTrade, SettlementEngine
from copytrader.errors import ForbiddenError, NotFoundError, TransactionError, ValidationError
from copytrader.models.followed_trade_action import FollowedTradeAction
from copytrader.models.trade import Trade, TradeSide, TradeStatus, notional
from copytrader.models.trade_fill import TradeFill
from copytrader.schemas.trades import TradeCreate
from copytrader.services.audit_service import AuditService
from copytrader.services.market_hours import MARKET_CLOSED_MESSAGE
from copytrader.services.notification_service import NotificationService
from copytrader.services.rate_limit import SlidingWindowRateLimiter

MarketClock = Callable[[datetime], bool]

logger = logging.getLogger(__name__)


def validate_trade(data: TradeCreate) -> None:
    """Raise ValidationError unless *data* is a sane single-leg option entry."""
    if data.option_type.upper() not in OPTION_TYPES:
        raise ValidationError("option_type must be 'C' or 'P'")
    if data.contracts < 1:
        raise ValidationError("contracts must be at least 1")
    if data.strike <= 0:
        raise ValidationError("strike must be positive")
    if data.fill_price <= 0:
        raise ValidationError("fill_price must be positive")
    if data.expiry_date < utcnow().date():
        raise ValidationError("expiry_date is in the past")


class TradeService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: FollowLedger,
        replication: ReplicationEngine,
        settlement: SettlementEngine,
        notifier: NotificationService,
        audit: AuditService,
        *,
        market_open: MarketClock | None = None,
        rate_limiter: SlidingWindowRateLimiter | None = None,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._ledger = ledger
        self._replication = replication
        self._settlement = settlement
        self._notifier = notifier
        self._audit = audit
        self._market_open = market_open
        self._rate_limiter = rate_limiter
        self._now = now

    def _require_market_open(self) -> None:
        if self._market_open is not None and not self._market_open(self._now()):
            raise ValidationError(MARKET_CLOSED_MESSAGE)

    def _consume_action(self, user_id: str) -> None:
        if self._rate_limiter is not None:
            self._rate_limiter.check(user_id)

    async def create_trade(self, creator_id: str, data: TradeCreate) -> Trade:
        self._consume_action(creator_id)
        self._require_market_open()
        validate_trade(data)

        trade = Trade(
            user_id=creator_id,
            side=TradeSide.BUY.value,
            contracts=data.contracts,
            ticker=data.ticker.strip().upper(),
            strike=data.strike,
            option_type=data.option_type.upper(),
            expiry_date=datetime.combine(data.expiry_date, datetime.min.time()),
            fill_price=data.fill_price,
            status=TradeStatus.OPEN.value,
            price_verified=False,
            option_contract=data.option_contract,
            is_market_order=data.is_market_order,
            remaining_open_contracts=data.contracts,
            total_buy_notional=notional(data.contracts, data.fill_price),
            total_sell_notional=0.0,
        )
        async with self._session_factory() as session:
            try:
                session.add(trade)
                await session.flush()
                charged = await self._ledger.consume_plays_for_capper(session, creator_id)
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                raise TransactionError(f"Could not open trade: {exc}") from exc

        self._ledger.cache.invalidate_many(charged)
        logger.info(
            "Trade %d opened by %s: %dx %s %g%s, %d followers charged",
            trade.id,
            creator_id,
            trade.contracts,
            trade.ticker,
            trade.strike,
            trade.option_type,
            len(charged),
        )
        await self._audit.info(
            "trade",
            f"Trade {trade.id} opened",
            user_id=creator_id,
            trade_id=trade.id,
            details={"charged_followers": sorted(charged)},
        )
        await self._notifier.notify_many(
            charged,
            "trade_created",
            {
                "trade_id": trade.id,
                "capper_user_id": creator_id,
                "ticker": trade.ticker,
                "strike": trade.strike,
                "option_type": trade.option_type,
                "contracts": trade.contracts,
                "fill_price": trade.fill_price,
            },
        )
        if charged:
            self._replication.on_trade_created(trade.id, charged)
        return trade

    async def settle_trade(
        self, creator_id: str, trade_id: int, contracts: int, fill_price: float
    ) -> SettledTrade:
        self._require_market_open()
        if contracts < 1:
            raise ValidationError("contracts must be at least 1")
        if fill_price <= 0:
            raise ValidationError("fill_price must be positive")

        async with self._session_factory() as session:
            trade = await session.get(Trade, trade_id)
        if trade is None or trade.user_id != creator_id:
            raise NotFoundError("Trade not found")
        if not trade.is_open:
            raise ValidationError("Trade is not open")
        if contracts > trade.remaining_open_contracts:
            raise ValidationError(
                f"Cannot sell {contracts} contracts; only "
                f"{trade.remaining_open_contracts} remain open"
            )

        settled = await self._settlement.apply_sell_fill(trade_id, contracts, fill_price)
        logger.info(
            "Trade %d settled %d @ %g by %s (%s, %d remaining)",
            trade_id,
            contracts,
            fill_price,
            creator_id,
            settled.status,
            settled.remaining_open_contracts,
        )
        await self._notifier.notify(
            creator_id,
            "trade_settled",
            {
                "trade_id": trade_id,
                "contracts": contracts,
                "fill_price": fill_price,
                "remaining_open_contracts": settled.remaining_open_contracts,
                "status": settled.status,
            },
        )
        self._settlement.on_trade_settled(trade_id, contracts, fill_price)
        return settled

    async def delete_trade(self, user_id: str, trade_id: int) -> None:
        """Delete one of the caller's OPEN trades together with its fills.

        Follower decisions on the trade go with it. Copies already opened in
        followers' accounts are their own trades and stay.
        """
        self._consume_action(user_id)

        async with self._session_factory() as session:
            trade = await session.get(Trade, trade_id)
            if trade is None or trade.user_id != user_id:
                raise NotFoundError("Trade not found")
            if not trade.is_open:
                raise ForbiddenError("Cannot delete trade that is not OPEN.")

            followers = set(
                await session.scalars(
                    select(FollowedTradeAction.follower_user_id).where(
                        FollowedTradeAction.original_trade_id == trade_id
                    )
                )
            )
            ticker = trade.ticker
            try:
                await session.execute(delete(TradeFill).where(TradeFill.trade_id == trade_id))
                await session.execute(
                    delete(FollowedTradeAction).where(
                        FollowedTradeAction.original_trade_id == trade_id
                    )
                )
                await session.execute(
                    update(FollowedTradeAction)
                    .where(FollowedTradeAction.followed_trade_id == trade_id)
                    .values(followed_trade_id=None)
                )
                await session.delete(trade)
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                raise TransactionError(f"Could not delete trade {trade_id}: {exc}") from exc

        logger.info("Trade %d (%s) deleted by %s", trade_id, ticker, user_id)
        await self._audit.info(
            "trade",
            f"Trade {trade_id} deleted",
            user_id=user_id,
            trade_id=trade_id,
            details={"ticker": ticker},
        )
        payload = {"trade_id": trade_id, "capper_user_id": user_id, "ticker": ticker}
        await self._notifier.notify(user_id, "trade_deleted", payload)
        await self._notifier.notify_many(followers, "trade_deleted", payload)

    async def list_trades(self, user_id: str, status: str | None = None) -> list[Trade]:
        query = select(Trade).where(Trade.user_id == user_id)
        if status:
            query = query.where(Trade.status == status.upper())
        async with self._session_factory() as session:
            return list(
                await session.scalars(
                    query.order_by(Trade.created_at.desc(), Trade.id.desc())
                )
            )
