"""Trade action recorder: a follower's follow/fade decision on a creator trade.

The unique (follower, original trade) constraint decides races between
concurrent clicks and automatic replication. Losing an insert race is not an
error: the caller gets the winning action back.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from copytrader.errors import NotFoundError, TransactionError, ValidationError
from copytrader.models.followed_trade_action import FollowedTradeAction, TradeActionType
from copytrader.models.trade import Trade, TradeSide, TradeStatus, notional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TradeActionResult:
    action: str
    followed_trade_id: int | None
    already_acted: bool = False

    @classmethod
    def from_row(cls, row: FollowedTradeAction, *, already_acted: bool) -> TradeActionResult:
        return cls(row.action, row.followed_trade_id, already_acted)


def clone_for_follower(
    original: Trade, follower_id: str, *, fill_price: float | None = None
) -> Trade:
    """New OPEN BUY trade for *follower_id* mirroring *original*'s instrument and size."""
    price = original.fill_price if fill_price is None else fill_price
    return Trade(
        user_id=follower_id,
        side=TradeSide.BUY.value,
        contracts=original.contracts,
        ticker=original.ticker,
        strike=original.strike,
        option_type=original.option_type,
        expiry_date=original.expiry_date,
        fill_price=price,
        status=TradeStatus.OPEN.value,
        price_verified=original.price_verified,
        option_contract=original.option_contract,
        is_market_order=original.is_market_order,
        remaining_open_contracts=original.contracts,
        total_buy_notional=notional(original.contracts, price),
        total_sell_notional=0.0,
    )


def parse_action(action: str) -> TradeActionType:
    try:
        return TradeActionType((action or "").lower())
    except ValueError:
        raise ValidationError('action must be "follow" or "fade"') from None


async def find_action(
    session: AsyncSession, follower_id: str, original_trade_id: int
) -> FollowedTradeAction | None:
    return await session.scalar(
        select(FollowedTradeAction).where(
            FollowedTradeAction.follower_user_id == follower_id,
            FollowedTradeAction.original_trade_id == original_trade_id,
        )
    )


class TradeActionRecorder:
    """Records follow/fade decisions exactly once per (follower, trade)."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def record_action(
        self, follower_id: str, original_trade_id: int, action: str
    ) -> TradeActionResult:
        kind = parse_action(action)

        async with self._session_factory() as session:
            existing = await find_action(session, follower_id, original_trade_id)
            if existing is not None:
                return TradeActionResult.from_row(existing, already_acted=True)

            original = await session.get(Trade, original_trade_id)
            if original is None:
                raise NotFoundError("Trade not found")

            followed_trade: Trade | None = None
            if kind is TradeActionType.FOLLOW:
                # Plays were already spent when the creator opened the trade.
                followed_trade = clone_for_follower(original, follower_id)
                session.add(followed_trade)
                await session.flush()

            row = FollowedTradeAction(
                follower_user_id=follower_id,
                original_trade_id=original_trade_id,
                action=kind.value,
                followed_trade_id=followed_trade.id if followed_trade else None,
            )
            session.add(row)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                winner = await find_action(session, follower_id, original_trade_id)
                if winner is None:
                    raise TransactionError("Could not record trade action")
                return TradeActionResult.from_row(winner, already_acted=True)

        logger.info(
            "Follower %s recorded %s on trade %d%s",
            follower_id,
            kind.value,
            original_trade_id,
            f" -> trade {row.followed_trade_id}" if row.followed_trade_id else "",
        )
        return TradeActionResult.from_row(row, already_acted=False)

    async def get_action(
        self, follower_id: str, original_trade_id: int
    ) -> TradeActionResult | None:
        async with self._session_factory() as session:
            row = await find_action(session, follower_id, original_trade_id)
            if row is None:
                return None
            return TradeActionResult.from_row(row, already_acted=True)
