"""Follower feed: creator trades inside the follower's follow windows."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from copytrader.database import utcnow
from copytrader.engine.follow_ledger import FollowLedger, FollowSnapshot
from copytrader.engine.follow_windows import resolve_windows, select_representative
from copytrader.errors import ValidationError
from copytrader.models.followed_trade_action import FollowedTradeAction
from copytrader.models.trade import Trade, TradeSide, TradeStatus

MAX_PAGE_SIZE = 100

_FEED_STATUSES = (TradeStatus.OPEN.value, TradeStatus.CLOSED.value)


@dataclass
class FeedItem:
    trade: Trade
    follow_purchase_id: int | None
    remaining_plays: int
    action: str | None = None
    followed_trade_id: int | None = None


@dataclass
class FeedPage:
    items: list[FeedItem]
    follows: list[FollowSnapshot]
    page: int
    page_size: int
    total: int
    total_pages: int = field(init=False)
    has_more: bool = field(init=False)

    def __post_init__(self) -> None:
        self.total_pages = math.ceil(self.total / self.page_size) if self.total else 0
        self.has_more = self.page < self.total_pages


class FeedAggregator:
    """Read-only join of eligible trades, follow metadata and prior actions."""

    def __init__(
        self, session_factory: async_sessionmaker[AsyncSession], ledger: FollowLedger
    ) -> None:
        self._session_factory = session_factory
        self._ledger = ledger

    async def get_feed(
        self,
        follower_id: str,
        page: int = 1,
        page_size: int = 10,
        search: str | None = None,
        now: datetime | None = None,
    ) -> FeedPage:
        if page < 1:
            raise ValidationError("page must be at least 1")
        if not 1 <= page_size <= MAX_PAGE_SIZE:
            raise ValidationError(f"pageSize must be between 1 and {MAX_PAGE_SIZE}")

        follows = await self._ledger.list_follows(follower_id)
        windows = resolve_windows(follows, now or utcnow())
        if not windows:
            return FeedPage([], follows, page, page_size, 0)

        by_capper: dict[str, list[FollowSnapshot]] = {}
        for follow in follows:
            by_capper.setdefault(follow.capper_user_id, []).append(follow)
        representatives = {
            capper_id: select_representative(purchases)
            for capper_id, purchases in by_capper.items()
        }

        in_window = or_(
            *(
                and_(
                    Trade.user_id == capper_id,
                    Trade.created_at >= window.start,
                    Trade.created_at <= window.end,
                )
                for capper_id, capper_windows in windows.items()
                for window in capper_windows
            )
        )
        conditions = [
            in_window,
            Trade.side == TradeSide.BUY.value,
            Trade.status.in_(_FEED_STATUSES),
        ]
        if search and search.strip():
            conditions.append(func.upper(Trade.ticker).contains(search.strip().upper()))

        async with self._session_factory() as session:
            total = await session.scalar(
                select(func.count()).select_from(Trade).where(*conditions)
            )
            trades = list(
                await session.scalars(
                    select(Trade)
                    .where(*conditions)
                    .order_by(Trade.created_at.desc(), Trade.id.desc())
                    .offset((page - 1) * page_size)
                    .limit(page_size)
                )
            )
            actions: dict[int, FollowedTradeAction] = {}
            if trades:
                rows = await session.scalars(
                    select(FollowedTradeAction).where(
                        FollowedTradeAction.follower_user_id == follower_id,
                        FollowedTradeAction.original_trade_id.in_([t.id for t in trades]),
                    )
                )
                actions = {row.original_trade_id: row for row in rows}

        items: list[FeedItem] = []
        for trade in trades:
            rep = representatives.get(trade.user_id)
            action = actions.get(trade.id)
            items.append(
                FeedItem(
                    trade=trade,
                    follow_purchase_id=rep.id if rep else None,
                    remaining_plays=rep.remaining_plays if rep else 0,
                    action=action.action if action else None,
                    followed_trade_id=action.followed_trade_id if action else None,
                )
            )
        return FeedPage(items, follows, page, page_size, total or 0)
