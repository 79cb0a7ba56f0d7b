"""Shared fixtures: a throwaway SQLite database per test and scripted brokers."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

import copytrader.models  # noqa: F401
from copytrader.brokers.base import (
    AccountInfo,
    BrokerAdapter,
    OrderDetail,
    OrderResult,
    OrderStatus,
)
from copytrader.database import Base, utcnow
from copytrader.engine.execution_confirmation import ExecutionConfirmer
from copytrader.models import BrokerConnection, FollowPurchase, Trade, User
from copytrader.models.user import AUTO_TRADE_MODE


class FakeBroker(BrokerAdapter):
    """Broker whose answers are scripted by the test."""

    broker_type = "fake"

    def __init__(
        self,
        *,
        fill_price: float | None = 2.0,
        success: bool = True,
        error: str = "rejected by broker",
        polls: list[Any] | None = None,
    ) -> None:
        self.fill_price = fill_price
        self.success = success
        self.error = error
        self.polls = list(polls or [])
        self.orders: list[dict[str, Any]] = []
        self.closed = 0

    async def place_option_order(self, trade, side, quantity, limit_price=None):
        self.orders.append(
            {"ticker": trade.ticker, "side": side, "quantity": quantity, "limit_price": limit_price}
        )
        if not self.success:
            return OrderResult(success=False, error=self.error)
        return OrderResult(
            success=True,
            order_id=f"ord-{len(self.orders)}",
            execution_price=self.fill_price,
            order_details={"status": "filled" if self.fill_price else "new"},
        )

    async def poll_order_detail(self, order_id):
        if not self.polls:
            return OrderDetail(status=OrderStatus.PENDING)
        item = self.polls.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def get_account_info(self):
        return AccountInfo(account_id="fake-account", option_approved_level="2")

    async def aclose(self):
        self.closed += 1


class BrokerBook:
    """Maps follower ids to fake brokers; usable as a broker factory."""

    def __init__(self) -> None:
        self.brokers: dict[str, FakeBroker] = {}

    def add(self, user_id: str, broker: FakeBroker | None = None) -> FakeBroker:
        self.brokers[user_id] = broker or FakeBroker()
        return self.brokers[user_id]

    def __call__(self, connection: BrokerConnection) -> FakeBroker:
        return self.brokers[connection.user_id]


class Seed:
    """Insert rows directly, bypassing the engines under test."""

    def __init__(self, factory: async_sessionmaker[AsyncSession]) -> None:
        self.factory = factory

    async def _add(self, row):
        async with self.factory() as session:
            session.add(row)
            await session.commit()
        return row

    async def user(self, user_id: str, *, autoiq: bool = False, **kwargs) -> User:
        if autoiq:
            kwargs.setdefault("has_autoiq", True)
            kwargs.setdefault("auto_trade_mode", AUTO_TRADE_MODE)
        return await self._add(User(id=user_id, **kwargs))

    async def capper(self, user_id: str, *, plan_id: str | None = None, num_plays: int | None = None) -> User:
        return await self._add(
            User(
                id=user_id,
                company_id="co-1",
                follow_offer_enabled=True,
                follow_offer_plan_id=plan_id,
                follow_offer_num_plays=num_plays,
            )
        )

    async def connection(self, user_id: str, **kwargs) -> BrokerConnection:
        values = {
            "broker_type": "alpaca",
            "is_active": True,
            "account_id": f"acct-{user_id}",
            "authorization_id": f"auth-{user_id}",
            "api_key": "key",
            "api_secret": "secret",
        }
        values.update(kwargs)
        return await self._add(BrokerConnection(user_id=user_id, **values))

    async def purchase(
        self,
        follower: str,
        capper: str,
        *,
        plays: int = 5,
        consumed: int = 0,
        status: str = "active",
        created_at: datetime | None = None,
        updated_at: datetime | None = None,
        payment_id: str | None = None,
        plan_id: str | None = None,
    ) -> FollowPurchase:
        created_at = created_at or utcnow() - timedelta(days=1)
        return await self._add(
            FollowPurchase(
                follower_user_id=follower,
                capper_user_id=capper,
                company_id="co-1",
                plan_id=plan_id,
                payment_id=payment_id or f"pay-{follower}-{capper}-{created_at.isoformat()}",
                plays_purchased=plays,
                plays_consumed=consumed,
                status=status,
                created_at=created_at,
                updated_at=updated_at or created_at,
            )
        )

    async def trade(
        self,
        user_id: str,
        *,
        contracts: int = 5,
        fill_price: float = 1.5,
        ticker: str = "AAPL",
        created_at: datetime | None = None,
        **kwargs,
    ) -> Trade:
        values = {
            "side": "BUY",
            "strike": 200.0,
            "option_type": "C",
            "expiry_date": utcnow() + timedelta(days=30),
            "status": "OPEN",
        }
        values.update(kwargs)
        return await self._add(
            Trade(
                user_id=user_id,
                contracts=contracts,
                ticker=ticker,
                fill_price=fill_price,
                remaining_open_contracts=contracts,
                total_buy_notional=contracts * fill_price * 100,
                total_sell_notional=0.0,
                created_at=created_at or utcnow(),
                **values,
            )
        )

    async def count(self, model, *where) -> int:
        async with self.factory() as session:
            return await session.scalar(select(func.count()).select_from(model).where(*where))

    async def get(self, model, pk):
        async with self.factory() as session:
            return await session.get(model, pk)

    async def all(self, model, *where) -> list:
        async with self.factory() as session:
            return list(await session.scalars(select(model).where(*where)))


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def seed(session_factory) -> Seed:
    return Seed(session_factory)


@pytest.fixture
def brokers() -> BrokerBook:
    return BrokerBook()


@pytest.fixture
def fast_confirmer() -> ExecutionConfirmer:
    return ExecutionConfirmer(poll_interval=0.001, timeout=0.2)


@pytest.fixture
def fake_broker() -> type[FakeBroker]:
    return FakeBroker
