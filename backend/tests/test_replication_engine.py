import asyncio
import json

import httpx
import pytest

from copytrader.brokers.alpaca import AlpacaBroker
from copytrader.engine.execution_confirmation import ExecutionConfirmer
from copytrader.engine.follow_ledger import FollowLedger
from copytrader.engine.replication_engine import ReplicationEngine
from copytrader.engine.trade_actions import TradeActionRecorder
from copytrader.engine.worker_pool import FollowerStatus, JobRunner
from copytrader.models import AuditLog, FollowedTradeAction, Trade
from copytrader.services.audit_service import AuditService
from copytrader.services.follow_cache import FollowCache
from copytrader.services.notification_service import NotificationService


@pytest.fixture
def engine(session_factory, brokers, fast_confirmer):
    return ReplicationEngine(
        session_factory,
        FollowLedger(session_factory, FollowCache()),
        NotificationService(),
        AuditService(session_factory),
        JobRunner(),
        fast_confirmer,
        broker_factory=brokers,
        concurrency=2,
    )


def _by_follower(results):
    return {r.follower_id: r for r in results}


@pytest.mark.asyncio
async def test_replicates_with_confirmed_price(engine, seed, brokers):
    await seed.user("f1", autoiq=True)
    await seed.connection("f1")
    await seed.purchase("f1", "c1")
    broker = brokers.add("f1")
    broker.fill_price = 1.75
    original = await seed.trade("c1", contracts=3, fill_price=1.5)

    results = await engine.replicate_trade(original.id)

    assert [r.status for r in results] == [FollowerStatus.SUCCEEDED]
    copy = await seed.get(Trade, results[0].trade_id)
    assert copy.user_id == "f1"
    assert copy.fill_price == 1.75
    assert copy.price_verified is True
    assert copy.contracts == 3
    assert copy.broker_order_id == "ord-1"
    assert copy.total_buy_notional == pytest.approx(525.0)
    assert broker.orders == [
        {"ticker": "AAPL", "side": "BUY", "quantity": 3, "limit_price": None}
    ]
    assert broker.closed == 1
    actions = await seed.all(FollowedTradeAction)
    assert [(a.action, a.followed_trade_id) for a in actions] == [("follow", copy.id)]


@pytest.mark.asyncio
async def test_failed_placement_writes_nothing(engine, seed, brokers, fake_broker):
    await seed.user("f1", autoiq=True)
    await seed.connection("f1")
    await seed.purchase("f1", "c1")
    brokers.add("f1", fake_broker(success=False))
    original = await seed.trade("c1")

    results = await engine.replicate_trade(original.id)

    assert results[0].status is FollowerStatus.FAILED
    assert await seed.count(Trade) == 1
    assert await seed.count(FollowedTradeAction) == 0


@pytest.mark.asyncio
async def test_unconfirmed_fill_writes_nothing(engine, seed, brokers, fake_broker):
    await seed.user("f1", autoiq=True)
    await seed.connection("f1")
    await seed.purchase("f1", "c1")
    brokers.add("f1", fake_broker(fill_price=None))
    original = await seed.trade("c1")

    results = await engine.replicate_trade(original.id)

    assert results[0].status is FollowerStatus.FAILED
    assert "not filled" in results[0].detail
    assert await seed.count(Trade) == 1
    assert await seed.count(FollowedTradeAction) == 0


@pytest.mark.asyncio
async def test_ineligible_followers_are_skipped(engine, seed, brokers):
    await seed.user("notify", has_autoiq=True)
    await seed.user("no-broker", autoiq=True)
    await seed.user("inactive", autoiq=True)
    await seed.connection("inactive", is_active=False)
    await seed.user("no-auth", autoiq=True)
    await seed.connection("no-auth", authorization_id=None)
    for follower in ("notify", "no-broker", "inactive", "no-auth", "ghost"):
        await seed.purchase(follower, "c1")
    original = await seed.trade("c1")

    results = _by_follower(await engine.replicate_trade(original.id))

    assert {r.status for r in results.values()} == {FollowerStatus.SKIPPED}
    assert set(results) == {"notify", "no-broker", "inactive", "no-auth", "ghost"}
    assert brokers.brokers == {}


@pytest.mark.asyncio
async def test_exhausted_or_other_capper_purchases_are_not_entitled(engine, seed, brokers):
    await seed.user("f1", autoiq=True)
    await seed.connection("f1")
    await seed.purchase("f1", "c1", plays=2, consumed=2, status="completed")
    await seed.user("f2", autoiq=True)
    await seed.connection("f2")
    await seed.purchase("f2", "c2")
    original = await seed.trade("c1")

    assert await engine.replicate_trade(original.id) == []


@pytest.mark.asyncio
async def test_already_acted_follower_is_skipped(engine, seed, brokers):
    await seed.user("f1", autoiq=True)
    await seed.connection("f1")
    await seed.purchase("f1", "c1")
    broker = brokers.add("f1")
    original = await seed.trade("c1")

    await engine.replicate_trade(original.id)
    second = await engine.replicate_trade(original.id)

    assert second[0].status is FollowerStatus.SKIPPED
    assert len(broker.orders) == 1
    assert await seed.count(FollowedTradeAction) == 1


@pytest.mark.asyncio
async def test_non_option_trade_is_skipped(engine, seed, brokers):
    await seed.user("f1", autoiq=True)
    await seed.connection("f1")
    await seed.purchase("f1", "c1")
    original = await seed.trade("c1", option_type="X")

    results = await engine.replicate_trade(original.id)
    assert results[0].status is FollowerStatus.SKIPPED


@pytest.mark.asyncio
async def test_default_connection_is_preferred(engine, seed, brokers):
    await seed.connection("f1", account_id="first")
    preferred = await seed.connection("f1", account_id="preferred")
    await seed.user("f1", autoiq=True, default_broker_connection_id=preferred.id)
    await seed.purchase("f1", "c1")
    brokers.add("f1")
    original = await seed.trade("c1")

    results = await engine.replicate_trade(original.id)

    copy = await seed.get(Trade, results[0].trade_id)
    assert copy.broker_connection_id == preferred.id


@pytest.mark.asyncio
async def test_one_failure_does_not_affect_others(engine, seed, brokers, fake_broker):
    for follower in ("f1", "f2", "f3"):
        await seed.user(follower, autoiq=True)
        await seed.connection(follower)
        await seed.purchase(follower, "c1")
    brokers.add("f1")
    brokers.add("f2", fake_broker(success=False))
    brokers.add("f3")
    original = await seed.trade("c1")

    results = _by_follower(await engine.replicate_trade(original.id))

    assert results["f1"].status is FollowerStatus.SUCCEEDED
    assert results["f2"].status is FollowerStatus.FAILED
    assert results["f3"].status is FollowerStatus.SUCCEEDED
    assert await seed.count(FollowedTradeAction) == 2


@pytest.mark.asyncio
async def test_explicit_entitled_set_is_used(engine, seed, brokers):
    await seed.user("f1", autoiq=True)
    await seed.connection("f1")
    # Purchase already completed by the play charged for this trade.
    await seed.purchase("f1", "c1", plays=1, consumed=1, status="completed")
    brokers.add("f1")
    original = await seed.trade("c1")

    results = await engine.replicate_trade(original.id, {"f1"})

    assert results[0].status is FollowerStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_cost_info_uses_the_confirmed_price(engine, seed, brokers):
    def alpaca_api(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v2/account":
            return httpx.Response(200, json={"id": "acct", "option_approved_level": "2"})
        if request.method == "POST":
            return httpx.Response(200, json={"id": "o-9", "status": "accepted", "qty": "3"})
        return httpx.Response(
            200, json={"id": "o-9", "status": "filled", "filled_qty": "3", "filled_avg_price": "2.40"}
        )

    await seed.user("f1", autoiq=True)
    await seed.connection("f1")
    await seed.purchase("f1", "c1")
    brokers.add(
        "f1",
        AlpacaBroker(
            api_key="key",
            api_secret="secret",
            base_url="https://paper.example/",
            transport=httpx.MockTransport(alpaca_api),
        ),
    )
    original = await seed.trade("c1", contracts=3, fill_price=2.5)

    results = await engine.replicate_trade(original.id)

    copy = await seed.get(Trade, results[0].trade_id)
    assert copy.fill_price == pytest.approx(2.40)
    assert copy.broker_order_id == "o-9"
    assert copy.broker_cost_info["gross_cost"] == pytest.approx(720.0)
    assert copy.broker_cost_info["total_cost"] > 720.0
    assert copy.total_buy_notional == pytest.approx(copy.broker_cost_info["gross_cost"])


@pytest.mark.asyncio
async def test_shutdown_while_confirming_writes_nothing(session_factory, seed, brokers, fake_broker):
    jobs = JobRunner()
    engine = ReplicationEngine(
        session_factory,
        FollowLedger(session_factory, FollowCache()),
        NotificationService(),
        AuditService(session_factory),
        jobs,
        ExecutionConfirmer(poll_interval=0.01, timeout=30),
        broker_factory=brokers,
    )
    await seed.user("f1", autoiq=True)
    await seed.connection("f1")
    await seed.purchase("f1", "c1")
    broker = brokers.add("f1", fake_broker(fill_price=None))
    original = await seed.trade("c1")

    engine.on_trade_created(original.id)
    for _ in range(300):
        if broker.orders:
            break
        await asyncio.sleep(0.01)
    assert broker.orders
    await jobs.shutdown()

    assert jobs.pending == 0
    assert broker.closed == 1
    assert await seed.count(Trade) == 1
    assert await seed.count(FollowedTradeAction) == 0


@pytest.mark.asyncio
async def test_lost_race_audits_the_filled_order(engine, session_factory, seed, brokers, fake_broker):
    recorder = TradeActionRecorder(session_factory)

    class ManualFollowDuringOrder(fake_broker):
        """The follower follows by hand while the automatic order is in flight."""

        async def place_option_order(self, trade, side, quantity, limit_price=None):
            await recorder.record_action("f1", trade.id, "follow")
            return await super().place_option_order(trade, side, quantity, limit_price)

    await seed.user("f1", autoiq=True)
    connection = await seed.connection("f1")
    await seed.purchase("f1", "c1")
    brokers.add("f1", ManualFollowDuringOrder(fill_price=1.9))
    original = await seed.trade("c1", contracts=2)

    results = await engine.replicate_trade(original.id)

    assert results[0].status is FollowerStatus.SKIPPED
    assert await seed.count(FollowedTradeAction) == 1
    assert await seed.count(Trade, Trade.user_id == "f1") == 1
    entries = await seed.all(AuditLog, AuditLog.level == "ERROR")
    assert len(entries) == 1
    assert entries[0].category == "replication"
    assert entries[0].trade_id == original.id
    details = json.loads(entries[0].details)
    assert details["order_id"] == "ord-1"
    assert details["broker_connection_id"] == connection.id
    assert details["price"] == pytest.approx(1.9)
    assert details["contracts"] == 2
