import asyncio

import pytest

from copytrader.engine.follow_ledger import EntitlementOutcome, FollowLedger, RefundOutcome
from copytrader.errors import ValidationError
from copytrader.models import FollowPurchase
from copytrader.services.follow_cache import FollowCache


@pytest.fixture
def ledger(session_factory):
    return FollowLedger(session_factory, FollowCache())


@pytest.mark.asyncio
async def test_create_entitlement(ledger, seed):
    result = await ledger.create_entitlement("f1", "c1", "co-1", 3, "pay-1", plan_id="plan-1")

    assert result.outcome is EntitlementOutcome.CREATED
    assert result.purchase.plays_purchased == 3
    assert result.purchase.plays_consumed == 0
    assert result.purchase.status == "active"
    assert await seed.count(FollowPurchase) == 1


@pytest.mark.asyncio
async def test_replayed_payment_creates_one_purchase(ledger, seed):
    outcomes = [
        (await ledger.create_entitlement("f1", "c1", "co-1", 3, "pay-1")).outcome
        for _ in range(5)
    ]
    assert outcomes[0] is EntitlementOutcome.CREATED
    assert set(outcomes[1:]) == {EntitlementOutcome.DUPLICATE_PAYMENT}
    assert await seed.count(FollowPurchase) == 1


@pytest.mark.asyncio
async def test_concurrent_replays_converge(ledger, seed):
    results = await asyncio.gather(
        *(ledger.create_entitlement("f1", "c1", "co-1", 3, "pay-1") for _ in range(6))
    )
    created = [r for r in results if r.outcome is EntitlementOutcome.CREATED]
    assert len(created) == 1
    assert await seed.count(FollowPurchase) == 1


@pytest.mark.asyncio
async def test_self_follow_is_ignored(ledger, seed):
    result = await ledger.create_entitlement("c1", "c1", "co-1", 3, "pay-1")
    assert result.outcome is EntitlementOutcome.SELF_FOLLOW
    assert await seed.count(FollowPurchase) == 0


@pytest.mark.asyncio
async def test_second_active_purchase_for_pair_is_ignored(ledger, seed):
    await ledger.create_entitlement("f1", "c1", "co-1", 3, "pay-1")
    result = await ledger.create_entitlement("f1", "c1", "co-1", 3, "pay-2")

    assert result.outcome is EntitlementOutcome.ALREADY_ACTIVE
    assert result.purchase.payment_id == "pay-1"
    assert await seed.count(FollowPurchase) == 1


@pytest.mark.asyncio
async def test_invalid_play_count_is_rejected(ledger):
    with pytest.raises(ValidationError):
        await ledger.create_entitlement("f1", "c1", "co-1", 0, "pay-1")


@pytest.mark.asyncio
async def test_consume_play_completes_and_never_overshoots(ledger, seed):
    created = await ledger.create_entitlement("f1", "c1", "co-1", 2, "pay-1")
    purchase_id = created.purchase.id

    assert await ledger.consume_play(purchase_id) is True
    assert await ledger.consume_play(purchase_id) is True
    assert await ledger.consume_play(purchase_id) is False

    row = await seed.get(FollowPurchase, purchase_id)
    assert row.plays_consumed == 2
    assert row.status == "completed"


@pytest.mark.asyncio
async def test_concurrent_consumption_respects_bounds(ledger, seed):
    created = await ledger.create_entitlement("f1", "c1", "co-1", 3, "pay-1")
    results = await asyncio.gather(
        *(ledger.consume_play(created.purchase.id) for _ in range(8))
    )
    assert results.count(True) == 3
    row = await seed.get(FollowPurchase, created.purchase.id)
    assert row.plays_consumed == row.plays_purchased == 3


@pytest.mark.asyncio
async def test_renewal_allowed_after_completion(ledger):
    first = await ledger.create_entitlement("f1", "c1", "co-1", 1, "pay-1")
    await ledger.consume_play(first.purchase.id)
    renewal = await ledger.create_entitlement("f1", "c1", "co-1", 5, "pay-2")
    assert renewal.outcome is EntitlementOutcome.CREATED


@pytest.mark.asyncio
async def test_consume_plays_for_capper(ledger, seed, session_factory):
    await seed.purchase("f1", "c1", plays=1)
    await seed.purchase("f2", "c1", plays=3)
    await seed.purchase("f3", "c1", plays=2, consumed=2, status="completed")
    await seed.purchase("f4", "c2", plays=2)

    async with session_factory() as session:
        charged = await ledger.consume_plays_for_capper(session, "c1")
        await session.commit()

    assert charged == {"f1", "f2"}
    rows = {p.follower_user_id: p for p in await seed.all(FollowPurchase)}
    assert rows["f1"].status == "completed"
    assert rows["f2"].plays_consumed == 1
    assert rows["f3"].plays_consumed == 2
    assert rows["f4"].plays_consumed == 0


@pytest.mark.asyncio
async def test_refund_is_idempotent(ledger, seed):
    await ledger.create_entitlement("f1", "c1", "co-1", 3, "pay-1")

    first = await ledger.refund("pay-1")
    second = await ledger.refund("pay-1")

    assert first.outcome is RefundOutcome.REFUNDED
    assert second.outcome is RefundOutcome.ALREADY_TERMINAL
    rows = await seed.all(FollowPurchase)
    assert [r.status for r in rows] == ["refunded"]


@pytest.mark.asyncio
async def test_refund_falls_back_to_follower_and_plan(ledger):
    await ledger.create_entitlement("f1", "c1", "co-1", 3, "pay-1", plan_id="plan-9")
    result = await ledger.refund("unknown", follower_id="f1", plan_id="plan-9")
    assert result.outcome is RefundOutcome.REFUNDED
    assert result.purchase.payment_id == "pay-1"


@pytest.mark.asyncio
async def test_refund_unknown_payment(ledger):
    result = await ledger.refund("nope")
    assert result.outcome is RefundOutcome.NOT_FOUND


@pytest.mark.asyncio
async def test_list_follows_is_cached_and_invalidated(ledger):
    assert await ledger.list_follows("f1") == []
    assert ledger.cache.get("f1") == ()

    await ledger.create_entitlement("f1", "c1", "co-1", 3, "pay-1")
    assert ledger.cache.get("f1") is None
    follows = await ledger.list_follows("f1")
    assert [f.payment_id for f in follows] == ["pay-1"]

    await ledger.refund("pay-1")
    assert await ledger.list_follows("f1") == []
