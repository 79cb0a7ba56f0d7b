import httpx
import pytest

from copytrader.brokers.base import OrderDetail, OrderResult, OrderStatus
from copytrader.engine.execution_confirmation import ExecutionConfirmer
from copytrader.errors import BrokerError


@pytest.mark.asyncio
async def test_synchronous_price_is_used_without_polling(fake_broker):
    broker = fake_broker(polls=[RuntimeError("should not poll")])
    confirmer = ExecutionConfirmer(poll_interval=0.001, timeout=0.1)

    fill = await confirmer.confirm(
        broker, OrderResult(success=True, order_id="o1", execution_price=1.25)
    )

    assert fill.price == 1.25
    assert fill.order_id == "o1"
    assert len(broker.polls) == 1


@pytest.mark.asyncio
async def test_polls_until_price_and_swallows_transport_errors(fake_broker):
    broker = fake_broker(
        polls=[
            httpx.ConnectError("down"),
            OrderDetail(status=OrderStatus.PENDING),
            BrokerError("HTTP 503"),
            OrderDetail(status=OrderStatus.FILLED, execution_price=3.1),
        ]
    )
    confirmer = ExecutionConfirmer(poll_interval=0.001, timeout=1.0)

    fill = await confirmer.confirm(broker, OrderResult(success=True, order_id="o1"))

    assert fill.price == 3.1
    assert broker.polls == []


@pytest.mark.asyncio
async def test_terminal_status_aborts(fake_broker):
    broker = fake_broker(polls=[OrderDetail(status=OrderStatus.CANCELED)])
    confirmer = ExecutionConfirmer(poll_interval=0.001, timeout=1.0)

    with pytest.raises(BrokerError, match="canceled"):
        await confirmer.confirm(broker, OrderResult(success=True, order_id="o1"))


@pytest.mark.asyncio
async def test_deadline_aborts(fake_broker):
    confirmer = ExecutionConfirmer(poll_interval=0.001, timeout=0.05)
    with pytest.raises(BrokerError, match="not filled"):
        await confirmer.confirm(fake_broker(), OrderResult(success=True, order_id="o1"))


@pytest.mark.asyncio
async def test_failed_placement_is_rejected(fake_broker):
    confirmer = ExecutionConfirmer()
    with pytest.raises(BrokerError, match="no buying power"):
        await confirmer.confirm(
            fake_broker(), OrderResult(success=False, error="no buying power")
        )
