import json
from datetime import datetime
from types import SimpleNamespace

import httpx
import pytest

from copytrader.brokers.alpaca import AlpacaBroker
from copytrader.brokers.base import OrderStatus, estimate_cost_info, to_occ_symbol
from copytrader.brokers.factory import create_broker
from copytrader.errors import BrokerError
from copytrader.models import BrokerConnection

CONTRACT = SimpleNamespace(
    ticker="aapl", strike=195.5, expiry_date=datetime(2025, 3, 21), option_type="C"
)


class AlpacaStub:
    """Records requests and answers them like the Alpaca API would."""

    def __init__(self, *, account=None, order=None, order_status=200, polled=None):
        self.account = account or {"id": "acct", "option_approved_level": "2"}
        self.order = order or {"id": "o-1", "status": "new", "qty": "2"}
        self.order_status = order_status
        self.polled = polled or {"id": "o-1", "status": "filled", "filled_avg_price": "1.23"}
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/v2/account":
            return httpx.Response(200, json=self.account)
        if path == "/v2/orders" and request.method == "POST":
            return httpx.Response(self.order_status, json=self.order)
        if path.startswith("/v2/orders/"):
            return httpx.Response(200, json=self.polled)
        return httpx.Response(404, json={"message": "not found"})


def _broker(stub: AlpacaStub) -> AlpacaBroker:
    return AlpacaBroker(
        api_key="key",
        api_secret="secret",
        base_url="https://paper.example/",
        transport=httpx.MockTransport(stub),
    )


def test_occ_symbol():
    assert to_occ_symbol("aapl", 195.5, datetime(2025, 3, 21), "C") == "AAPL250321C00195500"
    assert to_occ_symbol("SPY", 4.0, datetime(2024, 12, 6), "p") == "SPY241206P00004000"


def test_cost_info_for_buy_and_sell():
    buy = estimate_cost_info("BUY", 2, 1.5)
    assert buy["gross_cost"] == pytest.approx(300.0)
    assert set(buy["estimated_fees"]) == {"orf", "occ"}
    assert buy["total_cost"] > buy["gross_cost"]

    sell = estimate_cost_info("SELL", 2, 1.5, commission=1.0)
    assert set(sell["estimated_fees"]) == {"orf", "occ", "taf", "sec"}
    assert sell["estimated_fees"]["sec"] == pytest.approx(0.01)
    assert sell["total_cost"] < sell["gross_cost"] - 1.0


def test_occ_fee_is_capped():
    fees = estimate_cost_info("BUY", 3000, 0.1)["estimated_fees"]
    assert fees["occ"] == 55.0


@pytest.mark.asyncio
async def test_market_order_body_and_headers():
    stub = AlpacaStub()
    broker = _broker(stub)

    result = await broker.place_option_order(CONTRACT, "BUY", 2)
    await broker.aclose()

    assert result.success
    assert result.order_id == "o-1"
    assert result.execution_price is None
    post = stub.requests[-1]
    assert post.headers["APCA-API-KEY-ID"] == "key"
    assert json.loads(post.content) == {
        "symbol": "AAPL250321C00195500",
        "qty": "2",
        "side": "buy",
        "type": "market",
        "time_in_force": "day",
    }


@pytest.mark.asyncio
async def test_limit_order_and_immediate_fill():
    stub = AlpacaStub(
        order={
            "id": "o-2",
            "status": "filled",
            "qty": "1",
            "filled_qty": "1",
            "filled_avg_price": "2.05",
            "filled_at": "2025-03-01T15:30:00Z",
        }
    )
    broker = _broker(stub)

    result = await broker.place_option_order(CONTRACT, "SELL", 1, limit_price=2)
    await broker.aclose()

    body = json.loads(stub.requests[-1].content)
    assert body["type"] == "limit"
    assert body["limit_price"] == "2.00"
    assert result.execution_price == pytest.approx(2.05)
    assert result.executed_at is not None
    assert result.cost_info["gross_cost"] == pytest.approx(205.0)
    assert result.order_details["status"] == "filled"


@pytest.mark.asyncio
async def test_account_without_options_approval_is_refused():
    stub = AlpacaStub(account={"id": "acct", "option_approved_level": "0"})
    broker = _broker(stub)

    result = await broker.place_option_order(CONTRACT, "BUY", 1)
    await broker.aclose()

    assert not result.success
    assert "not approved" in result.error
    assert [r.url.path for r in stub.requests] == ["/v2/account"]


@pytest.mark.asyncio
async def test_rejected_order_is_reported_not_raised():
    stub = AlpacaStub(order={"message": "insufficient buying power"}, order_status=403)
    broker = _broker(stub)

    result = await broker.place_option_order(CONTRACT, "BUY", 1)
    await broker.aclose()

    assert not result.success
    assert "insufficient buying power" in result.error


@pytest.mark.asyncio
async def test_poll_maps_status_and_price():
    broker = _broker(AlpacaStub())
    detail = await broker.poll_order_detail("o-1")
    assert detail.status is OrderStatus.FILLED
    assert detail.execution_price == pytest.approx(1.23)

    broker = _broker(AlpacaStub(polled={"id": "o-1", "status": "canceled"}))
    detail = await broker.poll_order_detail("o-1")
    assert detail.status.is_terminal_non_fill
    assert detail.execution_price is None


@pytest.mark.asyncio
async def test_transport_failure_raises_broker_error():
    def explode(request):
        raise httpx.ConnectError("down", request=request)

    broker = AlpacaBroker(
        api_key="k", api_secret="s", base_url="https://x", transport=httpx.MockTransport(explode)
    )
    with pytest.raises(BrokerError):
        await broker.poll_order_detail("o-1")
    assert await broker.validate_connection() is False


def test_factory_requires_supported_broker_and_credentials():
    broker = create_broker(
        BrokerConnection(id=1, broker_type="alpaca", api_key="k", api_secret="s")
    )
    assert isinstance(broker, AlpacaBroker)
    with pytest.raises(BrokerError):
        create_broker(BrokerConnection(id=2, broker_type="alpaca"))
    with pytest.raises(BrokerError):
        create_broker(BrokerConnection(id=3, broker_type="schwab", api_key="k", api_secret="s"))
