"""Alpaca REST adapter for single-leg option orders."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

import httpx

from copytrader.brokers.base import (
    AccountInfo,
    BrokerAdapter,
    OptionInstrument,
    OrderDetail,
    OrderResult,
    OrderStatus,
    estimate_cost_info,
    to_occ_symbol,
)
from copytrader.errors import BrokerError

logger = logging.getLogger(__name__)

_STATUS_MAP: dict[str, OrderStatus] = {
    "new": OrderStatus.PENDING,
    "accepted": OrderStatus.PENDING,
    "pending_new": OrderStatus.PENDING,
    "accepted_for_bidding": OrderStatus.PENDING,
    "calculated": OrderStatus.PENDING,
    "pending_cancel": OrderStatus.PENDING,
    "pending_replace": OrderStatus.PENDING,
    "replaced": OrderStatus.PENDING,
    "partially_filled": OrderStatus.PARTIALLY_FILLED,
    "filled": OrderStatus.FILLED,
    "done_for_day": OrderStatus.EXPIRED,
    "canceled": OrderStatus.CANCELED,
    "expired": OrderStatus.EXPIRED,
    "stopped": OrderStatus.REJECTED,
    "suspended": OrderStatus.REJECTED,
    "rejected": OrderStatus.REJECTED,
}

_ORDER_DETAIL_KEYS = (
    "id",
    "client_order_id",
    "symbol",
    "qty",
    "filled_qty",
    "filled_avg_price",
    "status",
    "order_class",
    "type",
    "side",
    "time_in_force",
    "limit_price",
    "commission",
)


def _to_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _parse_timestamp(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return f"HTTP {response.status_code}: {response.text}"
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return f"HTTP {response.status_code}: {response.text}"


class AlpacaBroker(BrokerAdapter):
    """Talks to the Alpaca trading API with the connection's key pair."""

    broker_type = "alpaca"

    def __init__(
        self,
        *,
        api_key: str,
        api_secret: str,
        base_url: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=timeout,
            transport=transport,
            headers={
                "APCA-API-KEY-ID": api_key,
                "APCA-API-SECRET-KEY": api_secret,
                "Accept": "application/json",
            },
        )

    async def aclose(self) -> None:
        if not self._client.is_closed:
            await self._client.aclose()

    async def _request(
        self, method: str, path: str, *, json: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        try:
            response = await self._client.request(method, path, json=json)
        except httpx.HTTPError as exc:
            raise BrokerError(f"Alpaca request failed: {exc}") from exc
        if response.status_code >= 400:
            raise BrokerError(_error_message(response))
        return response.json()

    async def get_account_info(self) -> AccountInfo:
        account = await self._request("GET", "/v2/account")
        return AccountInfo(
            account_id=account.get("id") or account.get("account_number") or "",
            option_approved_level=account.get("option_approved_level"),
            option_trading_level=account.get("option_trading_level"),
        )

    async def place_option_order(
        self,
        trade: OptionInstrument,
        side: str,
        quantity: int,
        limit_price: float | None = None,
    ) -> OrderResult:
        symbol = to_occ_symbol(
            trade.ticker, trade.strike, trade.expiry_date, trade.option_type
        )
        try:
            account = await self.get_account_info()
            if not account.option_approved_level or account.option_approved_level == "0":
                return OrderResult(
                    success=False,
                    error="Alpaca account is not approved for options trading",
                )

            body: dict[str, Any] = {
                "symbol": symbol,
                "qty": str(quantity),
                "side": side.lower(),
                "type": "market",
                "time_in_force": "day",
            }
            if limit_price is not None:
                body["type"] = "limit"
                body["limit_price"] = f"{limit_price:.2f}"

            order = await self._request("POST", "/v2/orders", json=body)
        except BrokerError as exc:
            logger.warning("Alpaca %s %s x%d failed: %s", side, symbol, quantity, exc)
            return OrderResult(success=False, error=f"Failed to place order: {exc}")

        filled_qty = _to_float(order.get("filled_qty")) or _to_float(order.get("qty"))
        avg_price = _to_float(order.get("filled_avg_price"))
        commission = _to_float(order.get("commission"))
        logger.info(
            "Alpaca order %s placed: %s %s x%d status=%s",
            order.get("id"),
            side,
            symbol,
            quantity,
            order.get("status"),
        )
        return OrderResult(
            success=True,
            order_id=order.get("id") or order.get("client_order_id"),
            execution_price=avg_price if avg_price > 0 else None,
            executed_at=_parse_timestamp(order.get("filled_at")),
            cost_info=estimate_cost_info(side, filled_qty, avg_price, commission),
            order_details={k: order.get(k) for k in _ORDER_DETAIL_KEYS if k in order},
        )

    async def poll_order_detail(self, order_id: str) -> OrderDetail:
        order = await self._request("GET", f"/v2/orders/{order_id}")
        price = _to_float(order.get("filled_avg_price"))
        return OrderDetail(
            status=_STATUS_MAP.get(str(order.get("status", "")).lower(), OrderStatus.UNKNOWN),
            execution_price=price if price > 0 else None,
            executed_at=_parse_timestamp(order.get("filled_at")),
        )
