"""Broker adapter contract.

Adapters never raise for a rejected order: ``place_option_order`` reports the
failure through ``OrderResult.success``. Callers must not persist anything for
an unsuccessful result.
"""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Protocol

from copytrader.models.trade import CONTRACT_MULTIPLIER

# Regulatory fee schedule (per contract unless noted)
ORF_PER_CONTRACT = 0.02685
OCC_PER_CONTRACT = 0.02
OCC_CONTRACT_CAP = 2750
OCC_MAX_FEE = 55.0
TAF_PER_CONTRACT = 0.00279
SEC_RATE = 0.000008
SEC_MIN_FEE = 0.01


class OrderStatus(str, Enum):
    PENDING = "pending"
    PARTIALLY_FILLED = "partially_filled"
    FILLED = "filled"
    CANCELED = "canceled"
    EXPIRED = "expired"
    REJECTED = "rejected"
    UNKNOWN = "unknown"

    @property
    def is_terminal_non_fill(self) -> bool:
        return self in _TERMINAL_NON_FILL


_TERMINAL_NON_FILL = frozenset(
    {OrderStatus.CANCELED, OrderStatus.EXPIRED, OrderStatus.REJECTED}
)


class OptionInstrument(Protocol):
    """Anything carrying a single-leg option contract (e.g. a ``Trade``)."""

    ticker: str
    strike: float
    expiry_date: datetime
    option_type: str


@dataclass
class OrderResult:
    """Outcome of an order placement call."""

    success: bool
    order_id: str | None = None
    execution_price: float | None = None
    executed_at: datetime | None = None
    cost_info: dict[str, Any] | None = None
    order_details: dict[str, Any] = field(default_factory=dict)
    error: str | None = None


@dataclass
class OrderDetail:
    """A point-in-time view of an order used while waiting for a fill."""

    status: OrderStatus
    execution_price: float | None = None
    executed_at: datetime | None = None


@dataclass
class AccountInfo:
    account_id: str
    option_approved_level: str | None = None
    option_trading_level: str | None = None


def to_occ_symbol(
    ticker: str, strike: float, expiry: datetime, option_type: str
) -> str:
    """Build the OCC option symbol: TICKER + YYMMDD + C/P + strike*1000 (8 digits)."""
    kind = "C" if option_type.upper() == "C" else "P"
    strike_int = round(strike * 1000)
    return f"{ticker.upper()}{expiry:%y%m%d}{kind}{strike_int:08d}"


def estimate_cost_info(
    side: str, filled_qty: float, price: float, commission: float = 0.0
) -> dict[str, Any]:
    """Estimate gross cost and regulatory fees for an option fill.

    ORF and OCC apply to both sides; TAF and the SEC fee apply to sells only.
    Buys report cost plus fees, sells report proceeds minus fees.
    """
    gross = filled_qty * price * CONTRACT_MULTIPLIER
    fees: dict[str, float] = {
        "orf": filled_qty * ORF_PER_CONTRACT,
        "occ": (
            filled_qty * OCC_PER_CONTRACT
            if filled_qty <= OCC_CONTRACT_CAP
            else OCC_MAX_FEE
        ),
    }
    if side.upper() == "SELL":
        fees["taf"] = filled_qty * TAF_PER_CONTRACT
        fees["sec"] = max(SEC_MIN_FEE, gross * SEC_RATE)

    total_fees = sum(fees.values())
    if side.upper() == "BUY":
        total = gross + commission + total_fees
    else:
        total = gross - commission - total_fees
    return {
        "gross_cost": gross,
        "commission": commission,
        "estimated_fees": fees,
        "total_cost": total,
    }


def commission_of(cost_info: dict[str, Any] | None) -> float:
    """Commission the broker reported at placement, 0 when it reported none."""
    return float((cost_info or {}).get("commission") or 0.0)


class BrokerAdapter(abc.ABC):
    """Interface every broker integration implements."""

    broker_type: str = ""

    @abc.abstractmethod
    async def place_option_order(
        self,
        trade: OptionInstrument,
        side: str,
        quantity: int,
        limit_price: float | None = None,
    ) -> OrderResult:
        """Submit a single-leg option order. Market order unless *limit_price* is set."""

    @abc.abstractmethod
    async def poll_order_detail(self, order_id: str) -> OrderDetail:
        """Fetch the current state of an order. May raise on transport failure."""

    @abc.abstractmethod
    async def get_account_info(self) -> AccountInfo: ...

    async def validate_connection(self) -> bool:
        try:
            await self.get_account_info()
        except Exception:
            return False
        return True

    async def aclose(self) -> None:
        """Release any network resources held by the adapter."""
