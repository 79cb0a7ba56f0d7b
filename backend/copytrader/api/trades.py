"""Creator trade routes."""

from __future__ import annotations

from collections.abc import Callable

from fastapi import APIRouter, Depends, HTTPException, Query

from copytrader.api.deps import get_user_id
from copytrader.schemas.trades import (
    SettleResponse,
    TradeCreate,
    TradeDelete,
    TradeResponse,
    TradeSettle,
)
from copytrader.services.trade_service import TradeService

router = APIRouter(prefix="/api/trades", tags=["trades"])

# Injected at startup
_get_service: Callable[[], TradeService] | None = None


def set_trade_service_getter(getter: Callable[[], TradeService]) -> None:
    global _get_service
    _get_service = getter


def _service() -> TradeService:
    if _get_service is None:
        raise HTTPException(status_code=503, detail="Server not initialized")
    return _get_service()


@router.post("", response_model=TradeResponse, status_code=201)
async def create_trade(body: TradeCreate, user_id: str = Depends(get_user_id)):
    """Open a trade. Followers are charged a play and replication starts in the background."""
    return await _service().create_trade(user_id, body)


@router.post("/settle", response_model=SettleResponse)
async def settle_trade(body: TradeSettle, user_id: str = Depends(get_user_id)):
    """Record a SELL fill against one of the caller's open trades."""
    return await _service().settle_trade(
        user_id, body.trade_id, body.contracts, body.fill_price
    )


@router.get("", response_model=list[TradeResponse])
async def list_trades(
    status: str | None = Query(None), user_id: str = Depends(get_user_id)
):
    return await _service().list_trades(user_id, status)


@router.delete("")
async def delete_trade(body: TradeDelete, user_id: str = Depends(get_user_id)):
    """Delete one of the caller's OPEN trades."""
    await _service().delete_trade(user_id, body.trade_id)
    return {"success": True}
