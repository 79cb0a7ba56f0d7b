"""Follower routes: feed, follow list and follow/fade actions."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query

from copytrader.api.deps import get_user_id
from copytrader.engine.feed_aggregator import FeedAggregator
from copytrader.engine.follow_ledger import FollowLedger
from copytrader.engine.trade_actions import TradeActionRecorder
from copytrader.schemas.follows import (
    FeedResponse,
    FollowPurchaseResponse,
    TradeActionRequest,
    TradeActionResponse,
)

router = APIRouter(prefix="/api/follow", tags=["follow"])

# Injected at startup
_get_feed: Callable[[], FeedAggregator] | None = None
_get_ledger: Callable[[], FollowLedger] | None = None
_get_recorder: Callable[[], TradeActionRecorder] | None = None


def set_follow_dependencies(
    feed_getter: Callable[[], FeedAggregator],
    ledger_getter: Callable[[], FollowLedger],
    recorder_getter: Callable[[], TradeActionRecorder],
) -> None:
    global _get_feed, _get_ledger, _get_recorder
    _get_feed = feed_getter
    _get_ledger = ledger_getter
    _get_recorder = recorder_getter


def _require(getter: Callable[[], Any] | None) -> Any:
    if getter is None:
        raise HTTPException(status_code=503, detail="Server not initialized")
    return getter()


@router.get("/feed", response_model=FeedResponse)
async def get_feed(
    page: int = Query(1),
    page_size: int = Query(10, alias="pageSize"),
    search: str | None = Query(None),
    user_id: str = Depends(get_user_id),
):
    """Creator trades the caller is entitled to, newest first."""
    feed: FeedAggregator = _require(_get_feed)
    result = await feed.get_feed(user_id, page=page, page_size=page_size, search=search)
    return FeedResponse.model_validate(result)


@router.get("/purchases", response_model=list[FollowPurchaseResponse])
async def list_purchases(user_id: str = Depends(get_user_id)):
    """The caller's active and completed follow purchases."""
    ledger: FollowLedger = _require(_get_ledger)
    return [FollowPurchaseResponse.model_validate(f) for f in await ledger.list_follows(user_id)]


@router.post("/trade-action", response_model=TradeActionResponse)
async def record_trade_action(
    body: TradeActionRequest, user_id: str = Depends(get_user_id)
):
    """Follow or fade a creator trade. Repeating the call returns the first action."""
    recorder: TradeActionRecorder = _require(_get_recorder)
    result = await recorder.record_action(user_id, body.trade_id, body.action)
    return TradeActionResponse.model_validate(result)


@router.get("/trade-action")
async def get_trade_action(
    trade_id: int = Query(alias="tradeId"), user_id: str = Depends(get_user_id)
) -> dict[str, Any]:
    recorder: TradeActionRecorder = _require(_get_recorder)
    result = await recorder.get_action(user_id, trade_id)
    if result is None:
        return {"action": None, "followed_trade_id": None}
    return {"action": result.action, "followed_trade_id": result.followed_trade_id}
