"""User settings schemas."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel


class AutoIQUpdate(BaseModel):
    """Request schema for changing AutoIQ settings. Unset fields are left alone."""

    auto_trade_mode: Literal["notify", "auto-trade"] | None = None
    default_broker_connection_id: int | None = None


class AutoIQResponse(BaseModel):
    id: str
    has_autoiq: bool
    auto_trade_mode: str
    default_broker_connection_id: int | None = None

    model_config = {"from_attributes": True}
