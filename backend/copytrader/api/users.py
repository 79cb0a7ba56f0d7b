"""User settings routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from copytrader.api.deps import get_user_id
from copytrader.database import get_db
from copytrader.errors import NotFoundError, ValidationError
from copytrader.models.broker_connection import BrokerConnection
from copytrader.models.user import AUTO_TRADE_MODE, User
from copytrader.schemas.users import AutoIQResponse, AutoIQUpdate

router = APIRouter(prefix="/api/users", tags=["users"])


@router.patch("/me/autoiq", response_model=AutoIQResponse)
async def update_autoiq(
    updates: AutoIQUpdate,
    user_id: str = Depends(get_user_id),
    db: AsyncSession = Depends(get_db),
):
    """Switch AutoIQ between notify and auto-trade, or change the default broker."""
    user = await db.get(User, user_id)
    if user is None:
        user = User(id=user_id)
        db.add(user)

    fields = updates.model_dump(exclude_unset=True)
    if "default_broker_connection_id" in fields:
        connection_id = fields["default_broker_connection_id"]
        if connection_id is not None:
            connection = await db.get(BrokerConnection, connection_id)
            if connection is None or connection.user_id != user_id:
                raise NotFoundError("Broker connection not found")
        user.default_broker_connection_id = connection_id

    mode = fields.get("auto_trade_mode")
    if mode is not None:
        if mode == AUTO_TRADE_MODE and not user.has_autoiq:
            raise ValidationError("An AutoIQ subscription is required for auto-trade")
        user.auto_trade_mode = mode

    await db.flush()
    await db.refresh(user)
    return user
