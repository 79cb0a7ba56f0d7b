"""Payment webhook payload schemas.

Payment processors nest the same fields in different places depending on the
event, so everything beyond ``action`` is optional and extra keys are kept.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class FollowMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    follow_purchase: bool = Field(default=False, alias="followPurchase")
    capper_user_id: str | None = Field(default=None, alias="capperUserId")
    capper_company_id: str | None = Field(default=None, alias="capperCompanyId")
    num_plays: int | str | None = Field(default=None, alias="numPlays")
    project: str | None = None


class NestedPayment(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str | None = None
    plan_id: str | None = None
    company_id: str | None = None
    user_id: str | None = None
    status: str | None = None
    metadata: dict[str, Any] | None = None


class PaymentData(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str | None = None
    user_id: str | None = None
    plan_id: str | None = None
    company_id: str | None = None
    status: str | None = None
    payment_id: str | None = None
    metadata: dict[str, Any] | None = None
    payment: NestedPayment | None = None
    checkout_configuration: dict[str, Any] | None = None
    plan: dict[str, Any] | None = None


class WebhookPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    action: str
    api_version: str | None = None
    data: PaymentData = Field(default_factory=PaymentData)
