"""Payment webhook processing.

Signed payment events become follow ledger mutations. Deliveries are
at-least-once, so every branch is idempotent: replays land on the unique
payment id and repeated refunds find the purchase already refunded.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from typing import Any

import pydantic
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from copytrader.engine.follow_ledger import FollowLedger
from copytrader.engine.worker_pool import JobRunner
from copytrader.errors import ConfigurationError, SignatureError, ValidationError
from copytrader.models.user import User
from copytrader.schemas.webhooks import FollowMetadata, PaymentData, WebhookPayload
from copytrader.services.audit_service import AuditService

logger = logging.getLogger(__name__)

SUCCEEDED_ACTIONS = frozenset({"payment.succeeded", "app_payment.succeeded"})
FAILED_ACTIONS = frozenset({"payment.failed", "app_payment.failed"})
REFUNDED_ACTIONS = frozenset(
    {"payment.refunded", "refund.created", "app_payment.refunded"}
)
REFUNDED_STATUSES = frozenset({"refunded", "partially_refunded", "auto_refunded"})

PROJECT_FOLLOW = "trade_follow"
PROJECT_AUTOIQ = "trade_autoiq"


def verify_signature(raw_body: bytes, header: str | None, secret: str) -> None:
    """Check a ``t=<ts>,v1=<hex>`` HMAC-SHA256 signature over ``"<ts>.<body>"``.

    Raises ConfigurationError when no secret is configured, SignatureError when
    the header is missing or no signature matches, ValidationError when the
    header cannot be parsed.
    """
    if not secret:
        logger.error("Webhook secret is not configured; rejecting delivery")
        raise ConfigurationError("Server misconfigured")
    if not header:
        raise SignatureError("Missing webhook signature")

    timestamp = None
    signatures: list[str] = []
    for part in header.split(","):
        key, sep, value = part.strip().partition("=")
        if not sep:
            raise ValidationError("Malformed webhook signature header")
        if key == "t":
            timestamp = value
        elif key == "v1":
            signatures.append(value)
    if not timestamp or not signatures:
        raise ValidationError("Malformed webhook signature header")

    expected = hmac.new(
        secret.encode(), timestamp.encode() + b"." + raw_body, hashlib.sha256
    ).hexdigest()
    if not any(hmac.compare_digest(expected, sig) for sig in signatures):
        raise SignatureError("Invalid webhook signature")


def sign_payload(raw_body: bytes, secret: str, timestamp: int) -> str:
    """Build the signature header a sender would attach to *raw_body*."""
    digest = hmac.new(
        secret.encode(), str(timestamp).encode() + b"." + raw_body, hashlib.sha256
    ).hexdigest()
    return f"t={timestamp},v1={digest}"


def parse_num_plays(raw: Any, default: int) -> int:
    """``numPlays`` arrives as a number or a numeric string; fall back to *default*."""
    if isinstance(raw, bool):
        return default
    if isinstance(raw, str):
        try:
            raw = int(raw.strip(), 10)
        except ValueError:
            return default
    if isinstance(raw, float) and raw.is_integer():
        raw = int(raw)
    if isinstance(raw, int) and raw > 0:
        return raw
    return default


class PaymentWebhookProcessor:
    """Verifies, parses and applies payment events."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: FollowLedger,
        audit: AuditService,
        jobs: JobRunner,
        *,
        secret: str,
        autoiq_plan_id: str = "",
        default_num_plays: int = 10,
    ) -> None:
        self._session_factory = session_factory
        self._ledger = ledger
        self._audit = audit
        self._jobs = jobs
        self._secret = secret
        self._autoiq_plan_id = autoiq_plan_id
        self._default_num_plays = default_num_plays

    # ---- intake ----

    def accept(self, raw_body: bytes, signature_header: str | None) -> WebhookPayload:
        """Verify the signature, then parse the body."""
        verify_signature(raw_body, signature_header, self._secret)
        if not raw_body:
            raise ValidationError("Empty webhook body")
        try:
            return WebhookPayload.model_validate(json.loads(raw_body))
        except (ValueError, pydantic.ValidationError) as exc:
            raise ValidationError(f"Invalid webhook payload: {exc}") from None

    def submit(self, payload: WebhookPayload) -> None:
        """Process *payload* in the background."""
        self._jobs.spawn(
            self.process(payload), name=f"webhook-{payload.action}-{payload.data.id}"
        )

    # ---- routing ----

    async def process(self, payload: WebhookPayload) -> str:
        """Apply one event. Returns a short description of what happened."""
        action = payload.action
        data = payload.data
        if action in REFUNDED_ACTIONS:
            return await self._handle_refund(data, payment_id_from_id=False)
        if action in FAILED_ACTIONS:
            logger.warning(
                "Payment %s failed for user %s (plan %s)", data.id, data.user_id, data.plan_id
            )
            return "failed_logged"
        if action not in SUCCEEDED_ACTIONS:
            logger.info("Ignoring webhook action %s", action)
            return "ignored"

        if data.status in REFUNDED_STATUSES:
            return await self._handle_refund(data, payment_id_from_id=True)
        if data.status != "paid":
            logger.info("Ignoring payment %s with status %s", data.id, data.status)
            return "ignored"

        metadata = await self._resolve_metadata(data, data.plan_id)
        project = metadata.project
        if project is None and metadata.follow_purchase:
            project = PROJECT_FOLLOW
        if project == PROJECT_FOLLOW:
            return await self._handle_follow_purchase(data, metadata)
        if project == PROJECT_AUTOIQ:
            return await self._set_autoiq(data.user_id, True, data.id)
        if project:
            logger.error("Unknown project %s on payment %s", project, data.id)
        else:
            logger.error("No metadata for payment %s (plan %s)", data.id, data.plan_id)
        return "ignored"

    async def _resolve_metadata(
        self, data: PaymentData, plan_id: str | None, *, include_payment: bool = False
    ) -> FollowMetadata:
        """Find follow metadata wherever the processor put it.

        Falls back to the plan id: the AutoIQ plan, or a capper whose follow
        offer is sold through that plan.
        """
        candidates: list[Any] = [
            data.metadata,
            (data.checkout_configuration or {}).get("metadata"),
            (data.plan or {}).get("metadata"),
        ]
        if include_payment and data.payment is not None:
            candidates.append(data.payment.metadata)
        for candidate in candidates:
            if isinstance(candidate, dict) and candidate:
                return FollowMetadata.model_validate(candidate)

        if not plan_id:
            return FollowMetadata()
        if self._autoiq_plan_id and plan_id == self._autoiq_plan_id:
            return FollowMetadata(project=PROJECT_AUTOIQ)

        async with self._session_factory() as session:
            capper = await session.scalar(
                select(User).where(User.follow_offer_plan_id == plan_id)
            )
        if capper is None or not capper.follow_offer_enabled:
            logger.error("No enabled follow offer for plan %s", plan_id)
            return FollowMetadata()
        return FollowMetadata(
            follow_purchase=True,
            project=PROJECT_FOLLOW,
            capper_user_id=capper.id,
            capper_company_id=capper.company_id or data.company_id,
            num_plays=capper.follow_offer_num_plays or self._default_num_plays,
        )

    # ---- handlers ----

    async def _handle_follow_purchase(
        self, data: PaymentData, metadata: FollowMetadata
    ) -> str:
        if not metadata.follow_purchase:
            return "ignored"
        follower_id = data.user_id
        payment_id = data.id
        capper_id = metadata.capper_user_id
        if not (follower_id and payment_id and capper_id):
            logger.error("Follow purchase %s is missing identifiers", payment_id)
            return "ignored"

        async with self._session_factory() as session:
            capper = await session.get(User, capper_id)
        if capper is None or not capper.follow_offer_enabled:
            logger.error("Capper %s has no enabled follow offer (payment %s)", capper_id, payment_id)
            return "ignored"
        company_id = metadata.capper_company_id or data.company_id or capper.company_id
        if not company_id:
            logger.error("Follow purchase %s has no company", payment_id)
            return "ignored"

        plays = parse_num_plays(metadata.num_plays, self._default_num_plays)
        result = await self._ledger.create_entitlement(
            follower_id, capper_id, company_id, plays, payment_id, plan_id=data.plan_id
        )
        await self._audit.info(
            "payment",
            f"Follow payment {payment_id}: {result.outcome.value}",
            user_id=follower_id,
            details={"capper_user_id": capper_id, "plays": plays, "plan_id": data.plan_id},
        )
        return result.outcome.value

    async def _handle_refund(self, data: PaymentData, *, payment_id_from_id: bool) -> str:
        nested = data.payment
        payment_id = data.payment_id or (nested.id if nested else None)
        if payment_id is None and payment_id_from_id:
            payment_id = data.id
        follower_id = data.user_id or (nested.user_id if nested else None)
        plan_id = data.plan_id or (nested.plan_id if nested else None)
        if not payment_id and not (follower_id and plan_id):
            logger.error("Refund %s carries no payment reference", data.id)
            return "ignored"

        metadata = await self._resolve_metadata(data, plan_id, include_payment=True)
        if metadata.project == PROJECT_AUTOIQ:
            return await self._set_autoiq(follower_id, False, payment_id)

        result = await self._ledger.refund(payment_id, follower_id=follower_id, plan_id=plan_id)
        await self._audit.info(
            "payment",
            f"Refund for payment {payment_id}: {result.outcome.value}",
            user_id=follower_id,
            details={"refund_id": data.id, "plan_id": plan_id},
        )
        return result.outcome.value

    async def _set_autoiq(self, user_id: str | None, enabled: bool, payment_id: str | None) -> str:
        if not user_id:
            logger.error("AutoIQ payment %s has no user", payment_id)
            return "ignored"
        async with self._session_factory() as session:
            user = await session.get(User, user_id)
            if user is None:
                user = User(id=user_id)
                session.add(user)
            user.has_autoiq = enabled
            await session.commit()
        state = "enabled" if enabled else "disabled"
        await self._audit.info(
            "payment", f"AutoIQ {state} (payment {payment_id})", user_id=user_id
        )
        return f"autoiq_{state}"
