"""Follow ledger: the authoritative record of paid follow entitlements.

Uniqueness is enforced by the database (payment id, one active purchase per
follower/capper pair). A constraint violation on insert is an expected
outcome, mapped back to ``duplicate_payment`` or ``already_active``.
Every mutation invalidates the follow cache of the affected follower before
returning.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from sqlalchemy import case, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from copytrader.database import utcnow
from copytrader.errors import TransactionError, ValidationError
from copytrader.models.follow_purchase import FollowPurchase, FollowStatus
from copytrader.services.follow_cache import FollowCache

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FollowSnapshot:
    """Immutable copy of a FollowPurchase row."""

    id: int
    follower_user_id: str
    capper_user_id: str
    company_id: str
    plan_id: str | None
    payment_id: str
    plays_purchased: int
    plays_consumed: int
    status: str
    created_at: datetime
    updated_at: datetime

    @property
    def remaining_plays(self) -> int:
        return max(0, self.plays_purchased - self.plays_consumed)

    @classmethod
    def from_row(cls, row: FollowPurchase) -> FollowSnapshot:
        return cls(
            id=row.id,
            follower_user_id=row.follower_user_id,
            capper_user_id=row.capper_user_id,
            company_id=row.company_id,
            plan_id=row.plan_id,
            payment_id=row.payment_id,
            plays_purchased=row.plays_purchased,
            plays_consumed=row.plays_consumed,
            status=row.status,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )


class EntitlementOutcome(str, Enum):
    CREATED = "created"
    DUPLICATE_PAYMENT = "duplicate_payment"
    SELF_FOLLOW = "self_follow"
    ALREADY_ACTIVE = "already_active"


class RefundOutcome(str, Enum):
    REFUNDED = "refunded"
    ALREADY_TERMINAL = "already_terminal"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class EntitlementResult:
    outcome: EntitlementOutcome
    purchase: FollowSnapshot | None = None

    @property
    def created(self) -> bool:
        return self.outcome is EntitlementOutcome.CREATED


@dataclass(frozen=True)
class RefundResult:
    outcome: RefundOutcome
    purchase: FollowSnapshot | None = None


def _consume_values() -> dict:
    """SET clause for spending one play; completes the purchase on the last one."""
    return {
        "plays_consumed": FollowPurchase.plays_consumed + 1,
        "status": case(
            (
                FollowPurchase.plays_consumed + 1 >= FollowPurchase.plays_purchased,
                FollowStatus.COMPLETED.value,
            ),
            else_=FollowPurchase.status,
        ),
        "updated_at": utcnow(),
    }


_CONSUMABLE = (
    FollowPurchase.status == FollowStatus.ACTIVE.value,
    FollowPurchase.plays_consumed < FollowPurchase.plays_purchased,
)


class FollowLedger:
    """Creates, consumes and refunds follow entitlements."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cache: FollowCache,
    ) -> None:
        self._session_factory = session_factory
        self._cache = cache

    @property
    def cache(self) -> FollowCache:
        return self._cache

    # ---- creation ----

    async def create_entitlement(
        self,
        follower_id: str,
        capper_id: str,
        company_id: str,
        plays: int,
        payment_id: str,
        plan_id: str | None = None,
    ) -> EntitlementResult:
        """Record a paid follow. Duplicates are reported as outcomes, not raised."""
        if plays < 1:
            raise ValidationError("plays must be at least 1")
        if not payment_id:
            raise ValidationError("payment_id is required")
        if follower_id == capper_id:
            logger.info("Ignoring self-follow by %s (payment %s)", follower_id, payment_id)
            return EntitlementResult(EntitlementOutcome.SELF_FOLLOW)

        async with self._session_factory() as session:
            existing = await self._find_conflict(session, follower_id, capper_id, payment_id)
            if existing is not None:
                return existing

            row = FollowPurchase(
                follower_user_id=follower_id,
                capper_user_id=capper_id,
                company_id=company_id,
                plan_id=plan_id,
                payment_id=payment_id,
                plays_purchased=plays,
                plays_consumed=0,
                status=FollowStatus.ACTIVE.value,
            )
            session.add(row)
            try:
                await session.commit()
            except IntegrityError:
                # Lost a race with a concurrent delivery or renewal
                await session.rollback()
                existing = await self._find_conflict(
                    session, follower_id, capper_id, payment_id
                )
                if existing is None:
                    raise TransactionError(
                        f"Could not record follow purchase for payment {payment_id}"
                    )
                return existing
            snapshot = FollowSnapshot.from_row(row)

        self._cache.invalidate(follower_id)
        logger.info(
            "Follow purchase %d created: %s -> %s (%d plays, payment %s)",
            snapshot.id,
            follower_id,
            capper_id,
            plays,
            payment_id,
        )
        return EntitlementResult(EntitlementOutcome.CREATED, snapshot)

    async def _find_conflict(
        self,
        session: AsyncSession,
        follower_id: str,
        capper_id: str,
        payment_id: str,
    ) -> EntitlementResult | None:
        by_payment = await session.scalar(
            select(FollowPurchase).where(FollowPurchase.payment_id == payment_id)
        )
        if by_payment is not None:
            return EntitlementResult(
                EntitlementOutcome.DUPLICATE_PAYMENT, FollowSnapshot.from_row(by_payment)
            )
        active = await session.scalar(
            select(FollowPurchase)
            .where(
                FollowPurchase.follower_user_id == follower_id,
                FollowPurchase.capper_user_id == capper_id,
                FollowPurchase.status == FollowStatus.ACTIVE.value,
            )
            .order_by(FollowPurchase.created_at.desc(), FollowPurchase.id.desc())
            .limit(1)
        )
        if active is not None:
            return EntitlementResult(
                EntitlementOutcome.ALREADY_ACTIVE, FollowSnapshot.from_row(active)
            )
        return None

    # ---- consumption ----

    async def consume_play(self, follow_purchase_id: int) -> bool:
        """Spend one play atomically. False if the purchase is not consumable."""
        async with self._session_factory() as session:
            result = await session.execute(
                update(FollowPurchase)
                .where(FollowPurchase.id == follow_purchase_id, *_CONSUMABLE)
                .values(**_consume_values())
                .returning(FollowPurchase.follower_user_id)
                .execution_options(synchronize_session=False)
            )
            follower_id = result.scalar_one_or_none()
            await session.commit()

        if follower_id is None:
            return False
        self._cache.invalidate(follower_id)
        return True

    async def consume_plays_for_capper(
        self, session: AsyncSession, capper_id: str
    ) -> set[str]:
        """Spend one play on every consumable purchase of *capper_id*.

        Runs inside the caller's transaction; the caller commits and then
        invalidates the cache for the returned follower ids.
        """
        result = await session.execute(
            update(FollowPurchase)
            .where(FollowPurchase.capper_user_id == capper_id, *_CONSUMABLE)
            .values(**_consume_values())
            .returning(FollowPurchase.follower_user_id)
            .execution_options(synchronize_session=False)
        )
        return set(result.scalars().all())

    # ---- refunds ----

    async def refund(
        self,
        payment_id: str | None,
        *,
        follower_id: str | None = None,
        plan_id: str | None = None,
    ) -> RefundResult:
        """Mark the purchase for *payment_id* refunded. Idempotent.

        When the payment id is unknown, falls back to the follower's newest
        purchase made through *plan_id*.
        """
        async with self._session_factory() as session:
            row = None
            if payment_id:
                row = await session.scalar(
                    select(FollowPurchase).where(FollowPurchase.payment_id == payment_id)
                )
            if row is None and follower_id and plan_id:
                row = await session.scalar(
                    select(FollowPurchase)
                    .where(
                        FollowPurchase.follower_user_id == follower_id,
                        FollowPurchase.plan_id == plan_id,
                    )
                    .order_by(FollowPurchase.created_at.desc(), FollowPurchase.id.desc())
                    .limit(1)
                )
            if row is None:
                logger.warning("Refund for unknown payment %s ignored", payment_id)
                return RefundResult(RefundOutcome.NOT_FOUND)

            result = await session.execute(
                update(FollowPurchase)
                .where(
                    FollowPurchase.id == row.id,
                    FollowPurchase.status != FollowStatus.REFUNDED.value,
                )
                .values(status=FollowStatus.REFUNDED.value, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            if result.rowcount == 0:
                return RefundResult(RefundOutcome.ALREADY_TERMINAL, FollowSnapshot.from_row(row))
            await session.refresh(row)
            snapshot = FollowSnapshot.from_row(row)

        self._cache.invalidate(snapshot.follower_user_id)
        logger.info("Follow purchase %d refunded (payment %s)", snapshot.id, snapshot.payment_id)
        return RefundResult(RefundOutcome.REFUNDED, snapshot)

    # ---- reads ----

    async def list_follows(self, follower_id: str) -> list[FollowSnapshot]:
        """Active and completed purchases of *follower_id*, newest first."""
        cached = self._cache.get(follower_id)
        if cached is not None:
            return list(cached)

        async with self._session_factory() as session:
            rows = await session.scalars(
                select(FollowPurchase)
                .where(
                    FollowPurchase.follower_user_id == follower_id,
                    FollowPurchase.status.in_(
                        (FollowStatus.ACTIVE.value, FollowStatus.COMPLETED.value)
                    ),
                )
                .order_by(FollowPurchase.created_at.desc(), FollowPurchase.id.desc())
            )
            follows = [FollowSnapshot.from_row(row) for row in rows]

        self._cache.set(follower_id, follows)
        return follows

    async def active_purchases_for_capper(self, capper_id: str) -> list[FollowSnapshot]:
        """Active purchases of *capper_id* that still have plays left."""
        async with self._session_factory() as session:
            rows = await session.scalars(
                select(FollowPurchase).where(
                    FollowPurchase.capper_user_id == capper_id, *_CONSUMABLE
                )
            )
            return [FollowSnapshot.from_row(row) for row in rows]
