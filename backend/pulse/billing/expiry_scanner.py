"""Expiry scanner — time-based aging of subscriptions.

ACTIVE past its end date enters the grace period, GRACE_PERIOD past its grace
end expires, and a soft-cancelled subscription expires once its paid term is
over. Each aged subscription is committed on its own so one failure never
holds back the rest of the sweep. Checkout sessions left open past their
expiry are marked ``expired`` at the end of each sweep.
"""

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pulse.billing.errors import ConcurrentTransitionLost, InvalidTransition
from pulse.billing.plans import SubscriptionStatus
from pulse.billing.state_machine import enter_grace_period, expire
from pulse.billing.timeutils import utcnow
from pulse.config import settings
from pulse.models.checkout_session import CheckoutSession
from pulse.models.subscription import Subscription

logger = logging.getLogger(__name__)

S = SubscriptionStatus


@dataclass
class SweepResult:
    entered_grace: int = 0
    expired: int = 0
    skipped: int = 0
    abandoned_checkouts: int = 0

    @property
    def total(self) -> int:
        return self.entered_grace + self.expired


async def age_subscription(db: AsyncSession, subscription: Subscription, now: datetime | None = None) -> str | None:
    """Apply the time-based transition that is due, if any. Does not commit.

    Returns the new status, or None when nothing was due. Also used on the
    status read path so an elapsed grace period downgrades on the next read
    even between sweeps.
    """
    now = now or utcnow()
    status = subscription.status

    if status == S.ACTIVE and subscription.end_date < now:
        await enter_grace_period(db, subscription, now=now)
    elif status == S.GRACE_PERIOD and subscription.grace_period_end is not None and subscription.grace_period_end < now:
        await expire(db, subscription, from_statuses=(S.GRACE_PERIOD,), now=now)
    elif status == S.CANCELLED and subscription.end_date < now:
        await expire(db, subscription, from_statuses=(S.CANCELLED,), now=now)
    else:
        return None
    return subscription.status


async def expire_abandoned_checkouts(db: AsyncSession, now: datetime | None = None) -> int:
    """Mark open checkout sessions past ``expires_at`` as expired and commit.

    A late ``checkout.session.completed`` still completes an expired session.
    """
    now = now or utcnow()
    result = await db.execute(
        update(CheckoutSession)
        .where(CheckoutSession.status == "open", CheckoutSession.expires_at < now)
        .values(status="expired")
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if result.rowcount:
        logger.info("Marked %d abandoned checkout sessions expired", result.rowcount)
    return result.rowcount


async def run_expiry_sweep(db: AsyncSession, now: datetime | None = None) -> SweepResult:
    """Age every due subscription, committing after each one."""
    now = now or utcnow()
    result = SweepResult()

    due = await db.execute(
        select(Subscription.id)
        .where(
            or_(
                and_(Subscription.status == S.ACTIVE.value, Subscription.end_date < now),
                and_(Subscription.status == S.GRACE_PERIOD.value, Subscription.grace_period_end < now),
                and_(Subscription.status == S.CANCELLED.value, Subscription.end_date < now),
            )
        )
        .order_by(Subscription.end_date)
    )
    subscription_ids = list(due.scalars().all())
    if subscription_ids:
        logger.info("Expiry sweep: %d subscriptions due", len(subscription_ids))

    for subscription_id in subscription_ids:
        subscription = await db.get(Subscription, subscription_id)
        if subscription is None:
            result.skipped += 1
            continue
        try:
            new_status = await age_subscription(db, subscription, now)
        except (ConcurrentTransitionLost, InvalidTransition) as e:
            # A webhook or user action moved it first; nothing was written.
            logger.info("Expiry sweep skipped subscription %s: %s", subscription_id, e.message)
            result.skipped += 1
            continue

        if new_status == S.GRACE_PERIOD:
            result.entered_grace += 1
        elif new_status == S.EXPIRED:
            result.expired += 1
        else:
            result.skipped += 1
            continue
        await db.commit()

    result.abandoned_checkouts = await expire_abandoned_checkouts(db, now)

    logger.info(
        "Expiry sweep done: %d entered grace, %d expired, %d skipped, %d checkouts abandoned",
        result.entered_grace,
        result.expired,
        result.skipped,
        result.abandoned_checkouts,
    )
    return result


class ExpiryScanner:
    """Runs ``run_expiry_sweep`` on a fixed interval in a background task."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], interval_seconds: float | None = None):
        self._session_factory = session_factory
        self._interval = interval_seconds if interval_seconds is not None else settings.expiry_scan_interval_seconds
        self._task: asyncio.Task | None = None

    async def run_once(self) -> SweepResult:
        async with self._session_factory() as db:
            try:
                return await run_expiry_sweep(db)
            except Exception:
                await db.rollback()
                raise

    async def _run_forever(self) -> None:
        while True:
            try:
                await self.run_once()
            except Exception:
                logger.exception("Expiry sweep failed; retrying in %ss", self._interval)
            await asyncio.sleep(self._interval)

    def start(self) -> None:
        if self._task is None:
            logger.info("Starting expiry scanner (every %ss)", self._interval)
            self._task = asyncio.create_task(self._run_forever(), name="expiry-scanner")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
