"""Subscription state machine — the single writer of subscription status.

::

    ACTIVE -> GRACE_PERIOD -> EXPIRED
      |  ^
      v  |  (reactivate, before end_date)
    CANCELLED -> EXPIRED (paid term elapsed)

Subscriptions are created ACTIVE when checkout completes. The pending stage of
a purchase lives on ``CheckoutSession`` (``open`` until the checkout webhook);
``PENDING`` is only reserved in the status enum and never written here.

Every transition is a compare-and-swap: an ``UPDATE ... WHERE id = :id AND
status IN (:expected)``. If the row no longer matches, a competing writer
(webhook, expiry sweep, user action) already moved it and
``ConcurrentTransitionLost`` is raised. The subscription write and the account
snapshot write share the caller's transaction; nothing here commits.
"""

import logging
from collections.abc import Iterable
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy import ColumnElement, update
from sqlalchemy.ext.asyncio import AsyncSession

from pulse.billing.entitlements import derive
from pulse.billing.errors import (
    AccountNotFound,
    ConcurrentTransitionLost,
    ExistingActiveSubscription,
    InvalidTransition,
    PlanNotFound,
    SubscriptionNotFound,
)
from pulse.billing.plan_catalog import get_free_plan
from pulse.billing.plans import ENTITLED_STATUSES, LIVE_STATUSES, SubscriptionStatus, billing_period
from pulse.billing.timeutils import utcnow
from pulse.config import settings
from pulse.models.account import Account
from pulse.models.plan import Plan
from pulse.models.subscription import Subscription
from pulse.services.subscription_service import get_current_subscription, get_live_subscription

logger = logging.getLogger(__name__)

NON_PAYMENT_REASON = "non-payment"
SUPERSEDED_REASON = "superseded by a new subscription"
USER_CANCELLED_REASON = "User cancelled"

S = SubscriptionStatus


async def _load_plan(db: AsyncSession, plan_id) -> Plan:
    plan = await db.get(Plan, plan_id)
    if plan is None:
        raise PlanNotFound(str(plan_id))
    return plan


async def _compare_and_swap(
    db: AsyncSession,
    subscription: Subscription,
    transition: str,
    expected: Iterable[SubscriptionStatus],
    changes: dict[str, Any],
    event_time: datetime | None = None,
    guards: Iterable[ColumnElement[bool]] = (),
) -> None:
    """Apply ``changes`` only if the stored status is still one of ``expected``."""
    expected = tuple(expected)
    if subscription.status not in expected:
        raise InvalidTransition(transition, subscription.status)

    values = dict(changes)
    if event_time is not None:
        values["last_event_at"] = event_time

    previous = subscription.status
    result = await db.execute(
        update(Subscription)
        .where(
            Subscription.id == subscription.id,
            Subscription.status.in_([s.value for s in expected]),
            *guards,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.info("Subscription %s: %s lost a concurrent race", subscription.id, transition)
        raise ConcurrentTransitionLost(subscription.id, transition)

    await db.refresh(subscription)
    logger.info(
        "Subscription %s: %s (%s -> %s)",
        subscription.id,
        transition,
        previous,
        subscription.status,
    )


async def _write_snapshot(
    db: AsyncSession,
    subscription: Subscription,
    plan: Plan | None,
    last_payment_date: datetime | None = None,
) -> Account:
    """Project the subscription + plan onto the account's cached entitlements."""
    account = await db.get(Account, subscription.account_id)
    if account is None:
        raise AccountNotFound()

    entitled = subscription.status in ENTITLED_STATUSES
    free_plan = None if entitled else await get_free_plan(db)
    entitlements = derive(plan, subscription.status, free_plan=free_plan)

    account.subscription_status = subscription.status
    account.current_plan = entitlements.plan_type
    account.max_screens = entitlements.max_screens
    account.offline_viewing = entitlements.offline_viewing
    account.game_vault_access = entitlements.game_vault_access
    account.ad_free = entitlements.ad_free
    account.quality_tier = entitlements.quality_tier.value

    if entitled:
        account.subscription_expiry = subscription.end_date
        account.grace_period_end = subscription.grace_period_end
        account.auto_renewal = subscription.auto_renewal
        account.next_billing_date = subscription.next_billing_date
    else:
        account.subscription_expiry = None
        account.grace_period_end = None
        account.auto_renewal = False
        account.next_billing_date = None

    if last_payment_date is not None:
        account.last_payment_date = last_payment_date

    await db.flush()
    return account


async def create_subscription(
    db: AsyncSession,
    account: Account,
    plan: Plan,
    payment_method: str = "credit_card",
    *,
    amount: Decimal | None = None,
    external_id: str | None = None,
    checkout_session_id: str | None = None,
    transaction_id: str | None = None,
    event_time: datetime | None = None,
    now: datetime | None = None,
) -> Subscription:
    """Start a new paid term for ``account`` on ``plan``.

    Checkout confirmation implies the payment already succeeded, so the new
    subscription starts ACTIVE. A still-running soft-cancelled subscription is
    superseded; an ACTIVE/GRACE_PERIOD one must be dealt with by the caller.
    """
    now = now or utcnow()

    live = await get_live_subscription(db, account.id)
    if live is not None:
        raise ExistingActiveSubscription(account.id, live.id)

    cancelled = await get_current_subscription(db, account.id)
    if cancelled is not None:
        await supersede(db, cancelled, now=now)

    end_date = now + billing_period(plan.billing_cycle)
    subscription = Subscription(
        account_id=account.id,
        plan_id=plan.id,
        status=S.ACTIVE.value,
        start_date=now,
        end_date=end_date,
        amount=plan.price if amount is None else amount,
        currency=plan.currency,
        payment_method=payment_method,
        external_id=external_id,
        checkout_session_id=checkout_session_id,
        transaction_id=transaction_id,
        renewal_count=0,
        auto_renewal=True,
        next_billing_date=end_date,
        last_event_at=event_time,
    )
    db.add(subscription)
    await db.flush()

    await _write_snapshot(db, subscription, plan, last_payment_date=now)
    logger.info(
        "Created subscription %s for account %s on plan %s (ends %s)",
        subscription.id,
        account.id,
        plan.type,
        end_date.isoformat(),
    )
    return subscription


async def renew(
    db: AsyncSession,
    subscription: Subscription,
    *,
    event_time: datetime | None = None,
    now: datetime | None = None,
) -> Subscription:
    """Extend the term by one billing period measured from the current end date."""
    now = now or utcnow()
    plan = await _load_plan(db, subscription.plan_id)
    current_end = subscription.end_date
    new_end = current_end + billing_period(plan.billing_cycle)

    await _compare_and_swap(
        db,
        subscription,
        "renew",
        LIVE_STATUSES,
        {
            "status": S.ACTIVE.value,
            "end_date": new_end,
            "renewal_count": Subscription.renewal_count + 1,
            "last_renewal_date": now,
            "next_billing_date": new_end,
            "grace_period_end": None,
        },
        event_time,
        guards=[Subscription.end_date == current_end],
    )
    await _write_snapshot(db, subscription, plan, last_payment_date=now)
    return subscription


async def enter_grace_period(
    db: AsyncSession,
    subscription: Subscription,
    *,
    event_time: datetime | None = None,
    now: datetime | None = None,
) -> Subscription:
    """ACTIVE -> GRACE_PERIOD. Feature flags stay granted until the grace window ends."""
    now = now or utcnow()
    plan = await _load_plan(db, subscription.plan_id)

    await _compare_and_swap(
        db,
        subscription,
        "enter_grace_period",
        (S.ACTIVE,),
        {
            "status": S.GRACE_PERIOD.value,
            "grace_period_end": now + timedelta(days=settings.grace_period_days),
        },
        event_time,
    )
    await _write_snapshot(db, subscription, plan)
    return subscription


async def enter_grace_period_for_account(db: AsyncSession, account_id, **kwargs) -> Subscription:
    subscription = await get_live_subscription(db, account_id)
    if subscription is None:
        raise SubscriptionNotFound("Account has no active subscription")
    return await enter_grace_period(db, subscription, **kwargs)


async def expire(
    db: AsyncSession,
    subscription: Subscription,
    *,
    reason: str = NON_PAYMENT_REASON,
    from_statuses: Iterable[SubscriptionStatus] = ENTITLED_STATUSES,
    event_time: datetime | None = None,
    now: datetime | None = None,
) -> Subscription:
    """Terminate the subscription and downgrade the account to the FREE bundle.

    ``from_statuses`` narrows the CAS precondition; the expiry sweep passes the
    exact status it observed so a concurrent renewal makes it a no-op.
    """
    now = now or utcnow()
    was_cancelled = subscription.status == S.CANCELLED

    await _compare_and_swap(
        db,
        subscription,
        "expire",
        from_statuses,
        {
            "status": S.EXPIRED.value,
            "grace_period_end": None,
            "auto_renewal": False,
            "next_billing_date": None,
            "cancelled_at": subscription.cancelled_at if was_cancelled else now,
            "cancellation_reason": subscription.cancellation_reason if was_cancelled else reason,
        },
        event_time,
    )
    await _write_snapshot(db, subscription, plan=None)
    return subscription


async def expire_account(db: AsyncSession, account_id, **kwargs) -> Subscription:
    subscription = await get_current_subscription(db, account_id)
    if subscription is None:
        raise SubscriptionNotFound("Account has no subscription to expire")
    return await expire(db, subscription, **kwargs)


async def cancel(
    db: AsyncSession,
    subscription: Subscription,
    reason: str | None = None,
    *,
    event_time: datetime | None = None,
    now: datetime | None = None,
) -> Subscription:
    """Soft cancellation: stop renewing, keep access through the paid end date."""
    now = now or utcnow()
    plan = await _load_plan(db, subscription.plan_id)

    await _compare_and_swap(
        db,
        subscription,
        "cancel",
        LIVE_STATUSES,
        {
            "status": S.CANCELLED.value,
            "auto_renewal": False,
            "cancelled_at": now,
            "cancellation_reason": reason or USER_CANCELLED_REASON,
            "grace_period_end": None,
            "next_billing_date": None,
        },
        event_time,
    )
    await _write_snapshot(db, subscription, plan)
    return subscription


async def reactivate(
    db: AsyncSession,
    subscription: Subscription,
    *,
    event_time: datetime | None = None,
    now: datetime | None = None,
) -> Subscription:
    """CANCELLED -> ACTIVE while the original end date is still in the future."""
    now = now or utcnow()
    if subscription.status != S.CANCELLED:
        raise InvalidTransition("reactivate", subscription.status)
    if subscription.end_date <= now:
        raise InvalidTransition("reactivate", subscription.status, "the paid term has already ended")

    live = await get_live_subscription(db, subscription.account_id)
    if live is not None and live.id != subscription.id:
        raise ExistingActiveSubscription(subscription.account_id, live.id)

    plan = await _load_plan(db, subscription.plan_id)
    await _compare_and_swap(
        db,
        subscription,
        "reactivate",
        (S.CANCELLED,),
        {
            "status": S.ACTIVE.value,
            "cancelled_at": None,
            "cancellation_reason": None,
            "auto_renewal": True,
            "next_billing_date": subscription.end_date,
        },
        event_time,
        guards=[Subscription.end_date > now],
    )
    await _write_snapshot(db, subscription, plan)
    return subscription


async def supersede(
    db: AsyncSession,
    subscription: Subscription,
    reason: str = SUPERSEDED_REASON,
    *,
    now: datetime | None = None,
) -> Subscription:
    """Close out a subscription that a new one replaces.

    The account snapshot is left alone: the replacing subscription writes it
    in the same transaction.
    """
    now = now or utcnow()
    await _compare_and_swap(
        db,
        subscription,
        "supersede",
        ENTITLED_STATUSES,
        {
            "status": S.EXPIRED.value,
            "grace_period_end": None,
            "auto_renewal": False,
            "next_billing_date": None,
            "cancelled_at": now,
            "cancellation_reason": reason,
        },
    )
    return subscription
