"""Subscription service — read-side queries over accounts, subscriptions and payments."""

import logging
import uuid

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from pulse.billing import stripe_client
from pulse.billing.plans import ENTITLED_STATUSES, LIVE_STATUSES, SubscriptionStatus
from pulse.models.account import Account
from pulse.models.checkout_session import CheckoutSession
from pulse.models.payment import Payment
from pulse.models.subscription import Subscription

logger = logging.getLogger(__name__)

_LIVE = [s.value for s in LIVE_STATUSES]
_ENTITLED = [s.value for s in ENTITLED_STATUSES]


async def get_account(db: AsyncSession, account_id: uuid.UUID) -> Account | None:
    """Look up an account by id."""
    return await db.get(Account, account_id)


async def get_account_by_email(db: AsyncSession, email: str) -> Account | None:
    """Look up an account by (case-insensitive) email."""
    result = await db.execute(select(Account).where(Account.email == email.lower()))
    return result.scalar_one_or_none()


async def get_subscription(db: AsyncSession, subscription_id: uuid.UUID) -> Subscription | None:
    return await db.get(Subscription, subscription_id)


async def get_live_subscription(db: AsyncSession, account_id: uuid.UUID) -> Subscription | None:
    """The account's ACTIVE or GRACE_PERIOD subscription, if any."""
    result = await db.execute(
        select(Subscription)
        .where(Subscription.account_id == account_id, Subscription.status.in_(_LIVE))
        .order_by(Subscription.start_date.desc())
    )
    return result.scalars().first()


async def get_current_subscription(db: AsyncSession, account_id: uuid.UUID) -> Subscription | None:
    """The subscription currently granting entitlements (live or soft-cancelled)."""
    result = await db.execute(
        select(Subscription)
        .where(Subscription.account_id == account_id, Subscription.status.in_(_ENTITLED))
        .order_by(Subscription.start_date.desc())
    )
    return result.scalars().first()


async def get_subscription_by_external_id(db: AsyncSession, external_id: str) -> Subscription | None:
    """Look up by Stripe subscription ID (used by webhooks).

    Several rows may share an external id (renewal checkouts); prefer one that
    still grants access, then the newest.
    """
    result = await db.execute(
        select(Subscription)
        .where(Subscription.external_id == external_id)
        .order_by(Subscription.start_date.desc())
    )
    candidates = list(result.scalars().all())
    for subscription in candidates:
        if subscription.status in ENTITLED_STATUSES:
            return subscription
    return candidates[0] if candidates else None


async def get_subscription_by_checkout_session(db: AsyncSession, checkout_session_id: str) -> Subscription | None:
    """Look up the subscription a Stripe checkout session produced (idempotency key)."""
    result = await db.execute(
        select(Subscription).where(Subscription.checkout_session_id == checkout_session_id)
    )
    return result.scalar_one_or_none()


async def get_payment_by_external_id(db: AsyncSession, external_id: str) -> Payment | None:
    result = await db.execute(select(Payment).where(Payment.external_id == external_id))
    return result.scalar_one_or_none()


async def get_checkout_session(db: AsyncSession, external_id: str) -> CheckoutSession | None:
    result = await db.execute(select(CheckoutSession).where(CheckoutSession.external_id == external_id))
    return result.scalar_one_or_none()


async def list_subscription_history(db: AsyncSession, account_id: uuid.UUID, limit: int = 5) -> list[Subscription]:
    """Most recent subscriptions for an account, newest first."""
    result = await db.execute(
        select(Subscription)
        .where(Subscription.account_id == account_id)
        .order_by(Subscription.start_date.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def list_payments(db: AsyncSession, account_id: uuid.UUID, limit: int = 50) -> list[Payment]:
    """Payments across all of an account's subscriptions, newest first."""
    result = await db.execute(
        select(Payment)
        .join(Subscription, Subscription.id == Payment.subscription_id)
        .where(Subscription.account_id == account_id)
        .order_by(Payment.created_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def has_blocking_subscription(db: AsyncSession, account_id: uuid.UUID) -> bool:
    """True if the account has ACTIVE, GRACE_PERIOD or PENDING subscriptions."""
    statuses = _LIVE + [SubscriptionStatus.PENDING.value]
    result = await db.execute(
        select(Subscription.id)
        .where(Subscription.account_id == account_id, Subscription.status.in_(statuses))
        .limit(1)
    )
    return result.first() is not None


async def delete_account(db: AsyncSession, account: Account) -> None:
    """Hard-delete an account with no live subscriptions, plus its billing history."""
    subscription_ids = select(Subscription.id).where(Subscription.account_id == account.id)
    await db.execute(delete(Payment).where(Payment.subscription_id.in_(subscription_ids)))
    await db.execute(delete(CheckoutSession).where(CheckoutSession.account_id == account.id))
    await db.execute(delete(Subscription).where(Subscription.account_id == account.id))
    await db.delete(account)
    await db.flush()
    logger.info("Deleted account %s and its billing history", account.id)


async def ensure_stripe_customer(db: AsyncSession, account: Account) -> str:
    """Return the account's Stripe customer ID, creating the customer on first use."""
    if account.stripe_customer_id:
        return account.stripe_customer_id

    customer = await stripe_client.create_customer(
        email=account.email,
        name=account.name,
        account_id=str(account.id),
    )
    account.stripe_customer_id = customer.id
    await db.flush()
    return customer.id
