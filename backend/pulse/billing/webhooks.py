"""Stripe webhook event handlers — reconcile processor events with local state.

Stripe delivers at least once and in no particular order. Every handler is
idempotent on an external id (checkout session id for subscriptions, invoice
id for payments) and refuses events older than what the subscription already
reflects (``Subscription.last_event_at``). All writes go through the state
machine; the route owns the transaction.
"""

import enum
import logging
import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime
from decimal import Decimal

import stripe
from sqlalchemy.ext.asyncio import AsyncSession

from pulse.billing import stripe_client
from pulse.billing.errors import InvalidTransition, StaleEvent, UnknownEventType
from pulse.billing.plan_catalog import get_plan, get_plan_by_price_id
from pulse.billing.plans import ENTITLED_STATUSES, LIVE_STATUSES, SubscriptionStatus
from pulse.billing.state_machine import cancel, create_subscription, enter_grace_period, expire, reactivate, renew, supersede
from pulse.billing.timeutils import ts_to_naive, utcnow
from pulse.models.account import Account
from pulse.models.payment import Payment
from pulse.models.plan import Plan
from pulse.models.subscription import Subscription
from pulse.services.subscription_service import (
    get_account,
    get_account_by_email,
    get_checkout_session,
    get_live_subscription,
    get_payment_by_external_id,
    get_subscription_by_checkout_session,
    get_subscription_by_external_id,
)

logger = logging.getLogger(__name__)

# Stripe's first invoice of a subscription; checkout already recorded it.
INITIAL_INVOICE_REASON = "subscription_create"
PROCESSOR_CANCELLED_REASON = "Cancelled at payment processor"
PORTAL_CANCELLED_REASON = "Cancelled via billing portal"


class WebhookEventKind(str, enum.Enum):
    """The closed set of Stripe event types this service acts on."""

    CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
    INVOICE_PAID = "invoice.paid"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    UNHANDLED = "unhandled"

    @classmethod
    def from_event_type(cls, event_type: str) -> "WebhookEventKind":
        try:
            kind = cls(event_type)
        except ValueError:
            return cls.UNHANDLED
        return kind


class WebhookOutcome(str, enum.Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    STALE = "stale"
    IGNORED = "ignored"


Handler = Callable[[AsyncSession, stripe.Event, datetime], Awaitable[WebhookOutcome]]


# --- Payload helpers ---


def _metadata(obj, key: str) -> str | None:
    metadata = getattr(obj, "metadata", None)
    if not metadata:
        return None
    value = getattr(metadata, key, None)
    return str(value) if value not in (None, "") else None


def _parse_uuid(value: str | None) -> uuid.UUID | None:
    if value is None:
        return None
    try:
        return uuid.UUID(value)
    except ValueError:
        return None


def _from_minor_units(value: int | None) -> Decimal | None:
    if value is None:
        return None
    return (Decimal(value) / 100).quantize(Decimal("0.01"))


def _invoice_subscription_id(invoice) -> str | None:
    """Stripe subscription id of an invoice.

    Newer API versions moved it under ``parent.subscription_details``.
    """
    subscription_id = getattr(invoice, "subscription", None)
    if subscription_id:
        return subscription_id if isinstance(subscription_id, str) else subscription_id.id
    parent = getattr(invoice, "parent", None)
    details = getattr(parent, "subscription_details", None) if parent else None
    return getattr(details, "subscription", None) if details else None


def _ensure_fresh(subscription: Subscription, event: stripe.Event, event_time: datetime) -> None:
    """Raise StaleEvent if ``event`` predates what the subscription reflects."""
    last_applied = subscription.last_event_at
    if last_applied is not None and event_time < last_applied:
        raise StaleEvent(event.id, event_time, last_applied)


async def _resolve_account(db: AsyncSession, session, is_renewal: bool) -> Account | None:
    account_id = _parse_uuid(_metadata(session, "account_id"))
    if account_id is not None:
        return await get_account(db, account_id)
    if is_renewal:
        return None
    details = getattr(session, "customer_details", None)
    email = getattr(details, "email", None) if details else None
    email = email or getattr(session, "customer_email", None)
    if not email:
        return None
    return await get_account_by_email(db, email)


async def _resolve_plan(db: AsyncSession, session) -> Plan | None:
    plan_id = _parse_uuid(_metadata(session, "plan_id"))
    if plan_id is not None:
        plan = await get_plan(db, plan_id)
        if plan is not None:
            return plan

    subscription_id = getattr(session, "subscription", None)
    if not subscription_id:
        return None
    # Fall back to the price on the Stripe subscription
    stripe_sub = await stripe_client.get_subscription(subscription_id)
    price_id = stripe_client.get_price_id(stripe_sub)
    return await get_plan_by_price_id(db, price_id) if price_id else None


# --- Handlers ---


async def handle_checkout_session_completed(
    db: AsyncSession, event: stripe.Event, event_time: datetime
) -> WebhookOutcome:
    """Handle checkout.session.completed — start the purchased subscription.

    Covers both first purchases and renewal/upgrade checkouts (``is_renewal``
    metadata); either way a new Subscription + Payment pair is written and any
    live subscription on the account is superseded.
    """
    session = event.data.object

    existing = await get_subscription_by_checkout_session(db, session.id)
    if existing is not None:
        logger.info("Checkout session %s already produced subscription %s", session.id, existing.id)
        return WebhookOutcome.DUPLICATE

    is_renewal = _metadata(session, "is_renewal") == "true"
    account = await _resolve_account(db, session, is_renewal)
    if account is None:
        logger.warning("No account found for checkout session %s", session.id)
        return WebhookOutcome.IGNORED

    plan = await _resolve_plan(db, session)
    if plan is None:
        logger.warning("Could not resolve plan for checkout session %s", session.id)
        return WebhookOutcome.IGNORED

    if is_renewal:
        logger.info(
            "Renewal checkout %s for account %s: %s (%s) -> %s",
            session.id,
            account.id,
            _metadata(session, "previous_plan"),
            _metadata(session, "previous_status"),
            plan.type,
        )

    customer_id = getattr(session, "customer", None)
    if customer_id and not account.stripe_customer_id:
        account.stripe_customer_id = customer_id

    now = utcnow()
    live = await get_live_subscription(db, account.id)
    if live is not None:
        await supersede(db, live, reason=f"Replaced by checkout {session.id}", now=now)

    amount = _from_minor_units(getattr(session, "amount_total", None)) or plan.price
    payment_intent = getattr(session, "payment_intent", None)
    subscription = await create_subscription(
        db,
        account,
        plan,
        "credit_card",
        amount=amount,
        external_id=getattr(session, "subscription", None),
        checkout_session_id=session.id,
        transaction_id=payment_intent,
        event_time=event_time,
        now=now,
    )

    payment_key = getattr(session, "invoice", None) or payment_intent or session.id
    if await get_payment_by_external_id(db, payment_key) is None:
        db.add(
            Payment(
                subscription_id=subscription.id,
                amount=amount,
                currency=plan.currency,
                status="completed",
                payment_method="credit_card",
                external_id=payment_key,
                paid_at=now,
            )
        )

    checkout = await get_checkout_session(db, session.id)
    if checkout is not None:
        checkout.status = "complete"
        checkout.payment_status = getattr(session, "payment_status", None)
        checkout.subscription_id = subscription.id
    else:
        logger.info("Checkout session %s has no local record", session.id)

    await db.flush()
    logger.info(
        "Checkout completed: subscription %s active on plan %s for account %s",
        subscription.id,
        plan.type,
        account.id,
    )
    return WebhookOutcome.PROCESSED


async def handle_invoice_paid(db: AsyncSession, event: stripe.Event, event_time: datetime) -> WebhookOutcome:
    """Handle invoice.paid / invoice.payment_succeeded — renew for one more period."""
    invoice = event.data.object
    subscription_id = _invoice_subscription_id(invoice)

    if not subscription_id:
        logger.info("Invoice %s has no subscription (one-time), skipping", invoice.id)
        return WebhookOutcome.IGNORED

    if getattr(invoice, "billing_reason", None) == INITIAL_INVOICE_REASON:
        logger.info("Invoice %s is the initial charge, recorded at checkout", invoice.id)
        return WebhookOutcome.IGNORED

    if await get_payment_by_external_id(db, invoice.id) is not None:
        logger.info("Invoice %s already applied", invoice.id)
        return WebhookOutcome.DUPLICATE

    subscription = await get_subscription_by_external_id(db, subscription_id)
    if subscription is None:
        logger.warning(
            "No local subscription found for Stripe subscription %s (invoice %s)",
            subscription_id,
            invoice.id,
        )
        return WebhookOutcome.IGNORED

    _ensure_fresh(subscription, event, event_time)

    now = utcnow()
    await renew(db, subscription, event_time=event_time, now=now)

    status_transitions = getattr(invoice, "status_transitions", None)
    paid_at = ts_to_naive(getattr(status_transitions, "paid_at", None)) if status_transitions else None
    db.add(
        Payment(
            subscription_id=subscription.id,
            amount=_from_minor_units(getattr(invoice, "amount_paid", None)) or subscription.amount,
            currency=(getattr(invoice, "currency", None) or subscription.currency).upper(),
            status="completed",
            payment_method=subscription.payment_method,
            external_id=invoice.id,
            paid_at=paid_at or now,
        )
    )
    await db.flush()
    logger.info("Invoice paid: subscription %s renewed until %s", subscription.id, subscription.end_date)
    return WebhookOutcome.PROCESSED


async def handle_invoice_payment_failed(
    db: AsyncSession, event: stripe.Event, event_time: datetime
) -> WebhookOutcome:
    """Handle invoice.payment_failed — start the grace period, record the attempt."""
    invoice = event.data.object
    subscription_id = _invoice_subscription_id(invoice)

    if not subscription_id:
        logger.info("Invoice %s has no subscription (one-time), skipping payment failure", invoice.id)
        return WebhookOutcome.IGNORED

    attempt = getattr(invoice, "attempt_count", None) or 1
    payment_key = f"{invoice.id}:{attempt}"
    if await get_payment_by_external_id(db, payment_key) is not None:
        logger.info("Failed attempt %s already recorded", payment_key)
        return WebhookOutcome.DUPLICATE

    subscription = await get_subscription_by_external_id(db, subscription_id)
    if subscription is None:
        logger.warning(
            "No local subscription found for Stripe subscription %s (payment failed)",
            subscription_id,
        )
        return WebhookOutcome.IGNORED

    _ensure_fresh(subscription, event, event_time)

    if subscription.status == SubscriptionStatus.ACTIVE:
        await enter_grace_period(db, subscription, event_time=event_time)
    elif subscription.status == SubscriptionStatus.GRACE_PERIOD:
        logger.info("Subscription %s already in grace period (attempt %s)", subscription.id, attempt)
    else:
        logger.info(
            "Ignoring failed invoice %s for subscription %s in status %s",
            invoice.id,
            subscription.id,
            subscription.status,
        )
        return WebhookOutcome.IGNORED

    db.add(
        Payment(
            subscription_id=subscription.id,
            amount=_from_minor_units(getattr(invoice, "amount_due", None)) or subscription.amount,
            currency=(getattr(invoice, "currency", None) or subscription.currency).upper(),
            status="failed",
            payment_method=subscription.payment_method,
            external_id=payment_key,
            failure_reason=f"Charge attempt {attempt} failed",
        )
    )
    await db.flush()
    return WebhookOutcome.PROCESSED


async def handle_subscription_updated(
    db: AsyncSession, event: stripe.Event, event_time: datetime
) -> WebhookOutcome:
    """Handle customer.subscription.updated — mirror cancellation and dunning changes."""
    stripe_sub = event.data.object
    subscription = await get_subscription_by_external_id(db, stripe_sub.id)
    if subscription is None:
        logger.warning("No local subscription found for Stripe subscription %s", stripe_sub.id)
        return WebhookOutcome.IGNORED

    _ensure_fresh(subscription, event, event_time)

    processor_status = getattr(stripe_sub, "status", None)
    cancel_at_period_end = bool(getattr(stripe_sub, "cancel_at_period_end", False))
    status = subscription.status

    if processor_status == "canceled" and status in ENTITLED_STATUSES:
        await expire(db, subscription, reason=PROCESSOR_CANCELLED_REASON, event_time=event_time)
    elif processor_status in ("past_due", "unpaid") and status == SubscriptionStatus.ACTIVE:
        await enter_grace_period(db, subscription, event_time=event_time)
    elif cancel_at_period_end and status in LIVE_STATUSES:
        await cancel(db, subscription, PORTAL_CANCELLED_REASON, event_time=event_time)
    elif not cancel_at_period_end and status == SubscriptionStatus.CANCELLED and processor_status == "active":
        await reactivate(db, subscription, event_time=event_time)
    else:
        logger.info(
            "Subscription %s: no change for processor status %s (cancel_at_period_end=%s)",
            subscription.id,
            processor_status,
            cancel_at_period_end,
        )
        return WebhookOutcome.IGNORED

    return WebhookOutcome.PROCESSED


async def handle_subscription_deleted(
    db: AsyncSession, event: stripe.Event, event_time: datetime
) -> WebhookOutcome:
    """Handle customer.subscription.deleted — expire immediately, no grace period."""
    stripe_sub = event.data.object
    subscription = await get_subscription_by_external_id(db, stripe_sub.id)
    if subscription is None:
        logger.warning("No local subscription found for Stripe subscription %s (delete event)", stripe_sub.id)
        return WebhookOutcome.IGNORED

    if subscription.status == SubscriptionStatus.EXPIRED:
        logger.info("Subscription %s already expired", subscription.id)
        return WebhookOutcome.DUPLICATE

    _ensure_fresh(subscription, event, event_time)
    await expire(db, subscription, reason=PROCESSOR_CANCELLED_REASON, event_time=event_time)
    logger.info("Subscription deleted: %s downgraded to free tier", subscription.id)
    return WebhookOutcome.PROCESSED


EVENT_HANDLERS: dict[WebhookEventKind, Handler] = {
    WebhookEventKind.CHECKOUT_SESSION_COMPLETED: handle_checkout_session_completed,
    WebhookEventKind.INVOICE_PAID: handle_invoice_paid,
    WebhookEventKind.INVOICE_PAYMENT_SUCCEEDED: handle_invoice_paid,
    WebhookEventKind.INVOICE_PAYMENT_FAILED: handle_invoice_payment_failed,
    WebhookEventKind.SUBSCRIPTION_UPDATED: handle_subscription_updated,
    WebhookEventKind.SUBSCRIPTION_DELETED: handle_subscription_deleted,
}


def resolve_handler(event_type: str) -> Handler:
    """Handler for ``event_type``; raises UnknownEventType for anything else."""
    kind = WebhookEventKind.from_event_type(event_type)
    handler = EVENT_HANDLERS.get(kind)
    if handler is None:
        raise UnknownEventType(event_type)
    return handler


async def process_event(db: AsyncSession, event: stripe.Event) -> WebhookOutcome:
    """Dispatch a verified event. Does not commit.

    Unknown types, stale events and transitions whose precondition no longer
    holds are acknowledged without changes. ``ConcurrentTransitionLost`` and
    ``ProcessorLookupTimeout`` propagate so the caller can roll back.
    """
    try:
        handler = resolve_handler(event.type)
    except UnknownEventType:
        logger.debug("Unhandled webhook event type: %s", event.type)
        return WebhookOutcome.IGNORED

    event_time = ts_to_naive(getattr(event, "created", None)) or utcnow()
    logger.info("Processing webhook event: %s (id=%s)", event.type, event.id)

    try:
        return await handler(db, event, event_time)
    except StaleEvent as e:
        logger.info("Discarding stale event: %s", e.message)
        return WebhookOutcome.STALE
    except InvalidTransition as e:
        logger.info("Webhook event %s not applied: %s", event.id, e.message)
        return WebhookOutcome.IGNORED
