"""Async Stripe API wrapper for Pulse."""

import asyncio
import logging
from decimal import Decimal

import stripe
from stripe import StripeClient

from pulse.billing.errors import InvalidSignature, ProcessorLookupTimeout
from pulse.billing.plans import BillingCycle
from pulse.config import settings
from pulse.models.plan import Plan

logger = logging.getLogger(__name__)

_RECURRING_INTERVALS = {
    BillingCycle.MONTHLY.value: "month",
    BillingCycle.ANNUALLY.value: "year",
}


def get_stripe_client() -> StripeClient:
    """Create a StripeClient instance with async HTTP support."""
    return StripeClient(
        settings.stripe_secret_key,
        http_client=stripe.HTTPXClient(),
    )


def recurring_interval(billing_cycle: str) -> str:
    """Stripe recurring interval for a billing cycle."""
    return _RECURRING_INTERVALS[billing_cycle]


def to_minor_units(amount: Decimal) -> int:
    """19.99 -> 1999."""
    return int((Decimal(amount) * 100).quantize(Decimal("1")))


def _line_item(plan: Plan) -> dict:
    """Use the plan's Stripe price if it has one, otherwise inline price data."""
    if plan.stripe_price_id:
        return {"price": plan.stripe_price_id, "quantity": 1}
    return {
        "price_data": {
            "currency": plan.currency.lower(),
            "product_data": {"name": plan.name, "description": plan.description or plan.name},
            "unit_amount": to_minor_units(plan.price),
            "recurring": {"interval": recurring_interval(plan.billing_cycle)},
        },
        "quantity": 1,
    }


async def create_customer(email: str, name: str, account_id: str) -> stripe.Customer:
    """Create a Stripe customer linked to a Pulse account."""
    client = get_stripe_client()
    logger.info("Creating Stripe customer for account %s (%s)", account_id, email)
    customer = await client.v1.customers.create_async(
        params={
            "email": email,
            "name": name,
            "metadata": {"pulse_account_id": account_id},
        }
    )
    logger.info("Created Stripe customer %s for account %s", customer.id, account_id)
    return customer


async def create_checkout_session(
    customer_id: str,
    plan: Plan,
    success_url: str,
    cancel_url: str,
    metadata: dict[str, str],
) -> stripe.checkout.Session:
    """Create a subscription-mode Checkout Session for ``plan``.

    ``metadata`` travels back on the ``checkout.session.completed`` event and
    is how the webhook finds the account, the plan and the renewal context.
    """
    client = get_stripe_client()
    logger.info(
        "Creating checkout session for customer %s, plan %s (renewal=%s)",
        customer_id,
        plan.type,
        metadata.get("is_renewal", "false"),
    )
    return await client.v1.checkout.sessions.create_async(
        params={
            "mode": "subscription",
            "customer": customer_id,
            "line_items": [_line_item(plan)],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
            "subscription_data": {"metadata": metadata},
        }
    )


async def create_portal_session(customer_id: str, return_url: str) -> stripe.billing_portal.Session:
    """Create a Stripe Customer Portal session for subscription management."""
    client = get_stripe_client()
    logger.info("Creating portal session for customer %s", customer_id)
    return await client.v1.billing_portal.sessions.create_async(
        params={
            "customer": customer_id,
            "return_url": return_url,
        }
    )


async def get_subscription(subscription_id: str) -> stripe.Subscription:
    """Retrieve a Stripe subscription by ID within the lookup budget.

    Raises:
        ProcessorLookupTimeout: Stripe did not answer in time.
    """
    client = get_stripe_client()
    try:
        return await asyncio.wait_for(
            client.v1.subscriptions.retrieve_async(subscription_id),
            timeout=settings.stripe_lookup_timeout_seconds,
        )
    except asyncio.TimeoutError as e:
        logger.warning("Stripe lookup for subscription %s timed out", subscription_id)
        raise ProcessorLookupTimeout(f"subscription {subscription_id}") from e


def get_price_id(stripe_sub: stripe.Subscription) -> str | None:
    """Extract the first price ID from a Stripe subscription's items.

    Bracket notation avoids the collision with ``dict.items()``.
    """
    sub_items = stripe_sub["items"]
    if sub_items and sub_items.data:
        return sub_items.data[0].price.id
    return None


def construct_webhook_event(payload: bytes, sig_header: str) -> stripe.Event:
    """Verify and construct a Stripe webhook event (synchronous).

    Raises:
        InvalidSignature: Missing/forged signature or unparseable payload.
    """
    if not sig_header:
        raise InvalidSignature("Missing Stripe-Signature header")
    client = get_stripe_client()
    try:
        return client.construct_event(payload, sig_header, settings.stripe_webhook_secret)
    except stripe.SignatureVerificationError as e:
        logger.warning("Webhook signature verification failed")
        raise InvalidSignature() from e
    except ValueError as e:
        logger.warning("Invalid webhook payload")
        raise InvalidSignature("Invalid payload") from e
