"""Tests for Stripe webhook handler functions with fake Stripe events."""

import time
import uuid
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from pulse.billing.state_machine import cancel
from pulse.billing.stripe_client import get_price_id
from pulse.billing.webhooks import (
    EVENT_HANDLERS,
    WebhookEventKind,
    WebhookOutcome,
    _invoice_subscription_id,
    process_event,
)
from pulse.models.account import Account
from pulse.models.checkout_session import CheckoutSession
from pulse.models.payment import Payment
from pulse.models.plan import Plan
from pulse.models.subscription import Subscription

from helpers import make_account, subscribe

pytestmark = pytest.mark.asyncio


class _StripeObj(SimpleNamespace):
    """SimpleNamespace with bracket notation support (like Stripe API objects).

    Stripe API 2025-08-27 (basil) changed subscription.items to require
    bracket notation to avoid collision with Python dict .items().
    """

    def __getitem__(self, key: str):
        return getattr(self, key)


def _make_event(event_type: str, data_object: _StripeObj, created: int | None = None) -> _StripeObj:
    """Create a fake Stripe Event-like object."""
    return _StripeObj(
        type=event_type,
        id=f"evt_test_{uuid.uuid4().hex[:8]}",
        created=created if created is not None else int(time.time()),
        data=_StripeObj(object=data_object),
    )


def _checkout_session(
    account: Account,
    plan: Plan,
    session_id: str | None = None,
    is_renewal: bool = False,
    stripe_sub_id: str = "sub_test_123",
    **extra,
) -> _StripeObj:
    metadata = {
        "account_id": str(account.id),
        "plan_id": str(plan.id),
        "is_renewal": "true" if is_renewal else "false",
    }
    return _StripeObj(
        id=session_id or f"cs_test_{uuid.uuid4().hex[:8]}",
        customer="cus_test_123",
        subscription=stripe_sub_id,
        payment_intent=f"pi_{uuid.uuid4().hex[:8]}",
        invoice=f"in_{uuid.uuid4().hex[:8]}",
        amount_total=int(plan.price * 100),
        payment_status="paid",
        metadata=_StripeObj(**{**metadata, **extra.pop("metadata", {})}),
        **extra,
    )


def _invoice(stripe_sub_id: str, billing_reason: str = "subscription_cycle", **extra) -> _StripeObj:
    return _StripeObj(
        id=extra.pop("id", f"in_{uuid.uuid4().hex[:8]}"),
        subscription=stripe_sub_id,
        billing_reason=billing_reason,
        amount_paid=1499,
        amount_due=1499,
        currency="brl",
        **extra,
    )


async def _count(db_session: AsyncSession, model, *criteria) -> int:
    result = await db_session.execute(select(func.count()).select_from(model).where(*criteria))
    return result.scalar_one()


# ---------------------------------------------------------------------------
# Helper function tests
# ---------------------------------------------------------------------------


class TestHelpers:
    """Test webhook payload helpers."""

    def test_get_price_id_from_subscription(self):
        fake_sub = _StripeObj(items=_StripeObj(data=[_StripeObj(price=_StripeObj(id="price_fan_123"))]))
        assert get_price_id(fake_sub) == "price_fan_123"

    def test_get_price_id_empty_items(self):
        assert get_price_id(_StripeObj(items=_StripeObj(data=[]))) is None

    def test_invoice_subscription_legacy_field(self):
        assert _invoice_subscription_id(_StripeObj(subscription="sub_legacy")) == "sub_legacy"

    def test_invoice_subscription_from_parent(self):
        invoice = _StripeObj(
            subscription=None,
            parent=_StripeObj(subscription_details=_StripeObj(subscription="sub_parent")),
        )
        assert _invoice_subscription_id(invoice) == "sub_parent"

    def test_invoice_without_subscription(self):
        assert _invoice_subscription_id(_StripeObj(id="in_one_time")) is None

    def test_every_kind_has_a_handler(self):
        """The dispatch table covers the closed set of event kinds."""
        handled = set(EVENT_HANDLERS) | {WebhookEventKind.UNHANDLED}
        assert handled == set(WebhookEventKind)

    def test_unknown_type_maps_to_unhandled(self):
        assert WebhookEventKind.from_event_type("customer.created") is WebhookEventKind.UNHANDLED


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


class TestProcessEvent:
    async def test_unknown_event_ignored(self, db_session: AsyncSession):
        event = _make_event("customer.created", _StripeObj(id="cus_123"))
        assert await process_event(db_session, event) == WebhookOutcome.IGNORED


# ---------------------------------------------------------------------------
# checkout.session.completed
# ---------------------------------------------------------------------------


class TestCheckoutSessionCompleted:
    async def test_creates_subscription_and_payment(self, db_session: AsyncSession, plans: dict[str, Plan]):
        account = await make_account(db_session)
        session = _checkout_session(account, plans["MEGA_FAN"])
        db_session.add(
            CheckoutSession(
                external_id=session.id,
                account_id=account.id,
                plan_id=plans["MEGA_FAN"].id,
                amount=plans["MEGA_FAN"].price,
                success_url="https://example.com/ok",
                cancel_url="https://example.com/cancel",
            )
        )
        await db_session.flush()

        outcome = await process_event(db_session, _make_event("checkout.session.completed", session))

        assert outcome == WebhookOutcome.PROCESSED
        result = await db_session.execute(select(Subscription).where(Subscription.account_id == account.id))
        subscription = result.scalar_one()
        assert subscription.status == "ACTIVE"
        assert subscription.checkout_session_id == session.id
        assert subscription.external_id == "sub_test_123"
        assert subscription.transaction_id == session.payment_intent
        assert subscription.last_event_at is not None

        payment = (await db_session.execute(select(Payment))).scalar_one()
        assert payment.subscription_id == subscription.id
        assert payment.status == "completed"
        assert payment.external_id == session.invoice
        assert payment.amount == plans["MEGA_FAN"].price

        checkout = (await db_session.execute(select(CheckoutSession))).scalar_one()
        assert checkout.status == "complete"
        assert checkout.subscription_id == subscription.id

        assert account.current_plan == "MEGA_FAN"
        assert account.subscription_status == "ACTIVE"
        assert account.stripe_customer_id == "cus_test_123"

    async def test_late_completion_of_expired_session(self, db_session: AsyncSession, plans: dict[str, Plan]):
        account = await make_account(db_session)
        session = _checkout_session(account, plans["FAN"])
        checkout = CheckoutSession(
            external_id=session.id,
            account_id=account.id,
            plan_id=plans["FAN"].id,
            amount=plans["FAN"].price,
            success_url="https://example.com/ok",
            cancel_url="https://example.com/cancel",
            status="expired",
        )
        db_session.add(checkout)
        await db_session.flush()

        outcome = await process_event(db_session, _make_event("checkout.session.completed", session))

        assert outcome == WebhookOutcome.PROCESSED
        assert checkout.status == "complete"
        assert account.current_plan == "FAN"

    async def test_duplicate_delivery_is_idempotent(self, db_session: AsyncSession, plans: dict[str, Plan]):
        account = await make_account(db_session)
        session = _checkout_session(account, plans["FAN"])
        event = _make_event("checkout.session.completed", session)

        first = await process_event(db_session, event)
        second = await process_event(db_session, event)

        assert first == WebhookOutcome.PROCESSED
        assert second == WebhookOutcome.DUPLICATE
        assert await _count(db_session, Subscription, Subscription.account_id == account.id) == 1
        assert await _count(db_session, Payment) == 1

    async def test_renewal_checkout_supersedes_live_subscription(
        self, db_session: AsyncSession, plans: dict[str, Plan]
    ):
        account = await make_account(db_session)
        old = await subscribe(db_session, account, plans["FAN"])

        session = _checkout_session(
            account,
            plans["MEGA_FAN"],
            is_renewal=True,
            metadata={"previous_plan": "FAN", "previous_status": "ACTIVE"},
        )
        outcome = await process_event(db_session, _make_event("checkout.session.completed", session))

        assert outcome == WebhookOutcome.PROCESSED
        await db_session.refresh(old)
        assert old.status == "EXPIRED"
        live = await _count(
            db_session,
            Subscription,
            Subscription.account_id == account.id,
            Subscription.status.in_(["ACTIVE", "GRACE_PERIOD"]),
        )
        assert live == 1
        assert account.current_plan == "MEGA_FAN"
        assert account.quality_tier == "UHD_4K"

    async def test_plan_resolved_from_stripe_price(self, db_session: AsyncSession, plans: dict[str, Plan]):
        account = await make_account(db_session)
        plans["FAN"].stripe_price_id = "price_fan_monthly"
        await db_session.flush()

        session = _checkout_session(account, plans["FAN"], metadata={"plan_id": ""})
        fake_stripe_sub = _StripeObj(
            id="sub_test_123",
            items=_StripeObj(data=[_StripeObj(price=_StripeObj(id="price_fan_monthly"))]),
        )

        with patch(
            "pulse.billing.webhooks.stripe_client.get_subscription",
            new_callable=AsyncMock,
            return_value=fake_stripe_sub,
        ) as mock_get:
            outcome = await process_event(db_session, _make_event("checkout.session.completed", session))

        assert outcome == WebhookOutcome.PROCESSED
        mock_get.assert_awaited_once_with("sub_test_123")
        assert account.current_plan == "FAN"

    async def test_account_resolved_from_customer_email(self, db_session: AsyncSession, plans: dict[str, Plan]):
        account = await make_account(db_session)
        session = _checkout_session(
            account,
            plans["FAN"],
            metadata={"account_id": ""},
            customer_details=_StripeObj(email=account.email),
        )

        outcome = await process_event(db_session, _make_event("checkout.session.completed", session))

        assert outcome == WebhookOutcome.PROCESSED
        assert account.current_plan == "FAN"

    async def test_unknown_account_ignored(self, db_session: AsyncSession, plans: dict[str, Plan]):
        ghost = Account(id=uuid.uuid4(), email="ghost@test.com", name="Ghost")
        session = _checkout_session(ghost, plans["FAN"])

        outcome = await process_event(db_session, _make_event("checkout.session.completed", session))

        assert outcome == WebhookOutcome.IGNORED
        assert await _count(db_session, Subscription) == 0


# ---------------------------------------------------------------------------
# invoice.paid / invoice.payment_succeeded
# ---------------------------------------------------------------------------


class TestInvoicePaid:
    async def test_renews_for_one_period(self, db_session: AsyncSession, plans: dict[str, Plan]):
        account = await make_account(db_session)
        subscription = await subscribe(db_session, account, plans["FAN"], external_id="sub_renew")
        original_end = subscription.end_date

        invoice = _invoice("sub_renew")
        outcome = await process_event(db_session, _make_event("invoice.paid", invoice))

        assert outcome == WebhookOutcome.PROCESSED
        assert subscription.renewal_count == 1
        assert (subscription.end_date - original_end).days == 30
        payment = (await db_session.execute(select(Payment).where(Payment.external_id == invoice.id))).scalar_one()
        assert payment.status == "completed"
        assert payment.currency == "BRL"

    async def test_payment_succeeded_alias(self, db_session: AsyncSession, plans: dict[str, Plan]):
        account = await make_account(db_session)
        subscription = await subscribe(db_session, account, plans["FAN"], external_id="sub_alias")

        outcome = await process_event(db_session, _make_event("invoice.payment_succeeded", _invoice("sub_alias")))

        assert outcome == WebhookOutcome.PROCESSED
        assert subscription.renewal_count == 1

    async def test_same_invoice_applied_once(self, db_session: AsyncSession, plans: dict[str, Plan]):
        account = await make_account(db_session)
        subscription = await subscribe(db_session, account, plans["FAN"], external_id="sub_dup")
        invoice = _invoice("sub_dup")

        first = await process_event(db_session, _make_event("invoice.paid", invoice))
        second = await process_event(db_session, _make_event("invoice.payment_succeeded", invoice))

        assert first == WebhookOutcome.PROCESSED
        assert second == WebhookOutcome.DUPLICATE
        assert subscription.renewal_count == 1

    async def test_initial_invoice_skipped(self, db_session: AsyncSession, plans: dict[str, Plan]):
        account = await make_account(db_session)
        subscription = await subscribe(db_session, account, plans["FAN"], external_id="sub_initial")

        invoice = _invoice("sub_initial", billing_reason="subscription_create")
        outcome = await process_event(db_session, _make_event("invoice.paid", invoice))

        assert outcome == WebhookOutcome.IGNORED
        assert subscription.renewal_count == 0

    async def test_recovers_from_grace(self, db_session: AsyncSession, plans: dict[str, Plan]):
        account = await make_account(db_session)
        await subscribe(db_session, account, plans["MEGA_FAN"], external_id="sub_recover")

        await process_event(db_session, _make_event("invoice.payment_failed", _invoice("sub_recover", attempt_count=1)))
        assert account.subscription_status == "GRACE_PERIOD"

        await process_event(db_session, _make_event("invoice.paid", _invoice("sub_recover")))
        assert account.subscription_status == "ACTIVE"
        assert account.grace_period_end is None

    async def test_stale_event_discarded(self, db_session: AsyncSession, plans: dict[str, Plan]):
        account = await make_account(db_session)
        subscription = await subscribe(db_session, account, plans["FAN"], external_id="sub_stale")
        now = int(time.time())

        await process_event(db_session, _make_event("invoice.paid", _invoice("sub_stale"), created=now))
        end_after_first = subscription.end_date

        outcome = await process_event(
            db_session,
            _make_event("invoice.paid", _invoice("sub_stale"), created=now - 3600),
        )

        assert outcome == WebhookOutcome.STALE
        assert subscription.end_date == end_after_first
        assert subscription.renewal_count == 1

    async def test_earlier_payment_does_not_revive_expired(self, db_session: AsyncSession, plans: dict[str, Plan]):
        account = await make_account(db_session)
        subscription = await subscribe(db_session, account, plans["FAN"], external_id="sub_gone")
        now = int(time.time())

        await process_event(
            db_session,
            _make_event("customer.subscription.deleted", _StripeObj(id="sub_gone"), created=now),
        )
        outcome = await process_event(
            db_session,
            _make_event("invoice.paid", _invoice("sub_gone"), created=now - 60),
        )

        assert outcome == WebhookOutcome.STALE
        assert subscription.status == "EXPIRED"
        assert subscription.renewal_count == 0
        assert account.current_plan == "FREE"
        assert account.subscription_status == "EXPIRED"

    async def test_unknown_subscription_ignored(self, db_session: AsyncSession):
        outcome = await process_event(db_session, _make_event("invoice.paid", _invoice("sub_nobody")))
        assert outcome == WebhookOutcome.IGNORED


# ---------------------------------------------------------------------------
# invoice.payment_failed
# ---------------------------------------------------------------------------


class TestInvoicePaymentFailed:
    async def test_active_enters_grace(self, db_session: AsyncSession, plans: dict[str, Plan]):
        account = await make_account(db_session)
        subscription = await subscribe(db_session, account, plans["MEGA_FAN"], external_id="sub_fail")

        invoice = _invoice("sub_fail", attempt_count=1)
        outcome = await process_event(db_session, _make_event("invoice.payment_failed", invoice))

        assert outcome == WebhookOutcome.PROCESSED
        assert subscription.status == "GRACE_PERIOD"
        assert subscription.grace_period_end is not None
        assert account.offline_viewing is True
        payment = (await db_session.execute(select(Payment))).scalar_one()
        assert payment.status == "failed"
        assert payment.external_id == f"{invoice.id}:1"

    async def test_retry_in_grace_recorded_once(self, db_session: AsyncSession, plans: dict[str, Plan]):
        account = await make_account(db_session)
        subscription = await subscribe(db_session, account, plans["FAN"], external_id="sub_retry")
        first_attempt = _invoice("sub_retry", id="in_retry", attempt_count=1)
        second_attempt = _invoice("sub_retry", id="in_retry", attempt_count=2)

        await process_event(db_session, _make_event("invoice.payment_failed", first_attempt))
        grace_end = subscription.grace_period_end
        second = await process_event(db_session, _make_event("invoice.payment_failed", second_attempt))
        repeat = await process_event(db_session, _make_event("invoice.payment_failed", second_attempt))

        assert second == WebhookOutcome.PROCESSED
        assert repeat == WebhookOutcome.DUPLICATE
        assert subscription.status == "GRACE_PERIOD"
        assert subscription.grace_period_end == grace_end
        assert await _count(db_session, Payment, Payment.status == "failed") == 2

    async def test_cancelled_subscription_ignored(self, db_session: AsyncSession, plans: dict[str, Plan]):
        account = await make_account(db_session)
        subscription = await subscribe(db_session, account, plans["FAN"], external_id="sub_cancelled")
        await cancel(db_session, subscription)

        outcome = await process_event(
            db_session,
            _make_event("invoice.payment_failed", _invoice("sub_cancelled", attempt_count=1)),
        )

        assert outcome == WebhookOutcome.IGNORED
        assert subscription.status == "CANCELLED"
        assert await _count(db_session, Payment) == 0


# ---------------------------------------------------------------------------
# customer.subscription.updated / deleted
# ---------------------------------------------------------------------------


class TestSubscriptionUpdated:
    async def test_cancel_at_period_end(self, db_session: AsyncSession, plans: dict[str, Plan]):
        account = await make_account(db_session)
        subscription = await subscribe(db_session, account, plans["FAN"], external_id="sub_portal")

        stripe_sub = _StripeObj(id="sub_portal", status="active", cancel_at_period_end=True)
        outcome = await process_event(db_session, _make_event("customer.subscription.updated", stripe_sub))

        assert outcome == WebhookOutcome.PROCESSED
        assert subscription.status == "CANCELLED"
        assert account.current_plan == "FAN"
        assert account.auto_renewal is False

    async def test_undo_cancel_reactivates(self, db_session: AsyncSession, plans: dict[str, Plan]):
        account = await make_account(db_session)
        subscription = await subscribe(db_session, account, plans["FAN"], external_id="sub_undo")
        await cancel(db_session, subscription)

        stripe_sub = _StripeObj(id="sub_undo", status="active", cancel_at_period_end=False)
        outcome = await process_event(db_session, _make_event("customer.subscription.updated", stripe_sub))

        assert outcome == WebhookOutcome.PROCESSED
        assert subscription.status == "ACTIVE"
        assert account.auto_renewal is True

    async def test_reactivate_after_term_not_applied(self, db_session: AsyncSession, plans: dict[str, Plan]):
        account = await make_account(db_session)
        subscription = await subscribe(db_session, account, plans["FAN"], days_ago=31, external_id="sub_late")
        await cancel(db_session, subscription)

        stripe_sub = _StripeObj(id="sub_late", status="active", cancel_at_period_end=False)
        outcome = await process_event(db_session, _make_event("customer.subscription.updated", stripe_sub))

        assert outcome == WebhookOutcome.IGNORED
        assert subscription.status == "CANCELLED"

    async def test_past_due_enters_grace(self, db_session: AsyncSession, plans: dict[str, Plan]):
        account = await make_account(db_session)
        subscription = await subscribe(db_session, account, plans["FAN"], external_id="sub_past_due")

        stripe_sub = _StripeObj(id="sub_past_due", status="past_due", cancel_at_period_end=False)
        await process_event(db_session, _make_event("customer.subscription.updated", stripe_sub))

        assert subscription.status == "GRACE_PERIOD"

    async def test_canceled_at_processor_expires(self, db_session: AsyncSession, plans: dict[str, Plan]):
        account = await make_account(db_session)
        subscription = await subscribe(db_session, account, plans["MEGA_FAN"], external_id="sub_gone")

        stripe_sub = _StripeObj(id="sub_gone", status="canceled", cancel_at_period_end=False)
        await process_event(db_session, _make_event("customer.subscription.updated", stripe_sub))

        assert subscription.status == "EXPIRED"
        assert account.current_plan == "FREE"

    async def test_no_change(self, db_session: AsyncSession, plans: dict[str, Plan]):
        account = await make_account(db_session)
        await subscribe(db_session, account, plans["FAN"], external_id="sub_same")

        stripe_sub = _StripeObj(id="sub_same", status="active", cancel_at_period_end=False)
        outcome = await process_event(db_session, _make_event("customer.subscription.updated", stripe_sub))

        assert outcome == WebhookOutcome.IGNORED


class TestSubscriptionDeleted:
    async def test_expires_immediately(self, db_session: AsyncSession, plans: dict[str, Plan]):
        account = await make_account(db_session)
        subscription = await subscribe(db_session, account, plans["MEGA_FAN"], external_id="sub_deleted")

        event = _make_event("customer.subscription.deleted", _StripeObj(id="sub_deleted"))
        first = await process_event(db_session, event)
        second = await process_event(db_session, event)

        assert first == WebhookOutcome.PROCESSED
        assert second == WebhookOutcome.DUPLICATE
        assert subscription.status == "EXPIRED"
        assert subscription.grace_period_end is None
        assert account.current_plan == "FREE"
        assert account.game_vault_access is False
