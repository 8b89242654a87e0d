"""Tests for billing API endpoints with mocked Stripe calls."""

import time
import uuid
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import stripe
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pulse.billing.state_machine import cancel
from pulse.billing.timeutils import utcnow
from pulse.models.account import Account
from pulse.models.checkout_session import CheckoutSession
from pulse.models.payment import Payment
from pulse.models.plan import Plan

from helpers import headers_for, make_account, subscribe

pytestmark = pytest.mark.asyncio

UNAUTHENTICATED = (401, 403)


def _fake_checkout_session(session_id: str = "cs_test_123") -> SimpleNamespace:
    return SimpleNamespace(
        id=session_id,
        url=f"https://checkout.stripe.com/c/{session_id}",
        status="open",
        payment_status="unpaid",
        mode="subscription",
        expires_at=int(time.time()) + 3600,
    )


def _stripe_patches(session: SimpleNamespace):
    return (
        patch(
            "pulse.api.v1.billing.ensure_stripe_customer",
            new_callable=AsyncMock,
            return_value="cus_test_123",
        ),
        patch(
            "pulse.api.v1.billing.create_checkout_session",
            new_callable=AsyncMock,
            return_value=session,
        ),
    )


class TestListPlans:
    """Test GET /api/v1/billing/plans."""

    async def test_lists_catalog_in_display_order(self, client: AsyncClient, plans: dict[str, Plan]):
        response = await client.get("/api/v1/billing/plans")
        assert response.status_code == 200
        types = [p["type"] for p in response.json()["plans"]]
        assert types == ["FREE", "FAN", "MEGA_FAN", "MEGA_FAN_ANNUAL"]

    async def test_plan_details_structure(self, client: AsyncClient, plans: dict[str, Plan]):
        response = await client.get("/api/v1/billing/plans")
        mega_fan = next(p for p in response.json()["plans"] if p["type"] == "MEGA_FAN")
        assert Decimal(mega_fan["price"]) == Decimal("19.99")
        assert mega_fan["currency"] == "BRL"
        assert mega_fan["max_screens"] == 4
        assert mega_fan["game_vault_access"] is True
        assert mega_fan["popular"] is True
        assert "stripe_price_id" not in mega_fan

    async def test_inactive_plans_hidden(
        self, client: AsyncClient, db_session: AsyncSession, plans: dict[str, Plan]
    ):
        plans["MEGA_FAN_ANNUAL"].active = False
        await db_session.flush()

        response = await client.get("/api/v1/billing/plans")
        types = {p["type"] for p in response.json()["plans"]}
        assert "MEGA_FAN_ANNUAL" not in types


class TestSubscriptionStatus:
    """Test GET /api/v1/billing/subscription."""

    async def test_free_account(self, client: AsyncClient, auth_headers: dict, plans: dict[str, Plan]):
        response = await client.get("/api/v1/billing/subscription", headers=auth_headers)
        assert response.status_code == 200
        data = response.json()
        assert data["status"] is None
        assert data["plan"] == "FREE"
        assert data["current_subscription"] is None
        assert data["renewal_required"] is False
        assert data["features"]["quality_tier"] == "SD_ADS"
        assert data["feature_access"]["can_access_hd"] is False

    async def test_active_subscription(
        self, client: AsyncClient, db_session: AsyncSession, plans: dict[str, Plan]
    ):
        account = await make_account(db_session)
        await subscribe(db_session, account, plans["FAN"])

        response = await client.get("/api/v1/billing/subscription", headers=headers_for(account))
        data = response.json()
        assert data["status"] == "ACTIVE"
        assert data["plan"] == "FAN"
        assert data["days_until_expiry"] == 30
        assert data["auto_renewal"] is True
        assert data["feature_access"]["can_access_hd"] is True
        assert data["feature_access"]["can_access_4k"] is False
        assert data["current_subscription"]["status"] == "ACTIVE"
        assert "external_id" not in data["current_subscription"]
        assert len(data["history"]) == 1

    async def test_lapsed_subscription_aged_on_read(
        self, client: AsyncClient, db_session: AsyncSession, plans: dict[str, Plan]
    ):
        account = await make_account(db_session)
        await subscribe(db_session, account, plans["MEGA_FAN"], days_ago=31)

        response = await client.get("/api/v1/billing/subscription", headers=headers_for(account))
        data = response.json()
        assert data["status"] == "GRACE_PERIOD"
        assert data["is_in_grace_period"] is True
        assert data["renewal_required"] is True
        assert data["days_until_expiry"] == 0
        assert data["features"]["offline_viewing"] is True

    async def test_requires_auth(self, client: AsyncClient):
        response = await client.get("/api/v1/billing/subscription")
        assert response.status_code in UNAUTHENTICATED


class TestEntitlements:
    """Test GET /api/v1/billing/entitlements."""

    async def test_mega_fan_bundle(self, client: AsyncClient, db_session: AsyncSession, plans: dict[str, Plan]):
        account = await make_account(db_session)
        await subscribe(db_session, account, plans["MEGA_FAN"])

        response = await client.get("/api/v1/billing/entitlements", headers=headers_for(account))
        assert response.json() == {
            "max_screens": 4,
            "offline_viewing": True,
            "game_vault_access": True,
            "ad_free": True,
            "quality_tier": "UHD_4K",
        }


class TestCheckout:
    """Test POST /api/v1/billing/checkout and /checkout/renewal."""

    async def test_checkout_persists_open_session(
        self, client: AsyncClient, db_session: AsyncSession, test_account: Account, plans: dict[str, Plan]
    ):
        session = _fake_checkout_session()
        customer_patch, checkout_patch = _stripe_patches(session)

        with customer_patch, checkout_patch as mock_checkout:
            response = await client.post(
                "/api/v1/billing/checkout",
                json={"plan_id": str(plans["FAN"].id)},
                headers=headers_for(test_account),
            )

        assert response.status_code == 200
        assert response.json() == {"checkout_url": session.url, "session_id": session.id}

        metadata = mock_checkout.await_args.kwargs["metadata"]
        assert metadata["account_id"] == str(test_account.id)
        assert metadata["plan_id"] == str(plans["FAN"].id)
        assert metadata["is_renewal"] == "false"

        record = (await db_session.execute(select(CheckoutSession))).scalar_one()
        assert record.external_id == session.id
        assert record.status == "open"
        assert record.amount == plans["FAN"].price
        assert record.is_renewal is False

        # Nothing is granted until the webhook confirms payment
        assert test_account.current_plan == "FREE"

    async def test_checkout_refused_with_live_subscription(
        self, client: AsyncClient, db_session: AsyncSession, plans: dict[str, Plan]
    ):
        account = await make_account(db_session)
        await subscribe(db_session, account, plans["FAN"])

        response = await client.post(
            "/api/v1/billing/checkout",
            json={"plan_id": str(plans["MEGA_FAN"].id)},
            headers=headers_for(account),
        )

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "EXISTING_ACTIVE_SUBSCRIPTION"

    async def test_renewal_checkout_records_previous_plan(
        self, client: AsyncClient, db_session: AsyncSession, plans: dict[str, Plan]
    ):
        account = await make_account(db_session)
        await subscribe(db_session, account, plans["FAN"])
        customer_patch, checkout_patch = _stripe_patches(_fake_checkout_session("cs_renewal"))

        with customer_patch, checkout_patch as mock_checkout:
            response = await client.post(
                "/api/v1/billing/checkout/renewal",
                json={"plan_id": str(plans["MEGA_FAN"].id)},
                headers=headers_for(account),
            )

        assert response.status_code == 200
        metadata = mock_checkout.await_args.kwargs["metadata"]
        assert metadata["is_renewal"] == "true"
        assert metadata["previous_plan"] == "FAN"
        assert metadata["previous_status"] == "ACTIVE"
        assert "renewal=success" in mock_checkout.await_args.kwargs["success_url"]

        record = (await db_session.execute(select(CheckoutSession))).scalar_one()
        assert record.is_renewal is True
        assert record.previous_plan == "FAN"

    async def test_unknown_plan(self, client: AsyncClient, auth_headers: dict, plans: dict[str, Plan]):
        response = await client.post(
            "/api/v1/billing/checkout",
            json={"plan_id": str(uuid.uuid4())},
            headers=auth_headers,
        )
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "PLAN_NOT_FOUND"

    async def test_free_plan_rejected(self, client: AsyncClient, auth_headers: dict, plans: dict[str, Plan]):
        response = await client.post(
            "/api/v1/billing/checkout",
            json={"plan_id": str(plans["FREE"].id)},
            headers=auth_headers,
        )
        assert response.status_code == 400

    async def test_stripe_failure_is_502(self, client: AsyncClient, auth_headers: dict, plans: dict[str, Plan]):
        with (
            patch(
                "pulse.api.v1.billing.ensure_stripe_customer",
                new_callable=AsyncMock,
                return_value="cus_test_123",
            ),
            patch(
                "pulse.api.v1.billing.create_checkout_session",
                new_callable=AsyncMock,
                side_effect=stripe.APIConnectionError("network down"),
            ),
        ):
            response = await client.post(
                "/api/v1/billing/checkout",
                json={"plan_id": str(plans["FAN"].id)},
                headers=auth_headers,
            )
        assert response.status_code == 502

    async def test_checkout_no_auth(self, client: AsyncClient, plans: dict[str, Plan]):
        response = await client.post("/api/v1/billing/checkout", json={"plan_id": str(plans["FAN"].id)})
        assert response.status_code in UNAUTHENTICATED


class TestPortal:
    """Test POST /api/v1/billing/portal."""

    async def test_portal_no_stripe_customer(self, client: AsyncClient, auth_headers: dict):
        response = await client.post("/api/v1/billing/portal", json={}, headers=auth_headers)
        assert response.status_code == 400
        assert "No Stripe customer" in response.json()["detail"]

    async def test_portal_success(self, client: AsyncClient, db_session: AsyncSession):
        account = await make_account(db_session)
        account.stripe_customer_id = "cus_portal_123"
        await db_session.flush()

        mock_session = MagicMock()
        mock_session.url = "https://billing.stripe.com/portal_session"

        with patch(
            "pulse.api.v1.billing.create_portal_session",
            new_callable=AsyncMock,
            return_value=mock_session,
        ) as mock_portal:
            response = await client.post("/api/v1/billing/portal", json={}, headers=headers_for(account))

        assert response.status_code == 200
        assert response.json()["portal_url"] == "https://billing.stripe.com/portal_session"
        assert mock_portal.await_args.kwargs["customer_id"] == "cus_portal_123"


class TestCancelAndReactivate:
    async def test_cancel_keeps_access(self, client: AsyncClient, db_session: AsyncSession, plans: dict[str, Plan]):
        account = await make_account(db_session)
        await subscribe(db_session, account, plans["MEGA_FAN"])

        response = await client.post(
            "/api/v1/billing/subscription/cancel",
            json={"reason": "Too expensive"},
            headers=headers_for(account),
        )

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "CANCELLED"
        assert data["auto_renewal"] is False
        assert data["cancellation_reason"] == "Too expensive"
        assert account.current_plan == "MEGA_FAN"
        assert account.game_vault_access is True

    async def test_cancel_without_subscription(self, client: AsyncClient, auth_headers: dict):
        response = await client.post("/api/v1/billing/subscription/cancel", json={}, headers=auth_headers)
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "SUBSCRIPTION_NOT_FOUND"

    async def test_reactivate(self, client: AsyncClient, db_session: AsyncSession, plans: dict[str, Plan]):
        account = await make_account(db_session)
        subscription = await subscribe(db_session, account, plans["FAN"])
        await cancel(db_session, subscription)

        response = await client.post("/api/v1/billing/subscription/reactivate", headers=headers_for(account))

        assert response.status_code == 200
        assert response.json()["status"] == "ACTIVE"
        assert account.auto_renewal is True

    async def test_reactivate_active_is_conflict(
        self, client: AsyncClient, db_session: AsyncSession, plans: dict[str, Plan]
    ):
        account = await make_account(db_session)
        await subscribe(db_session, account, plans["FAN"])

        response = await client.post("/api/v1/billing/subscription/reactivate", headers=headers_for(account))

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "INVALID_TRANSITION"


class TestPayments:
    async def test_lists_own_payments(self, client: AsyncClient, db_session: AsyncSession, plans: dict[str, Plan]):
        account = await make_account(db_session)
        subscription = await subscribe(db_session, account, plans["FAN"])
        payment = Payment(
            subscription_id=subscription.id,
            amount=Decimal("14.99"),
            currency="BRL",
            status="completed",
            external_id="in_history_1",
            paid_at=utcnow(),
        )
        db_session.add(payment)
        await db_session.flush()
        await db_session.refresh(payment)

        other = await make_account(db_session)
        other_sub = await subscribe(db_session, other, plans["FAN"])
        other_payment = Payment(subscription_id=other_sub.id, amount=Decimal("14.99"), status="completed")
        db_session.add(other_payment)
        await db_session.flush()
        await db_session.refresh(other_payment)

        response = await client.get("/api/v1/billing/payments", headers=headers_for(account))

        assert response.status_code == 200
        payments = response.json()["payments"]
        assert [p["id"] for p in payments] == [str(payment.id)]
        assert payments[0]["status"] == "completed"
        assert "external_id" not in payments[0]
