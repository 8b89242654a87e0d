"""Billing API endpoints — plans, checkout, subscription status and lifecycle actions."""

import logging

import stripe
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from pulse.api.deps import get_current_active_account, get_db, get_entitlements
from pulse.billing.entitlements import Entitlements
from pulse.billing.errors import ExistingActiveSubscription, PlanNotFound, SubscriptionNotFound
from pulse.billing.plan_catalog import get_plan, list_active_plans
from pulse.billing.plans import PlanType
from pulse.billing.state_machine import cancel, reactivate
from pulse.billing.stripe_client import create_checkout_session, create_portal_session
from pulse.billing.timeutils import ts_to_naive
from pulse.config import settings
from pulse.models.account import Account
from pulse.models.checkout_session import CheckoutSession
from pulse.models.plan import Plan
from pulse.schemas.billing import (
    CancelRequest,
    CheckoutRequest,
    CheckoutResponse,
    FeatureBundleResponse,
    PaymentResponse,
    PaymentsListResponse,
    PlanResponse,
    PlansListResponse,
    PortalRequest,
    PortalResponse,
    SubscriptionStatusResponse,
    SubscriptionSummary,
)
from pulse.services.subscription_service import (
    ensure_stripe_customer,
    get_current_subscription,
    get_live_subscription,
    list_payments,
)
from pulse.services.subscription_status import build_subscription_status

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/billing", tags=["billing"])


async def _purchasable_plan(db: AsyncSession, body: CheckoutRequest) -> Plan:
    plan = await get_plan(db, body.plan_id)
    if plan is None or not plan.active:
        raise PlanNotFound(str(body.plan_id))
    if plan.type == PlanType.FREE:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="The FREE plan does not need a checkout.",
        )
    return plan


async def _start_checkout(
    db: AsyncSession,
    account: Account,
    plan: Plan,
    body: CheckoutRequest,
    is_renewal: bool,
) -> CheckoutResponse:
    """Open a Stripe Checkout session and persist it as ``open``.

    The subscription itself is created later, by the checkout webhook.
    """
    customer_id = await ensure_stripe_customer(db, account)

    if is_renewal:
        success_url = body.success_url or f"{settings.frontend_url}/account?renewal=success"
        cancel_url = body.cancel_url or f"{settings.frontend_url}/account?renewal=cancelled"
    else:
        success_url = body.success_url or f"{settings.frontend_url}/account?session_id={{CHECKOUT_SESSION_ID}}"
        cancel_url = body.cancel_url or f"{settings.frontend_url}/plans"

    metadata = {
        "account_id": str(account.id),
        "plan_id": str(plan.id),
        "plan_type": plan.type,
        "is_renewal": "true" if is_renewal else "false",
    }
    if is_renewal:
        metadata["previous_plan"] = account.current_plan
        metadata["previous_status"] = account.subscription_status or "NONE"

    try:
        session = await create_checkout_session(
            customer_id=customer_id,
            plan=plan,
            success_url=success_url,
            cancel_url=cancel_url,
            metadata=metadata,
        )
    except stripe.StripeError as e:
        logger.error("Stripe checkout error: %s", e)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Payment processor unavailable",
        ) from e

    db.add(
        CheckoutSession(
            external_id=session.id,
            account_id=account.id,
            plan_id=plan.id,
            status=session.status or "open",
            payment_status=session.payment_status,
            mode=session.mode or "subscription",
            amount=plan.price,
            currency=plan.currency,
            success_url=success_url,
            cancel_url=cancel_url,
            expires_at=ts_to_naive(session.expires_at),
            is_renewal=is_renewal,
            previous_plan=metadata.get("previous_plan"),
            previous_status=metadata.get("previous_status"),
        )
    )
    await db.commit()
    logger.info("Checkout session %s opened for account %s (plan %s)", session.id, account.id, plan.type)

    return CheckoutResponse(checkout_url=session.url, session_id=session.id)


@router.get("/plans", response_model=PlansListResponse)
async def list_plans(db: AsyncSession = Depends(get_db)) -> PlansListResponse:
    """List purchasable plans (public — no auth required)."""
    plans = await list_active_plans(db)
    return PlansListResponse(plans=[PlanResponse.model_validate(p) for p in plans])


@router.get("/subscription", response_model=SubscriptionStatusResponse)
async def get_subscription_status(
    db: AsyncSession = Depends(get_db),
    current_account: Account = Depends(get_current_active_account),
) -> SubscriptionStatusResponse:
    """Current plan, entitlements and billing dates."""
    return await build_subscription_status(db, current_account)


@router.get("/entitlements", response_model=FeatureBundleResponse)
async def get_current_entitlements(
    entitlements: Entitlements = Depends(get_entitlements),
) -> FeatureBundleResponse:
    return FeatureBundleResponse(
        max_screens=entitlements.max_screens,
        offline_viewing=entitlements.offline_viewing,
        game_vault_access=entitlements.game_vault_access,
        ad_free=entitlements.ad_free,
        quality_tier=entitlements.quality_tier.value,
    )


@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout(
    body: CheckoutRequest,
    db: AsyncSession = Depends(get_db),
    current_account: Account = Depends(get_current_active_account),
) -> CheckoutResponse:
    """Create a Stripe Checkout session for a first subscription."""
    plan = await _purchasable_plan(db, body)

    live = await get_live_subscription(db, current_account.id)
    if live is not None:
        raise ExistingActiveSubscription(current_account.id, live.id)

    return await _start_checkout(db, current_account, plan, body, is_renewal=False)


@router.post("/checkout/renewal", response_model=CheckoutResponse)
async def create_renewal_checkout(
    body: CheckoutRequest,
    db: AsyncSession = Depends(get_db),
    current_account: Account = Depends(get_current_active_account),
) -> CheckoutResponse:
    """Create a checkout that renews or changes the plan of an existing account."""
    plan = await _purchasable_plan(db, body)
    return await _start_checkout(db, current_account, plan, body, is_renewal=True)


@router.post("/portal", response_model=PortalResponse)
async def create_portal(
    body: PortalRequest,
    current_account: Account = Depends(get_current_active_account),
) -> PortalResponse:
    """Create a Stripe Customer Portal session for subscription management."""
    if not current_account.stripe_customer_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No Stripe customer found. Subscribe first.",
        )

    return_url = body.return_url or f"{settings.frontend_url}/account"

    try:
        session = await create_portal_session(
            customer_id=current_account.stripe_customer_id,
            return_url=return_url,
        )
    except stripe.StripeError as e:
        logger.error("Stripe portal error: %s", e)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Payment processor unavailable",
        ) from e

    return PortalResponse(portal_url=session.url)


@router.post("/subscription/cancel", response_model=SubscriptionSummary)
async def cancel_subscription(
    body: CancelRequest,
    db: AsyncSession = Depends(get_db),
    current_account: Account = Depends(get_current_active_account),
) -> SubscriptionSummary:
    """Stop auto-renewal; access continues until the end of the paid term."""
    subscription = await get_live_subscription(db, current_account.id)
    if subscription is None:
        raise SubscriptionNotFound("No active subscription to cancel")

    await cancel(db, subscription, body.reason)
    return SubscriptionSummary.model_validate(subscription)


@router.post("/subscription/reactivate", response_model=SubscriptionSummary)
async def reactivate_subscription(
    db: AsyncSession = Depends(get_db),
    current_account: Account = Depends(get_current_active_account),
) -> SubscriptionSummary:
    """Undo a cancellation while the paid term is still running."""
    subscription = await get_current_subscription(db, current_account.id)
    if subscription is None:
        raise SubscriptionNotFound("No cancelled subscription to reactivate")

    await reactivate(db, subscription)
    return SubscriptionSummary.model_validate(subscription)


@router.get("/payments", response_model=PaymentsListResponse)
async def get_payments(
    db: AsyncSession = Depends(get_db),
    current_account: Account = Depends(get_current_active_account),
) -> PaymentsListResponse:
    """Payment history across all of the account's subscriptions."""
    payments = await list_payments(db, current_account.id)
    return PaymentsListResponse(payments=[PaymentResponse.model_validate(p) for p in payments])
