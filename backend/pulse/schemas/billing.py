"""Pydantic v2 request/response schemas for billing endpoints."""

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

# --- Request schemas ---


class CheckoutRequest(BaseModel):
    """Request to create a Stripe Checkout session."""

    plan_id: uuid.UUID
    success_url: str | None = None
    cancel_url: str | None = None


class PortalRequest(BaseModel):
    """Request to create a Stripe Customer Portal session."""

    return_url: str | None = None


class CancelRequest(BaseModel):
    reason: str | None = Field(None, max_length=255)


# --- Response schemas ---


class PlanResponse(BaseModel):
    """Plan details for display."""

    id: uuid.UUID
    type: str
    name: str
    description: str | None
    billing_cycle: str
    price: Decimal
    currency: str
    max_screens: int
    offline_viewing: bool
    game_vault_access: bool
    ad_free: bool
    features: list[str]
    popular: bool
    display_order: int

    model_config = ConfigDict(from_attributes=True)


class PlansListResponse(BaseModel):
    """All purchasable plans."""

    plans: list[PlanResponse]


class CheckoutResponse(BaseModel):
    """Stripe Checkout session URL returned to frontend."""

    checkout_url: str
    session_id: str


class PortalResponse(BaseModel):
    """Stripe Customer Portal URL returned to frontend."""

    portal_url: str


class FeatureBundleResponse(BaseModel):
    max_screens: int
    offline_viewing: bool
    game_vault_access: bool
    ad_free: bool
    quality_tier: str


class FeatureAccessResponse(BaseModel):
    can_access_ad_free: bool
    can_access_offline: bool
    can_access_game_vault: bool
    can_access_multiple_screens: bool
    can_access_hd: bool
    can_access_4k: bool


class SubscriptionSummary(BaseModel):
    """One subscription term. Processor identifiers are never included."""

    id: uuid.UUID
    plan_id: uuid.UUID
    status: str
    start_date: datetime
    end_date: datetime
    amount: Decimal
    currency: str
    auto_renewal: bool
    renewal_count: int
    next_billing_date: datetime | None
    grace_period_end: datetime | None
    cancelled_at: datetime | None
    cancellation_reason: str | None

    model_config = ConfigDict(from_attributes=True)


class SubscriptionStatusResponse(BaseModel):
    """Entitlement snapshot + billing state for the authenticated account."""

    status: str | None
    plan: str
    subscription_expiry: datetime | None
    days_until_expiry: int | None
    is_in_grace_period: bool
    grace_period_end: datetime | None
    renewal_required: bool
    auto_renewal: bool
    last_payment_date: datetime | None
    next_billing_date: datetime | None
    features: FeatureBundleResponse
    feature_access: FeatureAccessResponse
    current_subscription: SubscriptionSummary | None
    history: list[SubscriptionSummary]


class PaymentResponse(BaseModel):
    id: uuid.UUID
    subscription_id: uuid.UUID
    amount: Decimal
    currency: str
    status: str
    payment_method: str
    paid_at: datetime | None
    failure_reason: str | None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PaymentsListResponse(BaseModel):
    payments: list[PaymentResponse]
