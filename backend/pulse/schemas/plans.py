"""Pydantic v2 schemas for the admin plan catalog and account endpoints."""

import uuid
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from pulse.billing.plans import BillingCycle, PlanType
from pulse.schemas.billing import PaymentResponse, PlanResponse, SubscriptionSummary


class PlanCreate(BaseModel):
    type: PlanType
    name: str = Field(..., min_length=1, max_length=120)
    description: str = ""
    billing_cycle: BillingCycle = Field(BillingCycle.MONTHLY, validate_default=True)
    price: Decimal = Field(..., ge=0, max_digits=10, decimal_places=2)
    currency: str = Field("BRL", min_length=3, max_length=3)
    max_screens: int = Field(1, ge=1, le=10)
    offline_viewing: bool = False
    game_vault_access: bool = False
    ad_free: bool = False
    features: list[str] = Field(default_factory=list)
    active: bool = True
    display_order: int = 0
    popular: bool = False
    stripe_price_id: str | None = None

    model_config = ConfigDict(use_enum_values=True)


class PlanUpdate(BaseModel):
    """Partial update; only fields that are sent are applied."""

    type: PlanType | None = None
    name: str | None = Field(None, min_length=1, max_length=120)
    description: str | None = None
    billing_cycle: BillingCycle | None = None
    price: Decimal | None = Field(None, ge=0, max_digits=10, decimal_places=2)
    currency: str | None = Field(None, min_length=3, max_length=3)
    max_screens: int | None = Field(None, ge=1, le=10)
    offline_viewing: bool | None = None
    game_vault_access: bool | None = None
    ad_free: bool | None = None
    features: list[str] | None = None
    active: bool | None = None
    display_order: int | None = None
    popular: bool | None = None
    stripe_price_id: str | None = None

    model_config = ConfigDict(use_enum_values=True)


class AdminPlanResponse(PlanResponse):
    active: bool
    stripe_price_id: str | None
    subscription_count: int = 0


class AdminPlansListResponse(BaseModel):
    plans: list[AdminPlanResponse]


class AccountActionResponse(BaseModel):
    account_id: uuid.UUID
    status: str | None
    current_plan: str


class AdminSubscriptionResponse(SubscriptionSummary):
    account_id: uuid.UUID
    account_email: str
    plan_type: str


class AdminSubscriptionListResponse(BaseModel):
    """Paginated list of subscriptions across all accounts."""

    items: list[AdminSubscriptionResponse]
    total: int


class AdminPaymentResponse(PaymentResponse):
    account_id: uuid.UUID
    account_email: str
    plan_type: str


class AdminPaymentListResponse(BaseModel):
    """Paginated list of payments across all accounts."""

    items: list[AdminPaymentResponse]
    total: int
