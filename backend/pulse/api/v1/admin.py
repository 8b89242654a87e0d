"""Admin API router — plan catalog management, billing listings and subscription overrides."""

import logging
import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from pulse.api.deps import get_current_admin, get_db
from pulse.billing.errors import AccountHasLiveSubscription, AccountNotFound, SubscriptionNotFound
from pulse.billing.plan_catalog import create_plan, delete_plan, list_plans, update_plan
from pulse.billing.state_machine import cancel, expire_account, reactivate
from pulse.models.account import Account
from pulse.models.payment import Payment
from pulse.models.plan import Plan
from pulse.models.subscription import Subscription
from pulse.schemas.billing import CancelRequest, PaymentResponse, SubscriptionSummary
from pulse.schemas.plans import (
    AccountActionResponse,
    AdminPaymentListResponse,
    AdminPaymentResponse,
    AdminPlanResponse,
    AdminPlansListResponse,
    AdminSubscriptionListResponse,
    AdminSubscriptionResponse,
    PlanCreate,
    PlanUpdate,
)
from pulse.services.subscription_service import (
    delete_account,
    get_account,
    get_subscription,
    has_blocking_subscription,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/admin", tags=["admin"])

ADMIN_CANCELLED_REASON = "Cancelled by admin"
ADMIN_EXPIRED_REASON = "Expired by admin"


def _account_search(search: str):
    pattern = f"%{search}%"
    return or_(Account.email.ilike(pattern), Account.name.ilike(pattern))


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------


@router.get("/plans", response_model=AdminPlansListResponse)
async def admin_list_plans(
    db: AsyncSession = Depends(get_db),
    admin: Account = Depends(get_current_admin),
) -> AdminPlansListResponse:
    """All plans, including inactive ones, with their subscription counts."""
    rows = await list_plans(db)
    return AdminPlansListResponse(
        plans=[
            AdminPlanResponse.model_validate(plan).model_copy(update={"subscription_count": count})
            for plan, count in rows
        ]
    )


@router.post("/plans", response_model=AdminPlanResponse, status_code=status.HTTP_201_CREATED)
async def admin_create_plan(
    body: PlanCreate,
    db: AsyncSession = Depends(get_db),
    admin: Account = Depends(get_current_admin),
) -> AdminPlanResponse:
    plan = await create_plan(db, body.model_dump())
    await db.refresh(plan)
    return AdminPlanResponse.model_validate(plan)


@router.patch("/plans/{plan_id}", response_model=AdminPlanResponse)
async def admin_update_plan(
    plan_id: uuid.UUID,
    body: PlanUpdate,
    db: AsyncSession = Depends(get_db),
    admin: Account = Depends(get_current_admin),
) -> AdminPlanResponse:
    plan = await update_plan(db, plan_id, body.model_dump(exclude_unset=True))
    await db.refresh(plan)
    return AdminPlanResponse.model_validate(plan)


@router.delete("/plans/{plan_id}", status_code=status.HTTP_204_NO_CONTENT)
async def admin_delete_plan(
    plan_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    admin: Account = Depends(get_current_admin),
) -> Response:
    await delete_plan(db, plan_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------


@router.get("/subscriptions", response_model=AdminSubscriptionListResponse)
async def admin_list_subscriptions(
    status_filter: str | None = Query(None, alias="status", description="Filter by subscription status"),
    plan_type: str | None = Query(None, alias="plan", description="Filter by plan type"),
    search: str | None = Query(None, description="Search by account name or email (case-insensitive)"),
    skip: int = Query(0, ge=0, description="Pagination offset"),
    limit: int = Query(20, ge=1, le=100, description="Pagination limit"),
    db: AsyncSession = Depends(get_db),
    admin: Account = Depends(get_current_admin),
) -> AdminSubscriptionListResponse:
    """Subscriptions across all accounts, newest first."""
    filters = []
    if status_filter is not None:
        filters.append(Subscription.status == status_filter)
    if plan_type is not None:
        filters.append(Plan.type == plan_type)
    if search:
        filters.append(_account_search(search))

    count_query = (
        select(func.count())
        .select_from(Subscription)
        .join(Account, Subscription.account_id == Account.id)
        .join(Plan, Subscription.plan_id == Plan.id)
        .where(*filters)
    )
    total = (await db.execute(count_query)).scalar_one()

    items_query = (
        select(Subscription, Account.email, Plan.type)
        .join(Account, Subscription.account_id == Account.id)
        .join(Plan, Subscription.plan_id == Plan.id)
        .where(*filters)
        .order_by(Subscription.start_date.desc())
        .offset(skip)
        .limit(limit)
    )
    rows = (await db.execute(items_query)).all()

    return AdminSubscriptionListResponse(
        items=[
            AdminSubscriptionResponse(
                **SubscriptionSummary.model_validate(subscription).model_dump(),
                account_id=subscription.account_id,
                account_email=email,
                plan_type=plan,
            )
            for subscription, email, plan in rows
        ],
        total=total,
    )


@router.post("/subscriptions/{subscription_id}/cancel", response_model=SubscriptionSummary)
async def admin_cancel_subscription(
    subscription_id: uuid.UUID,
    body: CancelRequest,
    db: AsyncSession = Depends(get_db),
    admin: Account = Depends(get_current_admin),
) -> SubscriptionSummary:
    subscription = await get_subscription(db, subscription_id)
    if subscription is None:
        raise SubscriptionNotFound()
    await cancel(db, subscription, body.reason or ADMIN_CANCELLED_REASON)
    logger.info("Admin %s cancelled subscription %s", admin.id, subscription_id)
    return SubscriptionSummary.model_validate(subscription)


@router.post("/subscriptions/{subscription_id}/reactivate", response_model=SubscriptionSummary)
async def admin_reactivate_subscription(
    subscription_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    admin: Account = Depends(get_current_admin),
) -> SubscriptionSummary:
    subscription = await get_subscription(db, subscription_id)
    if subscription is None:
        raise SubscriptionNotFound()
    await reactivate(db, subscription)
    logger.info("Admin %s reactivated subscription %s", admin.id, subscription_id)
    return SubscriptionSummary.model_validate(subscription)


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------


@router.get("/payments", response_model=AdminPaymentListResponse)
async def admin_list_payments(
    status_filter: str | None = Query(None, alias="status", description="Filter by payment status"),
    search: str | None = Query(None, description="Search by account name or email (case-insensitive)"),
    skip: int = Query(0, ge=0, description="Pagination offset"),
    limit: int = Query(20, ge=1, le=100, description="Pagination limit"),
    db: AsyncSession = Depends(get_db),
    admin: Account = Depends(get_current_admin),
) -> AdminPaymentListResponse:
    """Payments across all accounts, newest first."""
    filters = []
    if status_filter is not None:
        filters.append(Payment.status == status_filter)
    if search:
        filters.append(_account_search(search))

    count_query = (
        select(func.count())
        .select_from(Payment)
        .join(Subscription, Payment.subscription_id == Subscription.id)
        .join(Account, Subscription.account_id == Account.id)
        .where(*filters)
    )
    total = (await db.execute(count_query)).scalar_one()

    items_query = (
        select(Payment, Subscription.account_id, Account.email, Plan.type)
        .join(Subscription, Payment.subscription_id == Subscription.id)
        .join(Account, Subscription.account_id == Account.id)
        .join(Plan, Subscription.plan_id == Plan.id)
        .where(*filters)
        .order_by(Payment.created_at.desc())
        .offset(skip)
        .limit(limit)
    )
    rows = (await db.execute(items_query)).all()

    return AdminPaymentListResponse(
        items=[
            AdminPaymentResponse(
                **PaymentResponse.model_validate(payment).model_dump(),
                account_id=account_id,
                account_email=email,
                plan_type=plan,
            )
            for payment, account_id, email, plan in rows
        ],
        total=total,
    )


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


@router.post("/accounts/{account_id}/expire", response_model=AccountActionResponse)
async def admin_expire_account(
    account_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    admin: Account = Depends(get_current_admin),
) -> AccountActionResponse:
    """Force the account's current subscription to EXPIRED (FREE bundle)."""
    account = await get_account(db, account_id)
    if account is None:
        raise AccountNotFound()
    await expire_account(db, account.id, reason=ADMIN_EXPIRED_REASON)
    logger.info("Admin %s expired account %s", admin.id, account_id)
    return AccountActionResponse(
        account_id=account.id,
        status=account.subscription_status,
        current_plan=account.current_plan,
    )


@router.delete("/accounts/{account_id}", status_code=status.HTTP_204_NO_CONTENT)
async def admin_delete_account(
    account_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    admin: Account = Depends(get_current_admin),
) -> Response:
    """Delete an account and its billing history; refused while it still pays."""
    if account_id == admin.id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Admins cannot delete their own account",
        )
    account = await get_account(db, account_id)
    if account is None:
        raise AccountNotFound()
    if await has_blocking_subscription(db, account.id):
        raise AccountHasLiveSubscription()

    await delete_account(db, account)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
