"""Plan catalog — lookups on the hot path, administrative writes off it."""

import logging
import uuid
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from pulse.billing.errors import PlanInUse, PlanNotFound, PlanTypeConflict
from pulse.billing.plans import DEFAULT_PLANS, FREE_BUNDLE, PlanBundle, PlanType, SubscriptionStatus
from pulse.models.plan import Plan
from pulse.models.subscription import Subscription

logger = logging.getLogger(__name__)

# Subscriptions in these statuses pin their plan's type.
_BLOCKING_STATUSES = (
    SubscriptionStatus.ACTIVE.value,
    SubscriptionStatus.GRACE_PERIOD.value,
    SubscriptionStatus.PENDING.value,
)


async def get_plan(db: AsyncSession, plan_id: uuid.UUID) -> Plan | None:
    """Look up a plan by primary key."""
    return await db.get(Plan, plan_id)


async def get_plan_by_type(db: AsyncSession, plan_type: str) -> Plan | None:
    """Look up a plan by its unique type (e.g. ``MEGA_FAN``)."""
    result = await db.execute(select(Plan).where(Plan.type == plan_type))
    return result.scalar_one_or_none()


async def get_plan_by_price_id(db: AsyncSession, price_id: str) -> Plan | None:
    """Reverse lookup: Stripe price ID -> plan."""
    result = await db.execute(select(Plan).where(Plan.stripe_price_id == price_id))
    return result.scalars().first()


async def get_free_plan(db: AsyncSession) -> Plan | PlanBundle:
    """The FREE plan row, or the built-in FREE bundle if the catalog has none."""
    plan = await get_plan_by_type(db, PlanType.FREE.value)
    if plan is None:
        logger.warning("No FREE plan in catalog, falling back to built-in bundle")
        return FREE_BUNDLE
    return plan


async def list_active_plans(db: AsyncSession) -> list[Plan]:
    """Active plans in display order."""
    result = await db.execute(
        select(Plan).where(Plan.active.is_(True)).order_by(Plan.display_order, Plan.price)
    )
    return list(result.scalars().all())


async def list_plans(db: AsyncSession) -> list[tuple[Plan, int]]:
    """All plans (including inactive) with their subscription counts."""
    counts = (
        select(Subscription.plan_id, func.count().label("n"))
        .group_by(Subscription.plan_id)
        .subquery()
    )
    result = await db.execute(
        select(Plan, func.coalesce(counts.c.n, 0))
        .outerjoin(counts, counts.c.plan_id == Plan.id)
        .order_by(Plan.display_order, Plan.price)
    )
    return [(plan, count) for plan, count in result.all()]


async def count_subscriptions(db: AsyncSession, plan_id: uuid.UUID, statuses: tuple[str, ...] | None = None) -> int:
    """Count subscriptions referencing a plan, optionally filtered by status."""
    query = select(func.count()).select_from(Subscription).where(Subscription.plan_id == plan_id)
    if statuses is not None:
        query = query.where(Subscription.status.in_(statuses))
    result = await db.execute(query)
    return result.scalar_one()


async def create_plan(db: AsyncSession, data: dict[str, Any]) -> Plan:
    """Create a plan. The type must not exist yet."""
    plan_type = PlanType(data["type"]).value
    if await get_plan_by_type(db, plan_type) is not None:
        raise PlanTypeConflict(plan_type)

    plan = Plan(**{**data, "type": plan_type})
    db.add(plan)
    await db.flush()
    logger.info("Created plan %s (%s)", plan.id, plan.type)
    return plan


async def update_plan(db: AsyncSession, plan_id: uuid.UUID, data: dict[str, Any]) -> Plan:
    """Apply a partial update to a plan.

    Refuses to retype a plan that live subscriptions still reference, to take
    a type that another plan owns, or to retype/deactivate the only FREE plan.
    """
    plan = await get_plan(db, plan_id)
    if plan is None:
        raise PlanNotFound(str(plan_id))

    new_type = data.get("type")
    if new_type is not None:
        new_type = PlanType(new_type).value
        data = {**data, "type": new_type}

    if new_type is not None and new_type != plan.type:
        if await get_plan_by_type(db, new_type) is not None:
            raise PlanTypeConflict(new_type)
        in_use = await count_subscriptions(db, plan.id, _BLOCKING_STATUSES)
        if in_use:
            raise PlanInUse(
                f"Cannot change the type of plan {plan.type} while {in_use} subscriptions reference it",
                subscription_count=in_use,
            )

    removes_free = plan.type == PlanType.FREE and (
        (new_type is not None and new_type != plan.type) or data.get("active") is False
    )
    if removes_free:
        raise PlanInUse("The FREE plan cannot be retyped or deactivated")

    for key, value in data.items():
        setattr(plan, key, value)
    await db.flush()
    logger.info("Updated plan %s (%s): %s", plan.id, plan.type, sorted(data))
    return plan


async def delete_plan(db: AsyncSession, plan_id: uuid.UUID) -> None:
    """Delete a plan that no subscription references."""
    plan = await get_plan(db, plan_id)
    if plan is None:
        raise PlanNotFound(str(plan_id))

    live = await count_subscriptions(db, plan.id, _BLOCKING_STATUSES)
    if live:
        raise PlanInUse(
            f"Plan {plan.type} has {live} active or pending subscriptions",
            subscription_count=live,
        )
    total = await count_subscriptions(db, plan.id)
    if total:
        raise PlanInUse(
            f"Plan {plan.type} is referenced by {total} subscriptions",
            subscription_count=total,
        )

    await db.delete(plan)
    await db.flush()
    logger.info("Deleted plan %s (%s)", plan_id, plan.type)


async def seed_default_plans(db: AsyncSession) -> list[Plan]:
    """Insert any built-in plan types missing from the catalog."""
    created = []
    for bundle in DEFAULT_PLANS.values():
        if await get_plan_by_type(db, bundle.type.value) is not None:
            continue
        plan = Plan(
            type=bundle.type.value,
            name=bundle.name,
            description=bundle.description,
            billing_cycle=bundle.billing_cycle.value,
            price=bundle.price,
            max_screens=bundle.max_screens,
            offline_viewing=bundle.offline_viewing,
            game_vault_access=bundle.game_vault_access,
            ad_free=bundle.ad_free,
            features=list(bundle.features),
            active=True,
            display_order=bundle.display_order,
            popular=bundle.popular,
        )
        db.add(plan)
        created.append(plan)
    await db.flush()
    return created
