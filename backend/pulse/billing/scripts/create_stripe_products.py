"""Create Stripe products and prices for the paid plans in the catalog.

Run once inside the backend container, after seeding plans:
    python -m pulse.billing.scripts.create_stripe_products

Plans that already carry a ``stripe_price_id`` are skipped; new price IDs are
written back to the catalog so checkout uses them instead of inline prices.
"""

import asyncio

from sqlalchemy import select

from pulse.billing.plans import PlanType
from pulse.billing.stripe_client import get_stripe_client, recurring_interval, to_minor_units
from pulse.config import settings
from pulse.database import async_session_factory, engine
from pulse.models.plan import Plan


async def main() -> None:
    if not settings.stripe_secret_key:
        print("ERROR: STRIPE_SECRET_KEY is not set in .env")
        return

    client = get_stripe_client()

    async with async_session_factory() as session:
        result = await session.execute(
            select(Plan).where(Plan.type != PlanType.FREE.value, Plan.stripe_price_id.is_(None))
        )
        plans = list(result.scalars().all())
        if not plans:
            print("Every paid plan already has a Stripe price.")

        for plan in plans:
            product = await client.v1.products.create_async(
                params={
                    "name": f"Pulse {plan.name}",
                    "description": plan.description or plan.name,
                    "metadata": {"plan_type": plan.type},
                }
            )
            price = await client.v1.prices.create_async(
                params={
                    "product": product.id,
                    "unit_amount": to_minor_units(plan.price),
                    "currency": plan.currency.lower(),
                    "recurring": {"interval": recurring_interval(plan.billing_cycle)},
                    "metadata": {"plan_id": str(plan.id)},
                }
            )
            plan.stripe_price_id = price.id
            print(f"Created product: {product.name} ({product.id})")
            print(f"  Price: {plan.currency} {plan.price} / {plan.billing_cycle.lower()} ({price.id})")

        await session.commit()

    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
