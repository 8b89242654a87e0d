"""Seed the plan catalog and an admin account.

Inserts any of the built-in plans (FREE, FAN, MEGA_FAN, MEGA_FAN_ANNUAL) that
are missing; existing rows are left untouched so admin edits survive a re-run.

Run inside Docker:
    docker compose exec backend python -m scripts.seed_plans
"""

import asyncio
import sys
from pathlib import Path

# Add backend to path so imports work when run as a script
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from sqlalchemy import select

from pulse.auth.passwords import hash_password
from pulse.billing.plan_catalog import list_plans, seed_default_plans
from pulse.database import async_session_factory, engine
from pulse.models.account import Account

DEMO_ADMIN = {
    "email": "admin@pulse.tv",
    "password": "admin1234",
    "name": "Pulse Admin",
}


async def seed() -> None:
    async with async_session_factory() as session:
        created = await seed_default_plans(session)
        print(f"✅ Created {len(created)} plans")

        result = await session.execute(select(Account).where(Account.email == DEMO_ADMIN["email"]))
        if result.scalar_one_or_none() is None:
            session.add(
                Account(
                    email=DEMO_ADMIN["email"],
                    hashed_password=hash_password(DEMO_ADMIN["password"]),
                    name=DEMO_ADMIN["name"],
                    role="admin",
                )
            )
            print(f"✅ Created admin {DEMO_ADMIN['email']}")

        await session.commit()

        print()
        print("=" * 60)
        print("📊 Plan catalog")
        print("=" * 60)
        for plan, count in await list_plans(session):
            print(f"   {plan.type:<16} {plan.currency} {plan.price:>8}  {plan.billing_cycle:<9} subs={count}")
        print("=" * 60)

    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(seed())
