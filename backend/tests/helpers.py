"""Builders shared by the test modules."""

import uuid
from datetime import timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from pulse.auth.jwt import create_token_pair
from pulse.auth.passwords import hash_password
from pulse.billing.state_machine import create_subscription
from pulse.billing.timeutils import utcnow
from pulse.models.account import Account
from pulse.models.plan import Plan
from pulse.models.subscription import Subscription


async def make_account(
    db_session: AsyncSession,
    *,
    role: str = "user",
    password: str = "testpass123",
    is_active: bool = True,
) -> Account:
    """Create a FREE account directly in the DB."""
    unique = uuid.uuid4().hex[:8]
    account = Account(
        email=f"viewer-{unique}@test.com",
        hashed_password=hash_password(password),
        name="Test Viewer",
        is_active=is_active,
        role=role,
    )
    db_session.add(account)
    await db_session.flush()
    await db_session.refresh(account)
    return account


async def subscribe(
    db_session: AsyncSession,
    account: Account,
    plan: Plan,
    *,
    days_ago: int = 0,
    external_id: str | None = None,
) -> Subscription:
    """Start a subscription through the state machine, optionally backdated."""
    start = utcnow() - timedelta(days=days_ago)
    return await create_subscription(
        db_session,
        account,
        plan,
        external_id=external_id or f"sub_{uuid.uuid4().hex[:12]}",
        checkout_session_id=f"cs_{uuid.uuid4().hex[:12]}",
        now=start,
    )


def headers_for(account: Account) -> dict[str, str]:
    tokens = create_token_pair(str(account.id))
    return {"Authorization": f"Bearer {tokens['access_token']}"}

