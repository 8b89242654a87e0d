"""Shared test configuration and fixtures.

Each test gets a freshly created schema on its own engine, so commits made by
the code under test (webhook endpoint, expiry sweep, checkout) are isolated
without an outer transaction:
- By default an in-memory SQLite database (``sqlite+aiosqlite``).
- Set ``TEST_DATABASE_URL`` to run the same suite against PostgreSQL.
"""

import os
from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.pool import StaticPool

from pulse.auth.rate_limiter import (
    InMemoryCounterStore,
    LoginRateLimiter,
    get_login_limiter,
    get_register_limiter,
)
from pulse.billing.plan_catalog import get_plan_by_type, seed_default_plans
from pulse.billing.plans import PlanType
from pulse.database import Base, get_db
from pulse.main import app
from pulse.models.account import Account
from pulse.models.plan import Plan

from helpers import headers_for, make_account

_test_db_url = os.environ.get("TEST_DATABASE_URL", "sqlite+aiosqlite://")


def _make_engine():
    if _test_db_url.startswith("sqlite"):
        return create_async_engine(
            _test_db_url,
            echo=False,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_async_engine(_test_db_url, echo=False, pool_pre_ping=True)


# ---------------------------------------------------------------------------
# Per-test: fresh schema
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def test_engine():
    """Create all tables on a new engine and drop them afterwards."""
    engine = _make_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(test_engine) -> AsyncGenerator[AsyncSession, None]:
    """Yield an async session on the per-test database."""
    session = AsyncSession(bind=test_engine, expire_on_commit=False)
    try:
        yield session
    finally:
        await session.close()


@pytest.fixture
def login_limiter() -> LoginRateLimiter:
    return LoginRateLimiter(InMemoryCounterStore(), max_attempts=3, window_seconds=900, scope="login")


@pytest.fixture
def register_limiter() -> LoginRateLimiter:
    return LoginRateLimiter(InMemoryCounterStore(), max_attempts=3, window_seconds=3600, scope="register")


@pytest_asyncio.fixture
async def client(
    db_session: AsyncSession,
    login_limiter: LoginRateLimiter,
    register_limiter: LoginRateLimiter,
) -> AsyncGenerator[AsyncClient, None]:
    """Provide an httpx AsyncClient wired to use the test DB session."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_login_limiter] = lambda: login_limiter
    app.dependency_overrides[get_register_limiter] = lambda: register_limiter

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac

    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Plan catalog
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def plans(db_session: AsyncSession) -> dict[str, Plan]:
    """Seed the built-in catalog and return it keyed by plan type."""
    await seed_default_plans(db_session)
    catalog = {}
    for plan_type in PlanType:
        plan = await get_plan_by_type(db_session, plan_type.value)
        await db_session.refresh(plan)
        catalog[plan_type.value] = plan
    return catalog


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def test_account(db_session: AsyncSession) -> Account:
    return await make_account(db_session)


@pytest_asyncio.fixture
async def auth_headers(test_account: Account) -> dict[str, str]:
    """Return Authorization headers for the test account."""
    return headers_for(test_account)


@pytest_asyncio.fixture
async def admin_account(db_session: AsyncSession) -> Account:
    return await make_account(db_session, role="admin")


@pytest_asyncio.fixture
async def admin_headers(admin_account: Account) -> dict[str, str]:
    return headers_for(admin_account)
