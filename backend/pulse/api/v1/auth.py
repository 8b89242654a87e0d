"""Auth API router — register, login, refresh, me."""

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from pulse.api.deps import get_current_active_account, get_db, get_login_limiter, get_register_limiter
from pulse.auth.dependencies import account_from_token
from pulse.auth.jwt import create_token_pair
from pulse.auth.passwords import hash_password, verify_password
from pulse.auth.rate_limiter import LoginRateLimiter
from pulse.models.account import Account
from pulse.schemas.auth import (
    AccountResponse,
    AuthResponse,
    LoginRequest,
    RefreshRequest,
    RegisterRequest,
    TokenResponse,
)
from pulse.services.subscription_service import get_account_by_email

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/auth", tags=["auth"])


# ---------------------------------------------------------------------------
# POST /register
# ---------------------------------------------------------------------------


@router.post("/register", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
async def register(
    body: RegisterRequest,
    db: AsyncSession = Depends(get_db),
    limiter: LoginRateLimiter = Depends(get_register_limiter),
) -> AuthResponse:
    """Register a new account on the FREE plan."""
    email = body.email.lower()
    await limiter.enforce(email)

    if await get_account_by_email(db, email) is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Email already registered",
        )

    account = Account(
        email=email,
        hashed_password=hash_password(body.password),
        name=body.name,
    )
    db.add(account)
    await db.flush()
    await db.refresh(account)
    logger.info("Registered account %s", account.id)

    tokens = create_token_pair(str(account.id))
    return AuthResponse(
        account=AccountResponse.model_validate(account),
        tokens=TokenResponse(**tokens),
    )


# ---------------------------------------------------------------------------
# POST /login
# ---------------------------------------------------------------------------


@router.post("/login", response_model=AuthResponse)
async def login(
    body: LoginRequest,
    db: AsyncSession = Depends(get_db),
    limiter: LoginRateLimiter = Depends(get_login_limiter),
) -> AuthResponse:
    """Authenticate with email and password.

    Every attempt counts against the email's window; a successful login
    clears it.
    """
    email = body.email.lower()
    await limiter.enforce(email)

    account = await get_account_by_email(db, email)
    password_ok = verify_password(body.password, account.hashed_password if account else None)
    if account is None or not password_ok:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not account.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Account is inactive",
        )

    await limiter.reset(email)
    tokens = create_token_pair(str(account.id))
    return AuthResponse(
        account=AccountResponse.model_validate(account),
        tokens=TokenResponse(**tokens),
    )


# ---------------------------------------------------------------------------
# POST /refresh
# ---------------------------------------------------------------------------


@router.post("/refresh", response_model=TokenResponse)
async def refresh(body: RefreshRequest, db: AsyncSession = Depends(get_db)) -> TokenResponse:
    """Exchange a valid refresh token for a new token pair."""
    account = await account_from_token(db, body.refresh_token, "refresh")
    if not account.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Account not found or inactive",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return TokenResponse(**create_token_pair(str(account.id)))


# ---------------------------------------------------------------------------
# GET /me
# ---------------------------------------------------------------------------


@router.get("/me", response_model=AccountResponse)
async def me(current_account: Account = Depends(get_current_active_account)) -> AccountResponse:
    """Return the currently authenticated account's profile."""
    return AccountResponse.model_validate(current_account)
