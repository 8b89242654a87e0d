"""FastAPI authentication dependencies for route protection."""

import uuid

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy.ext.asyncio import AsyncSession

from pulse.auth.jwt import decode_token
from pulse.database import get_db
from pulse.models.account import Account

# Strict bearer — raises 403 automatically if no token provided
_bearer_scheme = HTTPBearer()


def _credentials_exception(detail: str = "Could not validate credentials") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def account_from_token(db: AsyncSession, token: str, expected_type: str) -> Account:
    """Resolve the account a token of ``expected_type`` was issued to.

    Raises:
        HTTPException 401: If the token is invalid, expired, wrong type, or the
            account does not exist.
    """
    try:
        payload = decode_token(token, expected_type=expected_type)
    except JWTError:
        raise _credentials_exception() from None

    sub: str | None = payload.get("sub")
    if sub is None:
        raise _credentials_exception()

    try:
        account_id = uuid.UUID(sub)
    except ValueError:
        raise _credentials_exception() from None

    account = await db.get(Account, account_id)
    if account is None:
        raise _credentials_exception()
    return account


async def get_current_account(
    credentials: HTTPAuthorizationCredentials = Depends(_bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> Account:
    """Extract and validate the Bearer access token, then return the account."""
    return await account_from_token(db, credentials.credentials, "access")


async def get_current_active_account(
    account: Account = Depends(get_current_account),
) -> Account:
    """Return the current account only if it is active.

    Raises:
        HTTPException 403: If the account is inactive or banned.
    """
    if not account.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Account is inactive",
        )
    return account


async def get_current_admin(
    account: Account = Depends(get_current_active_account),
) -> Account:
    """Return the current account only if it has the ``admin`` role."""
    if account.role != "admin":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return account
