"""Cron endpoint — trigger an expiry sweep (and checkout cleanup) from an external scheduler."""

import logging
import secrets

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from pulse.api.deps import get_db
from pulse.billing.expiry_scanner import run_expiry_sweep
from pulse.config import settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/cron", tags=["cron"])

_bearer_scheme = HTTPBearer(auto_error=False)


def verify_cron_secret(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> None:
    if not settings.cron_secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Cron endpoint is not configured",
        )
    if credentials is None or not secrets.compare_digest(credentials.credentials, settings.cron_secret):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid cron secret",
            headers={"WWW-Authenticate": "Bearer"},
        )


@router.post("/check-subscriptions", dependencies=[Depends(verify_cron_secret)])
async def check_subscriptions(db: AsyncSession = Depends(get_db)) -> dict[str, int]:
    """Run one expiry sweep now."""
    result = await run_expiry_sweep(db)
    return {
        "entered_grace": result.entered_grace,
        "expired": result.expired,
        "skipped": result.skipped,
        "abandoned_checkouts": result.abandoned_checkouts,
    }
