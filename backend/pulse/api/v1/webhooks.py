"""Stripe webhook endpoint — receives and reconciles Stripe events."""

import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from pulse.api.deps import get_db
from pulse.billing.errors import ConcurrentTransitionLost, ProcessorLookupTimeout
from pulse.billing.stripe_client import construct_webhook_event
from pulse.billing.webhooks import process_event
from pulse.config import settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])


@router.post("/stripe")
async def stripe_webhook(request: Request, db: AsyncSession = Depends(get_db)) -> dict[str, str]:
    """Receive and process Stripe webhook events.

    The whole event is one transaction: either every row it touches is
    committed or none is, and a 5xx makes Stripe redeliver it.
    """
    # Raw bytes: the signature covers the exact body
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature", "")

    # InvalidSignature -> 400 via the BillingError handler, before any DB work
    event = construct_webhook_event(payload, sig_header)

    try:
        outcome = await asyncio.wait_for(process_event(db, event), timeout=settings.webhook_timeout_seconds)
        await db.commit()
    except ConcurrentTransitionLost as e:
        await db.rollback()
        logger.info("Webhook event %s lost a race, already applied by another writer: %s", event.id, e.message)
        return {"status": "superseded"}
    except ProcessorLookupTimeout:
        await db.rollback()
        raise
    except Exception as e:
        await db.rollback()
        logger.exception("Error processing webhook event %s", event.id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed",
        ) from e

    return {"status": outcome.value}
