"""Subscription status read model for the billing API."""

import logging
import math
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from pulse.billing.dependencies import snapshot_entitlements
from pulse.billing.entitlements import QUALITY_TIER_ORDER, QualityTier
from pulse.billing.errors import ConcurrentTransitionLost
from pulse.billing.expiry_scanner import age_subscription
from pulse.billing.plans import ENTITLED_STATUSES, SubscriptionStatus
from pulse.billing.timeutils import utcnow
from pulse.models.account import Account
from pulse.schemas.billing import (
    FeatureAccessResponse,
    FeatureBundleResponse,
    SubscriptionStatusResponse,
    SubscriptionSummary,
)
from pulse.services.subscription_service import get_current_subscription, list_subscription_history

logger = logging.getLogger(__name__)


def days_until(moment: datetime | None, now: datetime) -> int | None:
    """Whole days left until ``moment``, rounded up, never negative."""
    if moment is None:
        return None
    return max(math.ceil((moment - now).total_seconds() / 86400), 0)


async def build_subscription_status(
    db: AsyncSession, account: Account, now: datetime | None = None
) -> SubscriptionStatusResponse:
    """Describe the account's billing state.

    A subscription whose term or grace period has already elapsed is aged
    first, so the response never reports entitlements the sweep is about to
    take away. The caller commits.
    """
    now = now or utcnow()

    current = await get_current_subscription(db, account.id)
    if current is not None:
        try:
            await age_subscription(db, current, now)
        except ConcurrentTransitionLost:
            # The sweep or a webhook got there first
            await db.refresh(current)
            await db.refresh(account)
        if current.status not in ENTITLED_STATUSES:
            current = None

    entitlements = snapshot_entitlements(account)
    tier_rank = QUALITY_TIER_ORDER.index(entitlements.quality_tier)
    status = account.subscription_status
    in_grace = (
        status == SubscriptionStatus.GRACE_PERIOD
        and account.grace_period_end is not None
        and account.grace_period_end > now
    )

    history = await list_subscription_history(db, account.id)
    return SubscriptionStatusResponse(
        status=status,
        plan=account.current_plan,
        subscription_expiry=account.subscription_expiry,
        days_until_expiry=days_until(account.subscription_expiry, now),
        is_in_grace_period=in_grace,
        grace_period_end=account.grace_period_end,
        renewal_required=status in (SubscriptionStatus.GRACE_PERIOD, SubscriptionStatus.EXPIRED),
        auto_renewal=account.auto_renewal,
        last_payment_date=account.last_payment_date,
        next_billing_date=account.next_billing_date,
        features=FeatureBundleResponse(
            max_screens=entitlements.max_screens,
            offline_viewing=entitlements.offline_viewing,
            game_vault_access=entitlements.game_vault_access,
            ad_free=entitlements.ad_free,
            quality_tier=entitlements.quality_tier.value,
        ),
        feature_access=FeatureAccessResponse(
            can_access_ad_free=entitlements.ad_free,
            can_access_offline=entitlements.offline_viewing,
            can_access_game_vault=entitlements.game_vault_access,
            can_access_multiple_screens=entitlements.max_screens > 1,
            can_access_hd=tier_rank >= QUALITY_TIER_ORDER.index(QualityTier.HD),
            can_access_4k=entitlements.quality_tier == QualityTier.UHD_4K,
        ),
        current_subscription=SubscriptionSummary.model_validate(current) if current else None,
        history=[SubscriptionSummary.model_validate(s) for s in history],
    )
