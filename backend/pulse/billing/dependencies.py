"""Entitlement gating dependencies — enforce feature access from the cached snapshot."""

import logging
from collections.abc import Awaitable, Callable

from fastapi import Depends, HTTPException, status

from pulse.auth.dependencies import get_current_active_account
from pulse.billing.entitlements import Entitlements, QualityTier
from pulse.models.account import Account

logger = logging.getLogger(__name__)

_FEATURE_LABELS = {
    "offline_viewing": "Offline viewing",
    "game_vault_access": "The Game Vault",
    "ad_free": "Ad-free playback",
}


def snapshot_entitlements(account: Account) -> Entitlements:
    """The entitlements cached on the account by the last committed transition."""
    return Entitlements(
        plan_type=account.current_plan,
        max_screens=account.max_screens,
        offline_viewing=account.offline_viewing,
        game_vault_access=account.game_vault_access,
        ad_free=account.ad_free,
        quality_tier=QualityTier(account.quality_tier),
    )


async def get_entitlements(
    account: Account = Depends(get_current_active_account),
) -> Entitlements:
    return snapshot_entitlements(account)


def require_feature(feature: str) -> Callable[..., Awaitable[Account]]:
    """Build a dependency that raises 402 unless the account holds ``feature``."""
    label = _FEATURE_LABELS.get(feature, feature)

    async def _check(account: Account = Depends(get_current_active_account)) -> Account:
        if not getattr(account, feature):
            logger.info("Account %s denied %s on plan %s", account.id, feature, account.current_plan)
            raise HTTPException(
                status_code=status.HTTP_402_PAYMENT_REQUIRED,
                detail={
                    "message": f"{label} is not included in your plan.",
                    "plan": account.current_plan,
                    "upgrade_url": "/api/v1/billing/checkout",
                },
            )
        return account

    return _check


require_offline_viewing = require_feature("offline_viewing")
require_game_vault_access = require_feature("game_vault_access")
