"""Entitlement derivation — (plan, subscription status) to concrete feature flags.

This module is pure: no database, no clock. The state machine calls ``derive``
after every transition and copies the result onto the account snapshot.
"""

import enum
from dataclasses import dataclass
from typing import Protocol

from pulse.billing.plans import ENTITLED_STATUSES, FREE_BUNDLE, PlanType


class QualityTier(str, enum.Enum):
    SD_ADS = "SD_ADS"
    HD = "HD"
    UHD_4K = "UHD_4K"


# Ordered lowest to highest; the video gate compares positions.
QUALITY_TIER_ORDER: tuple[QualityTier, ...] = (QualityTier.SD_ADS, QualityTier.HD, QualityTier.UHD_4K)

_UHD_PLAN_TYPES = (PlanType.MEGA_FAN, PlanType.MEGA_FAN_ANNUAL)


class FeatureBundle(Protocol):
    """Anything carrying a plan's feature bundle (``Plan`` rows, ``PlanBundle``)."""

    type: str
    max_screens: int
    offline_viewing: bool
    game_vault_access: bool
    ad_free: bool


@dataclass(frozen=True)
class Entitlements:
    """Concrete feature flags and limits an account holds."""

    plan_type: str
    max_screens: int
    offline_viewing: bool
    game_vault_access: bool
    ad_free: bool
    quality_tier: QualityTier


def quality_tier_for(plan_type: str) -> QualityTier:
    """FREE streams standard quality with ads, paid tiers HD, the top tier 4K."""
    if plan_type == PlanType.FREE:
        return QualityTier.SD_ADS
    if plan_type in _UHD_PLAN_TYPES:
        return QualityTier.UHD_4K
    return QualityTier.HD


def _from_bundle(bundle: FeatureBundle) -> Entitlements:
    plan_type = str(getattr(bundle.type, "value", bundle.type))
    return Entitlements(
        plan_type=plan_type,
        max_screens=bundle.max_screens,
        offline_viewing=bundle.offline_viewing,
        game_vault_access=bundle.game_vault_access,
        ad_free=bundle.ad_free,
        quality_tier=quality_tier_for(plan_type),
    )


FREE_ENTITLEMENTS: Entitlements = _from_bundle(FREE_BUNDLE)


def derive(
    plan: FeatureBundle | None,
    status: str | None,
    free_plan: FeatureBundle | None = None,
) -> Entitlements:
    """Map a plan and subscription status to the entitlements they grant.

    ACTIVE, GRACE_PERIOD and CANCELLED (soft-cancelled, still inside the paid
    term) grant the plan's full bundle. Anything else (EXPIRED, PENDING, no
    subscription) grants the FREE bundle regardless of the plan on file;
    ``free_plan`` lets the caller supply the catalog's FREE row instead of the
    built-in one.
    """
    if plan is None or status not in ENTITLED_STATUSES:
        return _from_bundle(free_plan) if free_plan is not None else FREE_ENTITLEMENTS
    return _from_bundle(plan)
