"""Playback authorization against the cached entitlement snapshot.

The gate never looks at subscriptions or Stripe: whatever the last committed
transition wrote onto the account is what it serves.
"""

import logging
from dataclasses import dataclass
from urllib.parse import quote

from pulse.billing.entitlements import QUALITY_TIER_ORDER, QualityTier
from pulse.billing.errors import QualityNotEntitled
from pulse.config import settings
from pulse.models.account import Account

logger = logging.getLogger(__name__)

# Rendition -> lowest tier allowed to stream it
QUALITY_LADDER: dict[str, QualityTier] = {
    "360p": QualityTier.SD_ADS,
    "480p": QualityTier.SD_ADS,
    "720p": QualityTier.SD_ADS,
    "1080p": QualityTier.HD,
    "1440p": QualityTier.UHD_4K,
    "2160p": QualityTier.UHD_4K,
    "4k": QualityTier.UHD_4K,
}


@dataclass(frozen=True)
class PlaybackGrant:
    quality: str
    quality_tier: QualityTier
    ads_required: bool


def authorize_playback(account: Account, quality: str) -> PlaybackGrant:
    """Check that ``account`` may stream ``quality``.

    Raises:
        QualityNotEntitled: Inactive account, unknown rendition, or a rendition
            above the account's quality tier.
    """
    tier = QualityTier(account.quality_tier)
    required = QUALITY_LADDER.get(quality)
    if not account.is_active or required is None:
        raise QualityNotEntitled(quality, tier.value)
    if QUALITY_TIER_ORDER.index(required) > QUALITY_TIER_ORDER.index(tier):
        logger.info("Account %s (%s) denied %s", account.id, tier.value, quality)
        raise QualityNotEntitled(quality, tier.value)
    return PlaybackGrant(quality=quality, quality_tier=tier, ads_required=not account.ad_free)


def origin_url(episode_id: str, quality: str) -> str:
    base = settings.video_origin_base_url.rstrip("/")
    return f"{base}/{quote(episode_id, safe='')}/{quality}.mp4"
