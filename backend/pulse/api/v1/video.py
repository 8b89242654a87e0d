"""Video API router — playback tokens and the secure range proxy."""

import logging
from datetime import timedelta

from fastapi import APIRouter, Depends, Path, Query, Request
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from pulse.api.deps import get_current_active_account, get_db, get_origin_client_factory, require_offline_viewing
from pulse.billing.errors import InvalidVideoToken
from pulse.billing.timeutils import utcnow
from pulse.config import settings
from pulse.models.account import Account
from pulse.schemas.video import VideoTokenResponse
from pulse.video.gate import authorize_playback, origin_url
from pulse.video.proxy import ClientFactory, proxy_video
from pulse.video.tokens import create_video_token, decode_video_token

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/video", tags=["video"])

_EPISODE_ID_PATTERN = r"^[A-Za-z0-9_-]{1,64}$"


def _issue(account: Account, episode_id: str, quality: str) -> VideoTokenResponse:
    grant = authorize_playback(account, quality)
    lifetime = timedelta(minutes=settings.video_token_expire_minutes)
    token = create_video_token(episode_id, quality, account.id, lifetime)
    return VideoTokenResponse(
        token=token,
        stream_url=f"/api/v1/video/secure?token={token}",
        quality=quality,
        quality_tier=grant.quality_tier.value,
        ads_required=grant.ads_required,
        expires_at=utcnow() + lifetime,
    )


@router.get("/{episode_id}/token", response_model=VideoTokenResponse)
async def get_video_token(
    episode_id: str = Path(..., pattern=_EPISODE_ID_PATTERN),
    quality: str = Query("720p"),
    current_account: Account = Depends(get_current_active_account),
) -> VideoTokenResponse:
    """Issue a short-lived playback token if the plan covers ``quality``."""
    return _issue(current_account, episode_id, quality)


@router.get("/{episode_id}/download-token", response_model=VideoTokenResponse)
async def get_download_token(
    episode_id: str = Path(..., pattern=_EPISODE_ID_PATTERN),
    quality: str = Query("720p"),
    current_account: Account = Depends(require_offline_viewing),
) -> VideoTokenResponse:
    """Playback token for offline download; requires offline viewing."""
    return _issue(current_account, episode_id, quality)


@router.get("/secure")
async def stream_video(
    request: Request,
    token: str = Query(...),
    db: AsyncSession = Depends(get_db),
    client_factory: ClientFactory = Depends(get_origin_client_factory),
) -> StreamingResponse:
    """Stream the rendition named in ``token``, honouring ``Range``.

    The token is checked before anything is fetched from the origin, and the
    account's snapshot is re-read so a downgrade since issuing applies.
    """
    claims = decode_video_token(token)

    account = await db.get(Account, claims.account_id)
    if account is None:
        raise InvalidVideoToken("unknown account")
    grant = authorize_playback(account, claims.quality)

    return await proxy_video(
        origin_url(claims.episode_id, claims.quality),
        request.headers.get("range"),
        client_factory,
        extra_headers={"X-Ads-Required": "true" if grant.ads_required else "false"},
    )
