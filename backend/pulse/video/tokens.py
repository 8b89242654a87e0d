"""Short-lived signed playback tokens."""

import uuid
from dataclasses import dataclass
from datetime import timedelta

from jose import ExpiredSignatureError, JWTError

from pulse.auth.jwt import decode_token, encode_token
from pulse.billing.errors import InvalidVideoToken
from pulse.config import settings
from pulse.video.gate import QUALITY_LADDER

VIDEO_TOKEN_TYPE = "video"


@dataclass(frozen=True)
class VideoClaims:
    account_id: uuid.UUID
    episode_id: str
    quality: str


def create_video_token(
    episode_id: str,
    quality: str,
    account_id: uuid.UUID,
    expires_delta: timedelta | None = None,
) -> str:
    """Sign a token that lets ``account_id`` stream one rendition of one episode."""
    return encode_token(
        {"sub": str(account_id), "episode_id": episode_id, "quality": quality},
        VIDEO_TOKEN_TYPE,
        expires_delta or timedelta(minutes=settings.video_token_expire_minutes),
        secret=settings.video_token_secret,
    )


def decode_video_token(token: str) -> VideoClaims:
    """Verify a playback token locally, without touching the origin.

    Raises:
        InvalidVideoToken: Expired, forged, wrong type, or incomplete claims.
    """
    try:
        payload = decode_token(token, expected_type=VIDEO_TOKEN_TYPE, secret=settings.video_token_secret)
    except ExpiredSignatureError:
        raise InvalidVideoToken("expired") from None
    except JWTError:
        raise InvalidVideoToken("signature or format") from None

    episode_id = payload.get("episode_id")
    quality = payload.get("quality")
    if not episode_id or quality not in QUALITY_LADDER:
        raise InvalidVideoToken("missing claims")

    try:
        account_id = uuid.UUID(payload.get("sub") or "")
    except ValueError:
        raise InvalidVideoToken("missing claims") from None

    return VideoClaims(account_id=account_id, episode_id=str(episode_id), quality=str(quality))
