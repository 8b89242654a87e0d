"""JWT creation and verification.

Account sessions use access/refresh tokens signed with ``jwt_secret_key``.
Video playback tokens go through the same helpers with their own secret (see
``pulse.video.tokens``), so a leaked video URL can never authenticate API
calls and vice versa.
"""

from datetime import datetime, timedelta, timezone
from typing import Any

from jose import JWTError, jwt

from pulse.config import settings

__all__ = [
    "JWTError",
    "create_access_token",
    "create_refresh_token",
    "create_token_pair",
    "decode_token",
    "encode_token",
]


def encode_token(
    claims: dict[str, Any],
    token_type: str,
    lifetime: timedelta,
    secret: str | None = None,
) -> str:
    """Sign ``claims`` with ``exp``/``iat``/``type`` added.

    Args:
        claims: Payload data. Should include ``sub``.
        token_type: Value of the ``type`` claim (``access``, ``refresh``, ``video``).
        lifetime: Time until ``exp``.
        secret: Signing key. Defaults to ``settings.jwt_secret_key``.
    """
    to_encode = claims.copy()
    now = datetime.now(timezone.utc)
    to_encode.update({"exp": now + lifetime, "iat": now, "type": token_type})
    return jwt.encode(to_encode, secret or settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str, expected_type: str | None = None, secret: str | None = None) -> dict[str, Any]:
    """Decode and verify a JWT.

    Raises:
        jose.JWTError: If the token is invalid, expired, malformed, or its
            ``type`` claim differs from ``expected_type``.
    """
    payload = jwt.decode(token, secret or settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    if expected_type is not None and payload.get("type") != expected_type:
        raise JWTError(f"Expected a {expected_type} token")
    return payload


def create_access_token(data: dict, expires_delta: timedelta | None = None) -> str:
    return encode_token(
        data,
        "access",
        expires_delta or timedelta(minutes=settings.jwt_access_token_expire_minutes),
    )


def create_refresh_token(data: dict, expires_delta: timedelta | None = None) -> str:
    return encode_token(
        data,
        "refresh",
        expires_delta or timedelta(days=settings.jwt_refresh_token_expire_days),
    )


def create_token_pair(account_id: str) -> dict[str, str]:
    """Create both access and refresh tokens for an account."""
    payload = {"sub": account_id}
    return {
        "access_token": create_access_token(payload),
        "refresh_token": create_refresh_token(payload),
        "token_type": "bearer",
    }
