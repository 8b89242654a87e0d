"""Pydantic v2 schemas for video playback endpoints."""

from datetime import datetime

from pydantic import BaseModel


class VideoTokenResponse(BaseModel):
    token: str
    stream_url: str
    quality: str
    quality_tier: str
    ads_required: bool
    expires_at: datetime
