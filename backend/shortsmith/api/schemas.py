"""Pydantic schemas for API requests and responses."""
from datetime import datetime
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field

from shortsmith.pipeline.job import PROCESSING_ID_PATTERN


# =============================================================================
# Processing Schemas
# =============================================================================

class UserLimits(BaseModel):
    """Caller-requested limits; clamped to the subscription tier caps."""
    max_shorts: Optional[int] = Field(None, description="Maximum number of shorts to produce")
    max_duration_seconds: Optional[float] = Field(None, description="Maximum accepted source duration")
    max_size_mb: Optional[float] = Field(None, description="Maximum accepted source size in MB")


class ProcessVideoRequest(BaseModel):
    """Request to process a remote video into shorts."""
    video_url: Optional[str] = Field(None, description="YouTube or TikTok video URL")
    callback_url: Optional[str] = Field(None, description="Webhook receiving the outcome")
    subscription_type: str = Field("free", description="Subscription tier: free or premium")
    user_limits: Optional[UserLimits] = None
    processing_id: Optional[str] = Field(
        None, pattern=PROCESSING_ID_PATTERN, description="Caller correlation id (letters, digits, _ and -)"
    )
    platform: Optional[str] = Field(None, description="Platform hint, detected from the URL when omitted")
    video_info: Optional[Dict[str, Any]] = None


class ProcessVideoAccepted(BaseModel):
    """Response for an accepted processing request."""
    status: str = "accepted"
    processing_id: str
    message: str
    estimated_completion_time: datetime
    accepted_at: datetime


class ProcessingStatusResponse(BaseModel):
    """Persisted state of a processing request."""
    processing_id: str
    video_url: str
    platform: str
    subscription_type: str
    status: str
    running: bool = False
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    shorts_count: int = 0
    result: Optional[str] = None
    created_at: Optional[str] = None
    completed_at: Optional[str] = None


# =============================================================================
# Maintenance Schemas
# =============================================================================

class CleanupRequest(BaseModel):
    """Request to delete old working files."""
    older_than_hours: float = Field(24.0, gt=0, description="Delete files older than this")


class CleanupResponse(BaseModel):
    """Cleanup result."""
    status: str
    deleted_files: int
    timestamp: datetime


class WebhookCheckRequest(BaseModel):
    """Callback URL to send a single test delivery to."""
    callback_url: str


class WebhookCheckResponse(BaseModel):
    """Outcome of a test delivery."""
    success: bool
    status_code: Optional[int] = None
    attempts: int = 1
    error: Optional[str] = None


# =============================================================================
# Health Schemas
# =============================================================================

class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    ffmpeg_available: bool
    ffprobe_available: bool
    ytdlp_available: bool
    active_jobs: int = 0
    message: Optional[str] = None
