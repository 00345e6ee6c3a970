"""API routes."""
import logging
import secrets
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from shortsmith.config import settings
from shortsmith.db.database import get_db
from shortsmith.pipeline.job import JobRecord, sweep_stale_files, utc_now
from shortsmith.pipeline.policy import SubscriptionTier, get_tier_policy
from shortsmith.services.record_service import RecordService
from shortsmith.services.webhook_service import WebhookService
from shortsmith.utils.ffmpeg import check_ffmpeg_available, check_ffprobe_available
from shortsmith.utils.ytdlp import check_ytdlp_available
from shortsmith.workers.job_runner import job_runner
from shortsmith.api.schemas import (
    CleanupRequest,
    CleanupResponse,
    HealthResponse,
    ProcessingStatusResponse,
    ProcessVideoAccepted,
    ProcessVideoRequest,
    WebhookCheckRequest,
    WebhookCheckResponse,
)

router = APIRouter()
logger = logging.getLogger(__name__)


def require_token(authorization: Optional[str] = Header(None)) -> str:
    """Bearer token check: 401 when missing, 403 when wrong."""
    token = None
    if authorization:
        parts = authorization.split(" ", 1)
        if len(parts) == 2:
            token = parts[1].strip()
    if not token:
        raise HTTPException(status_code=401, detail="Access token is required")
    if not settings.service_token or not secrets.compare_digest(token, settings.service_token):
        raise HTTPException(status_code=403, detail="Invalid token")
    return token


# =============================================================================
# Health & System
# =============================================================================

@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Check API health and dependencies."""
    ffmpeg_ok = check_ffmpeg_available()
    ffprobe_ok = check_ffprobe_available()
    ytdlp_ok = check_ytdlp_available()

    all_ok = ffmpeg_ok and ffprobe_ok and ytdlp_ok

    message = None
    if not all_ok:
        missing = []
        if not ffmpeg_ok:
            missing.append("ffmpeg")
        if not ffprobe_ok:
            missing.append("ffprobe")
        if not ytdlp_ok:
            missing.append("yt-dlp")
        message = f"Missing dependencies: {', '.join(missing)}"

    return HealthResponse(
        status="healthy" if all_ok else "degraded",
        ffmpeg_available=ffmpeg_ok,
        ffprobe_available=ffprobe_ok,
        ytdlp_available=ytdlp_ok,
        active_jobs=job_runner.running_count,
        message=message
    )


# =============================================================================
# Processing
# =============================================================================

@router.post(
    "/process-video",
    status_code=202,
    response_model=ProcessVideoAccepted,
    dependencies=[Depends(require_token)],
)
async def process_video(request: ProcessVideoRequest, db: AsyncSession = Depends(get_db)):
    """Accept a video for background processing."""
    if not request.video_url or not request.callback_url:
        raise HTTPException(status_code=400, detail="Missing required fields: video_url, callback_url")

    try:
        tier = SubscriptionTier(request.subscription_type)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown subscription_type: {request.subscription_type}")

    limits = get_tier_policy(tier).resolve_limits(
        **(request.user_limits.model_dump() if request.user_limits else {})
    )
    job_kwargs = {"processing_id": request.processing_id} if request.processing_id else {}
    job = JobRecord(
        source_url=request.video_url,
        callback_url=request.callback_url,
        tier=tier,
        limits=limits,
        platform=request.platform or "YouTube",
        video_info=dict(request.video_info or {}),
        **job_kwargs,
    )

    if job_runner.is_job_running(job.processing_id):
        raise HTTPException(status_code=409, detail=f"Processing {job.processing_id} is already running")

    await RecordService(db).save(job)
    job_runner.submit(job)
    logger.info(f"[{job.processing_id}] Accepted {job.source_url} ({tier.value}, max {limits.max_shorts} shorts)")

    return ProcessVideoAccepted(
        status="accepted",
        processing_id=job.processing_id,
        message="Video processing started",
        estimated_completion_time=job.started_at + timedelta(seconds=settings.estimated_completion_seconds),
        accepted_at=job.started_at,
    )


@router.get(
    "/status/{processing_id}",
    response_model=ProcessingStatusResponse,
    dependencies=[Depends(require_token)],
)
async def get_status(processing_id: str, db: AsyncSession = Depends(get_db)):
    """Get the persisted state of a processing request."""
    record = await RecordService(db).get(processing_id)
    if not record:
        raise HTTPException(status_code=404, detail="Processing record not found")
    return ProcessingStatusResponse(
        **record.to_dict(),
        running=job_runner.is_job_running(processing_id),
    )


@router.post("/cleanup", response_model=CleanupResponse, dependencies=[Depends(require_token)])
async def cleanup(request: Optional[CleanupRequest] = None):
    """Delete working files older than the given age."""
    request = request or CleanupRequest()
    deleted = sweep_stale_files(
        [settings.processing_dir, settings.output_dir],
        max_age_seconds=request.older_than_hours * 3600,
    )
    return CleanupResponse(status="cleanup_completed", deleted_files=deleted, timestamp=utc_now())


@router.post("/test-webhook", response_model=WebhookCheckResponse, dependencies=[Depends(require_token)])
async def check_webhook(request: WebhookCheckRequest):
    """Send one test payload to a callback URL, without retries."""
    result = await WebhookService().test_webhook(request.callback_url)
    return WebhookCheckResponse(
        success=result.success,
        status_code=result.status_code,
        attempts=result.attempts,
        error=result.error,
    )
