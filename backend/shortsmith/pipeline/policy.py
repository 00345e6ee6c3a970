"""Subscription tier quotas and source-video policy checks."""
import enum
import logging
from dataclasses import dataclass
from typing import Optional

from shortsmith.config import settings
from shortsmith.pipeline.errors import ErrorKind, PipelineError

logger = logging.getLogger(__name__)


class SubscriptionTier(str, enum.Enum):
    """Subscription tier enumeration."""
    FREE = "free"
    PREMIUM = "premium"


@dataclass(frozen=True)
class QualityProfile:
    """Output encoding target for a tier."""
    label: str
    width: int
    height: int
    video_bitrate: str
    audio_bitrate: str = "128k"

    @property
    def resolution(self) -> str:
        return f"{self.width}x{self.height}"


QUALITY_720P = QualityProfile("720p", 1280, 720, "2500k")
QUALITY_1080P = QualityProfile("1080p", 1920, 1080, "5000k")


@dataclass(frozen=True)
class QuotaLimits:
    """Effective per-job limits after clamping to the tier caps."""
    max_shorts: int
    max_duration_seconds: float
    max_size_mb: float


@dataclass(frozen=True)
class TierPolicy:
    """Caps and encoding settings of a subscription tier."""
    tier: SubscriptionTier
    max_shorts: int
    max_duration_seconds: float
    max_size_mb: float
    quality: QualityProfile
    watermark_text: Optional[str]

    def resolve_limits(
        self,
        max_shorts: Optional[int] = None,
        max_duration_seconds: Optional[float] = None,
        max_size_mb: Optional[float] = None,
    ) -> QuotaLimits:
        """Clamp caller-requested limits to what the tier allows."""
        def _clamp(requested, cap):
            if requested is None or requested <= 0:
                return cap
            return min(requested, cap)

        return QuotaLimits(
            max_shorts=int(_clamp(max_shorts, self.max_shorts)),
            max_duration_seconds=float(_clamp(max_duration_seconds, self.max_duration_seconds)),
            max_size_mb=float(_clamp(max_size_mb, self.max_size_mb)),
        )


def get_tier_policy(tier: SubscriptionTier | str) -> TierPolicy:
    """Build the policy for a tier from settings."""
    tier = SubscriptionTier(tier)
    if tier == SubscriptionTier.PREMIUM:
        return TierPolicy(
            tier=tier,
            max_shorts=settings.premium_max_shorts,
            max_duration_seconds=settings.premium_max_duration_seconds,
            max_size_mb=settings.premium_max_size_mb,
            quality=QUALITY_1080P,
            watermark_text=None,
        )
    return TierPolicy(
        tier=tier,
        max_shorts=settings.free_max_shorts,
        max_duration_seconds=settings.free_max_duration_seconds,
        max_size_mb=settings.free_max_size_mb,
        quality=QUALITY_720P,
        watermark_text=settings.watermark_text,
    )


def check_source(
    duration: float,
    size_bytes: int,
    width: int,
    height: int,
    has_audio: bool,
    limits: QuotaLimits,
    tier: SubscriptionTier | str,
) -> None:
    """
    Enforce the tier policy on a probed source video.

    Raises:
        PipelineError: on any violation; violations are never retried
    """
    tier = SubscriptionTier(tier).value
    if duration < settings.min_source_seconds:
        raise PipelineError(
            ErrorKind.VIDEO_TOO_SHORT,
            f"Video is too short. Minimum required: {settings.min_source_seconds:.0f} seconds",
        )
    if duration > limits.max_duration_seconds:
        raise PipelineError(
            ErrorKind.VIDEO_TOO_LONG,
            f"Video is too long. Maximum allowed: {limits.max_duration_seconds / 60:.0f} minutes "
            f"for {tier} users",
        )
    size_mb = size_bytes / (1024 * 1024)
    if size_mb > limits.max_size_mb:
        raise PipelineError(
            ErrorKind.FILE_TOO_LARGE,
            f"Video file is too large ({size_mb:.1f}MB). Maximum allowed: {limits.max_size_mb:.0f}MB "
            f"for {tier} users",
        )
    if width < settings.min_source_width or height < settings.min_source_height:
        raise PipelineError(
            ErrorKind.FORMAT_UNSUPPORTED,
            f"Video resolution is too low ({width}x{height}). Minimum required: "
            f"{settings.min_source_width}x{settings.min_source_height}",
        )
    if not has_audio:
        logger.warning("Video has no audio stream, proceeding without audio")
