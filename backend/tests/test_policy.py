"""Tests for subscription tier policy."""
import pytest

from shortsmith.config import settings
from shortsmith.pipeline.errors import ErrorKind, PipelineError
from shortsmith.pipeline.policy import (
    QUALITY_1080P,
    QUALITY_720P,
    SubscriptionTier,
    check_source,
    get_tier_policy,
)

MB = 1024 * 1024


def test_free_tier_caps():
    policy = get_tier_policy("free")
    assert policy.tier == SubscriptionTier.FREE
    assert policy.max_shorts == 2
    assert policy.max_duration_seconds == 600
    assert policy.max_size_mb == 150
    assert policy.quality == QUALITY_720P
    assert policy.quality.resolution == "1280x720"
    assert policy.watermark_text == settings.watermark_text


def test_premium_tier_caps():
    policy = get_tier_policy(SubscriptionTier.PREMIUM)
    assert policy.max_shorts == 8
    assert policy.max_duration_seconds == 1800
    assert policy.quality == QUALITY_1080P
    assert policy.watermark_text is None


def test_unknown_tier_is_rejected():
    with pytest.raises(ValueError):
        get_tier_policy("enterprise")


def test_requested_limits_are_clamped_to_tier():
    policy = get_tier_policy("free")
    assert policy.resolve_limits(max_shorts=5).max_shorts == 2
    assert policy.resolve_limits(max_shorts=1).max_shorts == 1
    assert policy.resolve_limits().max_shorts == 2
    assert policy.resolve_limits(max_shorts=0).max_shorts == 2

    limits = policy.resolve_limits(max_duration_seconds=300, max_size_mb=1000)
    assert limits.max_duration_seconds == 300
    assert limits.max_size_mb == 150


def _check(duration=300, size=50 * MB, width=1920, height=1080, has_audio=True, tier="free"):
    limits = get_tier_policy(tier).resolve_limits()
    check_source(duration, size, width, height, has_audio, limits, tier)


def test_check_source_accepts_valid_video():
    _check()
    _check(duration=600)
    _check(has_audio=False)


@pytest.mark.parametrize(
    "kwargs,kind",
    [
        ({"duration": 30}, ErrorKind.VIDEO_TOO_SHORT),
        ({"duration": 601}, ErrorKind.VIDEO_TOO_LONG),
        ({"size": 200 * MB}, ErrorKind.FILE_TOO_LARGE),
        ({"width": 320, "height": 240}, ErrorKind.FORMAT_UNSUPPORTED),
    ],
)
def test_check_source_violations(kwargs, kind):
    with pytest.raises(PipelineError) as exc:
        _check(**kwargs)
    assert exc.value.kind == kind


def test_premium_allows_longer_sources():
    _check(duration=1200, size=500 * MB, tier="premium")
