"""Window selection and clip production.

Windows are spread evenly across the source (minus intro/outro margins),
each centred in its own slot with a small random shift so repeated runs do
not always cut at identical offsets.
"""
import asyncio
import logging
import random
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, List, Optional

from shortsmith.config import settings
from shortsmith.pipeline.errors import ErrorKind, PipelineError, classify_exception
from shortsmith.pipeline.job import JobRecord, Short, SourceArtifact
from shortsmith.pipeline.policy import TierPolicy
from shortsmith.utils.ffmpeg import generate_thumbnail, transcode_segment

logger = logging.getLogger(__name__)

# Margins never exceed this share of the source.
MAX_MARGIN_FRACTION = 0.1


@dataclass(frozen=True)
class Window:
    """A [start, start + duration) cut of the source, 1-based index."""
    index: int
    start: float
    duration: float

    @property
    def end(self) -> float:
        return self.start + self.duration


def compute_windows(
    duration: float,
    segment_length: float = None,
    max_shorts: int = 1,
    start_margin: float = None,
    end_margin: float = None,
    jitter: float = None,
    rng: random.Random = None,
) -> List[Window]:
    """
    Pick up to ``max_shorts`` non-overlapping windows inside the source.

    Args:
        duration: Source duration in seconds
        segment_length: Target clip length
        max_shorts: Upper bound on the number of windows
        start_margin: Seconds skipped at the start (capped at 10% of duration)
        end_margin: Seconds skipped at the end (capped at 10% of duration)
        jitter: Maximum random shift of a window within its slot
        rng: Random source for the shift

    Returns:
        Windows ordered by index

    Raises:
        PipelineError: video_too_short when not even one window fits
    """
    segment_length = segment_length if segment_length is not None else settings.segment_seconds
    start_margin = start_margin if start_margin is not None else settings.segment_start_margin_seconds
    end_margin = end_margin if end_margin is not None else settings.segment_end_margin_seconds
    jitter = jitter if jitter is not None else settings.segment_jitter_seconds
    rng = rng or random.Random()

    if duration <= 0 or segment_length <= 0:
        raise PipelineError(ErrorKind.VIDEO_TOO_SHORT, f"Video is too short ({duration:.0f}s) to segment")

    count = min(max_shorts, int(duration // segment_length))
    if count <= 0:
        raise PipelineError(
            ErrorKind.VIDEO_TOO_SHORT,
            f"Video is too short ({duration:.0f}s) for {segment_length:.0f}s shorts",
        )

    start_margin = min(start_margin, duration * MAX_MARGIN_FRACTION)
    end_margin = min(end_margin, duration * MAX_MARGIN_FRACTION)
    if duration < start_margin + end_margin + segment_length:
        start_margin = end_margin = 0.0

    usable_start = start_margin
    usable = duration - start_margin - end_margin
    slot = usable / count
    length = min(segment_length, slot)

    if count == 1:
        return [Window(1, usable_start + (usable - length) / 2, length)]

    windows = []
    for i in range(count):
        slot_start = usable_start + i * slot
        slack = slot - length
        start = slot_start + slack / 2
        if jitter and slack > 0:
            start += rng.uniform(-jitter, jitter)
            start = min(max(start, slot_start), slot_start + slack)
        windows.append(Window(i + 1, start, length))
    return windows


def short_id_for(processing_id: str, index: int) -> str:
    return f"short_{processing_id}_{index}"


class SegmentationEngine:
    """Transcodes the chosen windows with bounded concurrency."""

    def __init__(
        self,
        transcode: Callable[..., Awaitable[Path]] = transcode_segment,
        thumbnail: Callable[..., Awaitable[Path]] = generate_thumbnail,
        concurrency: int = None,
        segment_timeout: float = None,
        segment_length: float = None,
        rng: random.Random = None,
    ):
        self._transcode = transcode
        self._thumbnail = thumbnail
        self.concurrency = max(1, concurrency or settings.segment_concurrency)
        self.segment_timeout = segment_timeout or settings.segment_timeout_seconds
        self.segment_length = segment_length or settings.segment_seconds
        self._rng = rng or random.Random()

    async def _make_thumbnail(self, clip_path: Path, duration: float, processing_id: str) -> Optional[Path]:
        output_path = clip_path.with_suffix(".jpg")
        offsets = [settings.thumbnail_offset_seconds, duration * 0.3, duration * 0.5]
        for offset in offsets:
            if offset >= duration:
                continue
            try:
                return await self._thumbnail(
                    clip_path,
                    output_path,
                    timestamp=offset,
                    timeout=settings.thumbnail_timeout_seconds,
                )
            except Exception as e:
                logger.debug(f"[{processing_id}] Thumbnail at {offset:.1f}s failed for {clip_path.name}: {e}")
        logger.warning(f"[{processing_id}] No thumbnail for {clip_path.name}")
        return None

    async def run(
        self,
        job: JobRecord,
        artifact: SourceArtifact,
        output_dir: Path,
        policy: TierPolicy,
    ) -> List[Short]:
        """
        Produce the shorts for a job.

        Individual window failures are logged and skipped.

        Raises:
            PipelineError: when no window could be encoded
        """
        if artifact.info is None:
            raise PipelineError(ErrorKind.CORRUPTED_DOWNLOAD, "Source has not been probed")

        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        pid = job.processing_id

        windows = compute_windows(
            artifact.info.duration,
            segment_length=self.segment_length,
            max_shorts=job.limits.max_shorts,
            rng=self._rng,
        )
        logger.info(
            f"[{pid}] Cutting {len(windows)} shorts: "
            + ", ".join(f"{w.start:.1f}s+{w.duration:.1f}s" for w in windows)
        )

        semaphore = asyncio.Semaphore(self.concurrency)
        failures: List[Exception] = []
        quality = policy.quality

        async def _produce(window: Window) -> Optional[Short]:
            short_id = short_id_for(pid, window.index)
            clip_path = output_dir / f"{short_id}.mp4"
            async with semaphore:
                try:
                    await asyncio.wait_for(
                        self._transcode(
                            artifact.path,
                            clip_path,
                            start_time=window.start,
                            duration=window.duration,
                            width=quality.width,
                            height=quality.height,
                            video_bitrate=quality.video_bitrate,
                            audio_bitrate=quality.audio_bitrate,
                            watermark=policy.watermark_text,
                        ),
                        timeout=self.segment_timeout,
                    )
                    if not clip_path.exists() or clip_path.stat().st_size == 0:
                        raise PipelineError(ErrorKind.CORRUPTED_DOWNLOAD, f"Encoded clip {clip_path.name} is empty")
                except asyncio.TimeoutError:
                    failures.append(PipelineError(
                        ErrorKind.NETWORK_TIMEOUT,
                        f"Segment {window.index} timed out after {self.segment_timeout:.0f}s",
                    ))
                    logger.warning(f"[{pid}] Segment {window.index} timed out, skipping")
                    clip_path.unlink(missing_ok=True)
                    return None
                except Exception as e:
                    failures.append(e)
                    logger.warning(f"[{pid}] Segment {window.index} failed, skipping: {e}")
                    clip_path.unlink(missing_ok=True)
                    return None

                thumbnail_path = await self._make_thumbnail(clip_path, window.duration, pid)

            logger.info(f"[{pid}] Encoded {clip_path.name} ({window.duration:.1f}s)")
            return Short(
                short_id=short_id,
                index=window.index,
                start_time=round(window.start, 3),
                duration=round(window.duration, 3),
                local_path=clip_path,
                quality=quality.label,
                watermark=policy.watermark_text,
                file_size=clip_path.stat().st_size,
                thumbnail_path=thumbnail_path,
            )

        results = await asyncio.gather(*(_produce(w) for w in windows))
        shorts = sorted((s for s in results if s is not None), key=lambda s: s.index)

        if not shorts:
            last = failures[-1] if failures else None
            kind = classify_exception(last) if last is not None else ErrorKind.CORRUPTED_DOWNLOAD
            if kind == ErrorKind.UNKNOWN:
                kind = ErrorKind.CORRUPTED_DOWNLOAD
            raise PipelineError(kind, f"No shorts could be produced ({len(windows)} segments failed): {last}")

        if failures:
            logger.warning(f"[{pid}] {len(failures)} of {len(windows)} segments were skipped")
        return shorts
