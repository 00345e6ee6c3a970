"""FFmpeg and ffprobe utilities."""
import asyncio
import json
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

from shortsmith.config import settings

logger = logging.getLogger(__name__)


@dataclass
class VideoInfo:
    """Video metadata container."""
    duration: float
    width: int
    height: int
    fps: float
    video_codec: str
    audio_codec: Optional[str]
    format_name: str
    bit_rate: Optional[int]
    size_bytes: int = 0

    @property
    def has_audio(self) -> bool:
        return self.audio_codec is not None

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "duration": self.duration,
            "width": self.width,
            "height": self.height,
            "resolution": f"{self.width}x{self.height}",
            "fps": self.fps,
            "codec": self.video_codec,
            "audio_codec": self.audio_codec or "none",
            "has_audio": self.has_audio,
            "format": self.format_name,
            "bitrate": self.bit_rate,
            "size_mb": round(self.size_bytes / 1024 / 1024, 2),
        }


class FFmpegError(Exception):
    """FFmpeg related error."""
    pass


def check_ffmpeg_available() -> bool:
    """Check if ffmpeg is available."""
    return shutil.which(settings.ffmpeg_path) is not None


def check_ffprobe_available() -> bool:
    """Check if ffprobe is available."""
    return shutil.which(settings.ffprobe_path) is not None


async def _run(cmd: List[str], timeout: Optional[float] = None) -> Tuple[int, bytes, bytes]:
    """Run a command, killing it on timeout or cancellation."""
    proc = await asyncio.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise FFmpegError(f"{Path(cmd[0]).name} timed out after {timeout:.0f}s")
    except asyncio.CancelledError:
        proc.kill()
        await proc.wait()
        raise
    return proc.returncode, stdout, stderr


def _parse_frame_rate(value: str) -> float:
    if "/" in value:
        num, den = value.split("/")
        return float(num) / float(den) if float(den) > 0 else 30.0
    return float(value)


def parse_probe_output(data: dict) -> VideoInfo:
    """Build VideoInfo from ffprobe JSON output."""
    video_stream = None
    audio_stream = None
    for stream in data.get("streams", []):
        if stream.get("codec_type") == "video" and video_stream is None:
            video_stream = stream
        elif stream.get("codec_type") == "audio" and audio_stream is None:
            audio_stream = stream

    if not video_stream:
        raise FFmpegError("No video stream found in the file")

    fmt = data.get("format", {})

    try:
        fps = _parse_frame_rate(video_stream.get("r_frame_rate", "30/1"))
    except (ValueError, ZeroDivisionError):
        fps = 30.0

    duration = float(fmt.get("duration", 0) or 0)
    if duration == 0:
        duration = float(video_stream.get("duration", 0) or 0)

    return VideoInfo(
        duration=duration,
        width=int(video_stream.get("width", 0)),
        height=int(video_stream.get("height", 0)),
        fps=fps,
        video_codec=video_stream.get("codec_name", "unknown"),
        audio_codec=audio_stream.get("codec_name") if audio_stream else None,
        format_name=fmt.get("format_name", "unknown"),
        bit_rate=int(fmt.get("bit_rate", 0) or 0) or None,
        size_bytes=int(fmt.get("size", 0) or 0),
    )


async def get_video_info(video_path: str | Path, timeout: float = 30.0) -> VideoInfo:
    """
    Get video metadata using ffprobe.

    Args:
        video_path: Path to video file
        timeout: Seconds before the probe is killed

    Returns:
        VideoInfo with video metadata

    Raises:
        FFmpegError: If ffprobe fails
    """
    video_path = Path(video_path)
    if not video_path.exists():
        raise FFmpegError(f"Video file not found: {video_path}")

    cmd = [
        settings.ffprobe_path,
        "-v", "quiet",
        "-print_format", "json",
        "-show_format",
        "-show_streams",
        str(video_path)
    ]

    returncode, stdout, stderr = await _run(cmd, timeout=timeout)
    if returncode != 0:
        raise FFmpegError(f"ffprobe failed (invalid data?): {stderr.decode(errors='ignore')}")

    try:
        data = json.loads(stdout.decode())
    except json.JSONDecodeError as e:
        raise FFmpegError(f"ffprobe returned invalid data: {e}")

    info = parse_probe_output(data)
    if not info.size_bytes:
        info.size_bytes = video_path.stat().st_size
    return info


def _escape_drawtext(text: str) -> str:
    for char in ("\\", ":", "'", "%"):
        text = text.replace(char, f"\\{char}")
    return text


def build_segment_filter(width: int, height: int, watermark: Optional[str] = None) -> str:
    """Scale and pad to the target frame, optionally burning in a watermark."""
    filters = [
        f"scale={width}:{height}:force_original_aspect_ratio=decrease",
        f"pad={width}:{height}:(ow-iw)/2:(oh-ih)/2:black",
    ]
    if watermark:
        filters.append(
            f"drawtext=text='{_escape_drawtext(watermark)}':fontcolor=white:fontsize=28"
            ":box=1:boxcolor=black@0.6:boxborderw=8:x=20:y=H-th-20"
        )
    return ",".join(filters)


async def transcode_segment(
    source_path: str | Path,
    output_path: str | Path,
    start_time: float,
    duration: float,
    width: int,
    height: int,
    video_bitrate: str,
    audio_bitrate: str = None,
    watermark: Optional[str] = None,
    timeout: Optional[float] = None,
) -> Path:
    """
    Cut and re-encode one window of the source video.

    Args:
        source_path: Path to source video
        output_path: Path for output file
        start_time: Start offset in seconds
        duration: Window length in seconds
        width: Target frame width
        height: Target frame height
        video_bitrate: Target video bitrate, e.g. "2500k"
        audio_bitrate: Target audio bitrate
        watermark: Optional text burned into the lower-left corner
        timeout: Seconds before ffmpeg is killed

    Returns:
        Path to the encoded clip
    """
    source_path = Path(source_path)
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    bitrate_kbps = int(video_bitrate.rstrip("kK"))
    cmd = [
        settings.ffmpeg_path,
        "-y",
        "-ss", f"{start_time:.3f}",
        "-i", str(source_path),
        "-t", f"{duration:.3f}",
        "-vf", build_segment_filter(width, height, watermark),
        "-c:v", settings.export_video_codec,
        "-preset", settings.export_video_preset,
        "-crf", str(settings.export_video_crf),
        "-b:v", video_bitrate,
        "-maxrate", video_bitrate,
        "-bufsize", f"{bitrate_kbps * 2}k",
        "-pix_fmt", "yuv420p",
        "-c:a", settings.export_audio_codec,
        "-b:a", audio_bitrate or settings.export_audio_bitrate,
        "-movflags", "+faststart",
        "-avoid_negative_ts", "make_zero",
        str(output_path)
    ]

    logger.debug(f"Transcoding {start_time:.1f}s+{duration:.1f}s -> {output_path.name}")
    returncode, _, stderr = await _run(cmd, timeout=timeout)

    if returncode != 0:
        raise FFmpegError(f"Segment encoding failed: {stderr.decode(errors='ignore')[-500:]}")
    if not output_path.exists() or output_path.stat().st_size == 0:
        raise FFmpegError(f"Segment encoding produced an empty file: {output_path.name}")

    return output_path


async def generate_thumbnail(
    video_path: str | Path,
    output_path: str | Path,
    timestamp: float,
    width: int = None,
    height: int = None,
    timeout: Optional[float] = None,
) -> Path:
    """
    Generate a thumbnail from a video at a specific timestamp.

    Args:
        video_path: Path to video file
        output_path: Path to save thumbnail
        timestamp: Time in seconds to capture
        width: Optional thumbnail width
        height: Optional thumbnail height
        timeout: Seconds before ffmpeg is killed

    Returns:
        Path to generated thumbnail
    """
    video_path = Path(video_path)
    output_path = Path(output_path)

    width = width or settings.thumbnail_width
    height = height or settings.thumbnail_height

    output_path.parent.mkdir(parents=True, exist_ok=True)

    cmd = [
        settings.ffmpeg_path,
        "-y",
        "-ss", f"{timestamp:.3f}",
        "-i", str(video_path),
        "-vframes", "1",
        "-vf", f"scale={width}:{height}:force_original_aspect_ratio=decrease,pad={width}:{height}:(ow-iw)/2:(oh-ih)/2",
        "-q:v", "2",
        str(output_path)
    ]

    returncode, _, stderr = await _run(cmd, timeout=timeout or settings.thumbnail_timeout_seconds)

    if returncode != 0 or not output_path.exists():
        raise FFmpegError(f"Thumbnail generation failed: {stderr.decode(errors='ignore')[-300:]}")

    return output_path
