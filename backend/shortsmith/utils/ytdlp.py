"""yt-dlp command line utilities."""
import asyncio
import json
import logging
import re
import shutil
from pathlib import Path
from typing import List, Optional

from shortsmith.config import settings

logger = logging.getLogger(__name__)

VIDEO_EXTENSIONS = ("mp4", "mkv", "webm", "mov")


class YtdlpError(Exception):
    """yt-dlp related error."""
    pass


def check_ytdlp_available() -> bool:
    """Check if yt-dlp is available."""
    return shutil.which(settings.ytdlp_path) is not None


def _header_args(user_agent: Optional[str]) -> List[str]:
    args = [
        "--add-header", "Accept-Language:en-US,en;q=0.9",
        "--referer", "https://www.youtube.com/",
    ]
    if user_agent:
        args += ["--user-agent", user_agent]
    return args


def _last_error_line(output: str) -> str:
    lines = [line for line in output.strip().splitlines() if line.strip()]
    for line in reversed(lines):
        if line.startswith("ERROR"):
            return line
    return lines[-1] if lines else "no output"


async def _kill_on_cancel(proc):
    if proc.returncode is None:
        proc.kill()
        await proc.wait()


async def get_video_info_ytdlp(url: str, user_agent: Optional[str] = None) -> dict:
    """
    Get video information without downloading.

    Args:
        url: Video URL
        user_agent: Optional User-Agent header for the request

    Returns:
        Dictionary with video metadata
    """
    cmd = [
        settings.ytdlp_path,
        "--dump-json",
        "--no-download",
        "--no-playlist",
        "--no-warnings",
        *_header_args(user_agent),
        url
    ]

    proc = await asyncio.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE
    )
    try:
        stdout, stderr = await proc.communicate()
    except asyncio.CancelledError:
        await _kill_on_cancel(proc)
        raise

    if proc.returncode != 0:
        raise YtdlpError(f"Failed to get video info: {_last_error_line(stderr.decode(errors='ignore'))}")

    try:
        return json.loads(stdout.decode())
    except json.JSONDecodeError as e:
        raise YtdlpError(f"Failed to parse video info: {e}")


def find_downloaded_file(output_dir: Path, filename: str) -> Optional[Path]:
    """Locate a finished download named ``filename.<ext>``, ignoring partials."""
    for ext in VIDEO_EXTENSIONS:
        candidate = output_dir / f"{filename}.{ext}"
        if candidate.exists() and candidate.stat().st_size > 0:
            return candidate
    return None


async def download_video(
    url: str,
    output_dir: Path,
    filename: str,
    user_agent: Optional[str] = None,
) -> Path:
    """
    Download a video with the best MP4-compatible quality up to 1080p.

    Args:
        url: Video URL
        output_dir: Directory to save the video
        filename: Base filename without extension
        user_agent: Optional User-Agent header for the request

    Returns:
        Path to downloaded video file
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    output_template = str(output_dir / f"{filename}.%(ext)s")

    cmd = [
        settings.ytdlp_path,
        "-f", "bv*[height<=1080][ext=mp4]+ba[ext=m4a]/b[height<=1080][ext=mp4]/bv*+ba/b",
        "--merge-output-format", "mp4",
        "-o", output_template,
        "--no-playlist",
        "--newline",
        "--force-overwrites",
        "--retries", "3",
        "--fragment-retries", "3",
        "--socket-timeout", "30",
        *_header_args(user_agent),
        url
    ]

    logger.debug(f"Running yt-dlp command: {' '.join(cmd)}")

    proc = await asyncio.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT
    )

    merged_path: Optional[Path] = None
    output_lines = []

    try:
        while True:
            line = await proc.stdout.readline()
            if not line:
                break

            line_str = line.decode("utf-8", errors="ignore").strip()
            output_lines.append(line_str)

            if "Merging formats into" in line_str:
                merge_match = re.search(r'Merging formats into "(.+)"', line_str)
                if merge_match:
                    merged_path = Path(merge_match.group(1))

        await proc.wait()
    except asyncio.CancelledError:
        await _kill_on_cancel(proc)
        raise

    if proc.returncode != 0:
        logger.debug("yt-dlp failed with output:\n" + "\n".join(output_lines[-20:]))
        raise YtdlpError(f"Download failed: {_last_error_line(chr(10).join(output_lines))}")

    if merged_path and merged_path.exists():
        return merged_path

    final_path = find_downloaded_file(output_dir, filename)
    if not final_path:
        raise YtdlpError("Download completed but video file not found")

    return final_path
