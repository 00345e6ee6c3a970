"""Concrete ways of fetching metadata and media from the upstream host.

Each strategy exposes the same two operations so the orchestrator can try them
in order without knowing how they work.
"""
import asyncio
import logging
import random
from pathlib import Path
from typing import List, Optional

import yt_dlp

from shortsmith.config import settings
from shortsmith.pipeline.errors import ErrorKind, PipelineError
from shortsmith.utils.ytdlp import (
    download_video,
    find_downloaded_file,
    get_video_info_ytdlp,
)

logger = logging.getLogger(__name__)


def source_filename(processing_id: str) -> str:
    """Base name of the downloaded source for a job."""
    return f"{processing_id}_original"


def summarize_info(info: dict) -> dict:
    """
    Reduce raw extractor metadata to the fields reported to callers.

    Raises:
        PipelineError: for private, age-restricted or live videos
    """
    availability = info.get("availability")
    if availability in ("private", "needs_auth", "subscriber_only", "premium_only"):
        raise PipelineError(ErrorKind.VIDEO_UNAVAILABLE, "Video is private or unavailable")
    if (info.get("age_limit") or 0) >= 18:
        raise PipelineError(ErrorKind.AGE_RESTRICTED, "Video is age-restricted and cannot be processed")
    if info.get("is_live"):
        raise PipelineError(ErrorKind.FORMAT_UNSUPPORTED, "Live streams are unsupported")

    categories = info.get("categories") or []
    return {
        "title": info.get("title") or "Unknown Title",
        "description": (info.get("description") or "")[:500],
        "author": info.get("uploader") or info.get("channel") or "Unknown",
        "duration": int(info.get("duration") or 0),
        "view_count": int(info.get("view_count") or 0),
        "upload_date": info.get("upload_date"),
        "video_id": info.get("id"),
        "thumbnail": info.get("thumbnail"),
        "is_live": bool(info.get("is_live")),
        "category": categories[0] if categories else "Unknown",
    }


class AcquisitionStrategy:
    """One method of obtaining metadata and a local media file."""

    name = "strategy"

    def __init__(self, user_agents: Optional[List[str]] = None, rng: random.Random = None):
        self.user_agents = user_agents if user_agents is not None else list(settings.user_agents)
        self.rng = rng or random.Random()

    def pick_user_agent(self) -> Optional[str]:
        return self.rng.choice(self.user_agents) if self.user_agents else None

    async def fetch_info(self, url: str) -> dict:
        raise NotImplementedError

    async def download(self, url: str, output_dir: Path, processing_id: str) -> Path:
        raise NotImplementedError

    def __repr__(self):
        return f"<{type(self).__name__}(name={self.name})>"


class YtdlpCliStrategy(AcquisitionStrategy):
    """Primary strategy: the yt-dlp command line tool."""

    name = "yt-dlp-cli"

    async def fetch_info(self, url: str) -> dict:
        info = await get_video_info_ytdlp(url, user_agent=self.pick_user_agent())
        return summarize_info(info)

    async def download(self, url: str, output_dir: Path, processing_id: str) -> Path:
        return await download_video(
            url,
            output_dir=output_dir,
            filename=source_filename(processing_id),
            user_agent=self.pick_user_agent(),
        )


class YtdlpLibraryStrategy(AcquisitionStrategy):
    """
    Fallback strategy: the yt_dlp Python API run in a worker thread.

    An alternate ``player_client`` makes the extractor request a different
    client's stream manifests, which the host throttles independently.
    """

    def __init__(
        self,
        name: str = "yt-dlp-library",
        player_client: Optional[str] = None,
        user_agents: Optional[List[str]] = None,
        rng: random.Random = None,
    ):
        super().__init__(user_agents=user_agents, rng=rng)
        self.name = name
        self.player_client = player_client

    def _base_options(self) -> dict:
        options = {
            "quiet": True,
            "no_warnings": True,
            "noprogress": True,
            "noplaylist": True,
            "socket_timeout": 30,
            "retries": 3,
            "fragment_retries": 3,
            "http_headers": {"Accept-Language": "en-US,en;q=0.9"},
        }
        user_agent = self.pick_user_agent()
        if user_agent:
            options["http_headers"]["User-Agent"] = user_agent
        if self.player_client:
            options["extractor_args"] = {"youtube": {"player_client": [self.player_client]}}
        return options

    def _extract_info(self, url: str) -> dict:
        with yt_dlp.YoutubeDL(self._base_options()) as ydl:
            return ydl.extract_info(url, download=False)

    def _download(self, url: str, output_dir: Path, filename: str) -> None:
        options = self._base_options()
        options.update({
            "outtmpl": str(output_dir / f"{filename}.%(ext)s"),
            "format": "best[height<=1080][ext=mp4]/best[ext=mp4]/best",
            "merge_output_format": "mp4",
            "overwrites": True,
        })
        with yt_dlp.YoutubeDL(options) as ydl:
            ydl.download([url])

    async def fetch_info(self, url: str) -> dict:
        info = await asyncio.to_thread(self._extract_info, url)
        return summarize_info(info or {})

    async def download(self, url: str, output_dir: Path, processing_id: str) -> Path:
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        filename = source_filename(processing_id)
        # The worker thread runs to completion even if this await is cancelled.
        await asyncio.to_thread(self._download, url, output_dir, filename)
        path = find_downloaded_file(output_dir, filename)
        if not path:
            raise PipelineError(
                ErrorKind.CORRUPTED_DOWNLOAD,
                f"{self.name}: download finished but the file is empty or missing",
            )
        return path


def default_strategies() -> List[AcquisitionStrategy]:
    """The ordered fallback chain used in production."""
    return [
        YtdlpCliStrategy(),
        YtdlpLibraryStrategy(name="yt-dlp-library"),
        YtdlpLibraryStrategy(name="yt-dlp-library-mobile", player_client="android"),
    ]
