"""Upload service pushing finished shorts to object storage."""
import asyncio
import logging
import time
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Tuple

from shortsmith.config import settings
from shortsmith.pipeline.errors import ErrorKind, PipelineError
from shortsmith.pipeline.job import JobRecord, Short, utc_now
from shortsmith.services.storage_service import DuplicateKeyError, ObjectStorage, StorageError
from shortsmith.utils.retry import RetryPolicy, retry_with_backoff

logger = logging.getLogger(__name__)


def short_key(processing_id: str, short_id: str, suffix: str = "") -> str:
    return f"shorts/{processing_id}/{short_id}{suffix}.mp4"


def thumbnail_key(processing_id: str, short_id: str, suffix: str = "") -> str:
    return f"thumbnails/{processing_id}/{short_id}{suffix}.jpg"


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, StorageError) and not isinstance(exc, DuplicateKeyError)


class UploadService:
    """
    Uploads each short (and its thumbnail) with bounded retries.

    A short that exhausts its attempts is dropped; the job only fails when
    nothing could be uploaded.
    """

    def __init__(
        self,
        storage: ObjectStorage,
        policy: RetryPolicy = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.storage = storage
        self.policy = policy or RetryPolicy.linear(
            settings.upload_attempts, settings.upload_retry_delay_seconds
        )
        self._sleep = sleep
        self._clock = clock

    def _timestamp_suffix(self) -> str:
        return f"_{int(self._clock() * 1000)}"

    async def _put(
        self,
        processing_id: str,
        path: Path,
        content_type: str,
        key_for: Callable[[str], str],
    ) -> Tuple[str, str]:
        """Upload with retries; one duplicate-key rejection switches to a timestamped key."""
        state = {"key": key_for(""), "renamed": False}

        async def _attempt(attempt_no: int) -> str:
            try:
                return await self.storage.put(state["key"], path, content_type)
            except DuplicateKeyError:
                if state["renamed"]:
                    raise
                state["renamed"] = True
                state["key"] = key_for(self._timestamp_suffix())
                logger.warning(f"[{processing_id}] Key exists, retrying as {state['key']}")
                return await self.storage.put(state["key"], path, content_type)

        def _on_retry(attempt_no: int, exc: BaseException, delay: float):
            logger.warning(
                f"[{processing_id}] Upload attempt {attempt_no} for {path.name} failed: {exc}; "
                f"retrying in {delay:.1f}s"
            )

        url = await retry_with_backoff(
            _attempt,
            self.policy,
            should_retry=_is_retryable,
            on_retry=_on_retry,
            sleep=self._sleep,
        )
        return state["key"], url

    async def upload_short(self, job: JobRecord, short: Short) -> Short:
        """Upload one short and its thumbnail, filling in storage details."""
        pid = job.processing_id
        key, url = await self._put(
            pid,
            short.local_path,
            "video/mp4",
            lambda suffix: short_key(pid, short.short_id, suffix),
        )
        short.storage_key = key
        short.file_url = url
        short.uploaded_at = utc_now()

        if short.thumbnail_path and Path(short.thumbnail_path).exists():
            try:
                thumb_key, thumb_url = await self._put(
                    pid,
                    Path(short.thumbnail_path),
                    "image/jpeg",
                    lambda suffix: thumbnail_key(pid, short.short_id, suffix),
                )
                short.thumbnail_storage_key = thumb_key
                short.thumbnail_url = thumb_url
            except Exception as e:
                logger.warning(f"[{pid}] Thumbnail upload failed for {short.short_id}: {e}")

        logger.info(f"[{pid}] Uploaded {short.short_id} ({short.file_size_mb}MB) to {key}")
        return short

    async def upload_shorts(self, job: JobRecord, shorts: List[Short]) -> List[Short]:
        """
        Upload every short in order.

        Raises:
            PipelineError: storage_error when no short could be uploaded
        """
        uploaded: List[Short] = []
        last_error: Optional[Exception] = None
        for short in shorts:
            try:
                uploaded.append(await self.upload_short(job, short))
            except Exception as e:
                last_error = e
                logger.error(f"[{job.processing_id}] Dropping {short.short_id} after failed upload: {e}")

        if shorts and not uploaded:
            raise PipelineError(
                ErrorKind.STORAGE_ERROR,
                f"Failed to upload any shorts to storage: {last_error}",
            )
        return uploaded
