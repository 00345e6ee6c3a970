"""Job record, lifecycle state machine and local file cleanup."""
import enum
import logging
import re
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from shortsmith.pipeline.errors import ErrorKind
from shortsmith.pipeline.policy import QuotaLimits, SubscriptionTier
from shortsmith.utils.ffmpeg import VideoInfo

logger = logging.getLogger(__name__)


class JobStatus(str, enum.Enum):
    """Job lifecycle states, in order."""
    ACCEPTED = "accepted"
    ACQUIRING = "acquiring"
    VALIDATING = "validating"
    PROBING = "probing"
    SEGMENTING = "segmenting"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


PIPELINE_ORDER = [
    JobStatus.ACCEPTED,
    JobStatus.ACQUIRING,
    JobStatus.VALIDATING,
    JobStatus.PROBING,
    JobStatus.SEGMENTING,
    JobStatus.UPLOADING,
    JobStatus.COMPLETED,
]


# Caller-supplied ids end up in file names and storage keys.
PROCESSING_ID_PATTERN = r"^[A-Za-z0-9_-]{1,64}$"


class InvalidTransition(Exception):
    """Raised when a job would move backwards, skip a stage, or leave a terminal state."""
    pass


def new_processing_id() -> str:
    return uuid.uuid4().hex


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SourceArtifact:
    """The downloaded source file and what is known about it."""
    path: Path
    size: int
    signature: Optional[str] = None
    info: Optional[VideoInfo] = None

    @property
    def size_mb(self) -> float:
        return round(self.size / 1024 / 1024, 2)


@dataclass
class Short:
    """One produced clip, enriched with storage details after upload."""
    short_id: str
    index: int
    start_time: float
    duration: float
    local_path: Path
    quality: str
    watermark: Optional[str] = None
    file_size: int = 0
    thumbnail_path: Optional[Path] = None
    storage_key: Optional[str] = None
    file_url: Optional[str] = None
    thumbnail_storage_key: Optional[str] = None
    thumbnail_url: Optional[str] = None
    uploaded_at: Optional[datetime] = None

    @property
    def file_size_mb(self) -> float:
        return round(self.file_size / 1024 / 1024, 2)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the callback result format."""
        return {
            "short_id": self.short_id,
            "title": f"Short Video #{self.index}",
            "segment_index": self.index,
            "start_time": self.start_time,
            "duration": self.duration,
            "file_url": self.file_url,
            "thumbnail_url": self.thumbnail_url,
            "storage_path": self.storage_key,
            "thumbnail_storage_path": self.thumbnail_storage_key,
            "file_size_mb": self.file_size_mb,
            "quality": self.quality,
            "watermark": self.watermark is not None,
            "watermark_text": self.watermark,
            "created_at": self.uploaded_at.isoformat() if self.uploaded_at else None,
        }


@dataclass
class JobRecord:
    """
    Aggregate state of one processing request.

    Owned by a single processing routine for its lifetime. Status only moves
    forward through PIPELINE_ORDER; FAILED is reachable from any non-terminal
    state; terminal records are read-only.
    """
    source_url: str
    callback_url: str
    tier: SubscriptionTier
    limits: QuotaLimits
    processing_id: str = field(default_factory=new_processing_id)
    platform: str = "YouTube"
    status: JobStatus = JobStatus.ACCEPTED
    started_at: datetime = field(default_factory=utc_now)
    started_monotonic: float = field(default_factory=time.monotonic)
    finished_at: Optional[datetime] = None
    history: List[JobStatus] = field(default_factory=lambda: [JobStatus.ACCEPTED])
    video_info: Dict[str, Any] = field(default_factory=dict)
    artifact: Optional[SourceArtifact] = None
    shorts: List[Short] = field(default_factory=list)
    error_kind: Optional[ErrorKind] = None
    error_message: Optional[str] = None
    callback_sent: bool = False

    def _ensure_mutable(self):
        if self.status.is_terminal:
            raise InvalidTransition(
                f"Job {self.processing_id} is already {self.status.value}"
            )

    def advance(self, status: JobStatus) -> None:
        """Move to the next pipeline stage."""
        self._ensure_mutable()
        if status == JobStatus.FAILED:
            raise InvalidTransition("Use fail() to fail a job")
        current = PIPELINE_ORDER.index(self.status)
        target = PIPELINE_ORDER.index(status)
        if target != current + 1:
            raise InvalidTransition(
                f"Job {self.processing_id} cannot move from {self.status.value} to {status.value}"
            )
        self.status = status
        self.history.append(status)
        logger.info(f"[{self.processing_id}] Stage: {status.value}")
        if status == JobStatus.COMPLETED:
            self.finished_at = utc_now()

    def fail(self, kind: ErrorKind, message: str) -> None:
        """Move to FAILED with a classified error."""
        self._ensure_mutable()
        self.error_kind = ErrorKind(kind)
        self.error_message = message
        self.status = JobStatus.FAILED
        self.history.append(JobStatus.FAILED)
        self.finished_at = utc_now()
        logger.error(f"[{self.processing_id}] Failed ({self.error_kind.value}): {message}")

    def add_short(self, short: Short) -> None:
        self._ensure_mutable()
        self.shorts.append(short)

    @property
    def elapsed_seconds(self) -> float:
        return round(time.monotonic() - self.started_monotonic, 2)


def owns_file(processing_id: str, filename: str) -> bool:
    """True for the source (`<id>_original...`) and clips (`short_<id>_<n>...`) of a job."""
    pid = re.escape(processing_id)
    return re.match(rf"^(?:{pid}_original|short_{pid}_\d+)(?:\.|$)", filename) is not None


def cleanup_job_files(processing_id: str, directories: Iterable[Path]) -> int:
    """
    Delete every local file owned by the job (see ``owns_file``).

    Safe to call repeatedly; missing files and directories are not errors.

    Returns:
        Number of files removed by this call
    """
    removed = 0
    for directory in directories:
        directory = Path(directory)
        if not directory.is_dir():
            continue
        for path in directory.iterdir():
            if not owns_file(processing_id, path.name) or not path.is_file():
                continue
            try:
                path.unlink()
                removed += 1
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning(f"[{processing_id}] Failed to delete {path.name}: {e}")
    if removed:
        logger.info(f"[{processing_id}] Cleaned up {removed} local files")
    return removed


def sweep_stale_files(directories: Iterable[Path], max_age_seconds: float, now: float = None) -> int:
    """Delete files older than ``max_age_seconds``; backstop for crashed jobs."""
    now = now if now is not None else time.time()
    removed = 0
    for directory in directories:
        directory = Path(directory)
        if not directory.is_dir():
            continue
        for path in directory.iterdir():
            if not path.is_file():
                continue
            try:
                if now - path.stat().st_mtime > max_age_seconds:
                    path.unlink()
                    removed += 1
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning(f"Failed to sweep {path}: {e}")
    if removed:
        logger.info(f"Swept {removed} stale files")
    return removed
