"""Failure taxonomy shared by every pipeline stage.

Classification is a plain ordered-table lookup over the failure text: the
first kind whose pattern occurs in the (lower-cased) message wins.
"""
import enum
from typing import Tuple


class ErrorKind(str, enum.Enum):
    """Stable failure categories, also reported as ``error.category``."""
    BOT_DETECTION = "bot_detection"
    RATE_LIMITED = "rate_limited"
    VIDEO_UNAVAILABLE = "video_unavailable"
    AGE_RESTRICTED = "age_restricted"
    REGION_BLOCKED = "region_blocked"
    VIDEO_TOO_SHORT = "video_too_short"
    VIDEO_TOO_LONG = "video_too_long"
    NETWORK_TIMEOUT = "network_timeout"
    FORMAT_UNSUPPORTED = "format_unsupported"
    STORAGE_ERROR = "storage_error"
    FILE_TOO_LARGE = "file_too_large"
    CORRUPTED_DOWNLOAD = "corrupted_download"
    UNKNOWN = "unknown"


# Order matters: first match wins.
CLASSIFICATION_TABLE: Tuple[Tuple[ErrorKind, Tuple[str, ...]], ...] = (
    (ErrorKind.BOT_DETECTION, (
        "sign in to confirm",
        "not a bot",
        "bot detection",
        "captcha",
        "verify you are human",
        "unusual traffic",
        "automated queries",
        "suspicious activity",
        "403",
    )),
    (ErrorKind.RATE_LIMITED, (
        "rate limit",
        "too many requests",
        "429",
        "quota exceeded",
        "throttl",
    )),
    (ErrorKind.VIDEO_UNAVAILABLE, (
        "video unavailable",
        "video is unavailable",
        "private video",
        "video is private",
        "has been removed",
        "been deleted",
        "no longer available",
        "does not exist",
    )),
    (ErrorKind.AGE_RESTRICTED, (
        "age-restricted",
        "age restricted",
        "age_restricted",
        "confirm your age",
    )),
    (ErrorKind.REGION_BLOCKED, (
        "not available in your country",
        "region",
        "geo",
        "blocked",
    )),
    (ErrorKind.VIDEO_TOO_SHORT, ("too short",)),
    (ErrorKind.VIDEO_TOO_LONG, ("too long",)),
    (ErrorKind.NETWORK_TIMEOUT, (
        "timed out",
        "timeout",
        "network",
        "connection reset",
        "connection refused",
        "econnreset",
        "name resolution",
        "502",
        "503",
        "504",
    )),
    (ErrorKind.FORMAT_UNSUPPORTED, (
        "unsupported",
        "invalid url",
        "no video formats",
        "requested format",
        "resolution is too low",
    )),
    (ErrorKind.STORAGE_ERROR, ("storage", "upload", "bucket")),
    (ErrorKind.FILE_TOO_LARGE, ("too large", "file size")),
    (ErrorKind.CORRUPTED_DOWNLOAD, (
        "corrupt",
        "invalid data",
        "invalid signature",
        "html error page",
        "moov atom",
        "empty",
    )),
)

RETRY_LATER_KINDS = frozenset({ErrorKind.BOT_DETECTION, ErrorKind.RATE_LIMITED})

PERMANENT_KINDS = frozenset({
    ErrorKind.VIDEO_UNAVAILABLE,
    ErrorKind.AGE_RESTRICTED,
    ErrorKind.REGION_BLOCKED,
    ErrorKind.FORMAT_UNSUPPORTED,
    ErrorKind.VIDEO_TOO_SHORT,
    ErrorKind.VIDEO_TOO_LONG,
    ErrorKind.FILE_TOO_LARGE,
})

USER_MESSAGES = {
    ErrorKind.BOT_DETECTION: "The video host is temporarily blocking automated access. Please try again later.",
    ErrorKind.RATE_LIMITED: "Too many requests to the video host. Please try again later.",
    ErrorKind.VIDEO_UNAVAILABLE: "The video is private, deleted or otherwise unavailable.",
    ErrorKind.AGE_RESTRICTED: "The video is age-restricted and cannot be processed.",
    ErrorKind.REGION_BLOCKED: "The video is not available in the processing region.",
    ErrorKind.VIDEO_TOO_SHORT: "The video is too short to be cut into shorts.",
    ErrorKind.VIDEO_TOO_LONG: "The video exceeds the maximum duration for this plan.",
    ErrorKind.NETWORK_TIMEOUT: "A network timeout occurred while processing the video.",
    ErrorKind.FORMAT_UNSUPPORTED: "The URL or video format is not supported.",
    ErrorKind.STORAGE_ERROR: "The processed shorts could not be stored.",
    ErrorKind.FILE_TOO_LARGE: "The video file exceeds the maximum size for this plan.",
    ErrorKind.CORRUPTED_DOWNLOAD: "The downloaded video was corrupted or incomplete.",
    ErrorKind.UNKNOWN: "Video processing failed.",
}


class PipelineError(Exception):
    """A failure whose kind is already known."""

    def __init__(self, kind: ErrorKind, message: str):
        super().__init__(message)
        self.kind = ErrorKind(kind)
        self.message = message

    def __repr__(self):
        return f"<PipelineError(kind={self.kind.value}, message={self.message!r})>"


def _error_text(error) -> str:
    text = str(error) if error is not None else ""
    status = getattr(error, "status_code", None) or getattr(error, "status", None)
    if status is not None:
        text = f"{text} {status}"
    return text.lower()


def classify(error) -> ErrorKind:
    """Map a failure (exception or message) to an ErrorKind."""
    text = _error_text(error)
    if not text.strip():
        return ErrorKind.UNKNOWN
    for kind, patterns in CLASSIFICATION_TABLE:
        if any(pattern in text for pattern in patterns):
            return kind
    return ErrorKind.UNKNOWN


def classify_exception(exc: BaseException) -> ErrorKind:
    """Return the carried kind for PipelineError, else classify the text."""
    if isinstance(exc, PipelineError):
        return exc.kind
    return classify(exc)


def is_retry_later(kind: ErrorKind) -> bool:
    return kind in RETRY_LATER_KINDS


def is_permanent(kind: ErrorKind) -> bool:
    return kind in PERMANENT_KINDS


def user_message(kind: ErrorKind) -> str:
    return USER_MESSAGES.get(kind, USER_MESSAGES[ErrorKind.UNKNOWN])
