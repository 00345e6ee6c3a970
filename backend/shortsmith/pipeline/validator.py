"""Reject disguised error pages and truncated files before they reach ffmpeg."""
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from shortsmith.pipeline.errors import ErrorKind, PipelineError

logger = logging.getLogger(__name__)

# Files smaller than this are inspected as text first.
SMALL_FILE_BYTES = 10 * 1024

HTML_MARKERS = (
    "<!doctype html",
    "<html",
    "bot detection",
    "verify you are human",
    "sign in to confirm",
)

# ISO base media box types expected at offset 4.
ISO_BOX_TYPES = (b"ftyp", b"moov", b"mdat", b"wide", b"free", b"skip")

# Magic numbers at offset 0.
MAGIC_SIGNATURES = {
    b"\x1a\x45\xdf\xa3": "matroska",
    b"\x00\x00\x01\xba": "mpeg-ps",
    b"\x00\x00\x01\xb3": "mpeg-video",
    b"FLV": "flv",
}


@dataclass
class ValidationResult:
    """Outcome of validating a downloaded artifact."""
    ok: bool
    reason: Optional[str] = None
    size: int = 0
    signature: Optional[str] = None


def detect_signature(header: bytes) -> Optional[str]:
    """Return a container name for a file header, or None if unrecognized."""
    if len(header) >= 8 and header[4:8] in ISO_BOX_TYPES:
        return header[4:8].decode("ascii")
    for magic, name in MAGIC_SIGNATURES.items():
        if header.startswith(magic):
            return name
    return None


def validate(path: str | Path) -> ValidationResult:
    """
    Validate a downloaded video file.

    Args:
        path: Path to the downloaded file

    Returns:
        ValidationResult; ``ok`` is False with a reason on rejection
    """
    path = Path(path)
    if not path.exists():
        return ValidationResult(False, f"Downloaded file not found: {path.name}")

    size = path.stat().st_size
    if size == 0:
        return ValidationResult(False, "Downloaded file is empty (0 bytes)")

    if size < SMALL_FILE_BYTES:
        text = path.read_bytes().decode("utf-8", errors="ignore").lower()
        if any(marker in text for marker in HTML_MARKERS):
            return ValidationResult(
                False,
                "Downloaded file contains an HTML error page (likely bot detection)",
                size=size,
            )

    with path.open("rb") as fh:
        header = fh.read(12)

    signature = detect_signature(header)
    if signature is None:
        return ValidationResult(
            False,
            "Downloaded file does not appear to be a valid video (invalid signature)",
            size=size,
        )

    return ValidationResult(True, size=size, signature=signature)


def ensure_valid(path: str | Path) -> ValidationResult:
    """Validate and raise PipelineError(corrupted_download) on rejection."""
    result = validate(path)
    if not result.ok:
        raise PipelineError(ErrorKind.CORRUPTED_DOWNLOAD, f"File validation failed: {result.reason}")
    logger.debug(f"Validated {Path(path).name}: {result.size} bytes, signature {result.signature}")
    return result
