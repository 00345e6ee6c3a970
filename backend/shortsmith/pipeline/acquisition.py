"""
Source URL parsing and the multi-strategy acquisition fallback chain.

Strategies are tried strictly in order. Each one gets a bounded number of
attempts for transient failures, and every attempt has to be admitted by the
rate governor first; a refused admission moves on to the next strategy.
Permanent failures (private, deleted, restricted videos) stop the whole chain;
bot detection makes the chain wait longer before moving on.
"""
import asyncio
import logging
import random
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Generic, List, Optional, Sequence, TypeVar
from urllib.parse import parse_qs, urlparse

import httpx

from shortsmith.config import settings
from shortsmith.pipeline.errors import (
    ErrorKind,
    PipelineError,
    classify_exception,
    is_permanent,
)
from shortsmith.pipeline.job import owns_file
from shortsmith.pipeline.rate_governor import Admission, RateGovernor, domain_for
from shortsmith.pipeline.strategies import AcquisitionStrategy
from shortsmith.pipeline.validator import ValidationResult, validate as validate_file
from shortsmith.utils.retry import RetryPolicy, retry_with_backoff

logger = logging.getLogger(__name__)

T = TypeVar("T")

YOUTUBE_HOSTS = {
    "youtube.com",
    "www.youtube.com",
    "m.youtube.com",
    "music.youtube.com",
    "youtube-nocookie.com",
    "www.youtube-nocookie.com",
}
YOUTUBE_ID_RE = re.compile(r"^[A-Za-z0-9_-]{11}$")
YOUTUBE_PATH_RE = re.compile(r"^/(?:embed|shorts|v|live)/([A-Za-z0-9_-]{11})")
TIKTOK_VIDEO_RE = re.compile(r"^/@([^/]+)/video/(\d+)")
TIKTOK_SHORT_HOSTS = {"vm.tiktok.com", "vt.tiktok.com"}

OEMBED_URL = "https://www.youtube.com/oembed"

# Failures worth another attempt with the same strategy.
TRANSIENT_KINDS = frozenset({
    ErrorKind.NETWORK_TIMEOUT,
    ErrorKind.UNKNOWN,
    ErrorKind.CORRUPTED_DOWNLOAD,
})

PARTIAL_SUFFIXES = (".part", ".ytdl", ".temp")


@dataclass(frozen=True)
class SourceRef:
    """A recognised video URL."""
    platform: str
    video_id: str
    canonical_url: str


def _unsupported(url: str) -> PipelineError:
    return PipelineError(ErrorKind.FORMAT_UNSUPPORTED, f"Unsupported or invalid URL: {url}")


def parse_source_url(url: str) -> SourceRef:
    """
    Recognise a YouTube or TikTok video URL.

    Tracking parameters are dropped; the canonical URL is what strategies
    receive.

    Raises:
        PipelineError: format_unsupported for anything else
    """
    url = (url or "").strip()
    if YOUTUBE_ID_RE.match(url):
        return SourceRef("YouTube", url, f"https://www.youtube.com/watch?v={url}")

    candidate = url if "://" in url else f"https://{url}"
    try:
        parsed = urlparse(candidate)
        host = (parsed.hostname or "").lower()
    except ValueError:
        raise _unsupported(url) from None

    if parsed.scheme not in ("http", "https") or not host:
        raise _unsupported(url)

    if host in YOUTUBE_HOSTS or host == "youtu.be":
        video_id = None
        if host == "youtu.be":
            video_id = parsed.path.strip("/").split("/")[0]
        elif parsed.path == "/watch":
            video_id = (parse_qs(parsed.query).get("v") or [""])[0]
        else:
            match = YOUTUBE_PATH_RE.match(parsed.path)
            if match:
                video_id = match.group(1)
        if video_id and YOUTUBE_ID_RE.match(video_id):
            return SourceRef("YouTube", video_id, f"https://www.youtube.com/watch?v={video_id}")
        raise _unsupported(url)

    if host in TIKTOK_SHORT_HOSTS:
        code = parsed.path.strip("/").split("/")[0]
        if code:
            return SourceRef("TikTok", code, f"https://{host}/{code}/")
        raise _unsupported(url)

    if host == "tiktok.com" or host.endswith(".tiktok.com"):
        match = TIKTOK_VIDEO_RE.match(parsed.path)
        if match:
            user, video_id = match.groups()
            return SourceRef("TikTok", video_id, f"https://www.tiktok.com/@{user}/video/{video_id}")

    raise _unsupported(url)


async def preflight(source: SourceRef, timeout: float = None) -> Optional[dict]:
    """
    Cheap availability probe before any download strategy is spent.

    Only conclusive answers raise; anything else (network trouble, other
    status codes, other platforms) returns None and the chain proceeds.

    Returns:
        oEmbed metadata when the video is publicly embeddable

    Raises:
        PipelineError: video_unavailable for private or deleted videos
    """
    if source.platform != "YouTube":
        return None

    timeout = timeout or settings.preflight_timeout_seconds
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.get(
                OEMBED_URL,
                params={"url": source.canonical_url, "format": "json"},
            )
    except httpx.HTTPError as e:
        logger.debug(f"Preflight for {source.video_id} inconclusive: {e}")
        return None

    if response.status_code in (401, 403):
        raise PipelineError(ErrorKind.VIDEO_UNAVAILABLE, "Video is private or requires sign-in")
    if response.status_code == 404:
        raise PipelineError(ErrorKind.VIDEO_UNAVAILABLE, "Video has been deleted or does not exist")
    if response.status_code != 200:
        logger.debug(f"Preflight for {source.video_id} returned {response.status_code}")
        return None

    try:
        return response.json()
    except ValueError:
        return None


@dataclass
class DownloadAttempt:
    """One invocation of one strategy, kept for logging."""
    strategy: str
    strategy_index: int
    attempt: int
    started_at: float = field(default_factory=time.time)
    ok: bool = False
    error_kind: Optional[ErrorKind] = None
    error_message: Optional[str] = None

    @property
    def outcome(self) -> str:
        if self.ok:
            return "ok"
        kind = self.error_kind.value if self.error_kind else "pending"
        return f"{kind}: {self.error_message}" if self.error_message else kind

    def describe(self) -> str:
        return f"{self.strategy}#{self.attempt} -> {self.outcome}"


class AcquisitionError(PipelineError):
    """Every strategy failed, or a permanent failure stopped the chain."""

    def __init__(self, kind: ErrorKind, message: str, attempts: List[DownloadAttempt] = None):
        super().__init__(kind, message)
        self.attempts = list(attempts or [])


@dataclass
class AcquisitionResult(Generic[T]):
    """Value produced by the first strategy that succeeded."""
    value: T
    strategy: str
    attempts: List[DownloadAttempt]


def discard_partials(output_dir: Path, processing_id: str) -> int:
    """Remove half-written download leftovers belonging to a job."""
    output_dir = Path(output_dir)
    if not output_dir.is_dir():
        return 0
    removed = 0
    for path in output_dir.iterdir():
        if not owns_file(processing_id, path.name) or not path.is_file():
            continue
        if path.name.endswith(PARTIAL_SUFFIXES) or ".part-" in path.name:
            path.unlink(missing_ok=True)
            removed += 1
    return removed


class AcquisitionOrchestrator:
    """Runs strategies in order under rate governance until one succeeds."""

    def __init__(
        self,
        strategies: Sequence[AcquisitionStrategy],
        governor: RateGovernor,
        attempts_per_strategy: int = None,
        strategy_timeout: float = None,
        info_timeout: float = None,
        retry_delay: float = None,
        admission_retries: int = None,
        max_admission_wait: float = None,
        bot_delay_base: float = None,
        bot_delay_max: float = None,
        bot_delay_jitter: float = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random = None,
    ):
        self.strategies = list(strategies)
        self.governor = governor

        def _pick(value, default):
            return value if value is not None else default

        self.attempts_per_strategy = _pick(attempts_per_strategy, settings.attempts_per_strategy)
        self.strategy_timeout = _pick(strategy_timeout, settings.strategy_timeout_seconds)
        self.info_timeout = _pick(info_timeout, settings.info_timeout_seconds)
        self.retry_delay = _pick(retry_delay, settings.strategy_retry_delay_seconds)
        self.admission_retries = _pick(admission_retries, settings.admission_retries)
        self.max_admission_wait = _pick(max_admission_wait, settings.max_admission_wait_seconds)
        self.bot_delay_base = _pick(bot_delay_base, settings.bot_delay_base_seconds)
        self.bot_delay_max = _pick(bot_delay_max, settings.bot_delay_max_seconds)
        self.bot_delay_jitter = _pick(bot_delay_jitter, settings.bot_delay_jitter_seconds)
        self._sleep = sleep
        self._rng = rng or random.Random()

    def bot_delay(self, strategy_index: int) -> float:
        """Pause before the next strategy after bot detection; grows with position."""
        delay = min(self.bot_delay_max, self.bot_delay_base * (2 ** strategy_index))
        if self.bot_delay_jitter:
            delay += self._rng.uniform(0, self.bot_delay_jitter)
        return delay

    async def fetch_info(self, source: SourceRef, processing_id: str) -> AcquisitionResult[dict]:
        """Fetch video metadata through the fallback chain."""
        async def _invoke(strategy: AcquisitionStrategy) -> dict:
            return await strategy.fetch_info(source.canonical_url)

        return await self._run_chain(source, processing_id, "metadata", _invoke, self.info_timeout)

    async def download(
        self,
        source: SourceRef,
        output_dir: Path,
        processing_id: str,
        validate: Callable[[Path], ValidationResult] = validate_file,
    ) -> AcquisitionResult[Path]:
        """
        Download the source media through the fallback chain.

        Every produced file is validated before it counts as a success; a
        rejected file is deleted and the attempt counts as a corrupted download.
        """
        output_dir = Path(output_dir)

        async def _invoke(strategy: AcquisitionStrategy) -> Path:
            try:
                path = await strategy.download(source.canonical_url, output_dir, processing_id)
            except Exception:
                discard_partials(output_dir, processing_id)
                raise
            result = validate(path)
            if not result.ok:
                Path(path).unlink(missing_ok=True)
                discard_partials(output_dir, processing_id)
                raise PipelineError(
                    ErrorKind.CORRUPTED_DOWNLOAD,
                    f"File validation failed: {result.reason}",
                )
            return Path(path)

        return await self._run_chain(source, processing_id, "download", _invoke, self.strategy_timeout)

    async def _await_admission(
        self,
        domain: str,
        processing_id: str,
        strategy: AcquisitionStrategy,
    ) -> Admission:
        admission = self.governor.admit(domain)
        retries = 0
        while not admission.allowed:
            if retries >= self.admission_retries or admission.retry_after > self.max_admission_wait:
                return admission
            retries += 1
            logger.info(
                f"[{processing_id}] {strategy.name} not admitted ({admission.reason}); "
                f"waiting {admission.retry_after:.1f}s"
            )
            await self._sleep(admission.retry_after)
            admission = self.governor.admit(domain)
        return admission

    async def _attempt(
        self,
        strategy: AcquisitionStrategy,
        index: int,
        attempt_no: int,
        invoke: Callable[[AcquisitionStrategy], Awaitable[Any]],
        timeout: float,
        domain: str,
        attempts: List[DownloadAttempt],
        processing_id: str,
        action: str,
    ) -> Any:
        record = DownloadAttempt(strategy=strategy.name, strategy_index=index, attempt=attempt_no)
        attempts.append(record)
        logger.info(
            f"[{processing_id}] {action} via {strategy.name} "
            f"(strategy {index + 1}/{len(self.strategies)}, attempt {attempt_no})"
        )
        try:
            try:
                value = await asyncio.wait_for(invoke(strategy), timeout=timeout)
            except asyncio.TimeoutError:
                raise PipelineError(
                    ErrorKind.NETWORK_TIMEOUT,
                    f"{strategy.name} timed out after {timeout:.0f}s",
                ) from None
        except Exception as e:
            record.error_kind = self.governor.report_failure(domain, e)
            record.error_message = str(e)
            logger.warning(f"[{processing_id}] {record.describe()}")
            raise
        record.ok = True
        return value

    async def _run_chain(
        self,
        source: SourceRef,
        processing_id: str,
        action: str,
        invoke: Callable[[AcquisitionStrategy], Awaitable[T]],
        timeout: float,
    ) -> AcquisitionResult[T]:
        domain = domain_for(source.canonical_url)
        attempts: List[DownloadAttempt] = []
        last_kind = ErrorKind.UNKNOWN
        policy = RetryPolicy(
            max_attempts=self.attempts_per_strategy,
            base_delay=self.retry_delay,
            multiplier=2.0,
            max_delay=self.retry_delay * 4,
        )

        for index, strategy in enumerate(self.strategies):

            async def _operation(attempt_no: int, strategy=strategy, index=index):
                # Every request to the host, retries included, needs admission.
                admission = await self._await_admission(domain, processing_id, strategy)
                if not admission.allowed:
                    attempts.append(DownloadAttempt(
                        strategy=strategy.name,
                        strategy_index=index,
                        attempt=0,
                        error_kind=ErrorKind.RATE_LIMITED,
                        error_message=admission.reason,
                    ))
                    logger.warning(f"[{processing_id}] Skipping {strategy.name}: {admission.reason}")
                    raise PipelineError(ErrorKind.RATE_LIMITED, admission.reason)
                return await self._attempt(
                    strategy, index, attempt_no, invoke, timeout,
                    domain, attempts, processing_id, action,
                )

            def _on_retry(attempt_no: int, exc: BaseException, delay: float, strategy=strategy):
                logger.info(
                    f"[{processing_id}] Retrying {strategy.name} in {delay:.1f}s "
                    f"after attempt {attempt_no} failed"
                )

            try:
                value = await retry_with_backoff(
                    _operation,
                    policy,
                    should_retry=lambda exc: classify_exception(exc) in TRANSIENT_KINDS,
                    on_retry=_on_retry,
                    sleep=self._sleep,
                )
            except Exception as e:
                kind = classify_exception(e)
                last_kind = kind
                if is_permanent(kind):
                    logger.error(f"[{processing_id}] Permanent failure from {strategy.name}: {e}")
                    raise AcquisitionError(kind, str(e), attempts) from e
                if kind == ErrorKind.BOT_DETECTION and index < len(self.strategies) - 1:
                    delay = self.bot_delay(index)
                    logger.warning(
                        f"[{processing_id}] Bot detection on {strategy.name}; "
                        f"waiting {delay:.1f}s before the next strategy"
                    )
                    await self._sleep(delay)
                continue

            self.governor.report_success(domain)
            logger.info(f"[{processing_id}] {action} succeeded via {strategy.name}")
            return AcquisitionResult(value=value, strategy=strategy.name, attempts=attempts)

        summary = "; ".join(a.describe() for a in attempts) or "no strategies configured"
        raise AcquisitionError(
            last_kind,
            f"All {action} strategies failed ({last_kind.value}): {summary}",
            attempts,
        )
