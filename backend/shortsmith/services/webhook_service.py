"""Webhook callbacks reporting the outcome of a job to the caller."""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional
from urllib.parse import urlparse

import httpx

from shortsmith.config import settings
from shortsmith.pipeline.errors import ErrorKind, is_retry_later, user_message
from shortsmith.pipeline.job import JobRecord, utc_now
from shortsmith.utils.retry import RetryPolicy, retry_with_backoff

logger = logging.getLogger(__name__)

DNS_FAILURE_MARKERS = (
    "name or service not known",
    "nodename nor servname",
    "getaddrinfo failed",
    "temporary failure in name resolution",
    "no address associated with hostname",
    "name resolution",
)


@dataclass
class WebhookResult:
    """Outcome of delivering one callback."""
    success: bool
    status_code: Optional[int] = None
    attempts: int = 0
    error: Optional[str] = None
    final: bool = False


class _RetryableCallback(Exception):
    """A delivery failure worth another attempt."""

    def __init__(self, message: str, status_code: Optional[int] = None, delay_multiplier: float = 1.0):
        super().__init__(message)
        self.status_code = status_code
        self.delay_multiplier = delay_multiplier


def is_valid_callback_url(url: Optional[str]) -> bool:
    if not url:
        return False
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def is_dns_failure(exc: BaseException) -> bool:
    """True when a connect error was caused by an unresolvable host."""
    text = str(exc).lower()
    cause = exc.__cause__ or exc.__context__
    if cause is not None:
        text = f"{text} {cause}".lower()
    return any(marker in text for marker in DNS_FAILURE_MARKERS)


def build_success_payload(job: JobRecord) -> Dict[str, Any]:
    now = utc_now().isoformat()
    artifact = job.artifact
    return {
        "processing_id": job.processing_id,
        "correlation_id": job.processing_id,
        "status": "completed",
        "timestamp": now,
        "message": "Video processing completed successfully",
        "shorts_results": [short.to_dict() for short in job.shorts],
        "total_shorts": len(job.shorts),
        "video_info": job.video_info,
        "platform": job.platform,
        "subscription_type": job.tier.value,
        "processing_completed_at": (job.finished_at or utc_now()).isoformat(),
        "usage_stats": {
            "shorts_generated": len(job.shorts),
            "max_shorts_allowed": job.limits.max_shorts,
            "processing_time_seconds": job.elapsed_seconds,
            "video_duration_seconds": artifact.info.duration if artifact and artifact.info else None,
            "source_size_mb": artifact.size_mb if artifact else None,
        },
    }


def build_failure_payload(job: JobRecord) -> Dict[str, Any]:
    kind = job.error_kind or ErrorKind.UNKNOWN
    now = utc_now().isoformat()
    return {
        "processing_id": job.processing_id,
        "correlation_id": job.processing_id,
        "status": "failed",
        "timestamp": now,
        "message": "Video processing failed",
        "error": {
            "message": job.error_message or user_message(kind),
            "user_message": user_message(kind),
            "category": kind.value,
            "retry_later": is_retry_later(kind),
            "timestamp": now,
            "processing_time": job.elapsed_seconds,
        },
        "video_url": job.source_url,
        "platform": job.platform,
    }


class WebhookService:
    """
    Delivers callbacks with a fixed delay schedule.

    2xx succeeds; 404, DNS failures and most other 4xx are final; 408, 429,
    5xx, timeouts and connection errors are retried. 429 waits twice as long.
    """

    def __init__(
        self,
        attempts: int = None,
        delays: Optional[List[float]] = None,
        timeout: float = None,
        user_agent: str = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.attempts = attempts or settings.webhook_attempts
        self.delays = list(delays if delays is not None else settings.webhook_delays_seconds)
        self.timeout = timeout or settings.webhook_timeout_seconds
        self.user_agent = user_agent or settings.webhook_user_agent
        self._sleep = sleep

    def _headers(self, processing_id: str, attempt_no: int) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "User-Agent": self.user_agent,
            "X-Processing-ID": processing_id,
            "X-Callback-Attempt": str(attempt_no),
        }

    async def _post_once(
        self,
        url: str,
        payload: Dict[str, Any],
        processing_id: str,
        attempt_no: int,
    ) -> WebhookResult:
        logger.info(f"[{processing_id}] Sending callback attempt {attempt_no}/{self.attempts}")
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    url,
                    json=payload,
                    headers=self._headers(processing_id, attempt_no),
                )
        except httpx.TimeoutException as exc:
            raise _RetryableCallback(f"Callback timed out: {exc}") from exc
        except httpx.ConnectError as exc:
            if is_dns_failure(exc):
                logger.error(f"[{processing_id}] Webhook host not found: {url}")
                return WebhookResult(False, None, attempt_no, "Webhook host not found", final=True)
            raise _RetryableCallback(f"Connection to webhook failed: {exc}") from exc
        except httpx.HTTPError as exc:
            raise _RetryableCallback(f"Webhook request failed: {exc}") from exc

        status = response.status_code
        if 200 <= status < 300:
            logger.info(f"[{processing_id}] Callback delivered, status {status}")
            return WebhookResult(True, status, attempt_no)
        if status == 404:
            logger.error(f"[{processing_id}] Webhook endpoint not found (404): {url}")
            return WebhookResult(False, status, attempt_no, "Webhook endpoint not found (404)", final=True)
        if status == 429:
            raise _RetryableCallback("Webhook rate limited (429)", status, delay_multiplier=2.0)
        if status == 408:
            raise _RetryableCallback("Webhook request timeout (408)", status)
        if 400 <= status < 500:
            logger.error(f"[{processing_id}] Webhook rejected callback with client error {status}")
            return WebhookResult(False, status, attempt_no, f"Client error: {status}", final=True)
        if status >= 500:
            raise _RetryableCallback(f"Webhook server error {status}", status)
        return WebhookResult(False, status, attempt_no, f"Unexpected status {status}", final=True)

    async def send_callback(
        self,
        url: str,
        payload: Dict[str, Any],
        processing_id: str,
    ) -> WebhookResult:
        """
        Deliver one payload, retrying per the schedule.

        Never raises for delivery problems; the outcome is returned and logged.
        """
        if not is_valid_callback_url(url):
            logger.warning(f"[{processing_id}] Invalid webhook URL provided: {url}")
            return WebhookResult(False, None, 0, "Invalid webhook URL", final=True)

        def _delay_for(exc: BaseException, delay: float) -> float:
            if isinstance(exc, _RetryableCallback):
                return delay * exc.delay_multiplier
            return delay

        def _on_retry(attempt_no: int, exc: BaseException, delay: float):
            logger.warning(f"[{processing_id}] Callback attempt {attempt_no} failed: {exc}; retrying in {delay:.1f}s")

        try:
            return await retry_with_backoff(
                lambda attempt_no: self._post_once(url, payload, processing_id, attempt_no),
                RetryPolicy(max_attempts=self.attempts, delays=self.delays),
                should_retry=lambda exc: isinstance(exc, _RetryableCallback),
                delay_for=_delay_for,
                on_retry=_on_retry,
                sleep=self._sleep,
            )
        except _RetryableCallback as exc:
            logger.error(f"[{processing_id}] All {self.attempts} callback attempts failed. Last error: {exc}")
            return WebhookResult(False, exc.status_code, self.attempts, str(exc))

    async def send_success(self, url: str, job: JobRecord) -> WebhookResult:
        return await self.send_callback(url, build_success_payload(job), job.processing_id)

    async def send_failure(self, url: str, job: JobRecord) -> WebhookResult:
        return await self.send_callback(url, build_failure_payload(job), job.processing_id)

    async def test_webhook(self, url: str, processing_id: str = "test") -> WebhookResult:
        """Single connectivity check, no retries."""
        if not is_valid_callback_url(url):
            return WebhookResult(False, None, 0, "Invalid webhook URL format", final=True)
        payload = {
            "processing_id": processing_id,
            "status": "test",
            "message": "Webhook connectivity test",
            "timestamp": utc_now().isoformat(),
        }
        try:
            return await self._post_once(url, payload, processing_id, 1)
        except _RetryableCallback as exc:
            return WebhookResult(False, exc.status_code, 1, str(exc))
