"""
Admission control and adaptive backoff for upstream video hosts.

A sliding window caps requests per domain; consecutive failures impose an
exponential floor between requests; bot detection opens a global cooldown
during which every admission is denied. Any success resets the failure count
and closes the cooldown.
"""
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, Optional
from urllib.parse import urlparse

from shortsmith.config import settings
from shortsmith.pipeline.errors import ErrorKind, classify, classify_exception

logger = logging.getLogger(__name__)


@dataclass
class Admission:
    """Result of an admission check."""
    allowed: bool
    retry_after: float = 0.0
    reason: str = ""

    def __bool__(self):
        return self.allowed


@dataclass
class DomainState:
    """Request history and failure streak for one domain."""
    timestamps: Deque[float] = field(default_factory=deque)
    consecutive_failures: int = 0


def domain_for(url: str) -> str:
    """Extract the hostname a request counts against."""
    try:
        host = urlparse(url).hostname
    except ValueError:
        host = None
    return host or "unknown"


class RateGovernor:
    """
    Thread-safe per-domain rate limiter with a global bot-detection cooldown.

    Constructed once per process by whatever composes the pipeline and
    passed explicitly to the acquisition stage.
    """

    def __init__(
        self,
        max_requests: int = None,
        window_seconds: float = None,
        base_backoff: float = None,
        max_backoff: float = None,
        bot_backoff: float = None,
        max_global_backoff: float = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_requests = max_requests if max_requests is not None else settings.rate_max_requests
        self.window_seconds = window_seconds if window_seconds is not None else settings.rate_window_seconds
        self.base_backoff = base_backoff if base_backoff is not None else settings.rate_base_backoff_seconds
        self.max_backoff = max_backoff if max_backoff is not None else settings.rate_max_backoff_seconds
        self.bot_backoff = bot_backoff if bot_backoff is not None else settings.rate_bot_backoff_seconds
        self.max_global_backoff = (
            max_global_backoff if max_global_backoff is not None
            else settings.rate_max_global_backoff_seconds
        )
        self._clock = clock
        self._domains: Dict[str, DomainState] = {}
        self._cooldown_until = 0.0
        self._lock = threading.Lock()

    def _state(self, domain: str) -> DomainState:
        state = self._domains.get(domain)
        if state is None:
            state = DomainState()
            self._domains[domain] = state
        return state

    def _prune(self, state: DomainState, now: float) -> None:
        while state.timestamps and now - state.timestamps[0] >= self.window_seconds:
            state.timestamps.popleft()

    def backoff_floor(self, failures: int) -> float:
        """Minimum spacing between requests after ``failures`` failures."""
        if failures <= 0:
            return 0.0
        return min(self.max_backoff, self.base_backoff * (2 ** failures))

    def admit(self, domain: str) -> Admission:
        """Check whether a request to ``domain`` may go out now."""
        with self._lock:
            now = self._clock()
            state = self._state(domain)
            self._prune(state, now)

            if self._cooldown_until > now:
                wait = self._cooldown_until - now
                return Admission(False, wait, f"Global cooldown active for {wait:.0f}s")

            if len(state.timestamps) >= self.max_requests:
                wait = self.window_seconds - (now - state.timestamps[0])
                return Admission(False, max(wait, 0.0), f"Rate limit reached for {domain}")

            floor = self.backoff_floor(state.consecutive_failures)
            if floor and state.timestamps:
                elapsed = now - state.timestamps[-1]
                if elapsed < floor:
                    return Admission(False, floor - elapsed, f"Exponential backoff active for {domain}")

            state.timestamps.append(now)
            return Admission(True)

    def report_failure(self, domain: str, error) -> ErrorKind:
        """Record a failed request; bot detection opens the global cooldown."""
        kind = classify_exception(error) if isinstance(error, BaseException) else classify(error)
        with self._lock:
            state = self._state(domain)
            state.consecutive_failures += 1
            failures = state.consecutive_failures
            if kind == ErrorKind.BOT_DETECTION:
                backoff = min(self.max_global_backoff, self.bot_backoff * (2 ** min(failures, 5)))
                self._cooldown_until = self._clock() + backoff
                logger.warning(
                    f"Bot detection from {domain} after {failures} consecutive failures; "
                    f"cooling down for {backoff:.0f}s"
                )
        return kind

    def report_success(self, domain: str) -> None:
        """Reset the failure streak and close any cooldown."""
        with self._lock:
            self._state(domain).consecutive_failures = 0
            self._cooldown_until = 0.0

    def cooldown_remaining(self) -> float:
        with self._lock:
            return max(0.0, self._cooldown_until - self._clock())

    def failures(self, domain: str) -> int:
        with self._lock:
            state: Optional[DomainState] = self._domains.get(domain)
            return state.consecutive_failures if state else 0
