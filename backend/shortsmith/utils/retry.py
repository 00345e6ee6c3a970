"""Bounded retry-with-backoff shared by acquisition, upload and webhook delivery."""
import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Sequence, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
)
from tenacity.wait import wait_base

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """How many attempts to make and how long to wait between them.

    When ``delays`` is given it is used as an explicit schedule (the last
    entry repeats); otherwise the delay grows as
    ``base_delay * multiplier ** (attempt - 1)`` capped at ``max_delay``.
    """
    max_attempts: int = 3
    delays: Optional[Sequence[float]] = None
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 60.0
    jitter: float = 0.0

    def delay_for(self, attempt: int) -> float:
        """Delay after the given (1-based) failed attempt."""
        if self.delays:
            index = min(attempt - 1, len(self.delays) - 1)
            delay = float(self.delays[index])
        else:
            delay = min(self.max_delay, self.base_delay * (self.multiplier ** (attempt - 1)))
        if self.jitter:
            delay += random.uniform(0, self.jitter)
        return max(0.0, delay)

    @classmethod
    def linear(cls, max_attempts: int, step: float) -> "RetryPolicy":
        """Delays of step, 2*step, 3*step, ..."""
        return cls(
            max_attempts=max_attempts,
            delays=[step * n for n in range(1, max(max_attempts, 1) + 1)],
        )


class _PolicyWait(wait_base):
    """Tenacity wait strategy driven by a RetryPolicy."""

    def __init__(
        self,
        policy: RetryPolicy,
        delay_for: Optional[Callable[[BaseException, float], float]] = None,
    ):
        self.policy = policy
        self.delay_for = delay_for

    def __call__(self, retry_state: RetryCallState) -> float:
        delay = self.policy.delay_for(retry_state.attempt_number)
        if self.delay_for and retry_state.outcome is not None:
            exc = retry_state.outcome.exception()
            if exc is not None:
                delay = self.delay_for(exc, delay)
        return delay


def _always(_exc: BaseException) -> bool:
    return True


async def retry_with_backoff(
    operation: Callable[[int], Awaitable[T]],
    policy: RetryPolicy,
    should_retry: Callable[[BaseException], bool] = _always,
    delay_for: Optional[Callable[[BaseException, float], float]] = None,
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run ``operation`` until it succeeds or the policy is exhausted.

    Args:
        operation: Async callable receiving the 1-based attempt number
        policy: Attempt count and delay schedule
        should_retry: Predicate on the raised exception; False stops immediately
        delay_for: Optional hook adjusting the computed delay for an exception
        on_retry: Optional callback(attempt, exc, delay) before each sleep
        sleep: Async sleep function (injectable for tests)

    Returns:
        The operation's result

    Raises:
        The last exception raised by the operation
    """
    def _before_sleep(retry_state: RetryCallState):
        if on_retry is None or retry_state.outcome is None:
            return
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        on_retry(retry_state.attempt_number, retry_state.outcome.exception(), delay)

    retrying = AsyncRetrying(
        stop=stop_after_attempt(max(1, policy.max_attempts)),
        wait=_PolicyWait(policy, delay_for),
        # Cancellation and other BaseExceptions always propagate.
        retry=retry_if_exception(lambda exc: isinstance(exc, Exception) and should_retry(exc)),
        before_sleep=_before_sleep,
        sleep=sleep,
        reraise=True,
    )

    async for attempt in retrying:
        with attempt:
            return await operation(attempt.retry_state.attempt_number)

    # Unreachable: tenacity either returns a result or reraises.
    raise RuntimeError("retry loop exited without a result")
