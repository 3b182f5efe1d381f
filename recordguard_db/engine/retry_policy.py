"""
Bounded retry with exponential backoff and jitter.

    attempt 1 ──fail(transient)──> sleep(min(base * 2^0 + U(0, jitter), max)) ──>
    attempt 2 ──fail(transient)──> sleep(min(base * 2^1 + U(0, jitter), max)) ──>
    ...
    attempt max_retries + 1 ──fail──> re-raise last error

    any attempt ──fail(conflict / duplicate / not found / lock held / invalid)──>
        re-raise immediately, no sleep

Conflicts need a human or a fresh read-modify-write cycle, so retrying them blindly
would only hide them. Everything else is treated as transient.
"""
import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from recordguard_exception_model.exception import (
    ConflictException, DuplicateRecordError, InvalidDataException, LockHeldError, RecordNotFoundError
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

NON_RETRYABLE_ERRORS = (
    ConflictException,
    DuplicateRecordError,
    RecordNotFoundError,
    LockHeldError,
    InvalidDataException,
)


def is_retryable(error: BaseException) -> bool:
    return isinstance(error, Exception) and not isinstance(error, NON_RETRYABLE_ERRORS)


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry configuration, delays in seconds.

    Attributes:
        max_retries: Retries after the first attempt; 0 runs the operation exactly once
        base_delay: Delay before the first retry, doubled for every further retry
        max_delay: Upper bound of any single delay
        jitter: Upper bound of the uniform random component added to each delay
    """
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 5.0
    jitter: float = 1.0

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay < 0 or self.max_delay < 0 or self.jitter < 0:
            raise ValueError("delays must be >= 0")

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def compute_delay(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        """Delay to wait after failed attempt number `attempt` (1-based)."""
        uniform = (rng or random).uniform
        jitter = uniform(0, self.jitter) if self.jitter > 0 else 0.0
        return min(self.base_delay * (2 ** (attempt - 1)) + jitter, self.max_delay)

    @staticmethod
    def from_settings(settings) -> "RetryPolicy":
        return RetryPolicy(
            max_retries=settings.max_retries,
            base_delay=settings.base_delay,
            max_delay=settings.max_delay,
            jitter=settings.jitter
        )


DEFAULT_RETRY_POLICY = RetryPolicy()
NO_RETRY = RetryPolicy(max_retries=0, base_delay=0.0, max_delay=0.0, jitter=0.0)


async def with_retry(operation: Callable[[], Awaitable[T]],
                     policy: RetryPolicy = DEFAULT_RETRY_POLICY,
                     on_retry: Optional[Callable[[int, BaseException], None]] = None,
                     sleep: Callable[[float], Awaitable[None]] = asyncio.sleep) -> T:
    """
    Run `operation` until it succeeds, fails with a non-retryable error, or the
    attempt budget (max_retries + 1) is spent.

    Args:
        operation: Zero-argument coroutine function
        policy: Retry bounds and delays
        on_retry: Called with (attempt, error) before every retry
        sleep: Awaitable sleep, replaceable in tests

    Returns:
        The operation's result

    Raises:
        The non-retryable error as soon as it occurs, or the last transient error
        once the budget is exhausted
    """
    attempt = 1
    while True:
        try:
            return await operation()
        except Exception as e:
            if not is_retryable(e):
                raise
            if attempt >= policy.max_attempts:
                if policy.max_attempts > 1:
                    logger.error(f"Operation failed after {attempt} attempts: {e}")
                raise

            delay = policy.compute_delay(attempt)
            logger.warning(f"Attempt {attempt} failed, retrying in {delay:.3f}s: {e}")
            if on_retry is not None:
                on_retry(attempt, e)
            await sleep(delay)
            attempt += 1
