"""
Bounded retry with exponential backoff, cap and jitter.

The default policy is the contract the sync pipeline is tested against:
3 attempts, 1s initial delay, factor 2, capped at 10s, +/-10% jitter.
Callers may override the attempt count; the shape stays the same.
"""

import asyncio
import logging
import random
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

from core.config import settings
from core.exceptions import NonRetryableError, RetryableError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff policy."""

    max_attempts: int = 3
    initial_delay: float = 1.0
    factor: float = 2.0
    max_delay: float = 10.0
    jitter: float = 0.1

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if not 0 <= self.jitter < 1:
            raise ValueError("jitter must be in [0, 1)")

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_attempts=settings.MAX_RETRIES,
            initial_delay=settings.RETRY_INITIAL_DELAY,
            factor=settings.RETRY_BACKOFF_FACTOR,
            max_delay=settings.RETRY_MAX_DELAY,
            jitter=settings.RETRY_JITTER,
        )

    def with_attempts(self, max_attempts: int) -> "RetryPolicy":
        return replace(self, max_attempts=max_attempts)

    def base_delay(self, attempt: int) -> float:
        """Delay before retrying after failed attempt number `attempt` (1-based), without jitter."""
        return min(self.initial_delay * (self.factor ** (attempt - 1)), self.max_delay)

    def delay_for(self, attempt: int, rng: Callable[[], float] = random.random) -> float:
        base = self.base_delay(attempt)
        spread = self.jitter * (2 * rng() - 1)
        return min(max(base * (1 + spread), 0.0), self.max_delay)


DEFAULT_RETRY_POLICY = RetryPolicy()


async def retry_async(
    operation: Callable[[], Awaitable[Any]],
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    *,
    description: str,
    retry_on: Tuple[Type[BaseException], ...] = (RetryableError,),
    timeout: Optional[float] = None,
    timeout_error: Type[RetryableError] = RetryableError,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    rng: Callable[[], float] = random.random,
) -> Any:
    """
    Run `operation` until it succeeds or the policy is exhausted.

    Args:
        operation: Zero-argument async callable, invoked once per attempt
        policy: Backoff policy
        description: Human-readable name of the operation for logs
        retry_on: Exception types that trigger another attempt
        timeout: Per-attempt timeout in seconds (None disables it)
        timeout_error: Retryable error raised when an attempt times out
        sleep: Awaitable sleep, injectable for tests
        rng: Uniform [0, 1) source for jitter, injectable for tests

    Returns:
        Whatever `operation` returns on its first successful attempt

    Raises:
        NonRetryableError: Immediately, without further attempts
        The last retryable error once all attempts are used
    """
    for attempt in range(1, policy.max_attempts + 1):
        try:
            if timeout is not None:
                return await asyncio.wait_for(operation(), timeout)
            return await operation()

        except NonRetryableError:
            raise

        except asyncio.TimeoutError as e:
            error = timeout_error(
                f"{description} timed out after {timeout}s",
                context={"attempt": attempt, "timeout": timeout},
                original_exception=e
            )

        except retry_on as e:
            error = e

        if attempt >= policy.max_attempts:
            logger.error(
                f"{description} failed after {attempt} attempts",
                extra={"error_context": getattr(error, "to_dict", lambda: {})()}
            )
            raise error

        delay = policy.delay_for(attempt, rng)
        logger.warning(
            f"{description} failed (attempt {attempt}/{policy.max_attempts}): "
            f"{type(error).__name__}. Retrying in {delay:.2f} seconds"
        )
        await sleep(delay)

    # Unreachable: the loop either returns or raises
    raise RuntimeError(f"{description}: retry loop exited without result")
