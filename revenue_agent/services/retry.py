"""
Retry executor for outbound calls

Every reasoning call, embedding call, email send and webhook POST goes through
execute(). Each attempt races the operation against a timeout; transient
failures are retried with exponential backoff plus up to 10% jitter, anything
else propagates on the first attempt.
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx
from openai import APIConnectionError, APITimeoutError, RateLimitError

from revenue_agent.config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Substrings that mark an error as transient when its type doesn't
RETRYABLE_SIGNATURES = (
    "rate limit",
    "timeout",
    "timed out",
    "econnreset",
    "econnrefused",
    "connection reset",
    "connection refused",
    "socket hang up",
    "network",
    "429",
    "502",
    "503",
)

RETRYABLE_STATUS_CODES = {429, 502, 503}


def is_transient_error(error: BaseException) -> bool:
    """Default predicate: network, timeout and rate-limit failures are transient."""
    if isinstance(error, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return True
    if isinstance(error, (APITimeoutError, APIConnectionError, RateLimitError)):
        return True
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in RETRYABLE_STATUS_CODES
    if isinstance(error, (httpx.TimeoutException, httpx.NetworkError)):
        return True

    message = str(error).lower()
    return any(sig in message for sig in RETRYABLE_SIGNATURES)


@dataclass
class RetryPolicy:
    """Attempt budget and backoff parameters (seconds)"""
    max_attempts: int = 4
    base_delay: float = 1.0
    max_delay: float = 10.0
    timeout: float = 30.0
    is_retryable: Callable[[BaseException], bool] = field(default=is_transient_error)

    def backoff(self, attempt: int) -> float:
        """Delay before the retry that follows failed attempt number `attempt` (0-based)."""
        return min(self.base_delay * (2 ** attempt), self.max_delay)

    @classmethod
    def from_settings(cls, **overrides) -> "RetryPolicy":
        values = dict(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
            timeout=settings.retry_timeout,
        )
        values.update(overrides)
        return cls(**values)


async def execute(
    operation: Callable[[], Awaitable[T]],
    policy: Optional[RetryPolicy] = None,
    label: str = "operation",
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    rand: Callable[[], float] = random.random,
) -> T:
    """
    Run `operation` with bounded retry.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        policy: Retry budget (defaults from settings)
        label: Name used in log lines
        sleep: Injected for tests
        rand: Jitter source in [0, 1), injected for tests

    Returns:
        The operation's result

    Raises:
        The last error once the budget is exhausted, or the first
        non-retryable error immediately.
    """
    policy = policy or RetryPolicy.from_settings()
    attempts = max(1, policy.max_attempts)

    for attempt in range(attempts):
        try:
            return await asyncio.wait_for(operation(), timeout=policy.timeout)
        except Exception as e:
            last_attempt = attempt >= attempts - 1
            if last_attempt or not policy.is_retryable(e):
                if last_attempt and attempts > 1:
                    logger.error(f"[RETRY] {label} failed after {attempts} attempts: {e}")
                raise

            delay = policy.backoff(attempt)
            delay += delay * 0.1 * rand()
            logger.warning(
                f"[RETRY] {label} attempt {attempt + 1}/{attempts} failed, "
                f"retrying in {delay:.2f}s: {e}"
            )
            await sleep(delay)

    # Unreachable: the loop either returns or raises
    raise RuntimeError(f"{label}: retry loop exited without a result")
