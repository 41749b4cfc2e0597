"""Retry-with-timeout wrapper for outbound provider calls.

WHAT:
    Runs an async operation with a per-attempt timeout and retries it when it
    fails with a retryable error (timeout, HTTP 429, HTTP 5xx, network error).

WHY:
    Email, SMS, calendar and ad-platform calls all share the same transient
    failure modes. Terminal errors (bad credentials, invalid payload) are
    raised on the first attempt so callers can record them immediately.

USAGE:
    result = await with_retry_and_timeout(
        lambda: client.post(url, json=payload),
        attempts=2, base_delay=1.0, timeout=15.0, label="META_CAPI",
    )
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

import httpx

logger = logging.getLogger(__name__)

T = TypeVar("T")

BACKOFF_EXPONENTIAL = "exponential"
BACKOFF_LINEAR = "linear"


class RetryableError(Exception):
    """Transient failure worth another attempt."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def is_retryable_status(status_code: int) -> bool:
    """HTTP 429 and 5xx are transient; everything else is terminal."""
    return status_code == 429 or status_code >= 500


def is_retryable_exception(exc: BaseException) -> bool:
    return isinstance(exc, (RetryableError, asyncio.TimeoutError, httpx.TimeoutException, httpx.TransportError))


def backoff_delay(attempt: int, base_delay: float, strategy: str = BACKOFF_EXPONENTIAL) -> float:
    """Delay before attempt `attempt + 1` (attempt is 1-based).

    exponential: base, 2*base, 4*base...
    linear:      base, 2*base, 3*base...
    """
    if strategy == BACKOFF_LINEAR:
        return base_delay * attempt
    return base_delay * (2 ** (attempt - 1))


async def with_retry_and_timeout(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int = 2,
    base_delay: float = 1.0,
    timeout: Optional[float] = 15.0,
    backoff: str = BACKOFF_EXPONENTIAL,
    label: str = "RETRY",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run `operation` up to `attempts` times.

    Args:
        operation: Zero-arg callable returning a fresh awaitable per attempt
        attempts: Total attempts (not retries)
        base_delay: Seconds before the first retry
        timeout: Per-attempt timeout in seconds (None disables)
        backoff: BACKOFF_EXPONENTIAL or BACKOFF_LINEAR
        label: Log tag of the calling subsystem
        sleep: Injected for tests

    Raises:
        The last error once attempts are exhausted, or the first
        non-retryable error immediately.
    """
    last_error: Optional[BaseException] = None

    for attempt in range(1, attempts + 1):
        try:
            if timeout is None:
                return await operation()
            return await asyncio.wait_for(operation(), timeout=timeout)
        except Exception as e:
            if isinstance(e, asyncio.TimeoutError):
                e = RetryableError(f"Timed out after {timeout}s")
            if not is_retryable_exception(e):
                raise e
            last_error = e
            if attempt < attempts:
                wait_time = backoff_delay(attempt, base_delay, backoff)
                logger.warning(
                    "[%s] Attempt %d/%d failed (%s), retrying in %.1fs",
                    label, attempt, attempts, e, wait_time,
                )
                await sleep(wait_time)

    assert last_error is not None
    raise last_error
