"""
Generic retry helpers.

retry() runs an awaitable factory up to `times` attempts. The error raised
by the final attempt propagates unchanged so callers can tell exhaustion of
a transient failure apart from an immediate non-retryable one.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from sealback.errors import NON_RETRYABLE_ERRORS

T = TypeVar('T')

RetryCallback = Callable[[Exception, int], None]

logger = logging.getLogger(__name__)


def linear_backoff(base_delay: float) -> Callable[[int], float]:
    """Delay policy growing as attempt * base_delay."""
    return lambda attempt: attempt * base_delay


def fixed_delay(delay: float) -> Callable[[int], float]:
    return lambda attempt: delay


async def retry(
    fn: Callable[[], Awaitable[T]],
    times: int = 3,
    delay: float = 1.0,
    on_retry: Optional[RetryCallback] = None,
    backoff: Optional[Callable[[int], float]] = None,
    non_retryable: Tuple[Type[BaseException], ...] = NON_RETRYABLE_ERRORS,
    log: Optional[logging.Logger] = None,
) -> T:
    """
    Call `fn` until it succeeds or `times` attempts have failed.

    Args:
        fn: Zero-argument callable returning an awaitable
        times: Maximum number of attempts (>= 1)
        delay: Fixed delay in seconds between attempts
        on_retry: Optional callback invoked with (error, attempt) before sleeping
        backoff: Optional policy mapping attempt number to delay; overrides `delay`
        non_retryable: Exception types re-raised on first occurrence
        log: Logger to report failed attempts to

    Returns:
        Whatever `fn` returns on its first successful attempt

    Raises:
        The exception raised by the last attempt, unwrapped
    """
    if times < 1:
        raise ValueError(f"times must be >= 1, got {times}")

    log = log or logger
    delay_for = backoff or fixed_delay(delay)

    for attempt in range(1, times + 1):
        try:
            return await fn()
        except non_retryable:
            raise
        except Exception as e:
            if attempt == times:
                log.error(f"Giving up after {times} attempts: {e}")
                raise

            wait = delay_for(attempt)
            log.warning(f"Attempt {attempt}/{times} failed, retrying in {wait:g}s: {e}")

            if on_retry:
                on_retry(e, attempt)
            await asyncio.sleep(wait)

    raise AssertionError('unreachable')
