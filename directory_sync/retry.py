"""
Retry utilities for handling transient failures.

Async counterparts of the classic retry helpers: coroutine functions are
re-awaited with a fixed or exponentially growing delay.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Any, Tuple, Type, Optional

logger = logging.getLogger(__name__)


class MaxRetriesExceeded(Exception):
    """Raised when maximum retry attempts are exceeded."""

    def __init__(self, attempts: int, last_exception: Exception):
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"Failed after {attempts} attempts: {last_exception}")


async def retry_async(
    func: Callable[..., Awaitable[Any]],
    *args,
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 1.0,
    exceptions: Tuple[Type[BaseException], ...] = (Exception,),
    should_retry: Optional[Callable[[BaseException], bool]] = None,
    on_retry: Optional[Callable[[int, BaseException], None]] = None,
    **kwargs
) -> Any:
    """
    Await a coroutine function with retry logic.

    Args:
        func: Coroutine function to call
        max_attempts: Maximum number of attempts (including the first)
        delay: Initial delay between attempts in seconds
        backoff: Delay multiplier applied after each failed attempt
        exceptions: Exception types that are candidates for retry
        should_retry: Optional predicate; returning False re-raises immediately
        on_retry: Optional callback invoked with (attempt, exception) before sleeping

    Returns:
        The coroutine's result

    Raises:
        MaxRetriesExceeded: If all attempts fail
    """
    last_exception = None
    current_delay = delay

    for attempt in range(max_attempts):
        try:
            result = await func(*args, **kwargs)
            if attempt > 0:
                logger.info(f"Operation succeeded on attempt {attempt + 1}")
            return result
        except exceptions as e:
            if should_retry is not None and not should_retry(e):
                raise
            last_exception = e

            if attempt == max_attempts - 1:
                break

            logger.debug(f"Attempt {attempt + 1} failed with {type(e).__name__}: {e}; "
                         f"retrying in {current_delay:.1f} seconds")

            if on_retry:
                try:
                    on_retry(attempt + 1, e)
                except Exception as callback_error:
                    logger.warning(f"Retry callback failed: {callback_error}")

            await asyncio.sleep(current_delay)
            current_delay *= backoff

    raise MaxRetriesExceeded(max_attempts, last_exception)


def is_retryable_error(exception: BaseException) -> bool:
    """
    Determine if an exception indicates a transient failure.

    Args:
        exception: Exception to check

    Returns:
        True if retrying might succeed
    """
    if getattr(exception, 'retryable', False) is True:
        return True

    # Status-coded errors: only throttling and server-side failures are transient
    status_code = getattr(exception, 'status_code', None)
    if status_code is not None:
        return status_code == 429 or 500 <= status_code < 600

    if isinstance(exception, (ConnectionError, TimeoutError)):
        return True

    error_msg = str(exception).lower()
    transient_patterns = [
        'timeout',
        'timed out',
        'connection reset',
        'connection refused',
        'network is unreachable',
        'temporary failure',
        'service unavailable',
        'too many requests'
    ]
    return any(pattern in error_msg for pattern in transient_patterns)


def create_retry_callback(operation_name: str) -> Callable[[int, BaseException], None]:
    """Create a callback that logs each retry of ``operation_name``."""
    def on_retry(attempt: int, exception: BaseException):
        logger.warning(f"{operation_name} failed on attempt {attempt}, "
                       f"retrying due to {type(exception).__name__}: {exception}")

    return on_retry
