"""
Retry helpers with exponential backoff.

Two layers use these: the CRM client retries connection-level failures in
place, and the work queue reschedules failed jobs with growing delays.
"""

import time
import functools
from typing import Callable, Type, Tuple, Optional


class RetryError(Exception):
    """Raised when all in-place retry attempts are exhausted."""

    def __init__(self, message: str, attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts


def backoff_delay(
    attempt: int,
    base_delay: float = 5.0,
    max_delay: float = 300.0,
    exponential_base: float = 2.0,
) -> float:
    """
    Delay before the next try after `attempt` failures.

    Args:
        attempt: Number of failed attempts so far (1 = first failure)
        base_delay: Delay after the first failure in seconds
        max_delay: Upper bound in seconds
        exponential_base: Growth factor per attempt

    Returns:
        Delay in seconds
    """
    if attempt < 1:
        return 0.0
    return min(base_delay * exponential_base ** (attempt - 1), max_delay)


def exponential_backoff(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    on_retry: Optional[Callable] = None,
):
    """
    Decorator retrying a function with exponential backoff.

    Args:
        max_retries: Maximum number of retry attempts (0 = no retries)
        base_delay: Initial delay in seconds
        max_delay: Maximum delay between retries in seconds
        exponential_base: Base for exponential calculation
        exceptions: Exception types that trigger a retry; others propagate at once
        on_retry: Optional callback function(attempt, exception, delay)

    Example:
        @exponential_backoff(max_retries=3, base_delay=1.0)
        def fetch_record(url):
            return requests.get(url)
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            for attempt in range(1, max_retries + 2):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if attempt > max_retries:
                        raise RetryError(
                            f"Failed after {attempt} attempts: {e}", attempts=attempt
                        ) from e

                    delay = backoff_delay(attempt, base_delay, max_delay, exponential_base)
                    if on_retry:
                        on_retry(attempt, e, delay)
                    time.sleep(delay)

        return wrapper
    return decorator


def is_transient_error(exception: Exception) -> bool:
    """
    Guess whether an unexpected exception is worth retrying.

    Args:
        exception: Exception to check

    Returns:
        True if the message looks like a timeout, connection drop, lock or 5xx
    """
    error_str = str(exception).lower()

    transient_keywords = [
        'timeout',
        'timed out',
        'connection',
        'temporary failure',
        'service unavailable',
        'database is locked',
        '503',
        '502',
        '500',
        '429',  # Rate limit
    ]

    return any(keyword in error_str for keyword in transient_keywords)


def should_retry_http_status(status_code: int) -> bool:
    """
    Check if an HTTP status code from the CRM API is retryable.

    Args:
        status_code: HTTP status code

    Returns:
        True if should retry
    """
    retryable_codes = {
        408,  # Request Timeout
        429,  # Too Many Requests
        500,  # Internal Server Error
        502,  # Bad Gateway
        503,  # Service Unavailable
        504,  # Gateway Timeout
    }

    return status_code in retryable_codes
