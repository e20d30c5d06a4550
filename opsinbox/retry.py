"""Retry logic with exponential backoff for calls to the mail provider."""
import time
import logging
from functools import wraps

logger = logging.getLogger("opsinbox.retry")


class TransientError(Exception):
    """Errors that may resolve on retry (network, API rate limit, timeout).

    retry_after, when set, is the minimum wait in seconds the server asked for.
    """

    def __init__(self, message: str = "", retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class PermanentError(Exception):
    """Errors that won't resolve on retry (auth revoked, bad data)."""
    pass


def with_retry(max_attempts=3, base_delay=1, max_delay=60):
    """Decorator for exponential backoff retry on TransientError.

    Args:
        max_attempts: Maximum retry attempts
        base_delay: Initial delay in seconds
        max_delay: Maximum delay cap in seconds
    """
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            last_error = None
            for attempt in range(1, max_attempts + 1):
                try:
                    return func(*args, **kwargs)
                except PermanentError:
                    raise
                except TransientError as e:
                    last_error = e
                    if attempt < max_attempts:
                        delay = min(base_delay * (2 ** (attempt - 1)), max_delay)
                        if e.retry_after:
                            delay = min(max(delay, e.retry_after), max_delay)
                        logger.warning(
                            "Attempt %d/%d for %s failed: %s. Retrying in %.1fs...",
                            attempt, max_attempts, func.__name__, e, delay,
                        )
                        time.sleep(delay)
                    else:
                        logger.error(
                            "All %d attempts for %s exhausted. Last error: %s",
                            max_attempts, func.__name__, e,
                        )
            raise last_error
        return wrapper
    return decorator
