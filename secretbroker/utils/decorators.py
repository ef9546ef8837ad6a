"""Reusable decorators."""

import functools
import time
from typing import Callable, Type

from secretbroker.utils.logging import get_logger

logger = get_logger(__name__)


def retry(
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 2.0,
    exceptions: tuple[Type[Exception], ...] = (Exception,),
) -> Callable:
    """
    Retry function on failure with exponential backoff.

    Args:
        max_attempts: Number of attempts before giving up
        delay: Seconds before the first retry
        backoff: Multiplier applied to the delay after each retry
        exceptions: Tuple of exceptions to catch

    Usage:
        @retry(max_attempts=5, delay=0.05, exceptions=(BlockingIOError,))
        def take_lock():
            ...
    """

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            wait = delay
            for attempt in range(1, max_attempts + 1):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if attempt >= max_attempts:
                        logger.warning(
                            f"{func.__name__} failed after {max_attempts} attempts"
                        )
                        raise
                    logger.debug(
                        f"{func.__name__} failed (attempt {attempt}/{max_attempts}): {e}. "
                        f"Retrying in {wait:.3f}s..."
                    )
                    time.sleep(wait)
                    wait *= backoff

        return wrapper

    return decorator
