"""Retry helpers for remote calls."""

import logging
import random
import time
from functools import wraps
from typing import Callable, Optional, Tuple, Type

from .errors import TransientError

logger = logging.getLogger(__name__)


def backoff_delay(attempt: int, base_delay: float = 1.0, max_delay: float = 60.0) -> float:
    """Compute exponential backoff with jitter for a 0-based attempt number.

    Args:
        attempt: Number of attempts already failed (0 for the first retry)
        base_delay: Delay before the first retry, in seconds
        max_delay: Upper bound for the exponential part

    Returns:
        Delay in seconds
    """
    delay = min(base_delay * (2 ** attempt), max_delay)
    return delay + random.uniform(0, delay / 2)


def retry_on_failure(
    max_retries: int = 5,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    retry_on: Tuple[Type[BaseException], ...] = (TransientError,),
    sleep: Callable[[float], None] = time.sleep,
    attempts_attr: Optional[str] = None,
):
    """Decorator to retry a function on transient failure with exponential backoff.

    Only exceptions listed in ``retry_on`` are retried; anything else
    (permission denied, not found, ...) propagates on the first attempt.
    A ``retry_after`` entry in the exception's ``details`` overrides the
    computed delay when it is larger.

    Args:
        max_retries: Maximum number of attempts
        base_delay: Delay before the first retry, in seconds
        max_delay: Upper bound for the exponential part of the delay
        retry_on: Exception classes considered transient
        sleep: Sleep function (injectable for tests)
        attempts_attr: Attribute of the decorated method's instance that,
            when set, overrides ``max_retries``
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            attempts = max_retries
            if attempts_attr and args:
                attempts = getattr(args[0], attempts_attr, None) or max_retries
            for attempt in range(attempts):
                try:
                    return func(*args, **kwargs)
                except retry_on as e:
                    if attempt >= attempts - 1:
                        logger.error(f"{func.__name__} failed after {attempts} attempts: {e}")
                        raise
                    wait_time = backoff_delay(attempt, base_delay, max_delay)
                    retry_after = _retry_after(e)
                    if retry_after is not None and retry_after > wait_time:
                        wait_time = retry_after
                    logger.warning(
                        f"{func.__name__} attempt {attempt + 1} failed, retrying in {wait_time:.1f}s: {e}"
                    )
                    sleep(wait_time)
        return wrapper
    return decorator


def _retry_after(error: BaseException) -> Optional[float]:
    details = getattr(error, 'details', None) or {}
    value = details.get('retry_after')
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None
