"""Retry utilities for handling transient failures."""

from __future__ import annotations

import logging
import time
from functools import wraps
from typing import Any, Callable, Optional, Type, Tuple

import requests

logger = logging.getLogger(__name__)


def retry(
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 2.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    on_retry: Optional[Callable[[Exception, int], None]] = None,
    sleep: Optional[Callable[[float], None]] = None,
):
    """Retry decorator with exponential backoff.

    Args:
        max_attempts: Maximum number of attempts
        delay: Initial delay between attempts in seconds
        backoff: Multiplier for delay after each attempt
        exceptions: Tuple of exceptions to catch and retry
        on_retry: Optional callback called on each retry (exception, attempt_number)
        sleep: Function used to wait between attempts (default: time.sleep)

    Example:
        @retry(max_attempts=3, delay=1.0, backoff=2.0)
        def fetch_status():
            ...
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs) -> Any:
            current_delay = delay

            for attempt in range(1, max_attempts + 1):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if attempt >= max_attempts:
                        logger.error(f"All {max_attempts} attempts failed for {func.__name__}: {e}")
                        raise

                    logger.warning(
                        f"Attempt {attempt}/{max_attempts} failed for {func.__name__}: {e}. "
                        f"Retrying in {current_delay:.2f} seconds..."
                    )
                    if on_retry:
                        on_retry(e, attempt)

                    (sleep or time.sleep)(current_delay)
                    current_delay *= backoff

        return wrapper
    return decorator


def retry_on_connection_error(
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 2.0
):
    """Retry decorator for connection-level HTTP failures.

    HTTP error responses are not retried; the caller needs their body.
    """
    return retry(
        max_attempts=max_attempts,
        delay=delay,
        backoff=backoff,
        exceptions=(
            requests.exceptions.ConnectionError,
            requests.exceptions.Timeout,
        )
    )
