"""
Segmentation Retry Logic

Bounded, fixed-delay retry for single profile updates that failed inside a
batched update. Built on tenacity:
- Retries only on ProfileUpdateError
- Fixed wait between attempts (no exponential growth, the loop must terminate)
- Logs each retry at WARNING
- Re-raises the last error once the attempts are exhausted

Usage:
    @profile_update_retry(max_retries=3, delay_seconds=1)
    def update_one():
        ...
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from functools import wraps
from typing import Any, TypeVar

from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from .errors import ProfileUpdateError
from .logging import get_logger

F = TypeVar("F", bound=Callable[..., Any])

logger = get_logger(__name__)


def is_retry_enabled(max_retries: int) -> bool:
    """
    Check if per-profile retry is enabled.

    Args:
        max_retries: Configured maximum number of retries

    Returns:
        True when at least one retry is allowed
    """
    return max_retries > 0


def profile_update_retry(max_retries: int, delay_seconds: float) -> Callable[[F], F]:
    """
    Decorator retrying a profile update up to max_retries times.

    The decorated call is the retry itself: the failed batched write that
    triggered it already counts as the first attempt, so a profile that keeps
    failing is written at most max_retries + 1 times in total.

    Args:
        max_retries: Number of retry attempts (0 leaves the function unchanged)
        delay_seconds: Fixed wait between two attempts

    Returns:
        Decorator function
    """

    def decorator(func: F) -> F:
        if not is_retry_enabled(max_retries):
            return func

        @retry(
            stop=stop_after_attempt(max_retries),
            wait=wait_fixed(delay_seconds),
            retry=retry_if_exception_type(ProfileUpdateError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        @wraps(func)
        def tenacity_wrapper(*args: Any, **kwargs: Any) -> Any:
            return func(*args, **kwargs)

        return tenacity_wrapper  # type: ignore[return-value]

    return decorator
