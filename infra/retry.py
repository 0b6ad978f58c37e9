"""
Retry/backoff for rate-limited remote calls.

Only rate-limit signals are retried. The delay grows linearly with the
attempt number (base_delay x attempt). Every other error propagates on the
first failure.
"""

import logging
import time
from typing import Callable, Optional, TypeVar

from requests import exceptions as requests_exceptions

from core.exceptions import RateLimited

logger = logging.getLogger(__name__)

T = TypeVar("T")

RATE_LIMIT_MARKERS = ("too many requests", "rate limit")


def is_rate_limit_error(error: BaseException) -> bool:
    """True if ``error`` carries a rate-limit signal."""
    if isinstance(error, RateLimited):
        return True
    if isinstance(error, requests_exceptions.HTTPError):
        response = getattr(error, "response", None)
        if response is not None and getattr(response, "status_code", None) == 429:
            return True
    message = str(error).lower()
    return any(marker in message for marker in RATE_LIMIT_MARKERS)


def metrics_hook(metrics, label: str) -> Optional[Callable[[int, float], None]]:
    """``on_retry`` hook counting retries on ``metrics`` (None when metrics are off)."""
    if metrics is None:
        return None
    return lambda attempt, delay: metrics.record_retry(label)


def with_retry(
    operation: Callable[[], T],
    max_attempts: int = 3,
    base_delay: float = 1.0,
    *,
    label: str = "remote call",
    on_retry: Optional[Callable[[int, float], None]] = None,
) -> T:
    """
    Run ``operation`` retrying on rate limits.

    Args:
        operation: Zero-argument callable performing the remote call
        max_attempts: Total calls allowed (>= 1)
        base_delay: Seconds; wait before retry N is base_delay * N
        label: Name used in log lines
        on_retry: Optional hook called with (attempt, delay) before sleeping

    Returns:
        Whatever ``operation`` returns

    Raises:
        The final rate-limit error once ``max_attempts`` calls have failed,
        or any non rate-limit error immediately.
    """
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")
    if base_delay < 0:
        raise ValueError(f"base_delay must be >= 0, got {base_delay}")

    for attempt in range(1, max_attempts + 1):
        try:
            return operation()
        except Exception as e:
            if not is_rate_limit_error(e):
                raise
            if attempt >= max_attempts:
                logger.error(f"Rate limited on {label}; all {max_attempts} attempts exhausted")
                raise
            delay = base_delay * attempt
            logger.warning(
                f"Rate limited on {label}, attempt {attempt}/{max_attempts}; retrying in {delay:.2f}s"
            )
            if on_retry is not None:
                on_retry(attempt, delay)
            time.sleep(delay)

    # Unreachable: the loop either returns or raises.
    raise RuntimeError(f"with_retry exited without result for {label}")
