"""
Retry utilities with exponential backoff for transient provider errors.

Every storage driver talks to a remote API (Drive v3, Microsoft Graph,
Dropbox HTTP v2, Azure Blob) that can fail temporarily:
  - Rate limiting (HTTP 429)
  - Server errors (HTTP 500/502/503/504)
  - Network issues: connection resets, timeouts, DNS failures

Retrying those after a growing, jittered delay usually succeeds. Errors that
a retry cannot fix (401, 404, bad request) are raised immediately.

Each driver supplies its own ``is_retryable`` predicate, because every SDK
wraps HTTP failures in a different exception type:

    from utils.retry import retry_on_transient_error, is_transient_network_error

    def _is_retryable(exc):
        if isinstance(exc, MyApiError):
            return exc.status_code in TRANSIENT_HTTP_STATUS_CODES
        return is_transient_network_error(exc)

    @retry_on_transient_error(is_retryable=_is_retryable, max_retries=5)
    def call_api():
        return api.do_something()

The decorated functions are blocking. Drivers run them in worker threads, so
``time.sleep`` here never stalls the event loop.
"""

import logging
import random
import time
from functools import wraps
from typing import Callable, Optional

logger = logging.getLogger(__name__)


def retry_on_transient_error(
    is_retryable: Callable[[Exception], bool],
    max_retries: int = 5,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    on_retry: Optional[Callable[[Exception, int, float], None]] = None,
    sleep: Callable[[float], None] = time.sleep,
):
    """
    Decorator that retries a function on transient errors with exponential backoff.

    Args:
        is_retryable: Takes an exception and returns True if it is transient.
        max_retries: Retry attempts after the initial try (total = max_retries + 1).
        base_delay: Delay in seconds before the first retry; doubled per attempt.
        max_delay: Upper bound for a single delay, before jitter.
        on_retry: Optional callback ``(exc, attempt, delay)`` invoked before
                  each retry. Defaults to a WARNING log line.
        sleep: Sleep function, replaceable in tests.

    Returns:
        A decorator that wraps functions with retry logic.

    Raises:
        The last exception if all retries are exhausted, or immediately if
        the exception is not retryable.
    """

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            last_exception = None

            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except Exception as exc:
                    if not is_retryable(exc):
                        raise

                    last_exception = exc

                    if attempt < max_retries:
                        # 1x, 2x, 4x ... base_delay, capped, then jittered by 0.5-1.5
                        delay = min(base_delay * (2 ** attempt), max_delay)
                        delay *= 0.5 + random.random()

                        (on_retry or log_retry)(exc, attempt + 1, delay)
                        sleep(delay)

            raise last_exception

        return wrapper
    return decorator


def log_retry(exc: Exception, attempt: int, delay: float) -> None:
    """Default ``on_retry`` hook: one WARNING line per retry."""
    logger.warning("[Retry] %s on attempt %d, retrying in %.1fs...",
                   describe_error(exc), attempt, delay)


def describe_error(exc: Exception) -> str:
    """Short description of an error for retry logs (status code when known)."""
    status = getattr(getattr(exc, "resp", None), "status", None)
    if status is None:
        status = getattr(getattr(exc, "response", None), "status_code", None)
    if status is not None:
        return f"HTTP {status}"
    return type(exc).__name__


# ---------------------------------------------------------------------------
# Common retry condition helpers
# ---------------------------------------------------------------------------

TRANSIENT_HTTP_STATUS_CODES = {
    429,  # Too Many Requests (rate limited)
    500,  # Internal Server Error
    502,  # Bad Gateway
    503,  # Service Unavailable
    504,  # Gateway Timeout
}

TRANSIENT_NETWORK_EXCEPTIONS = (
    ConnectionError,      # Connection refused, reset, etc.
    TimeoutError,         # Operation timed out
    OSError,              # Socket errors; requests exceptions derive from it too
)

# Local file problems are OSErrors as well, but a retry never fixes them
PERMANENT_OS_ERRORS = (
    FileNotFoundError,
    IsADirectoryError,
    PermissionError,
)


def is_transient_network_error(exc: Exception) -> bool:
    """Check if an exception is a transient network error."""
    if isinstance(exc, PERMANENT_OS_ERRORS):
        return False
    return isinstance(exc, TRANSIENT_NETWORK_EXCEPTIONS)


def is_transient_http_status(status_code: Optional[int]) -> bool:
    """True for HTTP status codes worth retrying."""
    return status_code in TRANSIENT_HTTP_STATUS_CODES
