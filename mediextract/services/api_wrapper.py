"""
Retry wrapper for model calls.

Transient failures (rate limits, quota exhaustion, 503/504) are retried with
capped exponential backoff plus jitter; every other error propagates
unchanged on the first occurrence.
"""

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Optional

from tenacity import AsyncRetrying, RetryCallState, RetryError, retry_if_exception, stop_after_attempt

from mediextract.config import settings

logger = logging.getLogger(__name__)


RETRYABLE_STATUS_CODES = (429, 503, 504)

# Matched against the lowercased error message
RETRYABLE_ERROR_PATTERNS = (
    "429",
    "503",
    "504",
    "quota",
    "exhausted",
    "too many requests",
)

OnRetry = Callable[[str, int, int, float, BaseException], Any]


class RetriesExhaustedError(RuntimeError):
    """Raised when a retryable call keeps failing after the last allowed retry."""

    def __init__(self, label: str, attempts: int, last_error: Optional[BaseException]):
        self.label = label
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"All retries exhausted for {label} after {attempts} attempt(s): {last_error}"
        )


def _as_status_code(value: Any) -> Optional[int]:
    # HTTPStatus is an int subclass
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def get_status_code(error: BaseException) -> Optional[int]:
    """Best-effort HTTP status code of an API error."""
    for attr in ("code", "status_code", "status"):
        code = _as_status_code(getattr(error, attr, None))
        if code is not None:
            return code
    response = getattr(error, "response", None)
    if response is not None:
        for attr in ("status_code", "status"):
            code = _as_status_code(getattr(response, attr, None))
            if code is not None:
                return code
    return None


def is_retryable_error(error: BaseException) -> bool:
    """
    Check if an error is transient (rate limit / unavailable) and worth retrying.

    Args:
        error: The exception to check

    Returns:
        True if the error is retryable, False otherwise
    """
    if get_status_code(error) in RETRYABLE_STATUS_CODES:
        return True

    message = str(error).lower()
    return any(pattern in message for pattern in RETRYABLE_ERROR_PATTERNS)


def calculate_backoff_delay(
    retry_number: int,
    initial_backoff: float,
    max_delay: float,
    max_jitter: float,
) -> float:
    """
    Delay before retry number `retry_number` (1-based).

    min(max_delay, initial_backoff * 2^(n-1)) plus uniform jitter in [0, max_jitter].
    """
    delay = min(max_delay, initial_backoff * (2 ** (retry_number - 1)))
    return delay + random.uniform(0, max_jitter)


async def call_with_retry(
    operation: Callable[[], Awaitable[Any]],
    label: str,
    *,
    max_retries: Optional[int] = None,
    initial_backoff: Optional[float] = None,
    max_delay: Optional[float] = None,
    max_jitter: Optional[float] = None,
    on_retry: Optional[OnRetry] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> Any:
    """
    Run one async operation, retrying transient failures.

    Args:
        operation: Zero-argument coroutine function performing the call
        label: Stage label used in logs and the exhaustion error
        max_retries: Retries allowed after the first attempt
        initial_backoff: Delay before the first retry (seconds)
        max_delay: Cap on the exponential part of the delay (seconds)
        max_jitter: Upper bound of random jitter (seconds)
        on_retry: Called as on_retry(label, retry_number, max_retries, delay, error)
        sleep: Awaitable sleep used between attempts

    Returns:
        The operation's result

    Raises:
        RetriesExhaustedError: If every retry failed with a retryable error
        Exception: The original error if it is not retryable
    """
    max_retries = settings.api_retry_max_retries if max_retries is None else max_retries
    initial_backoff = settings.api_retry_initial_backoff if initial_backoff is None else initial_backoff
    max_delay = settings.api_retry_max_delay if max_delay is None else max_delay
    max_jitter = settings.api_retry_max_jitter if max_jitter is None else max_jitter

    def wait(retry_state: RetryCallState) -> float:
        return calculate_backoff_delay(
            retry_state.attempt_number, initial_backoff, max_delay, max_jitter
        )

    def before_sleep(retry_state: RetryCallState):
        error = retry_state.outcome.exception()
        delay = retry_state.next_action.sleep
        retry_number = retry_state.attempt_number
        logger.warning(
            f"[{label}] Request failed: {error}. "
            f"Retrying attempt {retry_number}/{max_retries} in {delay:.1f}s..."
        )
        if on_retry is not None:
            on_retry(label, retry_number, max_retries, delay, error)

    retrying = AsyncRetrying(
        stop=stop_after_attempt(max_retries + 1),
        wait=wait,
        retry=retry_if_exception(is_retryable_error),
        before_sleep=before_sleep,
        sleep=sleep,
    )

    try:
        async for attempt in retrying:
            with attempt:
                result = await operation()
    except RetryError as e:
        last_error = e.last_attempt.exception()
        logger.error(f"[{label}] Max retries ({max_retries}) exhausted. Last error: {last_error}")
        raise RetriesExhaustedError(label, e.last_attempt.attempt_number, last_error) from last_error

    return result
