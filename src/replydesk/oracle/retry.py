"""Bounded timeout retry for oracle requests.

Only timeouts are retried: a slow completion is worth another try, while a
4xx/5xx or malformed payload would fail the same way again. Backends raise
OracleTimeoutError from a single attempt; this wrapper repeats the attempt
with a fixed delay and reports the total attempt count when it gives up.

Usage:
    from replydesk.oracle.retry import call_with_timeout_retry

    text = call_with_timeout_retry(send_once, max_retries=2, retry_delay=2.0)
"""

from collections.abc import Callable
from typing import TypeVar

from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from replydesk.core.errors import OracleTimeoutError
from replydesk.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def _log_retry(retry_state: RetryCallState) -> None:
    """Tenacity before_sleep hook."""
    logger.warning(
        "oracle_timeout_retry",
        attempt=retry_state.attempt_number,
        wait_seconds=retry_state.next_action.sleep if retry_state.next_action else 0,
    )


def call_with_timeout_retry(
    send_once: Callable[[], T],
    max_retries: int,
    retry_delay: float,
) -> T:
    """Call `send_once`, retrying only when it raises OracleTimeoutError.

    Args:
        send_once: Performs one request attempt
        max_retries: Retries after the first attempt
        retry_delay: Fixed delay between attempts in seconds

    Returns:
        Whatever `send_once` returns

    Raises:
        OracleTimeoutError: If every attempt timed out (carries the attempt count)
        OracleError: Any non-timeout failure, raised from the first attempt
    """
    retrying = Retrying(
        stop=stop_after_attempt(max_retries + 1),
        wait=wait_fixed(retry_delay),
        retry=retry_if_exception_type(OracleTimeoutError),
        before_sleep=_log_retry,
    )
    try:
        return retrying(send_once)
    except RetryError as e:
        attempts = e.last_attempt.attempt_number
        cause = e.last_attempt.exception()
        logger.error("oracle_timeout_exhausted", attempts=attempts)
        raise OracleTimeoutError(
            f"Oracle request timed out on all {attempts} attempt(s): {cause}. "
            "Raise oracle.timeout_seconds or oracle.max_retries in config.yaml "
            "if the provider is consistently slow.",
            attempts=attempts,
        ) from cause
