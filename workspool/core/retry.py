"""Retry with exponential backoff for recoverable errors."""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar

from workspool.core.errors import is_recoverable


if TYPE_CHECKING:
    from workspool.config.models.workspace import ErrorHandlingSettings


logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_ERROR_PATTERNS = (
    "timeout",
    "timed out",
    "econnrefused",
    "econnreset",
    "enotfound",
    "network error",
    "connection reset",
    "connection refused",
    "socket hang up",
    "temporary failure",
    "could not resolve host",
    "the remote end hung up unexpectedly",
)


def is_transient_error(error: BaseException | str) -> bool:
    """Check whether an error message looks like a transient network failure."""
    message = (error if isinstance(error, str) else str(error)).lower()
    return any(pattern in message for pattern in TRANSIENT_ERROR_PATTERNS)


@dataclass(frozen=True)
class RetryPolicy:
    """How often and how fast to retry.

    ``max_retries`` counts retries after the first attempt, so a policy with
    ``max_retries=2`` makes at most three attempts.
    """

    max_retries: int = 3
    initial_delay_ms: int = 1000
    max_delay_ms: int = 30_000
    backoff_multiplier: float = 2.0

    @classmethod
    def from_settings(cls, settings: "ErrorHandlingSettings") -> "RetryPolicy":
        return cls(
            max_retries=settings.max_retries,
            initial_delay_ms=settings.initial_retry_delay_ms,
            max_delay_ms=settings.max_retry_delay_ms,
        )

    def delay_for(self, retry_number: int) -> float:
        """Delay in seconds before retry ``retry_number`` (starting at 0)."""
        delay_ms = self.initial_delay_ms * (self.backoff_multiplier**retry_number)
        return min(delay_ms, self.max_delay_ms) / 1000.0


def retry_with_backoff(
    fn: Callable[[], T],
    policy: RetryPolicy,
    *,
    operation: str = "operation",
    should_retry: Callable[[BaseException], bool] = is_recoverable,
    on_retry: Callable[[BaseException, int], None] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``fn`` until it succeeds or the policy is exhausted.

    Only exceptions accepted by ``should_retry`` are retried; anything else
    propagates immediately. The last error is re-raised once retries run out.

    Args:
        fn: Callable to invoke
        policy: Retry limits and delays
        operation: Label used in log messages
        should_retry: Predicate deciding whether an error is retryable
        on_retry: Called with the error and the retry number before sleeping
        sleep: Sleep function, replaceable in tests

    Returns:
        The value returned by ``fn``
    """
    attempt = 0
    while True:
        try:
            return fn()
        except Exception as e:
            if attempt >= policy.max_retries or not should_retry(e):
                if attempt:
                    logger.warning(
                        "%s failed after %d attempts: %s", operation, attempt + 1, e
                    )
                raise
            delay = policy.delay_for(attempt)
            logger.info(
                "%s failed (attempt %d/%d), retrying in %.1fs: %s",
                operation,
                attempt + 1,
                policy.max_retries + 1,
                delay,
                e,
            )
            if on_retry is not None:
                on_retry(e, attempt)
            sleep(delay)
            attempt += 1
