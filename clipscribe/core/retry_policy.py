"""
Bounded retries with exponential backoff and jitter.
Only errors classified as retryable are attempted again.
"""

import logging
import random
from typing import Callable, Optional, TypeVar

import requests

from clipscribe.core.cancellation import CancellationToken, ensure_token
from clipscribe.core.constants import (
    ErrorCode, DEFAULT_MAX_ATTEMPTS, RETRY_BASE_DELAY_SEC, RETRY_BACKOFF_FACTOR,
    RETRY_MAX_DELAY_SEC, RETRY_JITTER,
)
from clipscribe.core.error_codes import JobError, OperationCancelled

logger = logging.getLogger(__name__)

T = TypeVar('T')


def classify(exc: BaseException) -> JobError:
    """Map any exception onto a JobError carrying a retryable flag."""
    if isinstance(exc, JobError):
        return exc
    if isinstance(exc, requests.exceptions.Timeout):
        return JobError(ErrorCode.TIMEOUT, f"Request timed out: {exc}")
    if isinstance(exc, requests.exceptions.ConnectionError):
        return JobError(ErrorCode.NETWORK_TRANSIENT, f"Network error: {exc}")
    return JobError(ErrorCode.UNEXPECTED, f"{type(exc).__name__}: {exc}", retryable=False)


class RetryPolicy:

    def __init__(self, max_attempts: int = DEFAULT_MAX_ATTEMPTS,
                 base_delay: float = RETRY_BASE_DELAY_SEC,
                 factor: float = RETRY_BACKOFF_FACTOR,
                 max_delay: float = RETRY_MAX_DELAY_SEC,
                 jitter: float = RETRY_JITTER):
        self.max_attempts = max(1, int(max_attempts))
        self.base_delay = max(0.0, base_delay)
        self.factor = factor
        self.max_delay = max_delay
        self.jitter = jitter

    def delay_for(self, attempt: int) -> float:
        """Backoff before attempt `attempt + 1` (attempt is 1-based)."""
        delay = min(self.base_delay * (self.factor ** (attempt - 1)), self.max_delay)
        # +/- jitter
        delay *= 1 + random.uniform(-self.jitter, self.jitter)
        return max(0.0, delay)

    def execute(self, operation: Callable[[], T],
                cancel_token: CancellationToken | None = None,
                max_attempts: int | None = None,
                on_retry: Optional[Callable[[int, JobError, float], None]] = None,
                description: str = "operation") -> T:
        """
        Run `operation` until it succeeds, fails fatally, or attempts run out.
        Raises the last classified error; OperationCancelled if the token
        fires before or between attempts.
        """
        token = ensure_token(cancel_token)
        attempts = max(1, int(max_attempts or self.max_attempts))

        for attempt in range(1, attempts + 1):
            token.raise_if_cancelled(f"{description} cancelled")
            try:
                return operation()
            except OperationCancelled:
                raise
            except Exception as e:
                error = classify(e)
                if token.cancelled:
                    raise OperationCancelled(f"{description} cancelled") from e
                if not error.retryable:
                    logger.warning("%s failed (not retryable): %s", description, error.message)
                    if error is e:
                        raise
                    raise error from e
                if attempt >= attempts:
                    logger.warning("%s failed after %d attempts: %s", description, attempt, error.message)
                    if error is e:
                        raise
                    raise error from e

                delay = self.delay_for(attempt)
                logger.warning(
                    "%s failed (%s) — retrying in %.1fs (attempt %d/%d)",
                    description, error.code, delay, attempt, attempts,
                )
                if on_retry:
                    on_retry(attempt, error, delay)
                if token.wait(delay):
                    raise OperationCancelled(f"{description} cancelled during backoff") from e

        # range() above always returns or raises
        raise JobError(ErrorCode.UNEXPECTED, f"{description} exhausted retries")
