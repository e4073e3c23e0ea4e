# plansync/sync/retry.py
"""Retry logic for backing-store reads with exponential backoff."""

import logging

from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from plansync.backend.store import BackendError

logger = logging.getLogger(__name__)


def is_retryable(exception: BaseException) -> bool:
    """
    Returns True if a failed read should be retried.

    Retryable conditions:
    - ConnectionError / TimeoutError (store unreachable)
    - BackendError flagged retryable (transient store failure)

    Mutations never go through this: a failed write rolls back instead.
    """
    if isinstance(exception, (ConnectionError, TimeoutError)):
        return True

    if isinstance(exception, BackendError):
        return exception.retryable

    return False


# Tenacity retry decorator for backing-store reads
read_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.1, min=0.05, max=2),
    retry=retry_if_exception(is_retryable),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)
