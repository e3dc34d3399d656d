"""Optimistic concurrency helpers for read-modify-write transitions."""
from __future__ import annotations

import logging
from typing import Callable, Optional, TypeVar

from tenacity import RetryCallState, RetryError, Retrying, retry_if_exception_type, stop_after_attempt

from .exceptions import ConcurrencyConflictError, DuplicateRecordError

logger = logging.getLogger("billing")

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 5


class StaleVersionError(Exception):
    """A compare-and-swap write lost against a concurrent writer."""


def expect_written(result: Optional[T]) -> T:
    """Return the stored record or signal a lost compare-and-swap."""

    if result is None:
        raise StaleVersionError()
    return result


def retry_on_conflict(
    operation: Callable[[], T],
    *,
    description: str,
    attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> T:
    """Run ``operation`` until it commits without a version or uniqueness conflict.

    ``operation`` must re-read the affected rows on every call so a retry
    re-applies the transition against fresh state. Any other exception
    propagates on the first attempt.
    """

    attempts = max(attempts, 1)

    def _log_conflict(retry_state: RetryCallState) -> None:
        logger.info(
            "Concurrent write detected for %s (attempt %s/%s)",
            description,
            retry_state.attempt_number,
            attempts,
        )

    retrying = Retrying(
        stop=stop_after_attempt(attempts),
        retry=retry_if_exception_type((StaleVersionError, DuplicateRecordError)),
        after=_log_conflict,
    )
    try:
        return retrying(operation)
    except RetryError as exc:
        raise ConcurrencyConflictError(
            f"Could not apply {description} after {attempts} attempts"
        ) from exc.last_attempt.exception()
