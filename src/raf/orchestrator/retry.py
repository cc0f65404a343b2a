"""Bounded retry wrapper."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RetryResult(Generic[T]):
    """Outcome of :func:`with_retry`."""

    success: bool
    attempts: int
    result: T | None = None
    last_error: Exception | None = None


def with_retry(
    fn: Callable[[], T],
    *,
    max_retries: int,
    on_retry: Callable[[int, Exception], None] | None = None,
    should_retry: Callable[[Exception], bool] | None = None,
) -> RetryResult[T]:
    """Call ``fn`` up to ``max_retries`` times, stopping at the first success.

    ``on_retry(attempt, error)`` runs between a failed attempt and the next
    one, never after the final attempt. When ``should_retry`` rejects an
    error the loop stops early and reports the attempts actually made.
    """

    attempts = max(1, max_retries)
    last_error: Exception | None = None
    for attempt in range(1, attempts + 1):
        try:
            return RetryResult(success=True, attempts=attempt, result=fn())
        except Exception as error:  # noqa: BLE001
            last_error = error
            logger.debug("Attempt %s/%s failed: %s", attempt, attempts, error)
            if should_retry is not None and not should_retry(error):
                return RetryResult(success=False, attempts=attempt, last_error=error)
            if attempt < attempts and on_retry is not None:
                on_retry(attempt, error)
    return RetryResult(success=False, attempts=attempts, last_error=last_error)
