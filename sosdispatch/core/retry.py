"""Bounded retry helpers for storage and delivery faults."""

from __future__ import annotations

import logging
import time
from typing import Callable, TypeVar

from sosdispatch.core.errors import TransientStorageError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delays(attempts: int, base_seconds: float) -> list[float]:
    """Exponential delays slept between ``attempts`` tries."""
    return [base_seconds * (2**i) for i in range(max(attempts - 1, 0))]


def retry_transient(
    func: Callable[[], T],
    attempts: int,
    backoff_seconds: float,
    what: str = "storage operation",
) -> T:
    """Call ``func``, retrying ``TransientStorageError`` with exponential backoff.

    The last error is re-raised once the budget is exhausted.
    """
    delays = backoff_delays(attempts, backoff_seconds)
    for attempt, delay in enumerate(delays + [None], start=1):
        try:
            return func()
        except TransientStorageError as exc:
            if delay is None:
                logger.error("%s failed after %s attempts: %s", what, attempt, exc)
                raise
            logger.warning("%s failed (attempt %s/%s), retrying in %.2fs: %s", what, attempt, attempts, delay, exc)
            time.sleep(delay)
    raise AssertionError("unreachable")
