"""
Retry logic with exponential backoff for aggregate contention.

Coordinator operations that lose an optimistic version check, or cannot get
the per-period lock in time, are retried a bounded number of times before the
ConcurrencyConflictError reaches the caller.
"""

from collections.abc import Callable
from typing import TypeVar

from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from budget_trail.kernel.errors import ConcurrencyConflictError
from budget_trail.kernel.logging import get_logger
from budget_trail.kernel.metrics import concurrency_retries_total

logger = get_logger(__name__)

T = TypeVar("T")


def retry_on_concurrency_conflict(
    operation: str,
    max_attempts: int = 3,
    min_wait_ms: int = 10,
    max_wait_ms: int = 200,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Retry decorator for ConcurrencyConflictError.

    Only contention is retried. Validation, state-transition and ledger
    conflicts propagate on the first attempt.

    Args:
        operation: Operation name for logs and metrics
        max_attempts: Total attempts including the first (default: 3)
        min_wait_ms: Minimum backoff in milliseconds
        max_wait_ms: Maximum backoff in milliseconds

    Returns:
        Decorator; after the last attempt the final ConcurrencyConflictError
        is re-raised unchanged

    Example:
        @retry_on_concurrency_conflict("approve", max_attempts=5)
        def approve_once(...):
            ...
    """

    def _before_sleep(retry_state) -> None:  # type: ignore[no-untyped-def]
        concurrency_retries_total.labels(operation=operation).inc()
        logger.warning(
            "Aggregate contention detected, retrying",
            operation=operation,
            attempt=retry_state.attempt_number,
            exception=str(retry_state.outcome.exception()) if retry_state.outcome else None,
        )

    return retry(
        retry=retry_if_exception_type(ConcurrencyConflictError),
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(
            multiplier=min_wait_ms / 1000.0 or 0.001,
            min=min_wait_ms / 1000.0,
            max=max_wait_ms / 1000.0,
        ),
        before_sleep=_before_sleep,
        reraise=True,
    )
