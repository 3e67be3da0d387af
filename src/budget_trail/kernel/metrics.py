"""
Prometheus metrics collection for Budget Trail.

Provides observability into ledger writes, verification outcomes, lifecycle
traffic and aggregate contention.
"""

import time
from collections.abc import Callable
from functools import wraps
from typing import ParamSpec, TypeVar

from prometheus_client import Counter, Histogram, start_http_server

# ============================================================================
# Ledger Metrics
# ============================================================================

ledger_entries_appended_total = Counter(
    "budget_trail_ledger_entries_appended_total",
    "Total number of ledger entries appended",
    ["kind"],
)

ledger_duplicate_rejections_total = Counter(
    "budget_trail_ledger_duplicate_rejections_total",
    "Ledger appends rejected because the fingerprint already exists",
)

ledger_anomalies_total = Counter(
    "budget_trail_ledger_anomalies_total",
    "Ledger entries flagged as anomalous",
    ["kind"],
)

ledger_verifications_total = Counter(
    "budget_trail_ledger_verifications_total",
    "Ledger verifications by outcome",
    ["status"],  # verified, tampered
)

anchor_submissions_total = Counter(
    "budget_trail_anchor_submissions_total",
    "Integrity anchor submissions by outcome",
    ["anchor", "status"],  # status: anchored, failed
)

# ============================================================================
# Lifecycle & Aggregate Metrics
# ============================================================================

lifecycle_transitions_total = Counter(
    "budget_trail_lifecycle_transitions_total",
    "Budget request state transitions",
    ["from_state", "to_state"],
)

concurrency_retries_total = Counter(
    "budget_trail_concurrency_retries_total",
    "Coordinator retries caused by aggregate contention",
    ["operation"],
)

overspend_flags_total = Counter(
    "budget_trail_overspend_flags_total",
    "Hierarchy nodes whose spend exceeded allocation",
    ["level", "needs_review"],
)

operation_duration_seconds = Histogram(
    "budget_trail_operation_duration_seconds",
    "Duration of coordinator operations in seconds",
    ["operation"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

operations_processed_total = Counter(
    "budget_trail_operations_processed_total",
    "Coordinator operations processed",
    ["operation", "status"],  # status: success, failure
)

# ============================================================================
# Helper Functions
# ============================================================================

P = ParamSpec("P")
R = TypeVar("R")


def track_operation_duration(operation: str) -> Callable[[Callable[P, R]], Callable[P, R]]:
    """
    Decorator to track coordinator operation duration and outcome.

    Args:
        operation: Operation name used as the metric label

    Returns:
        Decorated function that records duration and success/failure
    """

    def decorator(func: Callable[P, R]) -> Callable[P, R]:
        @wraps(func)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            start = time.perf_counter()
            status = "success"
            try:
                return func(*args, **kwargs)
            except Exception:
                status = "failure"
                raise
            finally:
                operation_duration_seconds.labels(operation=operation).observe(
                    time.perf_counter() - start
                )
                operations_processed_total.labels(
                    operation=operation, status=status
                ).inc()

        return wrapper

    return decorator


def start_metrics_server(port: int = 9090) -> None:
    """
    Start Prometheus metrics HTTP server.

    Args:
        port: Port to listen on (default: 9090)
    """
    start_http_server(port)
