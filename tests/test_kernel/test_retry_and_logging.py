"""
Test infrastructure components: retry, logging, metrics, time and ids.
"""

import re
from datetime import datetime, timedelta, timezone

import pytest

from budget_trail.kernel.errors import ConcurrencyConflictError, ValidationError
from budget_trail.kernel.ids import generate_id, generate_request_id
from budget_trail.kernel.logging import (
    LogOperation,
    configure_logging,
    get_correlation_id,
    get_logger,
    redact_context,
    set_correlation_id,
)
from budget_trail.kernel.metrics import concurrency_retries_total
from budget_trail.kernel.retry import retry_on_concurrency_conflict
from budget_trail.kernel.time import TestTimeProvider


class TestRetry:
    """Only contention is retried"""

    def test_retries_concurrency_conflicts_then_succeeds(self) -> None:
        calls = []

        @retry_on_concurrency_conflict("test_op", max_attempts=3, min_wait_ms=1, max_wait_ms=2)
        def flaky() -> str:
            calls.append(1)
            if len(calls) < 3:
                raise ConcurrencyConflictError("aggregate FY2025")
            return "ok"

        assert flaky() == "ok"
        assert len(calls) == 3

    def test_reraises_after_bound(self) -> None:
        calls = []

        @retry_on_concurrency_conflict("test_op", max_attempts=2, min_wait_ms=1, max_wait_ms=2)
        def always_conflicts() -> None:
            calls.append(1)
            raise ConcurrencyConflictError("aggregate FY2025")

        with pytest.raises(ConcurrencyConflictError):
            always_conflicts()
        assert len(calls) == 2

    def test_validation_errors_are_not_retried(self) -> None:
        calls = []

        @retry_on_concurrency_conflict("test_op", max_attempts=5, min_wait_ms=1, max_wait_ms=2)
        def invalid() -> None:
            calls.append(1)
            raise ValidationError("amount", "must be positive")

        with pytest.raises(ValidationError):
            invalid()
        assert len(calls) == 1

    def test_retries_are_counted(self) -> None:
        before = concurrency_retries_total.labels(operation="counted_op")._value.get()
        attempts = []

        @retry_on_concurrency_conflict("counted_op", max_attempts=2, min_wait_ms=1, max_wait_ms=2)
        def once_conflicting() -> None:
            attempts.append(1)
            if len(attempts) == 1:
                raise ConcurrencyConflictError("request BR-1")

        once_conflicting()
        after = concurrency_retries_total.labels(operation="counted_op")._value.get()
        assert after == before + 1


class TestLogging:
    def test_configure_logging_console(self) -> None:
        configure_logging(json_output=False, log_level="INFO")
        assert get_logger(__name__) is not None

    def test_configure_logging_json(self) -> None:
        configure_logging(json_output=True, log_level="DEBUG")
        assert get_logger(__name__) is not None

    def test_correlation_id(self) -> None:
        assert get_correlation_id()
        set_correlation_id("corr-123")
        assert get_correlation_id() == "corr-123"

    def test_redact_context_hides_amounts_and_actors(self) -> None:
        redacted = redact_context(
            {"actor_id": "carol", "amount": "40000", "wallet_ref": "0xw", "request_id": "BR-1"}
        )
        assert redacted["actor_id"] == "***REDACTED***"
        assert redacted["amount"] == "***REDACTED***"
        assert redacted["wallet_ref"] == "***REDACTED***"
        assert redacted["request_id"] == "BR-1"

    def test_log_operation_propagates_exceptions(self) -> None:
        logger = get_logger(__name__)
        with pytest.raises(ValueError):
            with LogOperation(logger, "failing", request_id="BR-1"):
                raise ValueError("boom")


class TestTimeAndIds:
    def test_test_time_provider_advances(self) -> None:
        start = datetime(2025, 1, 15, tzinfo=timezone.utc)
        clock = TestTimeProvider(start)

        clock.advance_seconds(30)
        assert clock.now() == start + timedelta(seconds=30)

        clock.advance_days(2)
        assert clock.now() == start + timedelta(days=2, seconds=30)

    def test_generated_ids_are_unique_and_uuid_shaped(self) -> None:
        ids = {generate_id() for _ in range(200)}
        assert len(ids) == 200
        sample = next(iter(ids))
        assert len(sample) == 36
        assert sample[14] == "7"

    def test_request_ids_are_prefixed(self) -> None:
        request_id = generate_request_id()
        assert re.fullmatch(r"BR-[0-9a-f]{12}-[89ab][0-9a-f]{15}", request_id)

    def test_request_ids_stay_unique_within_one_millisecond(self, monkeypatch) -> None:
        monkeypatch.setattr("budget_trail.kernel.ids.time.time", lambda: 1736942400.0)

        ids = {generate_request_id() for _ in range(5000)}

        assert len(ids) == 5000
        assert len({request_id[:15] for request_id in ids}) == 1
