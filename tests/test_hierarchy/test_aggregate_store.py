"""
Tests for AggregateStore - per-period persistence, optimistic versions and
the period lock
"""

import threading
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from budget_trail.hierarchy.store import AggregateStore
from budget_trail.kernel.database import SQLiteDatabase
from budget_trail.kernel.errors import ConcurrencyConflictError

NOW = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def store(db: SQLiteDatabase) -> AggregateStore:
    return AggregateStore(db, lock_timeout_seconds=0.2)


def test_load_or_create_starts_empty(store: AggregateStore) -> None:
    aggregate = store.load_or_create("FY2025")

    assert aggregate.version == 0
    assert aggregate.departments == {}
    assert store.load("FY2025") is None


def test_save_and_reload(store: AggregateStore, db: SQLiteDatabase) -> None:
    aggregate = store.load_or_create("FY2025")
    aggregate.ensure_department("Engineering", Decimal("50000"))

    with db.transaction() as conn:
        saved = store.save(aggregate, conn, NOW)

    assert saved.version == 1
    loaded = store.load("FY2025")
    assert loaded is not None
    assert loaded.version == 1
    assert loaded.get_department("Engineering").allocated_amount == Decimal("50000")


def test_periods_are_independent(store: AggregateStore, db: SQLiteDatabase) -> None:
    for period, amount in (("FY2025", Decimal("1")), ("FY2026", Decimal("2"))):
        aggregate = store.load_or_create(period)
        aggregate.ensure_department("Engineering", amount)
        with db.transaction() as conn:
            store.save(aggregate, conn, NOW)

    assert store.list_periods() == ["FY2025", "FY2026"]
    assert store.load("FY2026").get_department("Engineering").allocated_amount == Decimal("2")


def test_stale_version_is_rejected(store: AggregateStore, db: SQLiteDatabase) -> None:
    with db.transaction() as conn:
        store.save(store.load_or_create("FY2025"), conn, NOW)

    first = store.load("FY2025")
    second = store.load("FY2025")

    with db.transaction() as conn:
        store.save(first, conn, NOW)

    with pytest.raises(ConcurrencyConflictError):
        with db.transaction() as conn:
            store.save(second, conn, NOW)

    assert store.load("FY2025").version == 2


def test_concurrent_creation_is_rejected(store: AggregateStore, db: SQLiteDatabase) -> None:
    first = store.load_or_create("FY2025")
    second = store.load_or_create("FY2025")

    with db.transaction() as conn:
        store.save(first, conn, NOW)

    with pytest.raises(ConcurrencyConflictError):
        with db.transaction() as conn:
            store.save(second, conn, NOW)


def test_lock_times_out_when_held(store: AggregateStore) -> None:
    held = threading.Event()
    release = threading.Event()

    def holder() -> None:
        with store.lock("FY2025"):
            held.set()
            release.wait(5)

    thread = threading.Thread(target=holder)
    thread.start()
    held.wait(5)
    try:
        with pytest.raises(ConcurrencyConflictError):
            with store.lock("FY2025"):
                pass

        # Other periods are not blocked
        with store.lock("FY2026"):
            pass
    finally:
        release.set()
        thread.join()

    with store.lock("FY2025"):
        pass
