"""
Pytest configuration and shared fixtures

Fun fact: The name "conftest" comes from pytest's configuration testing
framework. Files named conftest.py are automatically discovered and their
fixtures are available to all tests in the same directory and subdirectories!
"""

import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

import pytest

from budget_trail.flow.collaborators import StaticVendorDirectory
from budget_trail.flow.notifications import Notification, NotificationBus
from budget_trail.integrity.anchors import LocalAnchor
from budget_trail.kernel.database import SQLiteDatabase
from budget_trail.kernel.policy import LedgerPolicy
from budget_trail.kernel.time import TestTimeProvider
from budget_trail.ledger.ledger import TransactionLedger
from budget_trail.requests.models import Actor, Role
from budget_trail.trail import BudgetTrail


@pytest.fixture
def temp_db() -> Iterator[Path]:
    """Provide a temporary database file that's cleaned up after test"""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = Path(f.name)

    yield db_path

    # WAL mode leaves -wal and -shm files next to the database
    for path in (db_path, Path(f"{db_path}-wal"), Path(f"{db_path}-shm")):
        if path.exists():
            path.unlink()


@pytest.fixture
def test_time() -> TestTimeProvider:
    """
    Provide a controllable time provider for deterministic tests

    Default time: 2025-01-15 12:00:00 UTC, early in fiscal period FY2025.
    """
    return TestTimeProvider(datetime(2025, 1, 15, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def policy() -> LedgerPolicy:
    """Default ledger policy with fast retries so contention tests stay quick"""
    return LedgerPolicy(retry_min_wait_ms=1, retry_max_wait_ms=5, lock_timeout_seconds=2.0)


@pytest.fixture
def db(temp_db: Path) -> SQLiteDatabase:
    """Provide a fresh database with the full schema"""
    return SQLiteDatabase(temp_db)


@pytest.fixture
def ledger(db: SQLiteDatabase, test_time: TestTimeProvider, policy: LedgerPolicy) -> TransactionLedger:
    return TransactionLedger(db, policy=policy, time_provider=test_time)


@pytest.fixture
def anchor(test_time: TestTimeProvider) -> LocalAnchor:
    return LocalAnchor(test_time)


@pytest.fixture
def notification_bus() -> NotificationBus:
    return NotificationBus()


@pytest.fixture
def vendor_directory() -> StaticVendorDirectory:
    """Vendors V1-V3 are registered; only V1 has a wallet on file"""
    return StaticVendorDirectory({"V1": "0xwallet-v1", "V2": None, "V3": None})


@pytest.fixture
def published(notification_bus: NotificationBus) -> list[Notification]:
    """Every notification published on the shared bus, in order"""
    received: list[Notification] = []
    notification_bus.subscribe(received.append)
    return received


@pytest.fixture
def trail(
    temp_db: Path,
    test_time: TestTimeProvider,
    policy: LedgerPolicy,
    anchor: LocalAnchor,
    notification_bus: NotificationBus,
    vendor_directory: StaticVendorDirectory,
) -> BudgetTrail:
    """
    Provide the full façade over a fresh database

    Uses the local anchor so receipts can be inspected, the shared bus so
    tests can observe notifications, and a directory that knows V1-V3.
    """
    return BudgetTrail(
        temp_db,
        policy=policy,
        time_provider=test_time,
        vendor_directory=vendor_directory,
        anchor=anchor,
        notification_bus=notification_bus,
    )


@pytest.fixture
def admin() -> Actor:
    return Actor(actor_id="carol", role=Role.ADMINISTRATOR)


@pytest.fixture
def requester() -> Actor:
    return Actor(actor_id="alice", role=Role.REQUESTER)
