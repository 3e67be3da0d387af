"""
Aggregate Store - one AllocationHierarchy per fiscal period

The store replaces any notion of a "current" global aggregate: every caller
names the fiscal period it works on. Writers serialize per period in two
layers:

- an in-process lock per period, acquired with a timeout
- an optimistic `version` check on the aggregate row, which also guards
  against writers in other processes sharing the same database file

Losing either raises ConcurrencyConflictError, which the flow coordinator
retries.
"""

import sqlite3
import threading
from contextlib import contextmanager, nullcontext
from datetime import datetime
from typing import Iterator

from budget_trail.hierarchy.aggregate import AllocationHierarchy
from budget_trail.kernel.database import SQLiteDatabase
from budget_trail.kernel.errors import ConcurrencyConflictError
from budget_trail.kernel.logging import get_logger

logger = get_logger(__name__)


class AggregateStore:
    """SQLite persistence and per-period write locks for hierarchy aggregates"""

    def __init__(self, db: SQLiteDatabase, lock_timeout_seconds: float = 5.0) -> None:
        self.db = db
        self.lock_timeout_seconds = lock_timeout_seconds
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _period_lock(self, fiscal_period: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(fiscal_period, threading.Lock())

    @contextmanager
    def lock(self, fiscal_period: str) -> Iterator[None]:
        """
        Hold exclusive write access to one period's aggregate

        Raises:
            ConcurrencyConflictError: If the lock is not acquired in time
        """
        period_lock = self._period_lock(fiscal_period)
        if not period_lock.acquire(timeout=self.lock_timeout_seconds):
            raise ConcurrencyConflictError(
                f"aggregate {fiscal_period}",
                f"Timed out waiting for the {fiscal_period} aggregate lock",
            )
        try:
            yield
        finally:
            period_lock.release()

    def load(
        self, fiscal_period: str, conn: sqlite3.Connection | None = None
    ) -> AllocationHierarchy | None:
        """Load the committed aggregate for a period, or None if none exists"""
        with nullcontext(conn) if conn is not None else self.db.connect() as read_conn:
            row = read_conn.execute(
                "SELECT version, state_json FROM allocation_aggregates WHERE fiscal_period = ?",
                (fiscal_period,),
            ).fetchone()

        if row is None:
            return None

        aggregate = AllocationHierarchy.model_validate_json(row["state_json"])
        return aggregate.model_copy(update={"version": row["version"]})

    def load_or_create(
        self, fiscal_period: str, conn: sqlite3.Connection | None = None
    ) -> AllocationHierarchy:
        """Load a period's aggregate, or start an empty unsaved one (version 0)"""
        aggregate = self.load(fiscal_period, conn)
        if aggregate is None:
            aggregate = AllocationHierarchy(fiscal_period=fiscal_period)
        return aggregate

    def save(
        self,
        aggregate: AllocationHierarchy,
        conn: sqlite3.Connection,
        updated_at: datetime,
    ) -> AllocationHierarchy:
        """
        Persist an aggregate inside the caller's write transaction

        Args:
            aggregate: Aggregate as loaded (its version is the expected one)
            conn: Open write transaction
            updated_at: Timestamp stored with the row

        Returns:
            The aggregate carrying its new version

        Raises:
            ConcurrencyConflictError: If another writer saved first
        """
        expected_version = aggregate.version
        saved = aggregate.model_copy(update={"version": expected_version + 1})
        state_json = saved.model_dump_json()

        if expected_version == 0:
            try:
                conn.execute(
                    "INSERT INTO allocation_aggregates (fiscal_period, version, state_json, updated_at) "
                    "VALUES (?, ?, ?, ?)",
                    (saved.fiscal_period, saved.version, state_json, updated_at.isoformat()),
                )
            except sqlite3.IntegrityError as e:
                raise ConcurrencyConflictError(
                    f"aggregate {aggregate.fiscal_period}",
                    f"Aggregate {aggregate.fiscal_period} was created concurrently",
                ) from e
            return saved

        cursor = conn.execute(
            "UPDATE allocation_aggregates SET version = ?, state_json = ?, updated_at = ? "
            "WHERE fiscal_period = ? AND version = ?",
            (
                saved.version,
                state_json,
                updated_at.isoformat(),
                saved.fiscal_period,
                expected_version,
            ),
        )
        if cursor.rowcount != 1:
            logger.warning(
                "Aggregate version conflict",
                fiscal_period=aggregate.fiscal_period,
                expected_version=expected_version,
            )
            raise ConcurrencyConflictError(
                f"aggregate {aggregate.fiscal_period}",
                f"Aggregate {aggregate.fiscal_period} changed since version {expected_version}",
            )
        return saved

    def list_periods(self) -> list[str]:
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT fiscal_period FROM allocation_aggregates ORDER BY fiscal_period"
            ).fetchall()
        return [row["fiscal_period"] for row in rows]
