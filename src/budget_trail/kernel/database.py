"""
SQLite Database - shared storage for requests, aggregates and the ledger

All persisted surfaces live in one SQLite file so that a coordinator
operation can write the request row, the fiscal-period aggregate and the
ledger entry in a single transaction: either all three land or none do.

Schema:
- budget_requests: one row per request (JSON body + optimistic version)
- allocation_aggregates: one row per fiscal period (JSON arena + version)
- ledger_entries: append-only, UNIQUE(fingerprint); triggers block deletes
  and edits of event data, leaving only verification status writable
- anchor_receipts: integrity anchor references keyed by fingerprint
"""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from budget_trail.kernel.errors import ConcurrencyConflictError

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS budget_requests (
        request_id TEXT PRIMARY KEY,
        requester_id TEXT NOT NULL,
        department TEXT NOT NULL,
        project TEXT NOT NULL,
        state TEXT NOT NULL,
        fiscal_period TEXT NOT NULL,
        version INTEGER NOT NULL,
        body_json TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_requests_state ON budget_requests(state)",
    "CREATE INDEX IF NOT EXISTS idx_requests_department ON budget_requests(department, state)",
    """
    CREATE TABLE IF NOT EXISTS allocation_aggregates (
        fiscal_period TEXT PRIMARY KEY,
        version INTEGER NOT NULL,
        state_json TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ledger_entries (
        entry_id TEXT PRIMARY KEY,
        fingerprint TEXT NOT NULL UNIQUE,
        hash_algorithm TEXT NOT NULL,
        request_id TEXT NOT NULL,
        department TEXT NOT NULL,
        project TEXT NOT NULL,
        vendor_id TEXT,
        amount TEXT NOT NULL,
        kind TEXT NOT NULL,
        actor_id TEXT NOT NULL,
        occurred_at TEXT NOT NULL,
        note TEXT NOT NULL DEFAULT '',
        anomaly_score REAL NOT NULL DEFAULT 0,
        is_anomalous INTEGER NOT NULL DEFAULT 0,
        anomaly_reason TEXT,
        verification_status TEXT NOT NULL,
        last_verified_at TEXT,
        recorded_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_ledger_request ON ledger_entries(request_id)",
    "CREATE INDEX IF NOT EXISTS idx_ledger_kind ON ledger_entries(kind)",
    "CREATE INDEX IF NOT EXISTS idx_ledger_status ON ledger_entries(verification_status)",
    """
    CREATE TRIGGER IF NOT EXISTS ledger_entries_no_delete
    BEFORE DELETE ON ledger_entries
    BEGIN
        SELECT RAISE(ABORT, 'ledger entries are append-only');
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS ledger_entries_immutable
    BEFORE UPDATE OF entry_id, fingerprint, hash_algorithm, request_id, department,
        project, vendor_id, amount, kind, actor_id, occurred_at, note,
        anomaly_score, is_anomalous, anomaly_reason, recorded_at
    ON ledger_entries
    BEGIN
        SELECT RAISE(ABORT, 'ledger entries are immutable');
    END
    """,
    """
    CREATE TABLE IF NOT EXISTS anchor_receipts (
        fingerprint TEXT PRIMARY KEY,
        anchor TEXT NOT NULL,
        status TEXT NOT NULL,
        reference TEXT,
        anchored_at TEXT,
        anchored_fingerprint TEXT,
        detail TEXT
    )
    """,
)


class SQLiteDatabase:
    """
    SQLite connection factory with schema management

    Uses WAL mode so snapshot reads proceed while a writer holds the
    reserved lock. Write transactions start with BEGIN IMMEDIATE, which
    gives the writer exclusive write access for the whole operation.
    """

    def __init__(self, db_path: str | Path, busy_timeout_seconds: float = 5.0) -> None:
        """
        Initialize database and create schema if needed

        Args:
            db_path: Path to SQLite database file
            busy_timeout_seconds: How long SQLite waits on a locked database
        """
        self.db_path = Path(db_path)
        self.busy_timeout_seconds = busy_timeout_seconds
        self._initialize_schema()

    def _initialize_schema(self) -> None:
        """Create tables, indices and triggers if they don't exist"""
        with self.connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            for statement in SCHEMA_STATEMENTS:
                conn.execute(statement)
            conn.commit()

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        """
        Context manager for read connections

        Ensures connections are closed; callers commit explicitly if they write.
        """
        conn = sqlite3.connect(str(self.db_path), timeout=self.busy_timeout_seconds)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Context manager for an exclusive write transaction

        Commits when the block exits normally, rolls back on any exception.

        Raises:
            ConcurrencyConflictError: If the database stays locked past the
                busy timeout
        """
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_seconds,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        try:
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.OperationalError as e:
                raise ConcurrencyConflictError("database", f"Database busy: {e}") from e

            try:
                yield conn
                conn.execute("COMMIT")
            except sqlite3.OperationalError as e:
                conn.execute("ROLLBACK")
                if "locked" in str(e).lower() or "busy" in str(e).lower():
                    raise ConcurrencyConflictError("database", f"Database busy: {e}") from e
                raise
            except BaseException:
                conn.execute("ROLLBACK")
                raise
        finally:
            conn.close()

    def count_rows(self, table: str) -> int:
        """Count rows in one of the known tables"""
        if table not in {"budget_requests", "allocation_aggregates", "ledger_entries", "anchor_receipts"}:
            raise ValueError(f"Unknown table {table}")
        with self.connect() as conn:
            return conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
