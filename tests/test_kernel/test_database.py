"""
Tests for SQLite storage: schema, transactions and ledger immutability triggers
"""

import sqlite3

import pytest

from budget_trail.kernel.database import SQLiteDatabase


def _insert_entry(conn: sqlite3.Connection, entry_id: str = "e1", fingerprint: str = "0xabc") -> None:
    conn.execute(
        "INSERT INTO ledger_entries (entry_id, fingerprint, hash_algorithm, request_id, "
        "department, project, vendor_id, amount, kind, actor_id, occurred_at, note, "
        "anomaly_score, is_anomalous, anomaly_reason, verification_status, last_verified_at, "
        "recorded_at) VALUES (?, ?, 'keccak256', 'BR-1', 'Engineering', 'Platform', 'V1', "
        "'100', 'allocation', 'carol', '2025-01-15T12:00:00+00:00', '', 0, 0, NULL, "
        "'pending', NULL, '2025-01-15T12:00:00+00:00')",
        (entry_id, fingerprint),
    )


def test_schema_creates_all_tables(db: SQLiteDatabase) -> None:
    with db.connect() as conn:
        tables = {
            row["name"]
            for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
        }
    assert {"budget_requests", "allocation_aggregates", "ledger_entries", "anchor_receipts"} <= tables


def test_schema_is_idempotent(temp_db) -> None:
    SQLiteDatabase(temp_db)
    db = SQLiteDatabase(temp_db)
    assert db.count_rows("ledger_entries") == 0


def test_database_uses_wal(db: SQLiteDatabase) -> None:
    with db.connect() as conn:
        mode = conn.execute("PRAGMA journal_mode").fetchone()[0]
    assert mode == "wal"


def test_transaction_commits(db: SQLiteDatabase) -> None:
    with db.transaction() as conn:
        _insert_entry(conn)
    assert db.count_rows("ledger_entries") == 1


def test_transaction_rolls_back_on_error(db: SQLiteDatabase) -> None:
    with pytest.raises(RuntimeError):
        with db.transaction() as conn:
            _insert_entry(conn)
            raise RuntimeError("boom")
    assert db.count_rows("ledger_entries") == 0


def test_ledger_rows_cannot_be_deleted(db: SQLiteDatabase) -> None:
    with db.transaction() as conn:
        _insert_entry(conn)

    with pytest.raises(sqlite3.IntegrityError, match="append-only"):
        with db.transaction() as conn:
            conn.execute("DELETE FROM ledger_entries WHERE entry_id = 'e1'")

    assert db.count_rows("ledger_entries") == 1


def test_ledger_event_data_cannot_be_updated(db: SQLiteDatabase) -> None:
    with db.transaction() as conn:
        _insert_entry(conn)

    with pytest.raises(sqlite3.IntegrityError, match="immutable"):
        with db.transaction() as conn:
            conn.execute("UPDATE ledger_entries SET amount = '999' WHERE entry_id = 'e1'")


def test_ledger_verification_status_is_writable(db: SQLiteDatabase) -> None:
    with db.transaction() as conn:
        _insert_entry(conn)

    with db.transaction() as conn:
        conn.execute("UPDATE ledger_entries SET verification_status = 'verified' WHERE entry_id = 'e1'")

    with db.connect() as conn:
        status = conn.execute("SELECT verification_status FROM ledger_entries").fetchone()[0]
    assert status == "verified"


def test_fingerprint_is_unique(db: SQLiteDatabase) -> None:
    with db.transaction() as conn:
        _insert_entry(conn, "e1", "0xsame")

    with pytest.raises(sqlite3.IntegrityError):
        with db.transaction() as conn:
            _insert_entry(conn, "e2", "0xsame")


def test_count_rows_rejects_unknown_table(db: SQLiteDatabase) -> None:
    with pytest.raises(ValueError):
        db.count_rows("sqlite_master")
