"""
Transaction Ledger - append-only, fingerprinted record of allocation events

The ledger provides:
- Append-only semantics (the schema refuses deletes and edits of event data)
- Idempotency via the fingerprint (same logical event = same fingerprint)
- A simple anomaly heuristic scored at append time
- Re-verification that records tampering as data instead of raising

Every method that writes accepts an optional connection so the flow
coordinator can append inside its own transaction; without one the ledger
opens a transaction of its own.
"""

import sqlite3
from contextlib import nullcontext
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import ContextManager

from budget_trail.integrity.anchors import AnchorReceipt, AnchorStatus
from budget_trail.integrity.hasher import IntegrityHasher
from budget_trail.kernel.database import SQLiteDatabase
from budget_trail.kernel.errors import (
    ConflictError,
    IntegrityMismatchError,
    NotFoundError,
    ValidationError,
)
from budget_trail.kernel.ids import IdFactory, default_id_factory
from budget_trail.kernel.logging import get_logger
from budget_trail.kernel.metrics import (
    ledger_anomalies_total,
    ledger_duplicate_rejections_total,
    ledger_entries_appended_total,
    ledger_verifications_total,
)
from budget_trail.kernel.policy import LedgerPolicy, default_policy
from budget_trail.kernel.time import RealTimeProvider, TimeProvider
from budget_trail.ledger.models import (
    AnchorReconciliation,
    LedgerEntry,
    LedgerEntryKind,
    LedgerEvent,
    VerificationStatus,
    VerificationSummary,
)

logger = get_logger(__name__)

ENTRY_COLUMNS = """
    entry_id, fingerprint, hash_algorithm, request_id, department, project,
    vendor_id, amount, kind, actor_id, occurred_at, note, anomaly_score,
    is_anomalous, anomaly_reason, verification_status, last_verified_at,
    recorded_at
"""


class TransactionLedger:
    """
    SQLite-backed append-only ledger keyed by fingerprint

    Fun fact: double-entry bookkeeping has relied on "never erase, only
    append a correcting entry" since Pacioli wrote it down in 1494.
    """

    def __init__(
        self,
        db: SQLiteDatabase,
        hasher: IntegrityHasher | None = None,
        policy: LedgerPolicy | None = None,
        time_provider: TimeProvider | None = None,
        id_factory: IdFactory | None = None,
    ) -> None:
        self.db = db
        self.policy = policy or default_policy
        self.hasher = hasher or IntegrityHasher(self.policy.hash_algorithm)
        self.time_provider = time_provider or RealTimeProvider()
        self.id_factory = id_factory or default_id_factory

    def _reader(self, conn: sqlite3.Connection | None) -> ContextManager[sqlite3.Connection]:
        return nullcontext(conn) if conn is not None else self.db.connect()

    def _writer(self, conn: sqlite3.Connection | None) -> ContextManager[sqlite3.Connection]:
        return nullcontext(conn) if conn is not None else self.db.transaction()

    # ------------------------------------------------------------------
    # Appending
    # ------------------------------------------------------------------

    def fingerprint_event(self, event: LedgerEvent) -> str:
        """Fingerprint an event's canonical projection with the policy algorithm"""
        return self.hasher.fingerprint(event.projection(), self.policy.hash_algorithm)

    def score_anomaly(self, event: LedgerEvent) -> tuple[float, str | None]:
        """
        Score an event with the anomaly heuristic

        Returns:
            (score in [0, 1], reason text or None)
        """
        score = 0.0
        reasons: list[str] = []

        if event.amount > self.policy.anomaly_high_value_threshold:
            score += self.policy.anomaly_high_value_increment
            reasons.append("high-value amount")

        if (
            event.remaining_allocation is not None
            and event.amount > event.remaining_allocation
        ):
            score += self.policy.anomaly_overspend_increment
            reasons.append("exceeds remaining allocation")

        score = round(min(score, 1.0), 4)
        return score, "; ".join(reasons) if reasons else None

    def append(
        self, event: LedgerEvent, conn: sqlite3.Connection | None = None
    ) -> LedgerEntry:
        """
        Append an event to the ledger

        Args:
            event: Event to record
            conn: Open write transaction to join (optional)

        Returns:
            The stored entry with status `pending`

        Raises:
            ConflictError: If an entry with the same fingerprint exists
        """
        fingerprint = self.fingerprint_event(event)
        score, reason = self.score_anomaly(event)

        entry = LedgerEntry(
            entry_id=self.id_factory.generate(),
            fingerprint=fingerprint,
            hash_algorithm=self.policy.hash_algorithm,
            request_id=event.request_id,
            department=event.department,
            project=event.project,
            vendor_id=event.vendor_id,
            amount=event.amount,
            kind=event.kind,
            actor_id=event.actor_id,
            occurred_at=event.occurred_at,
            note=event.note,
            anomaly_score=score,
            is_anomalous=score > self.policy.anomaly_flag_threshold,
            anomaly_reason=reason,
            verification_status=VerificationStatus.PENDING,
            recorded_at=self.time_provider.now(),
        )

        with self._writer(conn) as write_conn:
            existing = write_conn.execute(
                "SELECT entry_id FROM ledger_entries WHERE fingerprint = ?",
                (fingerprint,),
            ).fetchone()
            if existing is not None:
                ledger_duplicate_rejections_total.inc()
                raise ConflictError(fingerprint)

            try:
                write_conn.execute(
                    f"INSERT INTO ledger_entries ({ENTRY_COLUMNS}) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        entry.entry_id,
                        entry.fingerprint,
                        entry.hash_algorithm,
                        entry.request_id,
                        entry.department,
                        entry.project,
                        entry.vendor_id,
                        str(entry.amount),
                        entry.kind.value,
                        entry.actor_id,
                        entry.occurred_at.isoformat(),
                        entry.note,
                        entry.anomaly_score,
                        int(entry.is_anomalous),
                        entry.anomaly_reason,
                        entry.verification_status.value,
                        None,
                        entry.recorded_at.isoformat(),
                    ),
                )
            except sqlite3.IntegrityError as e:
                # Lost a race with a concurrent append of the same event
                if "fingerprint" in str(e).lower():
                    ledger_duplicate_rejections_total.inc()
                    raise ConflictError(fingerprint) from e
                raise

        ledger_entries_appended_total.labels(kind=entry.kind.value).inc()
        if entry.is_anomalous:
            ledger_anomalies_total.labels(kind=entry.kind.value).inc()
            logger.warning(
                "Anomalous ledger entry",
                entry_id=entry.entry_id,
                kind=entry.kind.value,
                anomaly_score=entry.anomaly_score,
                anomaly_reason=entry.anomaly_reason,
            )

        return entry

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify(
        self,
        entry_id: str,
        provided_hash: str | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> LedgerEntry:
        """
        Re-verify one entry against its stored data

        The fingerprint is recomputed from the stored projection and
        compared with `provided_hash` (or the stored fingerprint when none is
        given). The outcome is recorded as `verified` or `tampered`; event
        data is never touched. A row whose stored values no longer parse is
        recorded as `tampered` too.

        Raises:
            NotFoundError: If the entry does not exist
        """
        with self._writer(conn) as write_conn:
            row = write_conn.execute(
                f"SELECT {ENTRY_COLUMNS} FROM ledger_entries WHERE entry_id = ?",
                (entry_id,),
            ).fetchone()
            if row is None:
                raise NotFoundError("ledger entry", entry_id)

            entry, status = self._verify_row(row, provided_hash)
            verified_at = self.time_provider.now()

            write_conn.execute(
                "UPDATE ledger_entries SET verification_status = ?, last_verified_at = ? "
                "WHERE entry_id = ?",
                (status.value, verified_at.isoformat(), entry_id),
            )

        ledger_verifications_total.labels(status=status.value).inc()
        return entry.model_copy(
            update={"verification_status": status, "last_verified_at": verified_at}
        )

    def _verify_row(
        self, row: sqlite3.Row, expected: str | None
    ) -> tuple[LedgerEntry, VerificationStatus]:
        try:
            entry = self._row_to_entry(row)
        except (InvalidOperation, ValueError, TypeError) as e:
            logger.warning("Ledger entry is unreadable", entry_id=row["entry_id"], error=str(e))
            # Keep the raw stored values so callers can see what was found
            salvaged = LedgerEntry.model_construct(**dict(zip(row.keys(), row)))
            return salvaged, VerificationStatus.TAMPERED
        return entry, self._check(entry, expected if expected is not None else entry.fingerprint)

    def _check(self, entry: LedgerEntry, expected: str) -> VerificationStatus:
        try:
            recomputed = self.hasher.fingerprint(entry.projection(), entry.hash_algorithm)
            self.hasher.ensure_match(expected, recomputed)
        except IntegrityMismatchError as e:
            logger.warning(
                "Ledger entry failed verification",
                entry_id=entry.entry_id,
                expected=e.expected,
                actual=e.actual,
            )
            return VerificationStatus.TAMPERED
        except ValidationError as e:
            # Stored algorithm is not one the hasher supports
            logger.warning("Ledger entry cannot be fingerprinted", entry_id=entry.entry_id, error=str(e))
            return VerificationStatus.TAMPERED
        return VerificationStatus.VERIFIED

    def verify_all(self) -> VerificationSummary:
        """Re-verify every entry against a recomputation of its own projection"""
        verified = 0
        tampered_ids: list[str] = []
        verified_at = self.time_provider.now()

        with self.db.transaction() as conn:
            rows = conn.execute(
                f"SELECT {ENTRY_COLUMNS} FROM ledger_entries ORDER BY rowid ASC"
            ).fetchall()
            for row in rows:
                _, status = self._verify_row(row, None)
                conn.execute(
                    "UPDATE ledger_entries SET verification_status = ?, last_verified_at = ? "
                    "WHERE entry_id = ?",
                    (status.value, verified_at.isoformat(), row["entry_id"]),
                )
                ledger_verifications_total.labels(status=status.value).inc()
                if status == VerificationStatus.TAMPERED:
                    tampered_ids.append(row["entry_id"])
                else:
                    verified += 1

        return VerificationSummary(
            total=verified + len(tampered_ids),
            verified=verified,
            tampered=len(tampered_ids),
            tampered_entry_ids=tampered_ids,
            verified_at=verified_at,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, entry_id: str, conn: sqlite3.Connection | None = None) -> LedgerEntry:
        """
        Raises:
            NotFoundError: If the entry does not exist
        """
        with self._reader(conn) as read_conn:
            row = read_conn.execute(
                f"SELECT {ENTRY_COLUMNS} FROM ledger_entries WHERE entry_id = ?",
                (entry_id,),
            ).fetchone()
        if row is None:
            raise NotFoundError("ledger entry", entry_id)
        return self._row_to_entry(row)

    def get_by_fingerprint(
        self, fingerprint: str, conn: sqlite3.Connection | None = None
    ) -> LedgerEntry | None:
        with self._reader(conn) as read_conn:
            row = read_conn.execute(
                f"SELECT {ENTRY_COLUMNS} FROM ledger_entries WHERE fingerprint = ?",
                (self.hasher.normalize(fingerprint),),
            ).fetchone()
        return self._row_to_entry(row) if row is not None else None

    def list_entries(
        self,
        *,
        request_id: str | None = None,
        kind: LedgerEntryKind | None = None,
        anomalous: bool | None = None,
        status: VerificationStatus | None = None,
        limit: int | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> list[LedgerEntry]:
        """
        List entries in append order

        Args:
            request_id: Only entries for this request
            kind: Only entries of this kind
            anomalous: Only anomalous (True) or normal (False) entries
            status: Only entries with this verification status
            limit: Maximum number of entries to return
        """
        conditions = []
        params: list[object] = []

        if request_id:
            conditions.append("request_id = ?")
            params.append(request_id)

        if kind is not None:
            conditions.append("kind = ?")
            params.append(kind.value)

        if anomalous is not None:
            conditions.append("is_anomalous = ?")
            params.append(int(anomalous))

        if status is not None:
            conditions.append("verification_status = ?")
            params.append(status.value)

        where_clause = " AND ".join(conditions) if conditions else "1=1"
        query = f"SELECT {ENTRY_COLUMNS} FROM ledger_entries WHERE {where_clause} ORDER BY rowid ASC"

        if limit:
            query += " LIMIT ?"
            params.append(limit)

        with self._reader(conn) as read_conn:
            rows = read_conn.execute(query, params).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def count(
        self,
        *,
        status: VerificationStatus | None = None,
        anomalous: bool | None = None,
    ) -> int:
        """Count entries, optionally by verification status or anomaly flag"""
        conditions = []
        params: list[object] = []

        if status is not None:
            conditions.append("verification_status = ?")
            params.append(status.value)

        if anomalous is not None:
            conditions.append("is_anomalous = ?")
            params.append(int(anomalous))

        where_clause = " AND ".join(conditions) if conditions else "1=1"
        with self.db.connect() as conn:
            return conn.execute(
                f"SELECT COUNT(*) FROM ledger_entries WHERE {where_clause}", params
            ).fetchone()[0]

    # ------------------------------------------------------------------
    # Integrity anchors
    # ------------------------------------------------------------------

    def record_anchor(self, receipt: AnchorReceipt) -> None:
        """
        Store an anchor receipt next to its ledger entry

        A later successful receipt replaces an earlier failed one; an anchored
        receipt is never overwritten by a failure.
        """
        with self.db.transaction() as conn:
            existing = conn.execute(
                "SELECT status FROM anchor_receipts WHERE fingerprint = ?",
                (receipt.fingerprint,),
            ).fetchone()
            if (
                existing is not None
                and existing["status"] == AnchorStatus.ANCHORED.value
                and receipt.status != AnchorStatus.ANCHORED
            ):
                return

            conn.execute(
                "INSERT OR REPLACE INTO anchor_receipts "
                "(fingerprint, anchor, status, reference, anchored_at, "
                "anchored_fingerprint, detail) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    receipt.fingerprint,
                    receipt.anchor,
                    receipt.status.value,
                    receipt.reference,
                    receipt.anchored_at.isoformat() if receipt.anchored_at else None,
                    receipt.anchored_fingerprint,
                    receipt.detail,
                ),
            )

    def get_anchor(self, fingerprint: str) -> AnchorReceipt | None:
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT fingerprint, anchor, status, reference, anchored_at, "
                "anchored_fingerprint, detail FROM anchor_receipts WHERE fingerprint = ?",
                (self.hasher.normalize(fingerprint),),
            ).fetchone()
        if row is None:
            return None

        return AnchorReceipt(
            fingerprint=row["fingerprint"],
            anchor=row["anchor"],
            status=AnchorStatus(row["status"]),
            reference=row["reference"],
            anchored_at=datetime.fromisoformat(row["anchored_at"]) if row["anchored_at"] else None,
            anchored_fingerprint=row["anchored_fingerprint"],
            detail=row["detail"],
        )

    def reconcile_anchor(
        self, entry_id: str, anchor_fingerprint: str | None = None
    ) -> AnchorReconciliation:
        """
        Compare an entry's fingerprint with the value an anchor holds

        This is a debugging aid, not a correctness check: a mismatch is
        reported in the result, never raised.

        Args:
            entry_id: Ledger entry to reconcile
            anchor_fingerprint: Anchor-side value; defaults to the value echoed
                in the stored anchor receipt
        """
        entry = self.get(entry_id)

        if anchor_fingerprint is None:
            receipt = self.get_anchor(entry.fingerprint)
            anchor_fingerprint = receipt.anchored_fingerprint if receipt else None

        if anchor_fingerprint is None:
            return AnchorReconciliation(entry_id=entry_id, fingerprint=entry.fingerprint)

        matches = self.hasher.compare(entry.fingerprint, anchor_fingerprint)
        if not matches:
            logger.warning(
                "Anchor fingerprint differs from ledger",
                entry_id=entry_id,
                fingerprint=entry.fingerprint,
                anchor_fingerprint=anchor_fingerprint,
            )

        return AnchorReconciliation(
            entry_id=entry_id,
            fingerprint=entry.fingerprint,
            anchor_fingerprint=self.hasher.normalize(anchor_fingerprint),
            matches=matches,
        )

    def _row_to_entry(self, row: sqlite3.Row) -> LedgerEntry:
        """Convert SQLite row to LedgerEntry"""
        return LedgerEntry(
            entry_id=row["entry_id"],
            fingerprint=row["fingerprint"],
            hash_algorithm=row["hash_algorithm"],
            request_id=row["request_id"],
            department=row["department"],
            project=row["project"],
            vendor_id=row["vendor_id"],
            amount=Decimal(row["amount"]),
            kind=LedgerEntryKind(row["kind"]),
            actor_id=row["actor_id"],
            occurred_at=datetime.fromisoformat(row["occurred_at"]),
            note=row["note"],
            anomaly_score=row["anomaly_score"],
            is_anomalous=bool(row["is_anomalous"]),
            anomaly_reason=row["anomaly_reason"],
            verification_status=VerificationStatus(row["verification_status"]),
            last_verified_at=(
                datetime.fromisoformat(row["last_verified_at"])
                if row["last_verified_at"]
                else None
            ),
            recorded_at=datetime.fromisoformat(row["recorded_at"]),
        )
