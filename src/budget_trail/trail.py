"""
BudgetTrail - Main façade class

This is the primary interface to the budget allocation core. It wires the
SQLite storage, request lifecycle, allocation hierarchy, ledger and
integrity anchor together behind a small API.

Example:
    >>> from budget_trail import BudgetTrail
    >>> from budget_trail.flow import StaticVendorDirectory
    >>> from budget_trail.requests import Actor, Role
    >>> vendors = StaticVendorDirectory({"V1": "0xabc"})
    >>> trail = BudgetTrail("budget.db", vendor_directory=vendors)
    >>> admin = Actor(actor_id="carol", role=Role.ADMINISTRATOR)
    >>> request = trail.create_request(
    ...     requester_id="alice", department="Engineering", project="Platform",
    ...     amount=Decimal("50000"), description="Build servers",
    ...     required_by=date(2025, 12, 31))
    >>> trail.approve(request.request_id, admin)
    >>> trail.allocate(request.request_id, admin, vendor_id="V1", amount=Decimal("40000"))
    >>> trail.record_spend(request.request_id, admin, Decimal("10000"))
    >>> trail.snapshot(request.fiscal_period)
"""

from concurrent.futures import Executor
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Iterable

from budget_trail.flow.collaborators import StaticVendorDirectory, VendorDirectory
from budget_trail.flow.coordinator import FlowResult, FlowUpdateCoordinator
from budget_trail.flow.notifications import NotificationBus
from budget_trail.hierarchy.models import HierarchySnapshot
from budget_trail.hierarchy.store import AggregateStore
from budget_trail.integrity.anchors import AnchorDispatcher, IntegrityAnchor, LocalAnchor
from budget_trail.integrity.hasher import IntegrityHasher
from budget_trail.kernel.database import SQLiteDatabase
from budget_trail.kernel.policy import LedgerPolicy
from budget_trail.kernel.time import RealTimeProvider, TimeProvider
from budget_trail.ledger.ledger import TransactionLedger
from budget_trail.ledger.models import (
    AnchorReconciliation,
    LedgerEntry,
    LedgerEntryKind,
    VerificationStatus,
    VerificationSummary,
)
from budget_trail.requests.lifecycle import RequestLifecycle
from budget_trail.requests.models import (
    Actor,
    BudgetRequest,
    Category,
    Priority,
    RequestState,
)
from budget_trail.requests.repository import RequestRepository


class BudgetTrail:
    """
    Budget Trail main façade

    Provides a unified API for:
    - Budget request creation and lifecycle transitions
    - Vendor allocation, releases and withdrawals
    - Hierarchy snapshots per fiscal period
    - Ledger queries, verification and anchor reconciliation
    """

    def __init__(
        self,
        sqlite_path: str | Path,
        policy: LedgerPolicy | None = None,
        time_provider: TimeProvider | None = None,
        vendor_directory: VendorDirectory | None = None,
        anchor: IntegrityAnchor | None = None,
        notification_bus: NotificationBus | None = None,
        anchor_executor: Executor | None = None,
    ) -> None:
        """
        Initialize the system

        Args:
            sqlite_path: Path to SQLite database
            policy: Ledger policy (uses defaults if None)
            time_provider: Time provider (uses real time if None)
            vendor_directory: Wallet lookup; allocating to a vendor it does not
                know raises NotFoundError (empty StaticVendorDirectory if None)
            anchor: Integrity anchor (LocalAnchor if None)
            notification_bus: Bus to publish lifecycle notifications on
            anchor_executor: Run anchor submissions in the background
        """
        self.sqlite_path = Path(sqlite_path)
        self.policy = policy if policy is not None else LedgerPolicy()
        self.time_provider = time_provider if time_provider is not None else RealTimeProvider()
        self.vendor_directory: VendorDirectory = (
            vendor_directory if vendor_directory is not None else StaticVendorDirectory()
        )
        self.anchor = anchor if anchor is not None else LocalAnchor(self.time_provider)
        self.notification_bus = (
            notification_bus if notification_bus is not None else NotificationBus()
        )

        # Infrastructure
        self.db = SQLiteDatabase(self.sqlite_path, busy_timeout_seconds=self.policy.lock_timeout_seconds)
        self.hasher = IntegrityHasher(self.policy.hash_algorithm)
        self.requests = RequestRepository(self.db)
        self.store = AggregateStore(self.db, lock_timeout_seconds=self.policy.lock_timeout_seconds)
        self.ledger = TransactionLedger(self.db, self.hasher, self.policy, self.time_provider)
        self.lifecycle = RequestLifecycle(self.time_provider, self.policy)
        self.anchor_dispatcher = AnchorDispatcher(
            self.anchor, self.ledger.record_anchor, executor=anchor_executor
        )

        self.coordinator = FlowUpdateCoordinator(
            db=self.db,
            requests=self.requests,
            store=self.store,
            ledger=self.ledger,
            lifecycle=self.lifecycle,
            policy=self.policy,
            time_provider=self.time_provider,
            vendor_directory=self.vendor_directory,
            notification_bus=self.notification_bus,
            anchor_dispatcher=self.anchor_dispatcher,
        )

    # Request operations

    def create_request(
        self,
        *,
        requester_id: str,
        department: str,
        project: str,
        amount: Decimal,
        description: str,
        required_by: date | None,
        category: Category = Category.OTHER,
        currency: str = "USD",
        priority: Priority = Priority.MEDIUM,
        justification: str | None = None,
        tags: Iterable[str] = (),
        fiscal_period: str | None = None,
    ) -> BudgetRequest:
        """
        Create and store a pending budget request

        Raises:
            ValidationError: On missing/malformed fields or a past required-by date
        """
        request = self.lifecycle.create(
            requester_id=requester_id,
            department=department,
            project=project,
            amount=amount,
            description=description,
            required_by=required_by,
            category=category,
            currency=currency,
            priority=priority,
            justification=justification,
            tags=tags,
            fiscal_period=fiscal_period,
        )
        return self.coordinator.submit(request)

    def get_request(self, request_id: str) -> BudgetRequest:
        return self.requests.get(request_id)

    def list_requests(
        self,
        state: RequestState | None = None,
        department: str | None = None,
        fiscal_period: str | None = None,
        limit: int | None = None,
    ) -> list[BudgetRequest]:
        return self.requests.list_requests(
            state=state, department=department, fiscal_period=fiscal_period, limit=limit
        )

    def approve(self, request_id: str, actor: Actor, note: str = "") -> FlowResult:
        return self.coordinator.approve(request_id, actor, note)

    def reject(self, request_id: str, actor: Actor, reason: str) -> FlowResult:
        return self.coordinator.reject(request_id, actor, reason)

    def allocate(
        self,
        request_id: str,
        actor: Actor,
        vendor_id: str,
        amount: Decimal | None = None,
        note: str = "",
        occurred_at: datetime | None = None,
    ) -> FlowResult:
        return self.coordinator.allocate(request_id, actor, vendor_id, amount, note, occurred_at)

    def record_spend(
        self,
        request_id: str,
        actor: Actor,
        amount: Decimal,
        kind: LedgerEntryKind = LedgerEntryKind.RELEASE,
        note: str = "",
        occurred_at: datetime | None = None,
    ) -> FlowResult:
        return self.coordinator.record_spend(request_id, actor, amount, kind, note, occurred_at)

    def complete(self, request_id: str, actor: Actor, note: str = "") -> FlowResult:
        return self.coordinator.complete(request_id, actor, note)

    def cancel(self, request_id: str, actor: Actor, reason: str = "") -> FlowResult:
        return self.coordinator.cancel(request_id, actor, reason)

    def freeze(self, request_id: str, actor: Actor, note: str = "") -> FlowResult:
        return self.coordinator.freeze(request_id, actor, note)

    def unfreeze(self, request_id: str, actor: Actor, note: str = "") -> FlowResult:
        return self.coordinator.unfreeze(request_id, actor, note)

    # Hierarchy operations

    def snapshot(self, fiscal_period: str) -> HierarchySnapshot:
        """Immutable view of one fiscal period's allocation hierarchy"""
        return self.coordinator.snapshot(fiscal_period)

    def list_fiscal_periods(self) -> list[str]:
        return self.store.list_periods()

    # Ledger operations

    def list_ledger(
        self,
        request_id: str | None = None,
        kind: LedgerEntryKind | None = None,
        anomalous: bool | None = None,
        limit: int | None = None,
    ) -> list[LedgerEntry]:
        return self.ledger.list_entries(
            request_id=request_id, kind=kind, anomalous=anomalous, limit=limit
        )

    def verify_entry(self, entry_id: str, provided_hash: str | None = None) -> LedgerEntry:
        """Re-verify one ledger entry; tampering is recorded, not raised"""
        return self.ledger.verify(entry_id, provided_hash)

    def verify_ledger(self) -> VerificationSummary:
        return self.ledger.verify_all()

    def reconcile_anchor(
        self, entry_id: str, anchor_fingerprint: str | None = None
    ) -> AnchorReconciliation:
        return self.ledger.reconcile_anchor(entry_id, anchor_fingerprint)

    def health(self) -> dict[str, int]:
        """Entry and request counts for health reporting"""
        return {
            "requests": self.db.count_rows("budget_requests"),
            "fiscal_periods": self.db.count_rows("allocation_aggregates"),
            "ledger_entries": self.ledger.count(),
            "tampered_entries": self.ledger.count(status=VerificationStatus.TAMPERED),
            "anomalous_entries": self.ledger.count(anomalous=True),
            "anchor_receipts": self.db.count_rows("anchor_receipts"),
        }
