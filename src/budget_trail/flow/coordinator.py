"""
Flow Update Coordinator - keeps requests, hierarchy and ledger consistent

The coordinator is the only component that touches both a request's
lifecycle and the allocation hierarchy. Every business operation runs as:

1. acquire the fiscal period's aggregate lock
2. BEGIN IMMEDIATE
3. reload the request and the period aggregate
4. apply the lifecycle transition (pure), then the hierarchy update, then
   append the ledger entry
5. save request and aggregate with optimistic version checks
6. COMMIT, or ROLLBACK everything if any step failed

So a duplicate ledger fingerprint (ConflictError) can never leave the
hierarchy mutated but unlogged. Contention (lock timeout, version mismatch,
busy database) is retried with bounded backoff before
ConcurrencyConflictError reaches the caller.

Only after commit are notifications published and ledger fingerprints
handed to the integrity anchor; neither can block or undo the operation.
"""

import sqlite3
from datetime import datetime
from decimal import Decimal
from typing import Callable

from pydantic import BaseModel

from budget_trail.flow.collaborators import VendorDirectory
from budget_trail.flow.notifications import (
    Notification,
    NotificationBus,
    NotificationKind,
)
from budget_trail.hierarchy.aggregate import AllocationHierarchy
from budget_trail.hierarchy.models import HierarchySnapshot, ReviewFlag, VendorStatus
from budget_trail.hierarchy.store import AggregateStore
from budget_trail.integrity.anchors import AnchorDispatcher
from budget_trail.kernel.database import SQLiteDatabase
from budget_trail.kernel.errors import ValidationError
from budget_trail.kernel.logging import LogOperation, get_logger
from budget_trail.kernel.metrics import (
    lifecycle_transitions_total,
    overspend_flags_total,
    track_operation_duration,
)
from budget_trail.kernel.policy import LedgerPolicy
from budget_trail.kernel.retry import retry_on_concurrency_conflict
from budget_trail.kernel.time import TimeProvider
from budget_trail.ledger.ledger import TransactionLedger
from budget_trail.ledger.models import LedgerEntry, LedgerEntryKind, LedgerEvent
from budget_trail.requests.invariants import validate_role
from budget_trail.requests.lifecycle import RequestLifecycle
from budget_trail.requests.models import (
    SYSTEM_ACTOR,
    Actor,
    BudgetRequest,
    RequestState,
    Role,
)
from budget_trail.requests.repository import RequestRepository

logger = get_logger(__name__)

SPEND_KINDS = (LedgerEntryKind.RELEASE, LedgerEntryKind.WITHDRAWAL)


class FlowResult(BaseModel):
    """
    Outcome of one coordinator operation, read after commit

    Attributes:
        request: The request as stored
        ledger_entry: Entry appended by the operation, if any
        snapshot: Immutable view of the period aggregate after the operation
        notifications: Notifications published for the operation
        review_flags: Overspend flags raised by the operation
    """

    request: BudgetRequest
    ledger_entry: LedgerEntry | None = None
    snapshot: HierarchySnapshot
    notifications: tuple[Notification, ...] = ()
    review_flags: tuple[ReviewFlag, ...] = ()

    model_config = {"frozen": True}


class _Applied:
    """Changes produced by one attempt, before they are persisted"""

    def __init__(
        self,
        request: BudgetRequest,
        previous_state: RequestState,
        *,
        request_changed: bool = True,
        hierarchy_changed: bool = False,
        ledger_entry: LedgerEntry | None = None,
        review_flags: list[ReviewFlag] | None = None,
        notifications: list[Notification] | None = None,
    ) -> None:
        self.request = request
        self.previous_state = previous_state
        self.request_changed = request_changed
        self.hierarchy_changed = hierarchy_changed
        self.ledger_entry = ledger_entry
        self.review_flags = review_flags or []
        self.notifications = notifications or []
        self.snapshot: HierarchySnapshot | None = None


Work = Callable[[sqlite3.Connection, BudgetRequest, AllocationHierarchy], _Applied]


class FlowUpdateCoordinator:
    """Transactional orchestration of lifecycle, hierarchy and ledger"""

    def __init__(
        self,
        db: SQLiteDatabase,
        requests: RequestRepository,
        store: AggregateStore,
        ledger: TransactionLedger,
        lifecycle: RequestLifecycle,
        policy: LedgerPolicy,
        time_provider: TimeProvider,
        vendor_directory: VendorDirectory,
        notification_bus: NotificationBus,
        anchor_dispatcher: AnchorDispatcher | None = None,
    ) -> None:
        self.db = db
        self.requests = requests
        self.store = store
        self.ledger = ledger
        self.lifecycle = lifecycle
        self.policy = policy
        self.time_provider = time_provider
        self.vendor_directory = vendor_directory
        self.notification_bus = notification_bus
        self.anchor_dispatcher = anchor_dispatcher

    # ------------------------------------------------------------------
    # Hooks: hierarchy + ledger updates for one lifecycle event
    # ------------------------------------------------------------------

    def on_approved(self, request: BudgetRequest, hierarchy: AllocationHierarchy) -> None:
        """Add the approved amount to the request's department"""
        hierarchy.ensure_department(request.department, request.amount)

    def on_allocated(
        self,
        request: BudgetRequest,
        hierarchy: AllocationHierarchy,
        vendor_id: str,
        allocated_amount: Decimal,
        *,
        actor: Actor,
        occurred_at: datetime,
        conn: sqlite3.Connection,
        note: str = "",
    ) -> LedgerEntry:
        """
        Fund the project and vendor, then log an `allocation` entry

        The vendor node's anchor reference is the fingerprint of its latest
        allocation entry; the anchor receipt is stored against that
        fingerprint once the anchor answers.
        """
        wallet_ref = self.vendor_directory.resolve_wallet(vendor_id)
        hierarchy.ensure_project(request.department, request.project, allocated_amount)
        hierarchy.ensure_vendor(
            request.department, request.project, vendor_id, allocated_amount, wallet_ref
        )

        entry = self.ledger.append(
            LedgerEvent(
                request_id=request.request_id,
                department=request.department,
                project=request.project,
                vendor_id=vendor_id,
                amount=allocated_amount,
                kind=LedgerEntryKind.ALLOCATION,
                actor_id=actor.actor_id,
                occurred_at=occurred_at,
                note=note,
            ),
            conn,
        )
        hierarchy.set_anchor_ref(request.department, request.project, vendor_id, entry.fingerprint)
        return entry

    def on_spend_recorded(
        self,
        request_id: str,
        amount: Decimal,
        hierarchy: AllocationHierarchy,
        kind: LedgerEntryKind,
        *,
        actor: Actor,
        occurred_at: datetime,
        conn: sqlite3.Connection,
        note: str = "",
    ) -> tuple[LedgerEntry, list[ReviewFlag]]:
        """Propagate spend through the hierarchy, then log a release/withdrawal entry"""
        request = self.requests.get(request_id, conn)
        if request.assigned_vendor_id is None:
            raise ValidationError("vendor_id", f"request {request_id} has no assigned vendor")

        vendor = hierarchy.get_vendor(
            request.department, request.project, request.assigned_vendor_id
        )
        remaining_before = vendor.remaining()

        flags = hierarchy.record_spend(
            request.department,
            request.project,
            request.assigned_vendor_id,
            amount,
            review_ratio=self.policy.overspend_review_ratio,
        )

        entry = self.ledger.append(
            LedgerEvent(
                request_id=request.request_id,
                department=request.department,
                project=request.project,
                vendor_id=request.assigned_vendor_id,
                amount=amount,
                kind=kind,
                actor_id=actor.actor_id,
                occurred_at=occurred_at,
                note=note,
                remaining_allocation=remaining_before,
            ),
            conn,
        )
        return entry, flags

    def on_cancelled(
        self,
        request: BudgetRequest,
        hierarchy: AllocationHierarchy,
        *,
        actor: Actor,
        occurred_at: datetime,
        conn: sqlite3.Connection,
        note: str = "",
    ) -> LedgerEntry:
        """Return an approved request's amount to the pool and log a `reallocation`"""
        hierarchy.release_department(request.department, request.amount)
        return self.ledger.append(
            LedgerEvent(
                request_id=request.request_id,
                department=request.department,
                project=request.project,
                amount=request.amount,
                kind=LedgerEntryKind.REALLOCATION,
                actor_id=actor.actor_id,
                occurred_at=occurred_at,
                note=note,
            ),
            conn,
        )

    def on_vendor_status_changed(
        self,
        request: BudgetRequest,
        hierarchy: AllocationHierarchy,
        status: VendorStatus,
        kind: LedgerEntryKind,
        *,
        actor: Actor,
        occurred_at: datetime,
        conn: sqlite3.Connection,
        note: str = "",
    ) -> LedgerEntry:
        """Freeze or unfreeze the request's vendor and log the matching entry"""
        if request.assigned_vendor_id is None:
            raise ValidationError(
                "vendor_id", f"request {request.request_id} has no assigned vendor"
            )

        vendor = hierarchy.set_vendor_status(
            request.department, request.project, request.assigned_vendor_id, status
        )
        return self.ledger.append(
            LedgerEvent(
                request_id=request.request_id,
                department=request.department,
                project=request.project,
                vendor_id=vendor.vendor_id,
                amount=max(vendor.remaining(), Decimal("0")),
                kind=kind,
                actor_id=actor.actor_id,
                occurred_at=occurred_at,
                note=note,
            ),
            conn,
        )

    # ------------------------------------------------------------------
    # Transaction runner
    # ------------------------------------------------------------------

    def _attempt(self, request_id: str, work: Work) -> _Applied:
        fiscal_period = self.requests.get(request_id).fiscal_period

        with self.store.lock(fiscal_period):
            with self.db.transaction() as conn:
                request = self.requests.get(request_id, conn)
                hierarchy = self.store.load_or_create(request.fiscal_period, conn)
                applied = work(conn, request, hierarchy)

                now = self.time_provider.now()
                if applied.request_changed:
                    applied.request = self.requests.save(applied.request, conn, now)
                if applied.hierarchy_changed:
                    hierarchy = self.store.save(hierarchy, conn, now)

                applied.snapshot = hierarchy.snapshot(now)

        return applied

    def _run(self, operation: str, request_id: str, actor: Actor, work: Work) -> FlowResult:
        attempt = retry_on_concurrency_conflict(
            operation,
            max_attempts=self.policy.max_conflict_retries,
            min_wait_ms=self.policy.retry_min_wait_ms,
            max_wait_ms=self.policy.retry_max_wait_ms,
        )(self._attempt)

        with LogOperation(logger, operation, request_id=request_id, actor_id=actor.actor_id):
            applied = attempt(request_id, work)

        self._after_commit(applied)

        return FlowResult(
            request=applied.request,
            ledger_entry=applied.ledger_entry,
            snapshot=applied.snapshot,
            notifications=tuple(applied.notifications),
            review_flags=tuple(applied.review_flags),
        )

    def _after_commit(self, applied: _Applied) -> None:
        if applied.request.state != applied.previous_state:
            lifecycle_transitions_total.labels(
                from_state=applied.previous_state.value,
                to_state=applied.request.state.value,
            ).inc()

        for flag in applied.review_flags:
            overspend_flags_total.labels(
                level=flag.level.value, needs_review=str(flag.needs_review).lower()
            ).inc()
            logger.warning(
                "Spend exceeds allocation",
                level=flag.level.value,
                node=flag.name,
                ratio=str(flag.ratio) if flag.ratio is not None else None,
                needs_review=flag.needs_review,
            )

        self.notification_bus.publish_all(applied.notifications)

        if self.anchor_dispatcher is not None and applied.ledger_entry is not None:
            entry = applied.ledger_entry
            self.anchor_dispatcher.dispatch(
                entry.fingerprint,
                {
                    "entry_id": entry.entry_id,
                    "request_id": entry.request_id,
                    "kind": entry.kind.value,
                    "occurred_at": entry.occurred_at.isoformat(),
                },
            )

    def _state_changed(
        self, request: BudgetRequest, previous: RequestState, at: datetime, note: str = ""
    ) -> Notification:
        return Notification(
            kind=NotificationKind.STATE_CHANGED,
            request_id=request.request_id,
            occurred_at=at,
            payload={"from_state": previous.value, "to_state": request.state.value, "note": note},
            recipients=(request.requester_id,),
        )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def submit(self, request: BudgetRequest) -> BudgetRequest:
        """Store a newly created pending request and announce it"""
        with LogOperation(logger, "submit", request_id=request.request_id):
            stored = self.requests.insert(request)

        self.notification_bus.publish(
            Notification(
                kind=NotificationKind.STATE_CHANGED,
                request_id=stored.request_id,
                occurred_at=stored.requested_at,
                payload={"from_state": None, "to_state": stored.state.value},
                recipients=(stored.requester_id,),
            )
        )
        return stored

    @track_operation_duration("approve")
    def approve(self, request_id: str, actor: Actor, note: str = "") -> FlowResult:
        def work(
            conn: sqlite3.Connection, request: BudgetRequest, hierarchy: AllocationHierarchy
        ) -> _Applied:
            approved = self.lifecycle.approve(request, actor, note)
            self.on_approved(approved, hierarchy)
            return _Applied(
                approved,
                request.state,
                hierarchy_changed=True,
                notifications=[
                    self._state_changed(approved, request.state, approved.approved_at, note)
                ],
            )

        return self._run("approve", request_id, actor, work)

    @track_operation_duration("reject")
    def reject(self, request_id: str, actor: Actor, reason: str) -> FlowResult:
        def work(
            conn: sqlite3.Connection, request: BudgetRequest, hierarchy: AllocationHierarchy
        ) -> _Applied:
            rejected = self.lifecycle.reject(request, actor, reason)
            return _Applied(
                rejected,
                request.state,
                notifications=[
                    self._state_changed(
                        rejected, request.state, rejected.history[-1].timestamp, reason
                    )
                ],
            )

        return self._run("reject", request_id, actor, work)

    @track_operation_duration("allocate")
    def allocate(
        self,
        request_id: str,
        actor: Actor,
        vendor_id: str,
        amount: Decimal | None = None,
        note: str = "",
        occurred_at: datetime | None = None,
    ) -> FlowResult:
        """
        Allocate an approved request to a vendor

        Args:
            amount: Defaults to the full requested amount
            occurred_at: Event time; pass the original time to replay an
                event idempotently
        """
        at = occurred_at or self.time_provider.now()

        def work(
            conn: sqlite3.Connection, request: BudgetRequest, hierarchy: AllocationHierarchy
        ) -> _Applied:
            allocated = self.lifecycle.allocate(request, actor, vendor_id, amount, note)
            entry = self.on_allocated(
                allocated,
                hierarchy,
                allocated.assigned_vendor_id,
                allocated.allocated_amount,
                actor=actor,
                occurred_at=at,
                conn=conn,
                note=note,
            )
            return _Applied(
                allocated,
                request.state,
                hierarchy_changed=True,
                ledger_entry=entry,
                notifications=[
                    self._state_changed(allocated, request.state, at, note),
                    Notification(
                        kind=NotificationKind.FUNDS_ALLOCATED,
                        request_id=allocated.request_id,
                        occurred_at=at,
                        payload={
                            "vendor_id": allocated.assigned_vendor_id,
                            "amount": str(allocated.allocated_amount),
                            "currency": allocated.currency,
                            "fingerprint": entry.fingerprint,
                        },
                        recipients=(allocated.requester_id, allocated.assigned_vendor_id),
                    ),
                ],
            )

        return self._run("allocate", request_id, actor, work)

    @track_operation_duration("record_spend")
    def record_spend(
        self,
        request_id: str,
        actor: Actor,
        amount: Decimal,
        kind: LedgerEntryKind = LedgerEntryKind.RELEASE,
        note: str = "",
        occurred_at: datetime | None = None,
    ) -> FlowResult:
        """
        Record funds released to (or withdrawn by) the request's vendor

        When the spend brings spent >= allocated and auto-completion is
        enabled, the request completes as the system actor in the same
        transaction.

        Raises:
            ValidationError: Unsupported kind, non-positive amount, request
                not allocated or vendor frozen
            ConflictError: If this exact event was already recorded
        """
        if kind not in SPEND_KINDS:
            raise ValidationError("kind", f"{kind.value} is not a spend kind")
        validate_role(actor, [Role.ADMINISTRATOR, Role.SYSTEM], f"record {kind.value}")
        at = occurred_at or self.time_provider.now()

        def work(
            conn: sqlite3.Connection, request: BudgetRequest, hierarchy: AllocationHierarchy
        ) -> _Applied:
            updated = self.lifecycle.record_spend(request, amount)
            entry, flags = self.on_spend_recorded(
                request.request_id,
                amount,
                hierarchy,
                kind,
                actor=actor,
                occurred_at=at,
                conn=conn,
                note=note,
            )

            notifications = [
                Notification(
                    kind=NotificationKind.FUNDS_RELEASED,
                    request_id=updated.request_id,
                    occurred_at=at,
                    payload={
                        "kind": kind.value,
                        "vendor_id": updated.assigned_vendor_id,
                        "amount": str(amount),
                        "spent_amount": str(updated.spent_amount),
                        "remaining_amount": str(updated.remaining_amount),
                        "fingerprint": entry.fingerprint,
                    },
                    recipients=(updated.requester_id,),
                )
            ]
            notifications.extend(
                Notification(
                    kind=NotificationKind.OVERSPEND_FLAGGED,
                    request_id=updated.request_id,
                    occurred_at=at,
                    payload=flag.model_dump(mode="json"),
                )
                for flag in flags
            )

            if self.policy.auto_complete_on_full_release and updated.is_fully_released():
                updated = self.lifecycle.complete(
                    updated, SYSTEM_ACTOR, "Allocation fully released"
                )
                self._close_vendor_if_spent(updated, hierarchy)
                notifications.append(self._state_changed(updated, request.state, at))

            return _Applied(
                updated,
                request.state,
                hierarchy_changed=True,
                ledger_entry=entry,
                review_flags=flags,
                notifications=notifications,
            )

        return self._run("record_spend", request_id, actor, work)

    def _close_vendor_if_spent(
        self, request: BudgetRequest, hierarchy: AllocationHierarchy
    ) -> None:
        vendor = hierarchy.find_vendor(
            request.department, request.project, request.assigned_vendor_id or ""
        )
        if vendor is not None and vendor.is_open() and vendor.spent_amount >= vendor.allocated_amount:
            hierarchy.set_vendor_status(
                request.department, request.project, vendor.vendor_id, VendorStatus.COMPLETED
            )

    @track_operation_duration("complete")
    def complete(self, request_id: str, actor: Actor, note: str = "") -> FlowResult:
        def work(
            conn: sqlite3.Connection, request: BudgetRequest, hierarchy: AllocationHierarchy
        ) -> _Applied:
            completed = self.lifecycle.complete(request, actor, note)
            self._close_vendor_if_spent(completed, hierarchy)
            return _Applied(
                completed,
                request.state,
                hierarchy_changed=True,
                notifications=[
                    self._state_changed(completed, request.state, completed.completed_at, note)
                ],
            )

        return self._run("complete", request_id, actor, work)

    @track_operation_duration("cancel")
    def cancel(
        self,
        request_id: str,
        actor: Actor,
        reason: str = "",
        occurred_at: datetime | None = None,
    ) -> FlowResult:
        """
        Cancel a pending or approved request

        Cancelling after approval returns the amount to the department pool
        and logs a `reallocation` entry.
        """
        at = occurred_at or self.time_provider.now()

        def work(
            conn: sqlite3.Connection, request: BudgetRequest, hierarchy: AllocationHierarchy
        ) -> _Applied:
            cancelled = self.lifecycle.cancel(request, actor, reason)
            entry = None
            if request.state == RequestState.APPROVED:
                entry = self.on_cancelled(
                    request, hierarchy, actor=actor, occurred_at=at, conn=conn, note=reason
                )
            return _Applied(
                cancelled,
                request.state,
                hierarchy_changed=entry is not None,
                ledger_entry=entry,
                notifications=[self._state_changed(cancelled, request.state, at, reason)],
            )

        return self._run("cancel", request_id, actor, work)

    def _vendor_status_operation(
        self,
        operation: str,
        request_id: str,
        actor: Actor,
        status: VendorStatus,
        kind: LedgerEntryKind,
        note: str,
        occurred_at: datetime | None,
    ) -> FlowResult:
        validate_role(actor, [Role.ADMINISTRATOR], operation)
        at = occurred_at or self.time_provider.now()

        def work(
            conn: sqlite3.Connection, request: BudgetRequest, hierarchy: AllocationHierarchy
        ) -> _Applied:
            if request.state != RequestState.ALLOCATED:
                raise ValidationError(
                    "state",
                    f"request {request.request_id} is {request.state.value}, not allocated",
                )
            entry = self.on_vendor_status_changed(
                request, hierarchy, status, kind, actor=actor, occurred_at=at, conn=conn, note=note
            )
            return _Applied(
                request,
                request.state,
                request_changed=False,
                hierarchy_changed=True,
                ledger_entry=entry,
            )

        return self._run(operation, request_id, actor, work)

    @track_operation_duration("freeze")
    def freeze(
        self, request_id: str, actor: Actor, note: str = "", occurred_at: datetime | None = None
    ) -> FlowResult:
        """Freeze the request's vendor; spend is refused until unfrozen"""
        return self._vendor_status_operation(
            "freeze", request_id, actor, VendorStatus.FROZEN, LedgerEntryKind.FREEZE, note, occurred_at
        )

    @track_operation_duration("unfreeze")
    def unfreeze(
        self, request_id: str, actor: Actor, note: str = "", occurred_at: datetime | None = None
    ) -> FlowResult:
        return self._vendor_status_operation(
            "unfreeze",
            request_id,
            actor,
            VendorStatus.ALLOCATED,
            LedgerEntryKind.UNFREEZE,
            note,
            occurred_at,
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def snapshot(self, fiscal_period: str) -> HierarchySnapshot:
        """Committed point-in-time view of a period; no lock needed"""
        hierarchy = self.store.load_or_create(fiscal_period)
        return hierarchy.snapshot(self.time_provider.now())
