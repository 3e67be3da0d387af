"""
Tests for FlowUpdateCoordinator - lifecycle, hierarchy and ledger updates
committed together, with notifications and anchoring after commit

These tests drive the coordinator through the BudgetTrail façade, which is
how every caller reaches it.
"""

from decimal import Decimal

import pytest

from budget_trail.flow.collaborators import StaticVendorDirectory
from budget_trail.flow.notifications import Notification, NotificationKind
from budget_trail.hierarchy.models import VendorStatus
from budget_trail.integrity.anchors import AnchorStatus, LocalAnchor
from budget_trail.kernel.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    StateTransitionError,
    ValidationError,
)
from budget_trail.kernel.policy import LedgerPolicy
from budget_trail.kernel.time import TestTimeProvider
from budget_trail.ledger.models import LedgerEntryKind
from budget_trail.requests.models import Actor, RequestState, Role
from budget_trail.trail import BudgetTrail
from tests.helpers import allocated_request, approved_request, create_request


# Approve / reject


def test_approve_funds_department(trail: BudgetTrail, admin: Actor) -> None:
    request = create_request(trail)

    result = trail.approve(request.request_id, admin)

    assert result.request.state == RequestState.APPROVED
    assert result.ledger_entry is None
    assert result.snapshot.department("Engineering").allocated_amount == Decimal("50000")
    assert trail.list_fiscal_periods() == ["FY2025"]


def test_failed_transition_leaves_state_unchanged(trail: BudgetTrail, admin: Actor, requester: Actor) -> None:
    request = create_request(trail)

    with pytest.raises(AuthorizationError):
        trail.approve(request.request_id, requester)

    stored = trail.get_request(request.request_id)
    assert stored.state == RequestState.PENDING
    assert stored.version == request.version
    assert trail.snapshot("FY2025").total_amount == Decimal("0")


def test_unknown_request(trail: BudgetTrail, admin: Actor) -> None:
    with pytest.raises(NotFoundError):
        trail.approve("BR-missing", admin)


def test_reject_does_not_touch_hierarchy(trail: BudgetTrail, admin: Actor) -> None:
    request = create_request(trail)

    result = trail.reject(request.request_id, admin, "insufficient justification")

    assert result.request.state == RequestState.REJECTED
    assert result.request.rejection_reason == "insufficient justification"
    assert trail.list_fiscal_periods() == []


# Allocate


def test_allocate_creates_vendor_and_ledger_entry(trail: BudgetTrail, admin: Actor) -> None:
    request = approved_request(trail, admin)

    result = trail.allocate(request.request_id, admin, vendor_id="V1", amount=Decimal("40000"))

    entry = result.ledger_entry
    assert entry is not None
    assert entry.kind == LedgerEntryKind.ALLOCATION
    assert entry.amount == Decimal("40000")
    assert entry.vendor_id == "V1"

    vendor = result.snapshot.vendor("Engineering", "Platform", "V1")
    assert vendor.allocated_amount == Decimal("40000")
    assert vendor.status == VendorStatus.ALLOCATED
    assert vendor.anchor_ref == entry.fingerprint
    assert result.snapshot.project("Engineering", "Platform").allocated_amount == Decimal("40000")


def test_allocate_resolves_wallet(temp_db, test_time: TestTimeProvider, policy: LedgerPolicy, admin: Actor) -> None:
    trail = BudgetTrail(
        temp_db,
        policy=policy,
        time_provider=test_time,
        vendor_directory=StaticVendorDirectory({"V1": "0xwallet"}),
    )
    request = approved_request(trail, admin)

    result = trail.allocate(request.request_id, admin, vendor_id="V1")

    assert result.snapshot.vendor("Engineering", "Platform", "V1").wallet_ref == "0xwallet"

    other = approved_request(trail, admin)
    with pytest.raises(NotFoundError):
        trail.allocate(other.request_id, admin, vendor_id="V2")
    assert trail.get_request(other.request_id).state == RequestState.APPROVED


def test_allocate_pending_request_rejected(trail: BudgetTrail, admin: Actor) -> None:
    request = create_request(trail)
    with pytest.raises(StateTransitionError):
        trail.allocate(request.request_id, admin, vendor_id="V1")
    assert trail.list_ledger() == []


def test_allocation_is_anchored_after_commit(trail: BudgetTrail, admin: Actor, anchor: LocalAnchor) -> None:
    request = allocated_request(trail, admin)
    entry = trail.list_ledger(request_id=request.request_id)[0]

    receipt = trail.ledger.get_anchor(entry.fingerprint)
    assert receipt is not None
    assert receipt.status == AnchorStatus.ANCHORED
    assert anchor.lookup(entry.fingerprint) is not None
    assert trail.reconcile_anchor(entry.entry_id).matches is True


def test_failing_anchor_does_not_block_allocation(
    temp_db,
    test_time: TestTimeProvider,
    policy: LedgerPolicy,
    vendor_directory: StaticVendorDirectory,
    admin: Actor,
) -> None:
    class DownAnchor:
        name = "external"

        def submit(self, fingerprint, metadata):
            raise ConnectionError("anchor unreachable")

    trail = BudgetTrail(
        temp_db,
        policy=policy,
        time_provider=test_time,
        vendor_directory=vendor_directory,
        anchor=DownAnchor(),
    )
    request = allocated_request(trail, admin)

    entry = trail.list_ledger(request_id=request.request_id)[0]
    receipt = trail.ledger.get_anchor(entry.fingerprint)
    assert receipt.status == AnchorStatus.FAILED
    assert receipt.reference is None
    assert trail.get_request(request.request_id).state == RequestState.ALLOCATED


# Spend


def test_record_spend_updates_request_and_hierarchy(trail: BudgetTrail, admin: Actor) -> None:
    request = allocated_request(trail, admin)

    result = trail.record_spend(request.request_id, admin, Decimal("10000"))

    assert result.request.spent_amount == Decimal("10000")
    assert result.request.remaining_amount == Decimal("30000")
    assert result.request.state == RequestState.ALLOCATED
    assert result.ledger_entry.kind == LedgerEntryKind.RELEASE
    assert result.snapshot.vendor("Engineering", "Platform", "V1").status == VendorStatus.IN_PROGRESS


def test_withdrawal_kind(trail: BudgetTrail, admin: Actor) -> None:
    request = allocated_request(trail, admin)
    result = trail.record_spend(request.request_id, admin, Decimal("5"), kind=LedgerEntryKind.WITHDRAWAL)
    assert result.ledger_entry.kind == LedgerEntryKind.WITHDRAWAL


def test_record_spend_rejects_non_spend_kind(trail: BudgetTrail, admin: Actor) -> None:
    request = allocated_request(trail, admin)
    with pytest.raises(ValidationError):
        trail.record_spend(request.request_id, admin, Decimal("5"), kind=LedgerEntryKind.FREEZE)


def test_requester_cannot_record_spend(trail: BudgetTrail, admin: Actor, requester: Actor) -> None:
    request = allocated_request(trail, admin)
    with pytest.raises(AuthorizationError):
        trail.record_spend(request.request_id, requester, Decimal("5"))


def test_spend_on_unallocated_request_leaves_everything_untouched(trail: BudgetTrail, admin: Actor) -> None:
    request = approved_request(trail, admin)
    before = trail.snapshot("FY2025")

    with pytest.raises(ValidationError):
        trail.record_spend(request.request_id, admin, Decimal("5"))

    assert trail.snapshot("FY2025").total_spent == before.total_spent
    assert trail.list_ledger() == []


def test_full_release_auto_completes(trail: BudgetTrail, admin: Actor, test_time: TestTimeProvider) -> None:
    request = allocated_request(trail, admin)
    trail.record_spend(request.request_id, admin, Decimal("30000"))
    test_time.advance_seconds(60)

    result = trail.record_spend(request.request_id, admin, Decimal("10000"))

    assert result.request.state == RequestState.COMPLETED
    assert result.request.history[-1].actor_id == "system"
    assert result.snapshot.vendor("Engineering", "Platform", "V1").status == VendorStatus.COMPLETED


def test_auto_complete_can_be_disabled(
    temp_db, test_time: TestTimeProvider, vendor_directory: StaticVendorDirectory, admin: Actor
) -> None:
    trail = BudgetTrail(
        temp_db,
        policy=LedgerPolicy(auto_complete_on_full_release=False),
        time_provider=test_time,
        vendor_directory=vendor_directory,
    )
    request = allocated_request(trail, admin)

    result = trail.record_spend(request.request_id, admin, Decimal("40000"))
    assert result.request.state == RequestState.ALLOCATED

    completed = trail.complete(request.request_id, admin, "closing")
    assert completed.request.state == RequestState.COMPLETED


def test_overspend_is_flagged_and_recorded(trail: BudgetTrail, admin: Actor) -> None:
    request = allocated_request(trail, admin, amount=Decimal("100"))

    result = trail.record_spend(request.request_id, admin, Decimal("200"))

    assert result.request.spent_amount == Decimal("200")
    assert any(flag.needs_review for flag in result.review_flags)
    assert result.snapshot.review_flags
    assert result.ledger_entry.anomaly_score == pytest.approx(0.5)
    assert result.request.state == RequestState.COMPLETED


def test_duplicate_spend_event_rolls_back(trail: BudgetTrail, admin: Actor, test_time: TestTimeProvider) -> None:
    request = allocated_request(trail, admin)
    at = test_time.now()
    trail.record_spend(request.request_id, admin, Decimal("1000"), occurred_at=at)

    with pytest.raises(ConflictError):
        trail.coordinator.record_spend(request.request_id, admin, Decimal("1000"), occurred_at=at)

    stored = trail.get_request(request.request_id)
    assert stored.spent_amount == Decimal("1000")
    assert trail.snapshot("FY2025").vendor("Engineering", "Platform", "V1").spent_amount == Decimal("1000")
    assert len(trail.list_ledger(kind=LedgerEntryKind.RELEASE)) == 1


# Cancel


def test_cancel_pending_has_no_ledger_entry(trail: BudgetTrail, requester: Actor) -> None:
    request = create_request(trail)

    result = trail.cancel(request.request_id, requester, "no longer needed")

    assert result.request.state == RequestState.CANCELLED
    assert result.ledger_entry is None


def test_cancel_after_approval_releases_department(trail: BudgetTrail, admin: Actor) -> None:
    request = approved_request(trail, admin)

    result = trail.cancel(request.request_id, admin, "re-scoped")

    assert result.ledger_entry.kind == LedgerEntryKind.REALLOCATION
    assert result.ledger_entry.amount == Decimal("50000")
    assert result.snapshot.department("Engineering").allocated_amount == Decimal("0")


def test_allocated_request_cannot_be_cancelled(trail: BudgetTrail, admin: Actor) -> None:
    request = allocated_request(trail, admin)
    with pytest.raises(StateTransitionError):
        trail.cancel(request.request_id, admin)


# Freeze


def test_freeze_blocks_spend_until_unfrozen(trail: BudgetTrail, admin: Actor, test_time: TestTimeProvider) -> None:
    request = allocated_request(trail, admin)
    trail.record_spend(request.request_id, admin, Decimal("1000"))

    frozen = trail.freeze(request.request_id, admin, "audit")
    assert frozen.ledger_entry.kind == LedgerEntryKind.FREEZE
    assert frozen.ledger_entry.amount == Decimal("39000")
    assert frozen.snapshot.vendor("Engineering", "Platform", "V1").status == VendorStatus.FROZEN

    test_time.advance_seconds(60)
    with pytest.raises(ValidationError):
        trail.record_spend(request.request_id, admin, Decimal("500"))
    assert trail.get_request(request.request_id).spent_amount == Decimal("1000")

    unfrozen = trail.unfreeze(request.request_id, admin)
    assert unfrozen.ledger_entry.kind == LedgerEntryKind.UNFREEZE
    assert unfrozen.snapshot.vendor("Engineering", "Platform", "V1").status == VendorStatus.IN_PROGRESS

    trail.record_spend(request.request_id, admin, Decimal("500"))


def test_freeze_requires_administrator(trail: BudgetTrail, admin: Actor) -> None:
    request = allocated_request(trail, admin)
    with pytest.raises(AuthorizationError):
        trail.freeze(request.request_id, Actor(actor_id="sys", role=Role.SYSTEM))


# Notifications


def test_notifications_follow_the_lifecycle(
    trail: BudgetTrail, admin: Actor, published: list[Notification]
) -> None:
    request = allocated_request(trail, admin)
    trail.record_spend(request.request_id, admin, Decimal("40000"))

    kinds = [n.kind for n in published]
    assert kinds == [
        NotificationKind.STATE_CHANGED,  # submitted
        NotificationKind.STATE_CHANGED,  # approved
        NotificationKind.STATE_CHANGED,  # allocated
        NotificationKind.FUNDS_ALLOCATED,
        NotificationKind.FUNDS_RELEASED,
        NotificationKind.STATE_CHANGED,  # completed
    ]
    allocated = published[3]
    assert allocated.payload["vendor_id"] == "V1"
    assert allocated.payload["amount"] == "40000"
    assert "alice" in allocated.recipients
    assert published[-1].payload["to_state"] == "completed"


def test_failed_operation_publishes_nothing(
    trail: BudgetTrail, admin: Actor, published: list[Notification]
) -> None:
    request = create_request(trail)
    published.clear()

    with pytest.raises(ValidationError):
        trail.reject(request.request_id, admin, "")

    assert published == []


def test_broken_subscriber_does_not_fail_operation(
    trail: BudgetTrail, admin: Actor, notification_bus
) -> None:
    def broken(notification: Notification) -> None:
        raise RuntimeError("mail server down")

    notification_bus.subscribe(broken)
    request = create_request(trail)

    assert trail.approve(request.request_id, admin).request.state == RequestState.APPROVED


# Health


def test_health_counts(trail: BudgetTrail, admin: Actor) -> None:
    request = allocated_request(trail, admin)
    trail.record_spend(request.request_id, admin, Decimal("10"))

    health = trail.health()

    assert health["requests"] == 1
    assert health["fiscal_periods"] == 1
    assert health["ledger_entries"] == 2
    assert health["tampered_entries"] == 0
    assert health["anchor_receipts"] == 2
