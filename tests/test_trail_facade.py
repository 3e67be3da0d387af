"""
Tests for the BudgetTrail façade and the metrics it records
"""

from decimal import Decimal
from pathlib import Path

import pytest

from budget_trail import BudgetTrail
from budget_trail.flow.collaborators import StaticVendorDirectory
from budget_trail.flow.notifications import NotificationBus
from budget_trail.integrity.anchors import LocalAnchor
from budget_trail.kernel.errors import NotFoundError, StateTransitionError
from budget_trail.kernel.metrics import (
    ledger_entries_appended_total,
    lifecycle_transitions_total,
    operations_processed_total,
)
from budget_trail.kernel.time import TestTimeProvider
from budget_trail.ledger.models import LedgerEntryKind
from budget_trail.metrics_server import build_parser
from budget_trail.requests.models import Actor, RequestState
from tests.helpers import allocated_request, approved_request, create_request


def counter_value(counter, **labels) -> float:
    return counter.labels(**labels)._value.get()


def test_defaults_wire_a_working_system(temp_db: Path, admin: Actor) -> None:
    trail = BudgetTrail(temp_db)

    assert trail.policy.hash_algorithm == "keccak256"
    assert trail.list_requests() == []
    assert trail.list_fiscal_periods() == []
    assert trail.health()["ledger_entries"] == 0


def test_state_survives_reopening(
    temp_db: Path,
    test_time: TestTimeProvider,
    vendor_directory: StaticVendorDirectory,
    admin: Actor,
) -> None:
    first = BudgetTrail(temp_db, time_provider=test_time, vendor_directory=vendor_directory)
    request = allocated_request(first, admin)

    reopened = BudgetTrail(temp_db, time_provider=test_time)

    assert reopened.get_request(request.request_id).state == RequestState.ALLOCATED
    assert reopened.snapshot("FY2025").vendor("Engineering", "Platform", "V1") is not None
    assert reopened.verify_ledger().tampered == 0


def test_get_unknown_request(trail: BudgetTrail) -> None:
    with pytest.raises(NotFoundError):
        trail.get_request("BR-unknown")


def test_list_filters(trail: BudgetTrail, admin: Actor) -> None:
    pending = create_request(trail, department="Marketing")
    approved = approved_request(trail, admin)

    assert [r.request_id for r in trail.list_requests(state=RequestState.PENDING)] == [
        pending.request_id
    ]
    assert [r.request_id for r in trail.list_requests(department="Engineering")] == [
        approved.request_id
    ]
    assert len(trail.list_requests(limit=1)) == 1


def test_list_ledger_by_request_and_kind(trail: BudgetTrail, admin: Actor, test_time) -> None:
    first = allocated_request(trail, admin)
    second = allocated_request(trail, admin, vendor_id="V2", amount=Decimal("100"))
    test_time.advance_seconds(1)
    trail.record_spend(first.request_id, admin, Decimal("50"))

    assert len(trail.list_ledger(request_id=first.request_id)) == 2
    assert len(trail.list_ledger(request_id=second.request_id)) == 1
    assert len(trail.list_ledger(kind=LedgerEntryKind.RELEASE)) == 1
    assert trail.list_ledger(anomalous=True) == []


def test_reconcile_anchor_through_facade(trail: BudgetTrail, admin: Actor) -> None:
    request = allocated_request(trail, admin)
    entry = trail.list_ledger(request_id=request.request_id)[0]

    reconciliation = trail.reconcile_anchor(entry.entry_id)

    assert reconciliation.matches is True
    assert trail.reconcile_anchor(entry.entry_id, "0x" + "0" * 64).matches is False


def test_custom_vendor_directory(temp_db: Path, test_time: TestTimeProvider, admin: Actor) -> None:
    directory = StaticVendorDirectory({"V1": "0xfeed"})
    trail = BudgetTrail(temp_db, time_provider=test_time, vendor_directory=directory)

    allocated_request(trail, admin)

    vendor = trail.snapshot("FY2025").vendor("Engineering", "Platform", "V1")
    assert vendor.wallet_ref == "0xfeed"


def test_injected_collaborators_are_kept_even_when_empty(
    temp_db: Path, test_time: TestTimeProvider, admin: Actor
) -> None:
    anchor = LocalAnchor(test_time)
    bus = NotificationBus()
    directory = StaticVendorDirectory()
    directory.register("V1", "0xbeef")
    empty_directory = StaticVendorDirectory()

    trail = BudgetTrail(
        temp_db,
        time_provider=test_time,
        vendor_directory=directory,
        anchor=anchor,
        notification_bus=bus,
    )

    assert len(anchor) == 0
    assert trail.anchor is anchor
    assert trail.notification_bus is bus
    assert trail.vendor_directory is directory
    assert BudgetTrail(temp_db, vendor_directory=empty_directory).vendor_directory is empty_directory

    request = allocated_request(trail, admin)
    entry = trail.list_ledger(request_id=request.request_id)[0]
    assert anchor.lookup(entry.fingerprint) is not None
    assert len(anchor) == 1


def test_allocating_to_unregistered_vendor_is_not_found(trail: BudgetTrail, admin: Actor) -> None:
    request = approved_request(trail, admin)

    with pytest.raises(NotFoundError):
        trail.allocate(request.request_id, admin, vendor_id="NOT-IN-DIRECTORY")

    assert trail.get_request(request.request_id).state == RequestState.APPROVED
    assert trail.list_ledger() == []
    assert trail.snapshot("FY2025").vendor("Engineering", "Platform", "NOT-IN-DIRECTORY") is None


def test_default_directory_knows_no_vendors(temp_db: Path, test_time: TestTimeProvider, admin: Actor) -> None:
    trail = BudgetTrail(temp_db, time_provider=test_time)
    request = approved_request(trail, admin)

    with pytest.raises(NotFoundError):
        trail.allocate(request.request_id, admin, vendor_id="V1")

    assert trail.get_request(request.request_id).state == RequestState.APPROVED


def test_operations_record_metrics(trail: BudgetTrail, admin: Actor) -> None:
    approvals = counter_value(operations_processed_total, operation="approve", status="success")
    failures = counter_value(operations_processed_total, operation="approve", status="failure")
    transitions = counter_value(lifecycle_transitions_total, from_state="approved", to_state="allocated")
    allocations = counter_value(ledger_entries_appended_total, kind="allocation")

    request = allocated_request(trail, admin)
    with pytest.raises(StateTransitionError):
        trail.approve(request.request_id, admin)

    assert counter_value(operations_processed_total, operation="approve", status="success") == approvals + 1
    assert counter_value(operations_processed_total, operation="approve", status="failure") == failures + 1
    assert (
        counter_value(lifecycle_transitions_total, from_state="approved", to_state="allocated")
        == transitions + 1
    )
    assert counter_value(ledger_entries_appended_total, kind="allocation") == allocations + 1


def test_metrics_server_arguments() -> None:
    args = build_parser().parse_args(["--port", "9100", "--log-level", "DEBUG", "--json-logs"])

    assert args.port == 9100
    assert args.log_level == "DEBUG"
    assert args.json_logs is True
    assert build_parser().parse_args([]).port == 9090
