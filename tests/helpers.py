"""
Test Helper Functions - Builders for requests in a given lifecycle state

Each builder drives a request through the real façade, so tests start from
state the system itself produced rather than hand-written rows.
"""

from datetime import date
from decimal import Decimal
from typing import Any

from budget_trail.requests.models import Actor, BudgetRequest
from budget_trail.trail import BudgetTrail

REQUIRED_BY = date(2025, 6, 30)


def create_request(trail: BudgetTrail, **overrides: Any) -> BudgetRequest:
    """
    Builder for pending requests

    Defaults: alice asks Engineering/Platform for 50000 USD by 2025-06-30.
    """
    fields: dict[str, Any] = {
        "requester_id": "alice",
        "department": "Engineering",
        "project": "Platform",
        "amount": Decimal("50000"),
        "description": "Build servers",
        "required_by": REQUIRED_BY,
    }
    fields.update(overrides)
    return trail.create_request(**fields)


def approved_request(trail: BudgetTrail, admin: Actor, **overrides: Any) -> BudgetRequest:
    request = create_request(trail, **overrides)
    return trail.approve(request.request_id, admin).request


def allocated_request(
    trail: BudgetTrail,
    admin: Actor,
    vendor_id: str = "V1",
    amount: Decimal | None = Decimal("40000"),
    **overrides: Any,
) -> BudgetRequest:
    """Builder for a request allocated to a vendor (40000 of 50000 by default)"""
    request = approved_request(trail, admin, **overrides)
    return trail.allocate(request.request_id, admin, vendor_id=vendor_id, amount=amount).request
