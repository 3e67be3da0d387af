"""
Request Lifecycle Invariants - transition guards

These pure functions enforce the lifecycle rules. Each transition passes
three gates, in order:

1. Edge: the requested move exists in the transition graph
2. Role: the actor may perform it
3. Preconditions: transition-specific checks (reason, vendor, amounts)

None of them mutate anything; they either return or raise.
"""

from datetime import date
from decimal import Decimal
from typing import Iterable

from budget_trail.kernel.errors import (
    AuthorizationError,
    StateTransitionError,
    ValidationError,
)
from budget_trail.requests.models import (
    ALLOWED_TRANSITIONS,
    Actor,
    BudgetRequest,
    Priority,
    RequestState,
    Role,
)


def can_transition(from_state: RequestState, to_state: RequestState) -> bool:
    return to_state in ALLOWED_TRANSITIONS[from_state]


def validate_edge(request: BudgetRequest, to_state: RequestState) -> None:
    """
    Gate 1: the edge must exist

    Raises:
        StateTransitionError: Naming the illegal (from, to) pair
    """
    if not can_transition(request.state, to_state):
        raise StateTransitionError(
            request.state.value,
            to_state.value,
            f"Request {request.request_id} cannot move from "
            f"{request.state.value} to {to_state.value}",
        )


def validate_role(actor: Actor, allowed: Iterable[Role], action: str) -> None:
    """
    Gate 2: the actor's role must be allowed

    Raises:
        AuthorizationError: If the role is not permitted
    """
    if actor.role not in set(allowed):
        raise AuthorizationError(actor.actor_id, actor.role.value, action)


def validate_cancel_authority(request: BudgetRequest, actor: Actor) -> None:
    """
    Cancel may be done by an administrator or by the request's own requester

    Raises:
        AuthorizationError: For anyone else
    """
    if actor.role == Role.ADMINISTRATOR:
        return
    if actor.actor_id == request.requester_id:
        return
    raise AuthorizationError(actor.actor_id, actor.role.value, "cancel")


def validate_reason(reason: str | None) -> str:
    """
    Reject requires a non-empty reason

    Returns:
        The stripped reason
    """
    if reason is None or not reason.strip():
        raise ValidationError("reason", "a rejection reason is required")
    return reason.strip()


def validate_allocation(
    request: BudgetRequest, vendor_id: str | None, amount: Decimal
) -> str:
    """
    Allocation needs a vendor and 0 < amount <= requested amount

    Returns:
        The stripped vendor identity

    Raises:
        ValidationError: If either is missing or out of range
    """
    if not vendor_id or not vendor_id.strip():
        raise ValidationError("vendor_id", "allocation requires a vendor identity")
    if amount <= 0:
        raise ValidationError("amount", f"allocation must be positive, got {amount}")
    if amount > request.amount:
        raise ValidationError(
            "amount",
            f"allocation {amount} exceeds requested amount {request.amount}",
        )
    return vendor_id.strip()


def validate_completion(request: BudgetRequest) -> None:
    """
    Completion requires the allocation to be fully released

    Raises:
        ValidationError: If spent < allocated
    """
    if request.spent_amount < request.allocated_amount:
        raise ValidationError(
            "spent_amount",
            f"request {request.request_id} has spent {request.spent_amount} "
            f"of {request.allocated_amount} allocated",
        )


def validate_new_request(
    *,
    department: str,
    project: str,
    description: str,
    amount: Decimal,
    currency: str,
    required_by: date | None,
    requested_on: date,
    allowed_currencies: Iterable[str],
) -> None:
    """
    Creation checks: required fields present, amount positive, currency
    accepted, required-by date not in the past

    Raises:
        ValidationError: On the first failing field
    """
    if not department or not department.strip():
        raise ValidationError("department", "department is required")
    if not project or not project.strip():
        raise ValidationError("project", "project is required")
    if not description or not description.strip():
        raise ValidationError("description", "description is required")
    if not amount.is_finite() or amount <= 0:
        raise ValidationError("amount", f"amount must be positive, got {amount}")
    if currency not in set(allowed_currencies):
        raise ValidationError("currency", f"{currency} is not an accepted currency")
    if required_by is None:
        raise ValidationError("required_by", "required-by date is required")
    if required_by < requested_on:
        raise ValidationError(
            "required_by", f"{required_by.isoformat()} is before {requested_on.isoformat()}"
        )


def compute_risk_score(
    amount: Decimal, required_by: date, requested_on: date, priority: Priority
) -> float:
    """
    Heuristic risk of a new request

    Base 0.5; +0.2 above 100,000 (else +0.1 above 50,000); +0.2 when needed
    within 7 days (else +0.1 within 30); +0.1 when urgent. Clamped to [0, 1].
    """
    score = 0.5

    if amount > 100000:
        score += 0.2
    elif amount > 50000:
        score += 0.1

    days_until_required = (required_by - requested_on).days
    if days_until_required < 7:
        score += 0.2
    elif days_until_required < 30:
        score += 0.1

    if priority == Priority.URGENT:
        score += 0.1

    return round(max(0.0, min(1.0, score)), 4)
