"""
Request Lifecycle - the per-request state machine

RequestLifecycle validates and applies transitions. It is pure with respect
to its inputs: every method returns a new BudgetRequest and leaves the one it
was given untouched, so a failed transition can never leave a request
half-changed.

Persistence and hierarchy updates are the flow coordinator's job.
"""

from datetime import date
from decimal import Decimal
from typing import Iterable

from budget_trail.kernel.errors import ValidationError
from budget_trail.kernel.ids import generate_request_id
from budget_trail.kernel.policy import LedgerPolicy, default_policy
from budget_trail.kernel.time import RealTimeProvider, TimeProvider
from budget_trail.requests.invariants import (
    compute_risk_score,
    validate_allocation,
    validate_cancel_authority,
    validate_completion,
    validate_edge,
    validate_new_request,
    validate_reason,
    validate_role,
)
from budget_trail.requests.models import (
    Actor,
    AuditEntry,
    BudgetRequest,
    Category,
    Priority,
    RequestState,
    Role,
)


def default_fiscal_period(on: date) -> str:
    """Fiscal periods follow calendar years: FY2025"""
    return f"FY{on.year}"


class RequestLifecycle:
    """
    Guarded transitions over BudgetRequest

    Edge roles:
    - approve, reject, allocate: administrator
    - complete: administrator or system (automatic completion)
    - cancel: administrator or the request's own requester
    """

    def __init__(
        self,
        time_provider: TimeProvider | None = None,
        policy: LedgerPolicy | None = None,
    ) -> None:
        self.time_provider = time_provider or RealTimeProvider()
        self.policy = policy or default_policy

    def _advance(
        self,
        request: BudgetRequest,
        to_state: RequestState,
        actor: Actor,
        note: str = "",
        **changes: object,
    ) -> BudgetRequest:
        now = self.time_provider.now()
        entry = AuditEntry(state=to_state, timestamp=now, actor_id=actor.actor_id, note=note)
        stamps: dict[str, object] = {}
        if to_state == RequestState.APPROVED:
            stamps["approved_at"] = now
        elif to_state == RequestState.ALLOCATED:
            stamps["allocated_at"] = now
        elif to_state == RequestState.COMPLETED:
            stamps["completed_at"] = now

        return request.model_copy(
            update={
                "state": to_state,
                "history": request.history + (entry,),
                **stamps,
                **changes,
            }
        )

    def create(
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
        request_id: str | None = None,
    ) -> BudgetRequest:
        """
        Create a new pending request

        Raises:
            ValidationError: If a required field is missing or malformed, or
                required_by is before the request date
        """
        if not requester_id:
            raise ValidationError("requester_id", "requester is required")

        now = self.time_provider.now()
        validate_new_request(
            department=department,
            project=project,
            description=description,
            amount=amount,
            currency=currency,
            required_by=required_by,
            requested_on=now.date(),
            allowed_currencies=self.policy.allowed_currencies,
        )

        return BudgetRequest(
            request_id=request_id or generate_request_id(),
            requester_id=requester_id,
            department=department.strip(),
            project=project.strip(),
            category=category,
            amount=amount,
            currency=currency,
            description=description.strip(),
            justification=justification,
            priority=priority,
            requested_at=now,
            required_by=required_by,
            fiscal_period=fiscal_period or default_fiscal_period(now.date()),
            tags=tuple(tags),
            risk_score=compute_risk_score(amount, required_by, now.date(), priority),
            history=(
                AuditEntry(
                    state=RequestState.PENDING,
                    timestamp=now,
                    actor_id=requester_id,
                    note="Request submitted",
                ),
            ),
        )

    def approve(self, request: BudgetRequest, actor: Actor, note: str = "") -> BudgetRequest:
        validate_edge(request, RequestState.APPROVED)
        validate_role(actor, [Role.ADMINISTRATOR], "approve")
        return self._advance(
            request, RequestState.APPROVED, actor, note, approver_id=actor.actor_id
        )

    def reject(self, request: BudgetRequest, actor: Actor, reason: str | None) -> BudgetRequest:
        validate_edge(request, RequestState.REJECTED)
        validate_role(actor, [Role.ADMINISTRATOR], "reject")
        reason = validate_reason(reason)
        return self._advance(
            request,
            RequestState.REJECTED,
            actor,
            reason,
            approver_id=actor.actor_id,
            rejection_reason=reason,
        )

    def allocate(
        self,
        request: BudgetRequest,
        actor: Actor,
        vendor_id: str | None,
        amount: Decimal | None = None,
        note: str = "",
    ) -> BudgetRequest:
        """
        Allocate an approved request to a vendor

        Args:
            amount: Amount to allocate; defaults to the requested amount

        Raises:
            StateTransitionError: Unless the request is approved
            AuthorizationError: Unless the actor is an administrator
            ValidationError: Missing vendor or amount outside (0, request.amount]
        """
        validate_edge(request, RequestState.ALLOCATED)
        validate_role(actor, [Role.ADMINISTRATOR], "allocate")
        amount = request.amount if amount is None else amount
        vendor_id = validate_allocation(request, vendor_id, amount)
        return self._advance(
            request,
            RequestState.ALLOCATED,
            actor,
            note,
            assigned_vendor_id=vendor_id,
            allocated_amount=amount,
        )

    def complete(self, request: BudgetRequest, actor: Actor, note: str = "") -> BudgetRequest:
        validate_edge(request, RequestState.COMPLETED)
        validate_role(actor, [Role.ADMINISTRATOR, Role.SYSTEM], "complete")
        validate_completion(request)
        return self._advance(request, RequestState.COMPLETED, actor, note)

    def cancel(self, request: BudgetRequest, actor: Actor, reason: str = "") -> BudgetRequest:
        validate_edge(request, RequestState.CANCELLED)
        validate_cancel_authority(request, actor)
        return self._advance(request, RequestState.CANCELLED, actor, reason)

    def record_spend(self, request: BudgetRequest, amount: Decimal) -> BudgetRequest:
        """
        Add to a request's spent amount

        Raises:
            ValidationError: Unless the request is allocated and amount > 0
        """
        if request.state != RequestState.ALLOCATED:
            raise ValidationError(
                "state", f"request {request.request_id} is {request.state.value}, not allocated"
            )
        if amount <= 0:
            raise ValidationError("amount", f"spend must be positive, got {amount}")
        return request.model_copy(update={"spent_amount": request.spent_amount + amount})
