"""
Request Domain Models - budget requests and their audit trail

A budget request is created by a requester and moves through a guarded
lifecycle:

    pending -> approved -> allocated -> completed
    pending -> rejected                       (terminal)
    pending | approved -> cancelled           (terminal)

Requests are never deleted; rejection and cancellation are terminal states.
Models are frozen: every transition produces a new request object.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field, computed_field


class RequestState(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    ALLOCATED = "allocated"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    def is_terminal(self) -> bool:
        return self in (RequestState.REJECTED, RequestState.COMPLETED, RequestState.CANCELLED)


# The complete transition graph; no other edges exist
ALLOWED_TRANSITIONS: dict[RequestState, frozenset[RequestState]] = {
    RequestState.PENDING: frozenset(
        {RequestState.APPROVED, RequestState.REJECTED, RequestState.CANCELLED}
    ),
    RequestState.APPROVED: frozenset({RequestState.ALLOCATED, RequestState.CANCELLED}),
    RequestState.ALLOCATED: frozenset({RequestState.COMPLETED}),
    RequestState.REJECTED: frozenset(),
    RequestState.COMPLETED: frozenset(),
    RequestState.CANCELLED: frozenset(),
}


class Category(str, Enum):
    EQUIPMENT = "equipment"
    SOFTWARE = "software"
    SERVICES = "services"
    INFRASTRUCTURE = "infrastructure"
    RESEARCH = "research"
    MARKETING = "marketing"
    OPERATIONS = "operations"
    OTHER = "other"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class Role(str, Enum):
    """
    Roles supplied by the identity collaborator

    SYSTEM is used for automatic transitions (completion after full release).
    """

    ADMINISTRATOR = "administrator"
    REQUESTER = "requester"
    VENDOR = "vendor"
    SYSTEM = "system"


class Actor(BaseModel):
    """Who is acting, as asserted by the identity collaborator"""

    actor_id: str = Field(min_length=1)
    role: Role

    model_config = {"frozen": True}


SYSTEM_ACTOR = Actor(actor_id="system", role=Role.SYSTEM)


class AuditEntry(BaseModel):
    """One step in a request's history; the note is metadata only"""

    state: RequestState
    timestamp: datetime
    actor_id: str
    note: str = ""

    model_config = {"frozen": True}


class BudgetRequest(BaseModel):
    """
    A request for funds moving through the approval lifecycle

    Attributes:
        request_id: Human-friendly reference (e.g., "BR-01908e9a3b87-8f3a1c2b4d5e6f70")
        requester_id: Who asked for the funds
        department: Department name in the allocation hierarchy
        project: Project name under that department
        category: Spending category
        amount: Requested amount
        currency: Currency code
        description: What the funds are for
        justification: Optional supporting text
        state: Current lifecycle state
        priority: Requester-declared priority
        requested_at: Creation time
        required_by: Date the funds are needed by
        fiscal_period: Aggregate the request allocates against
        approver_id: Administrator who approved or rejected
        assigned_vendor_id: Vendor funded on allocation
        allocated_amount: Amount allocated to the vendor
        spent_amount: Amount released/withdrawn so far
        risk_score: Heuristic risk at creation, in [0, 1]
        history: Ordered audit trail
        version: Storage version for optimistic concurrency
    """

    request_id: str
    requester_id: str
    department: str
    project: str
    category: Category = Category.OTHER
    amount: Decimal = Field(gt=0)
    currency: str = "USD"
    description: str
    justification: str | None = None
    state: RequestState = RequestState.PENDING
    priority: Priority = Priority.MEDIUM
    requested_at: datetime
    required_by: date
    fiscal_period: str
    approver_id: str | None = None
    assigned_vendor_id: str | None = None
    allocated_amount: Decimal = Field(default=Decimal("0"), ge=0)
    spent_amount: Decimal = Field(default=Decimal("0"), ge=0)
    approved_at: datetime | None = None
    allocated_at: datetime | None = None
    completed_at: datetime | None = None
    rejection_reason: str | None = None
    tags: tuple[str, ...] = ()
    risk_score: float = Field(default=0.5, ge=0.0, le=1.0)
    history: tuple[AuditEntry, ...] = ()
    version: int = 0

    model_config = {"frozen": True}

    @computed_field  # type: ignore[prop-decorator]
    @property
    def remaining_amount(self) -> Decimal:
        """Always derived: allocated minus spent"""
        return self.allocated_amount - self.spent_amount

    def is_fully_released(self) -> bool:
        return self.allocated_amount > 0 and self.spent_amount >= self.allocated_amount
