"""
Hierarchy Domain Models - nodes of the budget -> department -> project -> vendor tree

Nodes live in flat maps keyed by synthetic ids and point at their parent by
id. Amounts that can be derived (remaining, utilization, root totals) are
never stored.

Snapshot models are frozen copies built for external reporting; holding one
never gives access to the live aggregate.
"""

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum

from pydantic import BaseModel, Field

PERCENT_QUANTUM = Decimal("0.01")


def utilization(spent: Decimal, allocated: Decimal) -> Decimal:
    """
    Spent as a percentage of allocated, rounded to 2 decimals

    Returns 0 when nothing is allocated.
    """
    if allocated == 0:
        return Decimal("0")
    return (spent / allocated * 100).quantize(PERCENT_QUANTUM, rounding=ROUND_HALF_UP)


class VendorStatus(str, Enum):
    """
    Vendor funding states

    ALLOCATED -> IN_PROGRESS (first spend) -> COMPLETED
    Any open state may be FROZEN and later unfrozen, or CANCELLED.
    """

    ALLOCATED = "allocated"
    IN_PROGRESS = "in-progress"
    FROZEN = "frozen"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class HierarchyLevel(str, Enum):
    DEPARTMENT = "department"
    PROJECT = "project"
    VENDOR = "vendor"


class DepartmentNode(BaseModel):
    node_id: str
    name: str
    allocated_amount: Decimal = Field(default=Decimal("0"), ge=0)
    spent_amount: Decimal = Field(default=Decimal("0"), ge=0)

    def remaining(self) -> Decimal:
        return self.allocated_amount - self.spent_amount


class ProjectNode(BaseModel):
    node_id: str
    department_id: str
    name: str
    allocated_amount: Decimal = Field(default=Decimal("0"), ge=0)
    spent_amount: Decimal = Field(default=Decimal("0"), ge=0)

    def remaining(self) -> Decimal:
        return self.allocated_amount - self.spent_amount


class VendorNode(BaseModel):
    """
    Funding line for one vendor under one project

    Attributes:
        node_id: Synthetic arena id
        project_id: Parent project node id
        vendor_id: Vendor identity from the vendor directory
        allocated_amount: Total allocated to this vendor
        spent_amount: Total released/withdrawn against it
        wallet_ref: Payment reference resolved by the vendor directory
        anchor_ref: Integrity anchor reference of the latest allocation, if any
        status: Funding status
    """

    node_id: str
    project_id: str
    vendor_id: str
    allocated_amount: Decimal = Field(default=Decimal("0"), ge=0)
    spent_amount: Decimal = Field(default=Decimal("0"), ge=0)
    wallet_ref: str | None = None
    anchor_ref: str | None = None
    status: VendorStatus = VendorStatus.ALLOCATED

    def remaining(self) -> Decimal:
        return self.allocated_amount - self.spent_amount

    def is_open(self) -> bool:
        return self.status in (VendorStatus.ALLOCATED, VendorStatus.IN_PROGRESS)


class ReviewFlag(BaseModel):
    """
    Soft overspend record for one node

    Spending past an allocation is never rejected, because expense
    recognition can lag allocation updates. It is flagged instead, and
    marked `needs_review` past the configured ratio.
    """

    level: HierarchyLevel
    node_id: str
    name: str
    allocated_amount: Decimal
    spent_amount: Decimal
    ratio: Decimal | None = None  # None when nothing was allocated
    needs_review: bool = False

    model_config = {"frozen": True}


class VendorSnapshot(BaseModel):
    vendor_id: str
    allocated_amount: Decimal
    spent_amount: Decimal
    remaining_amount: Decimal
    utilization: Decimal
    wallet_ref: str | None = None
    anchor_ref: str | None = None
    status: VendorStatus

    model_config = {"frozen": True}


class ProjectSnapshot(BaseModel):
    name: str
    allocated_amount: Decimal
    spent_amount: Decimal
    remaining_amount: Decimal
    utilization: Decimal
    vendors: tuple[VendorSnapshot, ...] = ()

    model_config = {"frozen": True}


class DepartmentSnapshot(BaseModel):
    name: str
    allocated_amount: Decimal
    spent_amount: Decimal
    remaining_amount: Decimal
    utilization: Decimal
    projects: tuple[ProjectSnapshot, ...] = ()

    model_config = {"frozen": True}


class HierarchySnapshot(BaseModel):
    """
    Immutable point-in-time view of one fiscal period's aggregate

    Budget totals first, then per-department, per-project and per-vendor
    breakdowns, each with derived remaining and utilization.
    """

    fiscal_period: str
    version: int
    total_amount: Decimal
    total_spent: Decimal
    total_remaining: Decimal
    utilization: Decimal
    departments: tuple[DepartmentSnapshot, ...] = ()
    review_flags: tuple[ReviewFlag, ...] = ()
    taken_at: datetime | None = None

    model_config = {"frozen": True}

    def department(self, name: str) -> DepartmentSnapshot | None:
        return next((d for d in self.departments if d.name == name), None)

    def project(self, department: str, name: str) -> ProjectSnapshot | None:
        dept = self.department(department)
        if dept is None:
            return None
        return next((p for p in dept.projects if p.name == name), None)

    def vendor(self, department: str, project: str, vendor_id: str) -> VendorSnapshot | None:
        proj = self.project(department, project)
        if proj is None:
            return None
        return next((v for v in proj.vendors if v.vendor_id == vendor_id), None)
