"""
Hierarchy - the budget -> department -> project -> vendor aggregate
"""

from budget_trail.hierarchy.aggregate import AllocationHierarchy
from budget_trail.hierarchy.models import (
    DepartmentNode,
    DepartmentSnapshot,
    HierarchyLevel,
    HierarchySnapshot,
    ProjectNode,
    ProjectSnapshot,
    ReviewFlag,
    VendorNode,
    VendorSnapshot,
    VendorStatus,
    utilization,
)
from budget_trail.hierarchy.store import AggregateStore

__all__ = [
    "AllocationHierarchy",
    "AggregateStore",
    "DepartmentNode",
    "ProjectNode",
    "VendorNode",
    "VendorStatus",
    "HierarchyLevel",
    "ReviewFlag",
    "HierarchySnapshot",
    "DepartmentSnapshot",
    "ProjectSnapshot",
    "VendorSnapshot",
    "utilization",
]
