"""
Requests - budget requests and their lifecycle
"""

from budget_trail.requests.lifecycle import RequestLifecycle, default_fiscal_period
from budget_trail.requests.models import (
    ALLOWED_TRANSITIONS,
    SYSTEM_ACTOR,
    Actor,
    AuditEntry,
    BudgetRequest,
    Category,
    Priority,
    RequestState,
    Role,
)
from budget_trail.requests.repository import RequestRepository

__all__ = [
    "RequestLifecycle",
    "RequestRepository",
    "BudgetRequest",
    "AuditEntry",
    "RequestState",
    "ALLOWED_TRANSITIONS",
    "Category",
    "Priority",
    "Role",
    "Actor",
    "SYSTEM_ACTOR",
    "default_fiscal_period",
]
