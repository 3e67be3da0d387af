"""
Kernel - shared infrastructure for the allocation core

Errors, identifiers, injectable time, configuration, structured logging,
metrics, bounded retries and the SQLite storage layer that every domain
module builds on.
"""

from budget_trail.kernel.database import SQLiteDatabase
from budget_trail.kernel.errors import (
    AuthorizationError,
    BudgetTrailError,
    ConcurrencyConflictError,
    ConflictError,
    IntegrityMismatchError,
    NotFoundError,
    StateTransitionError,
    ValidationError,
)
from budget_trail.kernel.ids import IdFactory, generate_id, generate_request_id
from budget_trail.kernel.policy import LedgerPolicy, default_policy
from budget_trail.kernel.time import RealTimeProvider, TestTimeProvider, TimeProvider

__all__ = [
    # IDs
    "IdFactory",
    "generate_id",
    "generate_request_id",
    # Time
    "TimeProvider",
    "RealTimeProvider",
    "TestTimeProvider",
    # Configuration & storage
    "LedgerPolicy",
    "default_policy",
    "SQLiteDatabase",
    # Errors
    "BudgetTrailError",
    "ValidationError",
    "StateTransitionError",
    "AuthorizationError",
    "NotFoundError",
    "ConflictError",
    "IntegrityMismatchError",
    "ConcurrencyConflictError",
]
