"""
Ledger - append-only, fingerprinted allocation events
"""

from budget_trail.ledger.ledger import TransactionLedger
from budget_trail.ledger.models import (
    AnchorReconciliation,
    LedgerEntry,
    LedgerEntryKind,
    LedgerEvent,
    VerificationStatus,
    VerificationSummary,
    canonical_projection,
)

__all__ = [
    "TransactionLedger",
    "LedgerEntry",
    "LedgerEntryKind",
    "LedgerEvent",
    "VerificationStatus",
    "VerificationSummary",
    "AnchorReconciliation",
    "canonical_projection",
]
