"""
Ledger Domain Models - append-only allocation events

A ledger entry is created once per allocation-affecting event and bound to a
fingerprint over a canonical projection of its own data. The projection is
what makes replays idempotent: the same logical event always produces the
same fingerprint, and the ledger's uniqueness constraint rejects the second
copy.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class LedgerEntryKind(str, Enum):
    """
    Structured event kinds

    Behaviour is driven off these kinds; any free text travels only as a note.
    """

    ALLOCATION = "allocation"  # Funds assigned to a vendor
    RELEASE = "release"  # Funds paid out against an allocation
    WITHDRAWAL = "withdrawal"  # Funds pulled back out by the vendor side
    REALLOCATION = "reallocation"  # Department allocation returned on cancel
    FREEZE = "freeze"
    UNFREEZE = "unfreeze"


class VerificationStatus(str, Enum):
    """Outcome of the most recent re-verification"""

    PENDING = "pending"  # Not independently verified yet
    VERIFIED = "verified"
    TAMPERED = "tampered"


def canonical_projection(
    *,
    amount: Decimal,
    department: str,
    project: str,
    vendor_id: str | None,
    request_id: str,
    kind: LedgerEntryKind,
    occurred_at: datetime,
) -> dict[str, Any]:
    """The exact fields a ledger fingerprint is computed over"""
    return {
        "amount": amount,
        "department": department,
        "project": project,
        "vendor_id": vendor_id,
        "request_id": request_id,
        "kind": kind,
        "occurred_at": occurred_at,
    }


class LedgerEvent(BaseModel):
    """
    Event submitted to the ledger for appending

    Attributes:
        request_id: Originating budget request
        department: Department name
        project: Project name
        vendor_id: Vendor identity (None for department-level events)
        amount: Event amount
        kind: Structured event kind
        actor_id: Who caused the event
        occurred_at: When the event happened (part of the fingerprint)
        note: Free-text metadata, never part of the fingerprint
        remaining_allocation: Allocation left before this event, used only
            by the anomaly heuristic
    """

    request_id: str = Field(min_length=1)
    department: str = Field(min_length=1)
    project: str
    vendor_id: str | None = None
    amount: Decimal = Field(ge=0)
    kind: LedgerEntryKind
    actor_id: str = Field(min_length=1)
    occurred_at: datetime
    note: str = ""
    remaining_allocation: Decimal | None = None

    def projection(self) -> dict[str, Any]:
        return canonical_projection(
            amount=self.amount,
            department=self.department,
            project=self.project,
            vendor_id=self.vendor_id,
            request_id=self.request_id,
            kind=self.kind,
            occurred_at=self.occurred_at,
        )


class LedgerEntry(BaseModel):
    """
    Immutable record of one allocation-affecting event

    Only `verification_status` and `last_verified_at` ever change, and only
    through explicit re-verification.
    """

    entry_id: str
    fingerprint: str
    hash_algorithm: str
    request_id: str
    department: str
    project: str
    vendor_id: str | None = None
    amount: Decimal
    kind: LedgerEntryKind
    actor_id: str
    occurred_at: datetime
    note: str = ""
    anomaly_score: float = 0.0
    is_anomalous: bool = False
    anomaly_reason: str | None = None
    verification_status: VerificationStatus = VerificationStatus.PENDING
    last_verified_at: datetime | None = None
    recorded_at: datetime

    model_config = {"frozen": True}

    def projection(self) -> dict[str, Any]:
        return canonical_projection(
            amount=self.amount,
            department=self.department,
            project=self.project,
            vendor_id=self.vendor_id,
            request_id=self.request_id,
            kind=self.kind,
            occurred_at=self.occurred_at,
        )


class VerificationSummary(BaseModel):
    """Result of re-verifying the whole ledger"""

    total: int = 0
    verified: int = 0
    tampered: int = 0
    tampered_entry_ids: list[str] = Field(default_factory=list)
    verified_at: datetime

    model_config = {"frozen": True}


class AnchorReconciliation(BaseModel):
    """
    Debug comparison of a ledger fingerprint against an anchor-side value

    `matches` is None when no anchor value was available to compare.
    """

    entry_id: str
    fingerprint: str
    anchor_fingerprint: str | None = None
    matches: bool | None = None

    model_config = {"frozen": True}
