"""
Ledger Policy - tunable parameters for the allocation core

Thresholds for anomaly scoring and overspend review, the retry bound for
concurrency conflicts, and lifecycle switches live here so that deployments
change behaviour through configuration rather than code.
"""

from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field, model_validator


class LedgerPolicy(BaseModel):
    """
    Configuration for hashing, anomaly detection, overspend review and retries

    Defaults follow the production values: transactions above one million
    are treated as high value, spend above 150% of an allocation is flagged
    for human review, and contention is retried three times.
    """

    policy_version: str = Field(
        default="1.0",
        description="Policy version for tracking changes over time",
    )

    # Fingerprinting
    hash_algorithm: Literal["keccak256", "sha256"] = Field(
        default="keccak256",
        description="Digest used for ledger fingerprints",
    )

    # Anomaly heuristic
    anomaly_high_value_threshold: Decimal = Field(
        default=Decimal("1000000"),
        gt=0,
        description="Amounts above this raise the anomaly score",
    )

    anomaly_high_value_increment: float = Field(
        default=0.3,
        ge=0.0,
        le=1.0,
        description="Score added for a high-value amount",
    )

    anomaly_overspend_increment: float = Field(
        default=0.5,
        ge=0.0,
        le=1.0,
        description="Score added when an event exceeds the remaining allocation",
    )

    anomaly_flag_threshold: float = Field(
        default=0.7,
        ge=0.0,
        le=1.0,
        description="Entries scoring above this are marked anomalous",
    )

    # Overspend review (soft invariant, never rejects)
    overspend_review_ratio: Decimal = Field(
        default=Decimal("1.5"),
        ge=1,
        description="Spent/allocated ratio above which a node needs review",
    )

    # Concurrency
    max_conflict_retries: int = Field(
        default=3,
        ge=1,
        le=20,
        description="Attempts before ConcurrencyConflictError is surfaced",
    )

    retry_min_wait_ms: int = Field(default=10, ge=0)
    retry_max_wait_ms: int = Field(default=200, ge=0)

    lock_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        description="How long to wait for the per-period aggregate lock",
    )

    # Lifecycle
    auto_complete_on_full_release: bool = Field(
        default=True,
        description="Complete a request automatically once spent >= allocated",
    )

    allowed_currencies: list[str] = Field(
        default=["USD", "EUR", "ETH", "MATIC"],
        description="Currencies accepted on new budget requests",
    )

    @model_validator(mode="after")
    def _check_retry_window(self) -> "LedgerPolicy":
        if self.retry_min_wait_ms > self.retry_max_wait_ms:
            raise ValueError("retry_min_wait_ms must not exceed retry_max_wait_ms")
        return self


default_policy = LedgerPolicy()
