"""
Integrity - fingerprints and anchors

Fun fact: keccak256 won the SHA-3 competition in 2012, but the padding NIST
finally standardized differs from the original submission, so SHA3-256 and
keccak256 produce different digests for the same input.
"""

from budget_trail.integrity.anchors import (
    AnchorDispatcher,
    AnchorReceipt,
    AnchorStatus,
    ExternalLedgerAnchor,
    IntegrityAnchor,
    LocalAnchor,
)
from budget_trail.integrity.hasher import HASH_PATTERN, SUPPORTED_ALGORITHMS, IntegrityHasher

__all__ = [
    "IntegrityHasher",
    "HASH_PATTERN",
    "SUPPORTED_ALGORITHMS",
    "IntegrityAnchor",
    "LocalAnchor",
    "ExternalLedgerAnchor",
    "AnchorDispatcher",
    "AnchorReceipt",
    "AnchorStatus",
]
