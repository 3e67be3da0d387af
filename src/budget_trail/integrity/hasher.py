"""
Integrity Hasher - canonical fingerprints for ledger data

A fingerprint is `0x` followed by 64 lowercase hex characters, computed over
a canonical serialization of the data:

- JSON with object keys sorted at every nesting level
- arrays kept in order, no insignificant whitespace
- UTF-8 bytes, non-ASCII characters emitted as-is
- Decimals in plain normalized notation ("40000", never "4E+4" or "40000.00"),
  integral floats as integers, datetimes and dates as ISO-8601,
  enums by value, pydantic models by their JSON dump

Two semantically identical records therefore hash identically no matter the
order their fields were assembled in.
"""

import hashlib
import json
import re
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from Crypto.Hash import keccak
from pydantic import BaseModel

from budget_trail.kernel.errors import IntegrityMismatchError, ValidationError

SUPPORTED_ALGORITHMS = ("keccak256", "sha256")

HASH_PATTERN = re.compile(r"^0x[0-9a-f]{64}$")

HEX_DIGITS = 64


def _prepare(value: Any) -> Any:
    """Convert a value into plain JSON types with canonical scalar forms"""
    if isinstance(value, BaseModel):
        return _prepare(value.model_dump(mode="json"))
    if isinstance(value, dict):
        return {str(key): _prepare(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_prepare(item) for item in value]
    if isinstance(value, (set, frozenset)):
        prepared = [_prepare(item) for item in value]
        return sorted(prepared, key=lambda item: json.dumps(item, sort_keys=True))
    if isinstance(value, Enum):
        return _prepare(value.value)
    if isinstance(value, bool) or value is None or isinstance(value, (str, int)):
        return value
    if isinstance(value, Decimal):
        if not value.is_finite():
            raise ValidationError("data", f"non-finite decimal {value} cannot be fingerprinted")
        normalized = format(value.normalize(), "f")
        return "0" if normalized in ("-0", "0") else normalized
    if isinstance(value, float):
        if value != value or value in (float("inf"), float("-inf")):
            raise ValidationError("data", f"non-finite number {value} cannot be fingerprinted")
        return int(value) if value.is_integer() else value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, bytes):
        return value.hex()

    raise ValidationError(
        "data", f"object of type {type(value).__name__} cannot be canonicalized"
    )


class IntegrityHasher:
    """
    Canonicalization, fingerprinting and fingerprint validation

    keccak256 is the default digest; sha256 is selectable per call or as the
    instance default. Every fingerprint that leaves this class has been
    passed through `normalize`.
    """

    def __init__(self, default_algorithm: str = "keccak256") -> None:
        if default_algorithm not in SUPPORTED_ALGORITHMS:
            raise ValidationError(
                "algorithm", f"{default_algorithm} (supported: {', '.join(SUPPORTED_ALGORITHMS)})"
            )
        self.default_algorithm = default_algorithm

    @staticmethod
    def canonicalize(data: Any) -> str:
        """
        Serialize data into its canonical string form

        Args:
            data: Any JSON-like structure (dicts, lists, scalars, Decimals,
                datetimes, enums, pydantic models)

        Returns:
            Canonical JSON string

        Raises:
            ValidationError: If the data holds a type with no canonical form
        """
        return json.dumps(
            _prepare(data),
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
            allow_nan=False,
        )

    def fingerprint(self, data: Any, algorithm: str | None = None) -> str:
        """
        Hash the canonical form of data

        Args:
            data: Data to fingerprint
            algorithm: "keccak256" or "sha256" (defaults to instance default)

        Returns:
            Normalized fingerprint, `0x` + 64 lowercase hex characters

        Raises:
            ValidationError: On unsupported algorithm or uncanonicalizable data
        """
        algorithm = algorithm or self.default_algorithm
        payload = self.canonicalize(data).encode("utf-8")

        if algorithm == "keccak256":
            digest = keccak.new(digest_bits=256)
            digest.update(payload)
            hex_digest = digest.hexdigest()
        elif algorithm == "sha256":
            hex_digest = hashlib.sha256(payload).hexdigest()
        else:
            raise ValidationError(
                "algorithm", f"{algorithm} (supported: {', '.join(SUPPORTED_ALGORITHMS)})"
            )

        return self.normalize(hex_digest)

    @staticmethod
    def normalize(hash_value: str) -> str:
        """
        Bring a hash-like string into fingerprint format

        Strips an optional 0x prefix, lowercases, left-pads with zeros to 64
        characters and truncates anything longer, then re-adds the prefix.
        Idempotent: normalize(normalize(h)) == normalize(h).

        Raises:
            ValidationError: If hash_value is not a string
        """
        if not isinstance(hash_value, str):
            raise ValidationError("hash", f"expected a string, got {type(hash_value).__name__}")

        clean = hash_value.lower()
        if clean.startswith("0x"):
            clean = clean[2:]

        clean = clean.rjust(HEX_DIGITS, "0")[:HEX_DIGITS]
        return f"0x{clean}"

    @staticmethod
    def is_valid(hash_value: Any) -> bool:
        """True iff hash_value is exactly `0x` + 64 lowercase hex characters"""
        return isinstance(hash_value, str) and HASH_PATTERN.fullmatch(hash_value) is not None

    def compare(self, a: str, b: str) -> bool:
        """Equality after normalizing both sides independently"""
        return self.normalize(a) == self.normalize(b)

    def ensure_match(self, expected: str, actual: str) -> None:
        """
        Require two fingerprints to agree

        Raises:
            IntegrityMismatchError: With both normalized values when they differ
        """
        if not self.compare(expected, actual):
            raise IntegrityMismatchError(self.normalize(expected), self.normalize(actual))
