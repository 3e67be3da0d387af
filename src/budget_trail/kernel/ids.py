"""
Identifier generation

Node, entry and request identifiers are UUIDv7-like strings: the leading 48
bits carry a millisecond timestamp, so ids sort in creation order and ledger
listings come back chronological without an extra index.
"""

import secrets
import time
from typing import Protocol


class IdFactory(Protocol):
    """Protocol for ID generation strategies"""

    def generate(self) -> str:
        """Generate a new unique ID"""
        ...


def generate_id() -> str:
    """
    Generate a UUIDv7-like identifier (time-ordered UUID)

    Format: 8-4-4-4-12 hex characters (36 chars with hyphens)
    First 48 bits: Unix timestamp in milliseconds
    Remaining bits: random, with version 7 and RFC 4122 variant markers

    Returns:
        Sortable UUID string (e.g., "01908e9a-3b87-7000-8000-123456789abc")
    """
    timestamp_48 = int(time.time() * 1000) & 0xFFFFFFFFFFFF

    rand_12 = secrets.randbits(12)
    rand_62 = secrets.randbits(62)

    time_high = (timestamp_48 >> 32) & 0xFFFF
    time_mid = (timestamp_48 >> 16) & 0xFFFF
    time_low_and_version = ((timestamp_48 & 0xFFFF) << 16) | (0x7000 | rand_12)
    clock_seq_and_variant = 0x8000 | ((rand_62 >> 48) & 0x3FFF)
    node = rand_62 & 0xFFFFFFFFFFFF

    return (
        f"{time_high:04x}{time_mid:04x}-"
        f"{(time_low_and_version >> 16) & 0xFFFF:04x}-"
        f"{time_low_and_version & 0xFFFF:04x}-"
        f"{clock_seq_and_variant:04x}-"
        f"{node:012x}"
    )


def generate_request_id() -> str:
    """
    Generate a human-friendly budget request reference

    Returns:
        Reference like "BR-01908e9a3b87-8f3a1c2b4d5e6f70": the creation
        millisecond, then the 62 random bits of the id's tail
    """
    raw = generate_id().replace("-", "")
    return f"BR-{raw[:12]}-{raw[-16:]}"


class DefaultIdFactory:
    """Default ID factory using UUIDv7-like generation"""

    def generate(self) -> str:
        return generate_id()


default_id_factory = DefaultIdFactory()
