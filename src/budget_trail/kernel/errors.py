"""
Error taxonomy for Budget Trail

Every failure raised by the core maps onto one of these classes so callers
can tell "fix your input" apart from "try again" and "already recorded".

Propagation rules:
- ValidationError, StateTransitionError, AuthorizationError: returned to the
  caller immediately, never retried
- ConcurrencyConflictError: retried inside the coordinator, surfaced only
  when the retry bound is exhausted
- ConflictError: the exact event is already in the ledger
- IntegrityMismatchError: raised by the hasher, recorded by the ledger as a
  `tampered` verification status rather than propagated
"""


class BudgetTrailError(Exception):
    """Base exception for all Budget Trail errors"""

    pass


class ValidationError(BudgetTrailError):
    """Raised when a required field is missing or malformed"""

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        super().__init__(f"Invalid {field}: {message}")


class StateTransitionError(BudgetTrailError):
    """Raised when a lifecycle edge is not part of the transition graph"""

    def __init__(self, from_state: str, to_state: str, message: str = "") -> None:
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            message or f"Illegal state transition {from_state} -> {to_state}"
        )


class AuthorizationError(BudgetTrailError):
    """Raised when the acting role may not perform a lifecycle transition"""

    def __init__(self, actor_id: str, role: str, action: str) -> None:
        self.actor_id = actor_id
        self.role = role
        self.action = action
        super().__init__(f"Actor {actor_id} with role {role} may not {action}")


class NotFoundError(BudgetTrailError):
    """Raised when a referenced request, node or ledger entry does not exist"""

    def __init__(self, kind: str, ref: str) -> None:
        self.kind = kind
        self.ref = ref
        super().__init__(f"{kind} {ref} not found")


class ConflictError(BudgetTrailError):
    """
    Raised when a ledger entry with the same fingerprint already exists

    This signals "this exact event was already recorded", not a failure of
    the caller's intent. Replaying an event is therefore safe.
    """

    def __init__(self, fingerprint: str) -> None:
        self.fingerprint = fingerprint
        super().__init__(f"Ledger entry {fingerprint} already recorded")


class IntegrityMismatchError(BudgetTrailError):
    """Raised when two independently computed fingerprints disagree"""

    def __init__(self, expected: str, actual: str) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(f"Fingerprint mismatch: expected {expected}, got {actual}")


class ConcurrencyConflictError(BudgetTrailError):
    """
    Raised when an aggregate is locked or was modified concurrently

    The coordinator retries these transparently; callers only see one once
    the retry bound is exhausted.
    """

    def __init__(self, resource: str, message: str = "") -> None:
        self.resource = resource
        super().__init__(message or f"Concurrent modification of {resource}")
