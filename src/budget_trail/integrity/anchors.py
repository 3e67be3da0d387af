"""
Integrity Anchors - pluggable external records of ledger fingerprints

The core only depends on the `IntegrityAnchor` protocol. Two implementations
ship with the package:

- LocalAnchor: keeps fingerprints in-process; useful for development and as
  the default when no external store is configured
- ExternalLedgerAnchor: POSTs fingerprints to an HTTP anchoring service and
  stores whatever reference it returns

Anchoring is fire-and-forget from the ledger's point of view. When an anchor
fails, the receipt is recorded with status `failed` and no reference; no
placeholder coordinates are ever invented.
"""

from concurrent.futures import Executor
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Protocol

import requests
from pydantic import BaseModel

from budget_trail.kernel.logging import get_logger
from budget_trail.kernel.metrics import anchor_submissions_total
from budget_trail.kernel.time import RealTimeProvider, TimeProvider

logger = get_logger(__name__)


class AnchorStatus(str, Enum):
    """Outcome of an anchor submission"""

    ANCHORED = "anchored"
    FAILED = "failed"


class AnchorReceipt(BaseModel):
    """
    Opaque reference returned by an integrity anchor

    Attributes:
        fingerprint: Ledger fingerprint that was submitted
        anchor: Name of the anchor implementation
        status: anchored or failed
        reference: Anchor-side identifier (None when failed)
        anchored_at: When the anchor recorded it (None when failed)
        anchored_fingerprint: Fingerprint as echoed back by the anchor, used
            for debugging comparisons only
        detail: Error text for failed submissions
    """

    fingerprint: str
    anchor: str
    status: AnchorStatus
    reference: str | None = None
    anchored_at: datetime | None = None
    anchored_fingerprint: str | None = None
    detail: str | None = None

    model_config = {"frozen": True}


class IntegrityAnchor(Protocol):
    """Anything that can durably record a fingerprint elsewhere"""

    name: str

    def submit(self, fingerprint: str, metadata: dict[str, Any]) -> AnchorReceipt:
        """Record fingerprint and return a receipt, raising on failure"""
        ...


class LocalAnchor:
    """In-process anchor that simply remembers each fingerprint"""

    name = "local"

    def __init__(self, time_provider: TimeProvider | None = None) -> None:
        self.time_provider = time_provider or RealTimeProvider()
        self._anchored: dict[str, AnchorReceipt] = {}

    def submit(self, fingerprint: str, metadata: dict[str, Any]) -> AnchorReceipt:
        receipt = AnchorReceipt(
            fingerprint=fingerprint,
            anchor=self.name,
            status=AnchorStatus.ANCHORED,
            reference=f"local:{fingerprint}",
            anchored_at=self.time_provider.now(),
            anchored_fingerprint=fingerprint,
        )
        self._anchored[fingerprint] = receipt
        return receipt

    def lookup(self, fingerprint: str) -> AnchorReceipt | None:
        """Return the receipt for a fingerprint, if it was anchored here"""
        return self._anchored.get(fingerprint)

    def __len__(self) -> int:
        return len(self._anchored)


class ExternalLedgerAnchor:
    """
    Anchor backed by an HTTP anchoring service

    The service receives `{"fingerprint": ..., "metadata": {...}}` and must
    answer with JSON containing at least `anchor_id`; `anchored_at` (ISO-8601)
    and `fingerprint` are stored when present.
    """

    name = "external"

    def __init__(
        self,
        endpoint: str,
        *,
        session: requests.Session | None = None,
        timeout_seconds: float = 10.0,
        api_key: str | None = None,
        time_provider: TimeProvider | None = None,
    ) -> None:
        """
        Args:
            endpoint: URL that accepts fingerprint submissions
            session: Optional requests session (injectable for tests)
            timeout_seconds: Per-request timeout
            api_key: Sent as a bearer token when provided
            time_provider: Fallback clock when the service omits anchored_at
        """
        self.endpoint = endpoint
        self.session = session or requests.Session()
        self.timeout_seconds = timeout_seconds
        self.api_key = api_key
        self.time_provider = time_provider or RealTimeProvider()

    def submit(self, fingerprint: str, metadata: dict[str, Any]) -> AnchorReceipt:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        response = self.session.post(
            self.endpoint,
            json={"fingerprint": fingerprint, "metadata": metadata},
            headers=headers,
            timeout=self.timeout_seconds,
        )
        response.raise_for_status()
        body = response.json()

        if not body.get("anchor_id"):
            raise ValueError("anchor response did not include anchor_id")

        anchored_at = (
            datetime.fromisoformat(body["anchored_at"])
            if body.get("anchored_at")
            else self.time_provider.now()
        )

        return AnchorReceipt(
            fingerprint=fingerprint,
            anchor=self.name,
            status=AnchorStatus.ANCHORED,
            reference=str(body["anchor_id"]),
            anchored_at=anchored_at,
            anchored_fingerprint=body.get("fingerprint"),
        )


class AnchorDispatcher:
    """
    Submits fingerprints to an anchor without blocking the caller

    With an executor, submissions run in the background; without one they
    run inline after the ledger transaction has committed. Either way the
    receipt (anchored or failed) is handed to `on_receipt`.
    """

    def __init__(
        self,
        anchor: IntegrityAnchor,
        on_receipt: Callable[[AnchorReceipt], None],
        executor: Executor | None = None,
    ) -> None:
        self.anchor = anchor
        self.on_receipt = on_receipt
        self.executor = executor

    def dispatch(self, fingerprint: str, metadata: dict[str, Any]) -> None:
        """Queue (or run) one anchor submission"""
        if self.executor is not None:
            self.executor.submit(self._submit, fingerprint, metadata)
        else:
            self._submit(fingerprint, metadata)

    def _submit(self, fingerprint: str, metadata: dict[str, Any]) -> None:
        try:
            receipt = self.anchor.submit(fingerprint, metadata)
        except Exception as e:
            logger.warning(
                "Integrity anchor submission failed",
                anchor=self.anchor.name,
                fingerprint=fingerprint,
                error=str(e),
            )
            receipt = AnchorReceipt(
                fingerprint=fingerprint,
                anchor=self.anchor.name,
                status=AnchorStatus.FAILED,
                detail=str(e),
            )

        anchor_submissions_total.labels(
            anchor=self.anchor.name, status=receipt.status.value
        ).inc()

        try:
            self.on_receipt(receipt)
        except Exception as e:
            logger.error(
                "Could not record anchor receipt",
                anchor=self.anchor.name,
                fingerprint=fingerprint,
                error=str(e),
            )
