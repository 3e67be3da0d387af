"""
External collaborator interfaces

The core trusts its collaborators and only depends on these protocols:

- VendorDirectory: resolves a vendor identity to a wallet reference when a
  vendor node is created
- IntegrityAnchor: see budget_trail.integrity.anchors
- NotificationBus: see budget_trail.flow.notifications
"""

from typing import Protocol

from budget_trail.kernel.errors import NotFoundError


class VendorDirectory(Protocol):
    def resolve_wallet(self, vendor_id: str) -> str | None:
        """
        Return the vendor's wallet reference

        Raises:
            NotFoundError: If the vendor is unknown
        """
        ...


class StaticVendorDirectory:
    """
    Vendor directory backed by a fixed mapping

    Only registered vendors can be funded; any other vendor id raises
    NotFoundError so allocations never target an unknown party.
    """

    def __init__(self, wallets: dict[str, str | None] | None = None) -> None:
        self._wallets: dict[str, str | None] = dict(wallets or {})

    def register(self, vendor_id: str, wallet_ref: str | None) -> None:
        self._wallets[vendor_id] = wallet_ref

    def resolve_wallet(self, vendor_id: str) -> str | None:
        if vendor_id in self._wallets:
            return self._wallets[vendor_id]
        raise NotFoundError("vendor", vendor_id)
