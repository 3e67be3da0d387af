"""
Flow - coordination of lifecycle, hierarchy and ledger updates
"""

from budget_trail.flow.collaborators import StaticVendorDirectory, VendorDirectory
from budget_trail.flow.coordinator import FlowResult, FlowUpdateCoordinator
from budget_trail.flow.notifications import (
    Notification,
    NotificationBus,
    NotificationKind,
)

__all__ = [
    "FlowUpdateCoordinator",
    "FlowResult",
    "VendorDirectory",
    "StaticVendorDirectory",
    "Notification",
    "NotificationBus",
    "NotificationKind",
]
