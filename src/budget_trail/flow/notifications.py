"""
In-process Notification Bus

The core emits lifecycle notifications as plain data records. Delivery
(in-app, email, push) belongs to whoever subscribes; the core only publishes.

Fun fact: this is the observer pattern from the Gang of Four book. Swapping
the bus for a message queue adapter would not change a line of domain code.
"""

from collections import defaultdict
from datetime import datetime
from enum import Enum
from typing import Any, Callable

from pydantic import BaseModel, Field

from budget_trail.kernel.logging import get_logger

logger = get_logger(__name__)


class NotificationKind(str, Enum):
    STATE_CHANGED = "state_changed"
    FUNDS_ALLOCATED = "funds_allocated"
    FUNDS_RELEASED = "funds_released"
    OVERSPEND_FLAGGED = "overspend_flagged"


class Notification(BaseModel):
    """
    Lifecycle notification

    Attributes:
        kind: Structured notification kind
        request_id: Request the notification concerns
        occurred_at: When the underlying event happened
        payload: Plain data for the recipient (states, amounts, vendor)
        recipients: Actor ids the notification is addressed to
    """

    kind: NotificationKind
    request_id: str
    occurred_at: datetime
    payload: dict[str, Any] = Field(default_factory=dict)
    recipients: tuple[str, ...] = ()

    model_config = {"frozen": True}


NotificationHandler = Callable[[Notification], None]


class NotificationBus:
    """
    Synchronous in-process publish/subscribe for notifications

    Handlers may subscribe to one kind or, with `kind=None`, to all kinds.
    A failing handler is logged and does not stop the others.
    """

    def __init__(self) -> None:
        self._handlers: defaultdict[NotificationKind | None, list[NotificationHandler]] = (
            defaultdict(list)
        )

    def subscribe(
        self, handler: NotificationHandler, kind: NotificationKind | None = None
    ) -> None:
        """
        Register a handler

        Args:
            handler: Called with each matching notification
            kind: Only this kind, or None for every kind
        """
        self._handlers[kind].append(handler)
        logger.debug(
            "Notification handler subscribed",
            kind=kind.value if kind else "*",
            total_handlers=len(self._handlers[kind]),
        )

    def publish(self, notification: Notification) -> None:
        """Deliver one notification to every matching handler, in order"""
        handlers = self._handlers.get(notification.kind, []) + self._handlers.get(None, [])

        for handler in handlers:
            try:
                handler(notification)
            except Exception as e:
                logger.error(
                    "Notification handler failed",
                    kind=notification.kind.value,
                    request_id=notification.request_id,
                    error=str(e),
                    exc_info=True,
                )

    def publish_all(self, notifications: list[Notification]) -> None:
        for notification in notifications:
            self.publish(notification)

    def clear(self) -> None:
        self._handlers.clear()
