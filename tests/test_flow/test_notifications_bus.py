"""
Tests for NotificationBus - synchronous publish/subscribe
"""

from datetime import datetime, timezone

from budget_trail.flow.notifications import Notification, NotificationBus, NotificationKind

AT = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


def note(kind: NotificationKind, request_id: str = "BR-1") -> Notification:
    return Notification(kind=kind, request_id=request_id, occurred_at=AT)


def test_kind_subscription_filters() -> None:
    bus = NotificationBus()
    released: list[Notification] = []
    bus.subscribe(released.append, NotificationKind.FUNDS_RELEASED)

    bus.publish(note(NotificationKind.STATE_CHANGED))
    bus.publish(note(NotificationKind.FUNDS_RELEASED))

    assert [n.kind for n in released] == [NotificationKind.FUNDS_RELEASED]


def test_wildcard_subscription_receives_everything_in_order() -> None:
    bus = NotificationBus()
    received: list[Notification] = []
    bus.subscribe(received.append)

    bus.publish_all(
        [
            note(NotificationKind.STATE_CHANGED, "BR-1"),
            note(NotificationKind.FUNDS_ALLOCATED, "BR-2"),
            note(NotificationKind.OVERSPEND_FLAGGED, "BR-3"),
        ]
    )

    assert [n.request_id for n in received] == ["BR-1", "BR-2", "BR-3"]


def test_failing_handler_does_not_stop_others() -> None:
    bus = NotificationBus()
    received: list[Notification] = []

    def broken(notification: Notification) -> None:
        raise RuntimeError("mail server down")

    bus.subscribe(broken)
    bus.subscribe(received.append)

    bus.publish(note(NotificationKind.STATE_CHANGED))

    assert len(received) == 1


def test_clear_removes_handlers() -> None:
    bus = NotificationBus()
    received: list[Notification] = []
    bus.subscribe(received.append)
    bus.clear()

    bus.publish(note(NotificationKind.STATE_CHANGED))

    assert received == []


def test_notifications_are_plain_data() -> None:
    notification = Notification(
        kind=NotificationKind.FUNDS_ALLOCATED,
        request_id="BR-1",
        occurred_at=AT,
        payload={"amount": "40000", "vendor_id": "V1"},
        recipients=("alice",),
    )

    data = notification.model_dump(mode="json")

    assert data["kind"] == "funds_allocated"
    assert data["payload"] == {"amount": "40000", "vendor_id": "V1"}
    assert Notification.model_validate(data) == notification
