"""
Unit tests for NotificationService.

Tests creation and fan-out into delivery items, queries, read/delivered
acknowledgements, re-queueing and purging.
"""

from datetime import timedelta

import pytest

from courier.src.models.delivery_item import DeliveryItem, DeliveryStatus
from courier.src.models.notification import (
    Notification,
    NotificationChannel,
    NotificationPriority,
    NotificationStatus,
    NotificationType,
)
from courier.src.services.exceptions import NotFoundError, ValidationError
from courier.src.services.notification_service import NotificationService


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def notification_service(test_db_session, manual_clock):
    """Create a NotificationService on the manual clock."""
    return NotificationService(test_db_session, clock=manual_clock)


@pytest.fixture
def create(notification_service):
    def _create(recipient_id="user-1", channels=(NotificationChannel.IN_APP,), **kwargs):
        return notification_service.create_notification(
            recipient_id=recipient_id,
            type=kwargs.pop("type", NotificationType.MESSAGE_RECEIVED),
            title=kwargs.pop("title", "New message"),
            message=kwargs.pop("message", "See you at practice"),
            channels=list(channels),
            **kwargs,
        )
    return _create


# ============================================================================
# Test: create_notification
# ============================================================================


class TestCreateNotification:
    """Tests for NotificationService.create_notification."""

    def test_creates_one_item_per_channel(self, create, test_db_session, manual_clock):
        notification = create(
            channels=[NotificationChannel.IN_APP, NotificationChannel.EMAIL, NotificationChannel.PUSH],
            priority=NotificationPriority.HIGH,
        )

        assert notification.id is not None
        assert notification.status == NotificationStatus.PENDING
        assert notification.channels == ["in_app", "email", "push"]

        items = test_db_session.query(DeliveryItem).filter_by(notification_id=notification.id).all()
        assert {item.channel for item in items} == {
            NotificationChannel.IN_APP, NotificationChannel.EMAIL, NotificationChannel.PUSH,
        }
        for item in items:
            assert item.status == DeliveryStatus.PENDING
            assert item.priority == 2
            assert item.attempt_count == 0
            assert item.max_attempts == 3
            assert item.scheduled_for == manual_clock.now()

    def test_duplicate_channels_collapse(self, create, test_db_session):
        notification = create(channels=["email", NotificationChannel.EMAIL, "in_app"])
        assert notification.channels == ["email", "in_app"]
        assert test_db_session.query(DeliveryItem).count() == 2

    def test_scheduled_for(self, create, test_db_session, manual_clock):
        later = manual_clock.now() + timedelta(hours=2)
        notification = create(scheduled_for=later)
        item = test_db_session.query(DeliveryItem).filter_by(notification_id=notification.id).one()
        assert item.scheduled_for == later

    def test_stores_metadata(self, create):
        notification = create(metadata={"conversation_id": "c-1"})
        assert notification.metadata_dict == {"conversation_id": "c-1"}
        assert not notification.digest_sent

    @pytest.mark.parametrize("kwargs", [
        {"recipient_id": ""},
        {"title": ""},
        {"channels": []},
        {"channels": ["fax"]},
        {"type": "unknown_type"},
        {"priority": "critical"},
    ])
    def test_rejects_invalid_input(self, create, kwargs):
        with pytest.raises(ValidationError):
            create(**kwargs)


# ============================================================================
# Test: Queries
# ============================================================================


class TestQueries:
    """Tests for get/list/unread count."""

    def test_get_missing_raises(self, notification_service):
        with pytest.raises(NotFoundError):
            notification_service.get_notification(999)

    def test_list_newest_first(self, create, notification_service, manual_clock):
        first = create(title="first")
        manual_clock.advance(minutes=1)
        second = create(title="second")
        create(recipient_id="user-2")

        items, total = notification_service.list_for_user("user-1")
        assert total == 2
        assert [n.id for n in items] == [second.id, first.id]

    def test_list_filters(self, create, notification_service):
        create(type=NotificationType.MENTION)
        read = create(type=NotificationType.MESSAGE_RECEIVED)
        notification_service.mark_as_read(read.id)

        unread, total = notification_service.list_for_user("user-1", unread_only=True)
        assert total == 1
        assert unread[0].type == NotificationType.MENTION

        mentions, total = notification_service.list_for_user("user-1", type=NotificationType.MENTION)
        assert total == 1

    def test_pagination(self, create, notification_service, manual_clock):
        for _ in range(5):
            create()
            manual_clock.advance(seconds=1)
        page, total = notification_service.list_for_user("user-1", limit=2, offset=2)
        assert total == 5
        assert len(page) == 2

    def test_unread_count(self, create, notification_service):
        create()
        create()
        create(recipient_id="user-2")
        assert notification_service.get_unread_count("user-1") == 2


# ============================================================================
# Test: Acknowledgements
# ============================================================================


class TestAcknowledgements:
    """Tests for mark_delivered, mark_as_read and mark_all_as_read."""

    def test_mark_delivered(self, create, notification_service, manual_clock):
        notification = create()
        notification = notification_service.mark_delivered(notification.id)
        assert notification.status == NotificationStatus.DELIVERED
        assert notification.delivered_at == manual_clock.now()
        assert notification.sent_at == manual_clock.now()

    def test_mark_as_read_is_idempotent(self, create, notification_service, manual_clock):
        notification = create()
        first = notification_service.mark_as_read(notification.id)
        read_at = first.read_at

        manual_clock.advance(minutes=5)
        second = notification_service.mark_as_read(notification.id)
        assert second.read_at == read_at
        assert second.status == NotificationStatus.READ

    def test_mark_delivered_never_moves_read_back(self, create, notification_service):
        notification = create()
        notification_service.mark_as_read(notification.id)
        notification = notification_service.mark_delivered(notification.id)
        assert notification.status == NotificationStatus.READ

    def test_mark_as_read_other_user(self, create, notification_service):
        notification = create(recipient_id="user-1")
        with pytest.raises(NotFoundError):
            notification_service.mark_as_read(notification.id, recipient_id="user-2")

    def test_mark_all_as_read(self, create, notification_service):
        create()
        create()
        create(recipient_id="user-2")

        assert notification_service.mark_all_as_read("user-1") == 2
        assert notification_service.get_unread_count("user-1") == 0
        assert notification_service.get_unread_count("user-2") == 1
        assert notification_service.mark_all_as_read("user-1") == 0


# ============================================================================
# Test: Maintenance
# ============================================================================


class TestMaintenance:
    """Tests for requeue_failed and delete_old_notifications."""

    def test_requeue_failed_resets_terminal_items(self, create, notification_service, test_db_session, manual_clock):
        notification = create(channels=[NotificationChannel.SMS, NotificationChannel.IN_APP])
        items = {i.channel: i for i in notification.delivery_items}
        sms = items[NotificationChannel.SMS]
        sms.attempt_count = 3
        sms.fail("SMS notifications not implemented", manual_clock.now())
        test_db_session.commit()

        manual_clock.advance(hours=1)
        assert notification_service.requeue_failed(notification.id) == 1

        test_db_session.refresh(sms)
        assert sms.status == DeliveryStatus.PENDING
        assert sms.attempt_count == 0
        assert sms.max_attempts == 3
        assert sms.scheduled_for == manual_clock.now()
        assert sms.error_message is None

    def test_requeue_ignores_retrying_items(self, create, notification_service, test_db_session, manual_clock):
        notification = create(channels=[NotificationChannel.EMAIL])
        item = notification.delivery_items[0]
        item.attempt_count = 1
        item.fail("timeout", manual_clock.now(), manual_clock.now() + timedelta(minutes=1))
        test_db_session.commit()

        assert notification_service.requeue_failed(notification.id) == 0

    def test_delete_old_notifications_orphans_items(self, create, notification_service, test_db_session,
                                                    manual_clock):
        old_id = create().id
        manual_clock.advance(days=31)
        recent_id = create().id

        assert notification_service.delete_old_notifications(days=30) == 1

        test_db_session.expire_all()
        assert test_db_session.get(Notification, old_id) is None
        assert test_db_session.get(Notification, recent_id) is not None
        orphaned = test_db_session.query(DeliveryItem).filter(DeliveryItem.notification_id.is_(None)).count()
        assert orphaned == 1
