"""
Unit tests for PushNotificationService and PushChannelSender.

Tests the Web Push fan-out, handling of gone endpoints, presence
suppression and the payload/headers sent to the push service.
"""

import json
from unittest.mock import MagicMock

import pytest
from pywebpush import WebPushException

from courier.src.channels.exceptions import ChannelConfigurationError, PushDeliveryError
from courier.src.channels.push import PushChannelSender
from courier.src.models.notification import NotificationChannel, NotificationPriority, NotificationType
from courier.src.models.presence import PresenceStatus
from courier.src.services.presence_service import PresenceService
from courier.src.services.push_notification_service import (
    PUSH_TTL_SECONDS,
    PushNotificationService,
    build_payload,
)


VAPID_CLAIMS = {"sub": "mailto:ops@example.com"}


def _gone(status_code=410):
    return WebPushException("Push failed", response=MagicMock(status_code=status_code))


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def mock_webpush(mocker):
    return mocker.patch("courier.src.services.push_notification_service.webpush")


@pytest.fixture
def presence(test_db_session, manual_clock):
    return PresenceService(test_db_session, clock=manual_clock)


@pytest.fixture
def push_service(test_db_session, presence, manual_clock):
    """Create a PushNotificationService with test VAPID config."""
    return PushNotificationService(
        test_db_session,
        vapid_private_key="test-private-key",
        vapid_claims=VAPID_CLAIMS,
        presence_service=presence,
        max_concurrency=2,
        clock=manual_clock,
    )


@pytest.fixture
def payload(create_notification):
    notification = create_notification(
        type=NotificationType.PAYMENT_DUE,
        title="Season fee due",
        message="Your season fee is due Friday",
        priority=NotificationPriority.URGENT,
        channels=(NotificationChannel.PUSH,),
    )
    return build_payload(notification, "https://app.example.com")


# ============================================================================
# Test: build_payload
# ============================================================================


class TestBuildPayload:
    """Tests for the push payload."""

    def test_payload_fields(self, create_notification):
        notification = create_notification(
            type=NotificationType.MENTION,
            title="You were mentioned",
            message="@alex great game",
            action_url="https://app.example.com/chat/7",
        )
        payload = build_payload(notification, "https://app.example.com")

        assert payload["title"] == "You were mentioned"
        assert payload["body"] == "@alex great game"
        assert payload["tag"] == f"mention-{notification.id}"
        assert payload["requireInteraction"] is False
        assert payload["data"] == {
            "notification_id": notification.id,
            "type": "mention",
            "url": "https://app.example.com/chat/7",
        }

    def test_defaults_url_and_interaction(self, payload):
        assert payload["data"]["url"] == "https://app.example.com/notifications"
        assert payload["requireInteraction"] is True
        assert payload["priority"] == "urgent"


# ============================================================================
# Test: send_to_user
# ============================================================================


class TestSendToUser:
    """Tests for PushNotificationService.send_to_user."""

    def test_sends_to_every_active_subscription(self, push_service, create_push_subscription, mock_webpush,
                                                 payload, manual_clock):
        subs = [create_push_subscription() for _ in range(3)]
        create_push_subscription(is_active=False)
        create_push_subscription(user_id="user-2")

        result = push_service.send_to_user("user-1", payload)

        assert (result.sent, result.failed, result.deactivated) == (3, 0, 0)
        assert mock_webpush.call_count == 3
        for sub in subs:
            assert sub.last_used_at == manual_clock.now()

        kwargs = mock_webpush.call_args.kwargs
        assert json.loads(kwargs["data"]) == payload
        assert kwargs["vapid_private_key"] == "test-private-key"
        assert kwargs["vapid_claims"] == VAPID_CLAIMS
        assert kwargs["ttl"] == PUSH_TTL_SECONDS
        assert kwargs["headers"]["Urgency"] == "high"
        assert kwargs["headers"]["Topic"] == payload["tag"][:32]

    def test_gone_endpoint_deactivated_others_continue(self, push_service, create_push_subscription,
                                                       mock_webpush, payload):
        subs = [create_push_subscription() for _ in range(3)]
        gone_endpoint = subs[1].endpoint

        def fake_webpush(subscription_info, **kwargs):
            if subscription_info["endpoint"] == gone_endpoint:
                raise _gone(410)

        mock_webpush.side_effect = fake_webpush

        result = push_service.send_to_user("user-1", payload)

        assert (result.sent, result.failed, result.deactivated) == (2, 1, 1)
        assert subs[1].is_active is False
        assert subs[0].is_active is True
        assert subs[2].is_active is True

    def test_not_found_also_deactivates(self, push_service, create_push_subscription, mock_webpush, payload):
        sub = create_push_subscription()
        mock_webpush.side_effect = _gone(404)

        result = push_service.send_to_user("user-1", payload)

        assert result.deactivated == 1
        assert result.all_failed
        assert sub.is_active is False

    def test_results_applied_through_subscription_registry(self, push_service, create_push_subscription,
                                                           mock_webpush, payload, test_db_session, mocker):
        """Outcomes go through the registry and are committed once."""
        ok = create_push_subscription()
        gone = create_push_subscription()

        def fake_webpush(subscription_info, **kwargs):
            if subscription_info["endpoint"] == gone.endpoint:
                raise _gone(410)

        mock_webpush.side_effect = fake_webpush
        update_last_used = mocker.spy(push_service.subscriptions, "update_last_used")
        deactivate = mocker.spy(push_service.subscriptions, "deactivate")
        commit = mocker.spy(test_db_session, "commit")

        push_service.send_to_user("user-1", payload)

        update_last_used.assert_called_once_with(ok, commit=False)
        deactivate.assert_called_once_with(gone, commit=False)
        commit.assert_called_once()

    def test_other_errors_keep_subscription(self, push_service, create_push_subscription, mock_webpush,
                                            payload):
        sub = create_push_subscription()
        mock_webpush.side_effect = _gone(500)

        result = push_service.send_to_user("user-1", payload)

        assert (result.sent, result.failed, result.deactivated) == (0, 1, 0)
        assert sub.is_active is True

    def test_connection_error_counts_as_failure(self, push_service, create_push_subscription, mock_webpush,
                                                payload):
        create_push_subscription()
        mock_webpush.side_effect = ConnectionError("connection reset")

        result = push_service.send_to_user("user-1", payload)

        assert result.failed == 1

    def test_no_subscriptions(self, push_service, mock_webpush, payload):
        result = push_service.send_to_user("user-1", payload)
        assert (result.sent, result.failed) == (0, 0)
        mock_webpush.assert_not_called()

    def test_reachable_user_skipped(self, push_service, presence, create_push_subscription, mock_webpush,
                                    payload):
        create_push_subscription()
        presence.update_presence("user-1", PresenceStatus.ONLINE)

        result = push_service.send_to_user("user-1", payload)

        assert (result.sent, result.failed) == (0, 0)
        mock_webpush.assert_not_called()

    def test_missing_vapid_keys(self, test_db_session, create_push_subscription, mock_webpush, payload):
        create_push_subscription()
        service = PushNotificationService(test_db_session, vapid_private_key="", vapid_claims={})

        with pytest.raises(ChannelConfigurationError):
            service.send_to_user("user-1", payload)

    def test_missing_vapid_keys_without_subscriptions(self, test_db_session, payload):
        service = PushNotificationService(test_db_session)
        assert service.send_to_user("user-1", payload).sent == 0


# ============================================================================
# Test: PushChannelSender
# ============================================================================


class TestPushChannelSender:
    """Tests for the push channel's success rule."""

    @pytest.fixture
    def sender(self, manual_clock):
        return PushChannelSender(
            vapid_private_key="test-private-key",
            vapid_claims=VAPID_CLAIMS,
            frontend_url="https://app.example.com",
            clock=manual_clock,
        )

    def test_partial_success_is_delivered(self, sender, test_db_session, create_notification,
                                          create_push_subscription, mock_webpush):
        notification = create_notification(channels=(NotificationChannel.PUSH,))
        gone = create_push_subscription()
        kept = create_push_subscription()
        gone_endpoint = gone.endpoint

        def fake_webpush(subscription_info, **kwargs):
            if subscription_info["endpoint"] == gone_endpoint:
                raise _gone(410)

        mock_webpush.side_effect = fake_webpush

        sender.send(test_db_session, notification)

        assert gone.is_active is False
        assert kept.is_active is True

    def test_all_failed_raises(self, sender, test_db_session, create_notification, create_push_subscription,
                               mock_webpush):
        notification = create_notification(channels=(NotificationChannel.PUSH,))
        create_push_subscription()
        mock_webpush.side_effect = _gone(500)

        with pytest.raises(PushDeliveryError):
            sender.send(test_db_session, notification)

    def test_no_subscriptions_is_delivered(self, sender, test_db_session, create_notification, mock_webpush):
        notification = create_notification(channels=(NotificationChannel.PUSH,))
        sender.send(test_db_session, notification)
        mock_webpush.assert_not_called()
