"""
Unit tests for PushSubscriptionService.

Tests subscription create (upsert), unsubscribe, list, invalidation and
stale cleanup.
"""

from datetime import timedelta

import pytest

from courier.src.models.push_subscription import PushSubscription
from courier.src.services.exceptions import NotFoundError, ValidationError
from courier.src.services.push_subscription_service import (
    PushSubscriptionService,
    describe_user_agent,
)


CHROME_DESKTOP = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
SAFARI_IPHONE = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_1 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.1 Mobile/15E148 Safari/604.1"
)


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def push_service(test_db_session, manual_clock):
    """Create a PushSubscriptionService instance."""
    return PushSubscriptionService(db=test_db_session, clock=manual_clock)


# ============================================================================
# Test: describe_user_agent
# ============================================================================


class TestDescribeUserAgent:
    """Tests for User-Agent parsing."""

    def test_desktop_chrome(self):
        device = describe_user_agent(CHROME_DESKTOP)
        assert device["browser"].startswith("Chrome")
        assert device["os"].startswith("Windows")
        assert device["device_type"] == "desktop"

    def test_mobile_safari(self):
        device = describe_user_agent(SAFARI_IPHONE)
        assert device["os"].startswith("iOS")
        assert device["device_type"] == "mobile"

    def test_missing_user_agent(self):
        assert describe_user_agent(None) == {"browser": None, "os": None, "device_type": None}


# ============================================================================
# Test: create_subscription
# ============================================================================


class TestCreateSubscription:
    """Tests for PushSubscriptionService.create_subscription."""

    def test_creates_new_subscription(self, push_service, manual_clock):
        """Should create a new subscription record."""
        sub = push_service.create_subscription(
            user_id="user-1",
            endpoint="https://push.example.com/sub/1",
            p256dh_key="test-p256dh",
            auth_key="test-auth",
            user_agent=CHROME_DESKTOP,
        )
        assert sub.id is not None
        assert sub.is_active is True
        assert sub.device_type == "desktop"
        assert sub.created_at == manual_clock.now()
        assert sub.subscription_info == {
            "endpoint": "https://push.example.com/sub/1",
            "keys": {"p256dh": "test-p256dh", "auth": "test-auth"},
        }

    def test_upserts_existing_endpoint(self, push_service, test_db_session):
        """Should update keys and reactivate when the endpoint already exists."""
        endpoint = "https://push.example.com/sub/1"
        first = push_service.create_subscription("user-1", endpoint, "old-key", "old-auth")
        push_service.unsubscribe("user-1", endpoint)

        updated = push_service.create_subscription("user-2", endpoint, "new-key", "new-auth")

        assert updated.id == first.id
        assert updated.user_id == "user-2"
        assert updated.p256dh_key == "new-key"
        assert updated.is_active is True
        assert test_db_session.query(PushSubscription).count() == 1

    @pytest.mark.parametrize("endpoint,p256dh,auth", [
        ("", "k", "a"),
        ("https://push.example.com/sub/1", "", "a"),
        ("https://push.example.com/sub/1", "k", ""),
    ])
    def test_rejects_incomplete_subscription(self, push_service, endpoint, p256dh, auth):
        with pytest.raises(ValidationError):
            push_service.create_subscription("user-1", endpoint, p256dh, auth)


# ============================================================================
# Test: unsubscribe / list
# ============================================================================


class TestUnsubscribeAndList:
    """Tests for unsubscribe and list_subscriptions."""

    def test_unsubscribe_soft_deletes(self, push_service, create_push_subscription):
        sub = create_push_subscription()
        assert push_service.unsubscribe("user-1", sub.endpoint) is True
        assert push_service.list_active("user-1") == []
        assert len(push_service.list_subscriptions("user-1", include_inactive=True)) == 1

    def test_unsubscribe_other_user_not_found(self, push_service, create_push_subscription):
        sub = create_push_subscription(user_id="user-1")
        with pytest.raises(NotFoundError):
            push_service.unsubscribe("user-2", sub.endpoint)

    def test_list_newest_first(self, push_service, create_push_subscription, manual_clock):
        older = create_push_subscription()
        newer = create_push_subscription(created_at=manual_clock.now() + timedelta(minutes=1))
        create_push_subscription(user_id="user-2")

        assert [s.id for s in push_service.list_active("user-1")] == [newer.id, older.id]


# ============================================================================
# Test: invalidation and cleanup
# ============================================================================


class TestCleanup:
    """Tests for remove_invalid, update_last_used and cleanup_stale."""

    def test_remove_invalid(self, push_service, create_push_subscription):
        sub = create_push_subscription()
        assert push_service.remove_invalid(sub.endpoint) is True
        assert push_service.remove_invalid(sub.endpoint) is False
        assert push_service.remove_invalid("https://push.example.com/unknown") is False

    def test_update_last_used(self, push_service, create_push_subscription, manual_clock):
        sub = create_push_subscription()
        manual_clock.advance(hours=1)
        push_service.update_last_used(sub)
        assert sub.last_used_at == manual_clock.now()

    def test_deactivate_without_commit(self, push_service, create_push_subscription, test_db_session, mocker):
        sub = create_push_subscription()
        commit = mocker.spy(test_db_session, "commit")

        assert push_service.deactivate(sub, commit=False) is True
        assert push_service.deactivate(sub, commit=False) is False
        push_service.update_last_used(sub, commit=False)

        assert sub.is_active is False
        commit.assert_not_called()

    def test_resubscribe_survives_next_sweep(self, push_service, create_push_subscription, manual_clock):
        """A re-subscribed endpoint is not swept again by the following cleanup."""
        sub = create_push_subscription(created_at=manual_clock.now() - timedelta(days=40))
        assert push_service.cleanup_stale(days=30) == 1
        assert sub.is_active is False

        manual_clock.advance(hours=1)
        again = push_service.create_subscription("user-1", sub.endpoint, "test-p256dh", "test-auth")
        assert again.id == sub.id
        assert again.is_active is True

        manual_clock.advance(minutes=5)
        assert push_service.cleanup_stale(days=30) == 0
        assert again.is_active is True

    def test_cleanup_stale(self, push_service, create_push_subscription, manual_clock):
        now = manual_clock.now()
        never_used = create_push_subscription(created_at=now - timedelta(days=31))
        recently_used = create_push_subscription(
            created_at=now - timedelta(days=90),
            last_used_at=now - timedelta(days=2),
        )
        stale_use = create_push_subscription(
            created_at=now - timedelta(days=90),
            last_used_at=now - timedelta(days=45),
        )
        fresh = create_push_subscription(created_at=now - timedelta(days=1))

        assert push_service.cleanup_stale(days=30) == 2

        assert never_used.is_active is False
        assert stale_use.is_active is False
        assert recently_used.is_active is True
        assert fresh.is_active is True

    def test_cleanup_nothing_stale(self, push_service, create_push_subscription):
        create_push_subscription()
        assert push_service.cleanup_stale(days=30) == 0
