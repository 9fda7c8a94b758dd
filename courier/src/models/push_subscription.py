"""
PushSubscription model for Web Push notification subscriptions.

Stores the push service endpoint and encryption keys needed to deliver
push notifications to a specific user's device/browser.
"""

from datetime import datetime

from sqlalchemy import Column, Integer, String, DateTime, Boolean, Text

from courier.src.models import Base


class PushSubscription(Base):
    """
    Web Push subscription for a specific user on a specific device/browser.

    Attributes:
        endpoint: Push service URL (unique per subscription)
        p256dh_key: ECDH public key for payload encryption (Base64url)
        auth_key: Auth secret for message authentication (Base64url)
        user_agent / browser / os / device_type: Diagnostics parsed from the
            subscribing client's User-Agent
        is_active: False once unsubscribed, gone (404/410) or stale
        last_used_at: Timestamp of last successful push delivery

    Lifecycle:
        Created (or reactivated) when a user enables notifications on a device.
        Soft-deleted when the user unsubscribes, the push service reports the
        endpoint gone, or the subscription goes unused for the stale period.
    """

    __tablename__ = "push_subscriptions"

    id = Column(Integer, primary_key=True, autoincrement=True)

    user_id = Column(String(64), nullable=False, index=True)

    # Push subscription data
    endpoint = Column(String(1024), nullable=False, unique=True)
    p256dh_key = Column(String(255), nullable=False)
    auth_key = Column(String(255), nullable=False)

    # Diagnostics
    user_agent = Column(Text, nullable=True)
    browser = Column(String(100), nullable=True)
    os = Column(String(100), nullable=True)
    device_type = Column(String(20), nullable=True)

    is_active = Column(Boolean, default=True, nullable=False, index=True)
    last_used_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    @property
    def subscription_info(self) -> dict:
        """Subscription dict in the shape pywebpush expects."""
        return {
            "endpoint": self.endpoint,
            "keys": {"p256dh": self.p256dh_key, "auth": self.auth_key},
        }

    def __repr__(self) -> str:
        return f"<PushSubscription(id={self.id}, user_id='{self.user_id}', active={self.is_active})>"
