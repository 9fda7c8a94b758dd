"""
Push subscription service for managing Web Push subscriptions.

Provides business logic for subscribing, unsubscribing, listing,
and sweeping stale push notification subscriptions. Subscriptions are
never hard-deleted; they are deactivated so delivery history survives.
"""

from datetime import timedelta
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session
from user_agents import parse

from courier.src.models.push_subscription import PushSubscription
from courier.src.services.exceptions import NotFoundError, ValidationError
from courier.src.utils.clock import Clock, SystemClock
from courier.src.utils.logging_config import get_logger


logger = get_logger("services")


def describe_user_agent(user_agent: Optional[str]) -> dict:
    """
    Extract browser, OS and device class from a User-Agent string.

    Returns:
        Dict with browser, os and device_type keys (None when unknown)
    """
    if not user_agent:
        return {"browser": None, "os": None, "device_type": None}

    parsed = parse(user_agent)

    if parsed.is_tablet:
        device_type = "tablet"
    elif parsed.is_mobile:
        device_type = "mobile"
    elif parsed.is_pc:
        device_type = "desktop"
    elif parsed.is_bot:
        device_type = "bot"
    else:
        device_type = "unknown"

    browser_version = ".".join(str(x) for x in parsed.browser.version[:2])
    os_version = ".".join(str(x) for x in parsed.os.version[:2])

    return {
        "browser": f"{parsed.browser.family} {browser_version}".strip(),
        "os": f"{parsed.os.family} {os_version}".strip(),
        "device_type": device_type,
    }


class PushSubscriptionService:
    """
    Service for managing Web Push subscriptions.

    Handles subscription lifecycle:
    - Create (upsert by endpoint, reactivating a dormant subscription)
    - Unsubscribe (soft delete by endpoint + user)
    - List (by user)
    - Deactivate invalid (404/410) subscriptions
    - Sweep subscriptions unused for the stale period
    """

    def __init__(self, db: Session, clock: Optional[Clock] = None):
        self.db = db
        self.clock = clock or SystemClock()

    def create_subscription(
        self,
        user_id: str,
        endpoint: str,
        p256dh_key: str,
        auth_key: str,
        user_agent: Optional[str] = None,
    ) -> PushSubscription:
        """
        Create or replace a push subscription.

        If a subscription with the same endpoint already exists it is updated
        in place (keys, owner, diagnostics) and reactivated.

        Args:
            user_id: Owning user's id
            endpoint: Push service endpoint URL
            p256dh_key: ECDH public key (Base64url)
            auth_key: Auth secret (Base64url)
            user_agent: Optional User-Agent of the subscribing client

        Returns:
            Created or updated PushSubscription

        Raises:
            ValidationError: If endpoint or keys are empty
        """
        if not endpoint:
            raise ValidationError("Push endpoint is required", field="endpoint")
        if not p256dh_key or not auth_key:
            raise ValidationError("Push encryption keys are required", field="keys")

        device = describe_user_agent(user_agent)
        now = self.clock.now()

        existing = (
            self.db.query(PushSubscription)
            .filter(PushSubscription.endpoint == endpoint)
            .first()
        )

        if existing:
            existing.user_id = user_id
            existing.p256dh_key = p256dh_key
            existing.auth_key = auth_key
            existing.user_agent = user_agent
            existing.browser = device["browser"]
            existing.os = device["os"]
            existing.device_type = device["device_type"]
            existing.is_active = True
            existing.updated_at = now
            self.db.commit()
            self.db.refresh(existing)
            logger.info(
                "Updated push subscription",
                extra={"endpoint_prefix": endpoint[:60], "user_id": user_id},
            )
            return existing

        subscription = PushSubscription(
            user_id=user_id,
            endpoint=endpoint,
            p256dh_key=p256dh_key,
            auth_key=auth_key,
            user_agent=user_agent,
            browser=device["browser"],
            os=device["os"],
            device_type=device["device_type"],
            is_active=True,
            created_at=now,
            updated_at=now,
        )
        self.db.add(subscription)
        self.db.commit()
        self.db.refresh(subscription)
        logger.info(
            "Created push subscription",
            extra={"subscription_id": subscription.id, "user_id": user_id},
        )
        return subscription

    def unsubscribe(self, user_id: str, endpoint: str) -> bool:
        """
        Deactivate a push subscription by endpoint for a specific user.

        Args:
            user_id: Owning user's id
            endpoint: Push service endpoint URL

        Returns:
            True if subscription was found and deactivated

        Raises:
            NotFoundError: If no subscription matches endpoint + user
        """
        subscription = (
            self.db.query(PushSubscription)
            .filter(
                PushSubscription.endpoint == endpoint,
                PushSubscription.user_id == user_id,
            )
            .first()
        )

        if not subscription:
            raise NotFoundError("PushSubscription", endpoint[:60])

        subscription.is_active = False
        subscription.updated_at = self.clock.now()
        self.db.commit()
        logger.info(
            "Deactivated push subscription",
            extra={"endpoint_prefix": endpoint[:60], "user_id": user_id},
        )
        return True

    def list_subscriptions(self, user_id: str, include_inactive: bool = False) -> List[PushSubscription]:
        """
        List push subscriptions for a user, newest first.

        Args:
            user_id: User's id
            include_inactive: Also return deactivated subscriptions

        Returns:
            List of PushSubscription instances
        """
        query = self.db.query(PushSubscription).filter(PushSubscription.user_id == user_id)
        if not include_inactive:
            query = query.filter(PushSubscription.is_active.is_(True))
        return query.order_by(PushSubscription.created_at.desc()).all()

    def list_active(self, user_id: str) -> List[PushSubscription]:
        return self.list_subscriptions(user_id)

    def remove_invalid(self, endpoint: str) -> bool:
        """
        Deactivate a subscription that returned 404/410 from the push service.

        Args:
            endpoint: The invalid push service endpoint

        Returns:
            True if an active subscription was deactivated
        """
        subscription = (
            self.db.query(PushSubscription)
            .filter(PushSubscription.endpoint == endpoint)
            .first()
        )

        if subscription is None:
            return False
        return self.deactivate(subscription)

    def deactivate(self, subscription: PushSubscription, commit: bool = True) -> bool:
        """
        Deactivate a subscription the push service reported as gone.

        Args:
            subscription: The subscription to deactivate
            commit: Commit immediately; pass False to batch with other changes

        Returns:
            True if the subscription was active
        """
        if not subscription.is_active:
            return False

        logger.info(
            "Deactivating invalid push subscription",
            extra={"subscription_id": subscription.id, "endpoint_prefix": subscription.endpoint[:60]},
        )
        subscription.is_active = False
        subscription.updated_at = self.clock.now()
        if commit:
            self.db.commit()
        return True

    def update_last_used(self, subscription: PushSubscription, commit: bool = True) -> None:
        """
        Update the last_used_at timestamp after successful push delivery.

        Args:
            subscription: The subscription that was used
            commit: Commit immediately; pass False to batch with other changes
        """
        now = self.clock.now()
        subscription.last_used_at = now
        subscription.updated_at = now
        if commit:
            self.db.commit()

    def cleanup_stale(self, days: int = 30) -> int:
        """
        Deactivate subscriptions that have not delivered anything for ``days``.

        A subscription that never delivered is aged from its creation time;
        re-subscribing the same endpoint restarts the clock.

        Args:
            days: Inactivity threshold in days (default 30)

        Returns:
            Number of subscriptions deactivated
        """
        now = self.clock.now()
        cutoff = now - timedelta(days=days)
        last_activity = func.coalesce(PushSubscription.last_used_at, PushSubscription.created_at)

        stale = (
            self.db.query(PushSubscription)
            .filter(
                PushSubscription.is_active.is_(True),
                last_activity < cutoff,
                # A re-subscribe refreshes updated_at
                PushSubscription.updated_at < cutoff,
            )
            .all()
        )

        for sub in stale:
            sub.is_active = False
            sub.updated_at = now

        count = len(stale)
        if count > 0:
            self.db.commit()
            logger.info(
                f"Deactivated {count} stale push subscriptions",
                extra={"days": days},
            )

        return count
