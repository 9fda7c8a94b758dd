"""
Push notification service: Web Push fan-out to a user's active subscriptions.

Sends are performed in parallel on a bounded thread pool. Worker threads only
talk to the push service. Results are applied on the calling thread through
PushSubscriptionService (last_used_at, deactivation of gone endpoints) and
committed once with the caller's session.
"""

import json
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from pywebpush import webpush, WebPushException
from sqlalchemy.orm import Session

from courier.src.channels.exceptions import (
    ChannelConfigurationError,
    PushDeliveryError,
    PushGoneError,
)
from courier.src.models.notification import Notification, NotificationPriority, NotificationType
from courier.src.models.push_subscription import PushSubscription
from courier.src.services.presence_service import PresenceService
from courier.src.services.push_subscription_service import PushSubscriptionService
from courier.src.utils.clock import Clock, SystemClock
from courier.src.utils.logging_config import get_logger


logger = get_logger("services")


PUSH_TTL_SECONDS = 86400
MAX_TOPIC_LENGTH = 32

URGENCY_BY_PRIORITY = {
    NotificationPriority.LOW: "low",
    NotificationPriority.MEDIUM: "normal",
    NotificationPriority.HIGH: "high",
    NotificationPriority.URGENT: "high",
}


@dataclass
class PushResult:
    """Outcome of a fan-out to one user's subscriptions."""
    sent: int = 0
    failed: int = 0
    deactivated: int = 0

    @property
    def all_failed(self) -> bool:
        return self.failed > 0 and self.sent == 0


def build_payload(notification: Notification, frontend_url: str = "") -> Dict[str, Any]:
    """Push payload shown by the service worker."""
    notification_type = NotificationType(notification.type).value
    priority = NotificationPriority(notification.priority)
    url = notification.action_url or f"{frontend_url.rstrip('/')}/notifications"
    return {
        "title": notification.title,
        "body": notification.message,
        "tag": f"{notification_type}-{notification.id}",
        "priority": priority.value,
        "requireInteraction": priority == NotificationPriority.URGENT,
        "data": {
            "notification_id": notification.id,
            "type": notification_type,
            "url": url,
        },
    }


class PushNotificationService:
    """
    Service for delivering Web Push notifications.

    Args:
        db: SQLAlchemy session of the calling worker
        vapid_private_key: VAPID private key for push authentication
        vapid_claims: VAPID claims dict (e.g., {"sub": "mailto:..."})
        presence_service: Reachability oracle; reachable users get nothing
        max_concurrency: Upper bound on parallel sends
        clock: Time source for last_used_at
    """

    def __init__(
        self,
        db: Session,
        vapid_private_key: str = "",
        vapid_claims: Optional[Dict[str, str]] = None,
        presence_service: Optional[PresenceService] = None,
        max_concurrency: int = 4,
        clock: Optional[Clock] = None,
    ):
        self.db = db
        self.vapid_private_key = vapid_private_key
        self.vapid_claims = vapid_claims or {}
        self.presence_service = presence_service
        self.max_concurrency = max(1, max_concurrency)
        self.clock = clock or SystemClock()
        self.subscriptions = PushSubscriptionService(db, clock=self.clock)

    @property
    def configured(self) -> bool:
        return bool(self.vapid_private_key and self.vapid_claims.get("sub"))

    def send_to_user(self, user_id: str, payload: Dict[str, Any]) -> PushResult:
        """
        Send a push notification to all of a user's active subscriptions.

        A 404/410 from the push service deactivates only that subscription;
        the remaining sends carry on.

        Args:
            user_id: Recipient user id
            payload: Push payload (title, body, tag, data, ...)

        Returns:
            PushResult with sent/failed/deactivated counts; (0, 0) when the
            user is reachable or has no active subscriptions

        Raises:
            ChannelConfigurationError: If VAPID credentials are missing and
                there is something to send
        """
        if self.presence_service is not None and self.presence_service.is_user_reachable(user_id):
            logger.debug("User is online, skipping push", extra={"user_id": user_id})
            return PushResult()

        subscriptions = self.subscriptions.list_active(user_id)
        if not subscriptions:
            return PushResult()

        if not self.configured:
            raise ChannelConfigurationError("VAPID keys are not configured", "push")

        payload_json = json.dumps(payload)
        headers = self._headers(payload)
        targets = [(sub.id, sub.subscription_info) for sub in subscriptions]
        by_id = {sub.id: sub for sub in subscriptions}

        workers = min(self.max_concurrency, len(targets))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="push") as pool:
            outcomes = list(pool.map(
                lambda target: self._attempt(target[0], target[1], payload_json, headers),
                targets,
            ))

        result = PushResult()
        for subscription_id, error in outcomes:
            sub = by_id[subscription_id]
            if error is None:
                self.subscriptions.update_last_used(sub, commit=False)
                result.sent += 1
            elif isinstance(error, PushGoneError):
                if self.subscriptions.deactivate(sub, commit=False):
                    result.deactivated += 1
                result.failed += 1
            else:
                logger.warning(
                    f"Push delivery failed: {error}",
                    extra={"subscription_id": sub.id, "user_id": user_id, "endpoint": sub.endpoint[:60]},
                )
                result.failed += 1

        self.db.commit()

        if result.failed > 0:
            logger.info(
                "Push delivery summary",
                extra={
                    "user_id": user_id,
                    "total": len(subscriptions),
                    "success": result.sent,
                    "failed": result.failed,
                    "deactivated": result.deactivated,
                },
            )

        return result

    def _headers(self, payload: Dict[str, Any]) -> Dict[str, str]:
        try:
            priority = NotificationPriority(payload.get("priority", NotificationPriority.MEDIUM))
        except ValueError:
            priority = NotificationPriority.MEDIUM
        headers = {"Urgency": URGENCY_BY_PRIORITY[priority]}
        tag = payload.get("tag")
        if tag:
            headers["Topic"] = str(tag)[:MAX_TOPIC_LENGTH]
        return headers

    def _attempt(self, subscription_id: int, subscription_info: Dict[str, Any], payload_json: str,
                 headers: Dict[str, str]):
        """Run one send on a worker thread; returns (subscription_id, error or None)."""
        try:
            self._send_push(subscription_info, payload_json, headers)
        except (PushGoneError, PushDeliveryError) as e:
            return subscription_id, e
        return subscription_id, None

    def _send_push(self, subscription_info: Dict[str, Any], payload_json: str, headers: Dict[str, str]) -> None:
        """
        Send a push notification to a single subscription via pywebpush.

        Raises:
            PushGoneError: If the push service returned 404 or 410
            PushDeliveryError: If delivery failed for other reasons
        """
        try:
            webpush(
                subscription_info=subscription_info,
                data=payload_json,
                vapid_private_key=self.vapid_private_key,
                vapid_claims=dict(self.vapid_claims),
                ttl=PUSH_TTL_SECONDS,
                headers=dict(headers),
            )
        except WebPushException as e:
            if getattr(e, "response", None) is not None:
                # 410 Gone or 404 Not Found: subscription is expired/invalid
                if e.response.status_code in (410, 404):
                    raise PushGoneError(subscription_info["endpoint"]) from e
            raise PushDeliveryError(str(e), "push") from e
        except Exception as e:
            raise PushDeliveryError(str(e), "push") from e
