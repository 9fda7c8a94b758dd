"""
Push channel: Web Push to every active subscription of the recipient.
"""

from typing import Dict, Optional

from sqlalchemy.orm import Session

from courier.src.channels.base import ChannelSender
from courier.src.channels.exceptions import PushDeliveryError
from courier.src.models.notification import Notification, NotificationChannel
from courier.src.services.presence_service import PresenceService
from courier.src.services.push_notification_service import PushNotificationService, build_payload
from courier.src.utils.clock import Clock, SystemClock
from courier.src.utils.logging_config import get_logger


logger = get_logger("channels")


class PushChannelSender(ChannelSender):
    """
    Fails the dispatch only when every subscription failed; partial success
    counts as delivered.
    """

    channel = NotificationChannel.PUSH

    def __init__(
        self,
        vapid_private_key: str = "",
        vapid_claims: Optional[Dict[str, str]] = None,
        offline_threshold_minutes: int = 15,
        max_concurrency: int = 4,
        frontend_url: str = "",
        clock: Optional[Clock] = None,
    ):
        self.vapid_private_key = vapid_private_key
        self.vapid_claims = vapid_claims or {}
        self.offline_threshold_minutes = offline_threshold_minutes
        self.max_concurrency = max_concurrency
        self.frontend_url = frontend_url
        self.clock = clock or SystemClock()

    def service_for(self, db: Session) -> PushNotificationService:
        return PushNotificationService(
            db,
            vapid_private_key=self.vapid_private_key,
            vapid_claims=self.vapid_claims,
            presence_service=PresenceService(db, self.offline_threshold_minutes, clock=self.clock),
            max_concurrency=self.max_concurrency,
            clock=self.clock,
        )

    def send(self, db: Session, notification: Notification) -> None:
        result = self.service_for(db).send_to_user(
            notification.recipient_id,
            build_payload(notification, self.frontend_url),
        )
        if result.all_failed:
            raise PushDeliveryError(
                f"Push delivery failed for all {result.failed} subscriptions",
                self.channel.value,
            )
        logger.debug(
            "Push dispatch finished",
            extra={"notification_id": notification.id, "sent": result.sent, "failed": result.failed},
        )
