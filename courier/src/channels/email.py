"""
Email channel: immediate email for offline recipients.
"""

from sqlalchemy.orm import Session

from courier.src.channels.base import ChannelSender
from courier.src.models.notification import Notification, NotificationChannel
from courier.src.services.email_notification_service import EmailNotificationService
from courier.src.services.presence_service import PresenceService
from courier.src.utils.clock import Clock, SystemClock


class EmailChannelSender(ChannelSender):
    """Delegates to EmailNotificationService with a presence oracle bound to the worker session."""

    channel = NotificationChannel.EMAIL

    def __init__(
        self,
        email_service: EmailNotificationService,
        offline_threshold_minutes: int = 15,
        clock: Clock = None,
    ):
        self.email_service = email_service
        self.offline_threshold_minutes = offline_threshold_minutes
        self.clock = clock or SystemClock()

    def send(self, db: Session, notification: Notification) -> None:
        presence = PresenceService(db, self.offline_threshold_minutes, clock=self.clock)
        # A skip (recipient online or without an address) still completes the item
        self.email_service.send_offline_notification(notification, presence_service=presence)
