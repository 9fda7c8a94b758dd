"""
Email notification service: offline notification emails and digest emails.

Immediate emails are only sent to recipients the presence oracle reports as
offline; digest emails skip the presence check entirely. Both go through
the shared pooled mail transport.
"""

from dataclasses import dataclass
from typing import List, Optional

from courier.src.models.notification import Notification, NotificationPriority, NotificationType
from courier.src.services.presence_service import PresenceService
from courier.src.services.user_directory import UserDirectory
from courier.src.utils.email_templates import EmailRenderer
from courier.src.utils.logging_config import get_logger
from courier.src.utils.mailer import MailTransport


logger = get_logger("services")


@dataclass
class DigestEmailData:
    """Notifications to summarize for one recipient."""
    recipient_id: str
    notifications: List[Notification]
    period: str


def mail_priority(priority: NotificationPriority) -> str:
    """Only urgent notifications are flagged high priority on the wire."""
    return "high" if NotificationPriority(priority) == NotificationPriority.URGENT else "normal"


class EmailNotificationService:
    """
    Service for sending notification emails.

    Args:
        user_directory: Resolves recipient email and name
        mail_transport: Pooled SMTP transport
        renderer: Per-type template renderer
        presence_service: Reachability oracle (immediate emails only)
        max_items_per_type: Digest items listed per type
    """

    def __init__(
        self,
        user_directory: UserDirectory,
        mail_transport: MailTransport,
        renderer: EmailRenderer,
        presence_service: Optional[PresenceService] = None,
        max_items_per_type: int = 5,
    ):
        self.user_directory = user_directory
        self.mail_transport = mail_transport
        self.renderer = renderer
        self.presence_service = presence_service
        self.max_items_per_type = max_items_per_type

    def send_offline_notification(
        self,
        notification: Notification,
        presence_service: Optional[PresenceService] = None,
    ) -> bool:
        """
        Email a notification to its recipient if they are offline.

        Args:
            notification: Notification to send
            presence_service: Presence oracle bound to the caller's session
                (falls back to the one given at construction)

        Returns:
            True if an email was sent, False if it was skipped (recipient
            reachable or without an email address)

        Raises:
            TemplateNotFoundError: If the type has no template
            Exception: Transport failures propagate so the item is retried
        """
        presence = presence_service or self.presence_service
        if presence is not None and presence.is_user_reachable(notification.recipient_id):
            logger.debug(
                "User is online, skipping email",
                extra={"notification_id": notification.id, "recipient_id": notification.recipient_id},
            )
            return False

        user_info = self.user_directory.get_user_info(notification.recipient_id)
        if user_info is None or not user_info.email:
            logger.warning(
                "No email address found for user",
                extra={"recipient_id": notification.recipient_id},
            )
            return False

        email = self.renderer.render_notification(notification, user_info.full_name or "there")
        message_id = self.mail_transport.send(
            to=user_info.email,
            subject=email.subject,
            html=email.html,
            text=email.text,
            priority=mail_priority(notification.priority),
        )

        logger.info(
            "Offline notification email sent",
            extra={
                "notification_id": notification.id,
                "type": NotificationType(notification.type).value,
                "message_id": message_id,
            },
        )
        return True

    def send_digest_email(self, digest: DigestEmailData) -> bool:
        """
        Send a digest email summarizing several notifications.

        Returns:
            True if sent, False if the recipient has no email address

        Raises:
            Exception: Transport failures propagate to the digest run
        """
        user_info = self.user_directory.get_user_info(digest.recipient_id)
        if user_info is None or not user_info.email:
            logger.warning(
                "No email address found for digest recipient",
                extra={"recipient_id": digest.recipient_id},
            )
            return False

        email = self.renderer.render_digest(
            digest.notifications,
            user_info.full_name or "there",
            digest.period,
            max_items_per_type=self.max_items_per_type,
        )
        self.mail_transport.send(
            to=user_info.email,
            subject=email.subject,
            html=email.html,
            text=email.text,
            priority="normal",
        )

        logger.info(
            "Digest email sent",
            extra={
                "recipient_id": digest.recipient_id,
                "notification_count": len(digest.notifications),
                "period": digest.period,
            },
        )
        return True
